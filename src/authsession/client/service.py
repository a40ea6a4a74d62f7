"""
Runs the authentication state machine.

AuthService is a single actor: events are queued on an anyio memory stream and
processed one at a time, so the session context has exactly one writer. Token
calls and the refresh timer run as tasks in the service's task group and feed
their outcome back as events.
"""

import logging
import math
from collections.abc import Callable
from typing import Any, Literal

import anyio
import httpx
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from authsession.client.clock import Clock, SystemClock
from authsession.client.errors import (
    AuthSessionError,
    StateTransitionError,
    TokenRequestError,
    classify_exception,
)
from authsession.client.httpx_auth import SessionAuth
from authsession.client.machine import (
    ArmTimer,
    AuthContext,
    AuthEffect,
    AuthEvent,
    AuthSnapshot,
    AuthStateMachine,
    AuthStateType,
    CallTokenEndpoint,
    CancelTimer,
    ClearSession,
    PersistSession,
    RefreshRequested,
    SessionUpdate,
    SignedOut,
    Start,
    TimerFired,
    TokenCallFailed,
    TokenCallSucceeded,
    TryToken,
)
from authsession.client.scheduler import RefreshScheduler
from authsession.client.storage import (
    SessionStore,
    clear_stored_session,
    create_session_store,
    load_stored_session,
    persist_session,
)
from authsession.client.token_client import HttpTokenClient, TokenClient
from authsession.client.url import UrlSessionExtractor
from authsession.settings import AuthSettings
from authsession.shared.auth import Session, User

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[AuthSnapshot], None]
AuthChangeEvent = Literal["SIGNED_IN", "SIGNED_OUT"]

SETTLED_STATES = frozenset({AuthStateType.PENDING, AuthStateType.SIGNED_OUT, AuthStateType.FAILED})


class AuthService:
    """
    Client-side session engine.

    Use as an async context manager; entering starts the machine and resolves
    the initial session, leaving stops it and cancels any pending refresh:

        async with AuthService(settings) as auth:
            await auth.wait_for(lambda s: s.state is not AuthStateType.AUTHENTICATING)
    """

    def __init__(
        self,
        settings: AuthSettings | None = None,
        *,
        token_client: TokenClient | None = None,
        storage: SessionStore | None = None,
        client_storage: Any = None,
        url_extractor: UrlSessionExtractor | None = None,
        clock: Clock | None = None,
        context: AuthContext | None = None,
    ):
        self.settings = settings or AuthSettings()

        self._owns_token_client = token_client is None
        if token_client is None:
            if self.settings.backend_url is None:
                raise AuthSessionError("Either a token client or settings.backend_url is required")
            token_client = HttpTokenClient(
                str(self.settings.backend_url),
                token_path=self.settings.token_path,
                timeout=self.settings.http_timeout,
            )
        self.token_client = token_client

        if storage is None:
            storage = create_session_store(
                self.settings.client_storage_type,
                client_storage=client_storage,
                path=self.settings.storage_path,
            )
        self.storage = storage
        self.url_extractor = url_extractor
        self.clock = clock or SystemClock()

        self.machine = AuthStateMachine(self.settings.refresh_policy(), auto_sign_in=self.settings.auto_sign_in)
        self.scheduler = RefreshScheduler(self.clock)

        self._snapshot = self.machine.initial_snapshot(context)
        self._listeners: list[SnapshotListener] = []
        self._task_group: TaskGroup | None = None
        self._send_stream: MemoryObjectSendStream[AuthEvent] | None = None
        self._receive_stream: MemoryObjectReceiveStream[AuthEvent] | None = None
        self._call_scope: anyio.CancelScope | None = None

    # Lifecycle

    async def start(self) -> "AuthService":
        """
        Start the service and resolve the initial session.

        Prefer `async with`. When calling start() directly, aclose() must be
        awaited from the same task.
        """
        if self._task_group is not None:
            raise StateTransitionError("AuthService is already running")

        self._send_stream, self._receive_stream = anyio.create_memory_object_stream(math.inf)
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._run)

        try:
            stored_refresh_token, _ = load_stored_session(self.storage)
            url_params = None
            if self.settings.auto_sign_in and self.url_extractor is not None:
                url_params = self.url_extractor.extract()
            # Resolved before returning so callers never observe the starting state
            self._dispatch(Start(stored_refresh_token=stored_refresh_token, url_params=url_params))
        except BaseException:
            await self.aclose()
            raise
        return self

    async def __aenter__(self) -> "AuthService":
        return await self.start()

    async def __aexit__(self, exc_type, exc_value, traceback) -> bool | None:
        task_group = self._task_group
        self.stop()
        if task_group is None:
            return None
        try:
            return await task_group.__aexit__(exc_type, exc_value, traceback)
        finally:
            self._task_group = None
            if self._owns_token_client and isinstance(self.token_client, HttpTokenClient):
                await self.token_client.aclose()

    async def aclose(self) -> None:
        await self.__aexit__(None, None, None)

    def stop(self) -> None:
        """Stop processing events. The pending timer and any in-flight call are cancelled."""
        self.scheduler.cancel()
        self._cancel_call()
        if self._send_stream is not None:
            self._send_stream.close()
            self._send_stream = None
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()

    @property
    def running(self) -> bool:
        return self._send_stream is not None

    # Events

    def send(self, event: AuthEvent) -> None:
        if self._send_stream is None:
            raise StateTransitionError(f"Cannot send {type(event).__name__}: AuthService is not running")
        self._send_stream.send_nowait(event)

    def _post(self, event: AuthEvent) -> None:
        """Internal events arriving after stop() are dropped."""
        if self._send_stream is None:
            logger.debug(f"Dropping {type(event).__name__}: service stopped")
            return
        self._send_stream.send_nowait(event)

    async def _run(self) -> None:
        assert self._receive_stream is not None
        async with self._receive_stream:
            async for event in self._receive_stream:
                self._dispatch(event)

    def _dispatch(self, event: AuthEvent) -> None:
        previous = self._snapshot
        result = self.machine.transition(previous, event, self.clock.now())
        if not result.handled:
            return

        snapshot = result.snapshot

        # Storage is written before the new snapshot becomes visible
        for effect in result.effects:
            match effect:
                case PersistSession(refresh_token=refresh_token, expires_at=expires_at):
                    persist_session(self.storage, refresh_token, expires_at)
                case ClearSession():
                    clear_stored_session(self.storage)

        self._snapshot = snapshot
        if snapshot.generation != previous.generation:
            self._cancel_call()

        for effect in result.effects:
            self._apply(effect)

        self._notify(snapshot)

    def _apply(self, effect: AuthEffect) -> None:
        assert self._task_group is not None
        match effect:
            case CancelTimer():
                self.scheduler.cancel()
            case ArmTimer(delay=delay, generation=generation):
                self.scheduler.arm(self._task_group, delay, lambda: self._post(TimerFired(generation)))
            case CallTokenEndpoint():
                self._start_call(effect)
            case PersistSession() | ClearSession():
                pass

    def _start_call(self, effect: CallTokenEndpoint) -> None:
        assert self._task_group is not None
        self._cancel_call()
        scope = anyio.CancelScope()
        self._call_scope = scope

        async def call_token_endpoint() -> None:
            with scope:
                event: AuthEvent
                try:
                    if effect.kind == "refresh":
                        session = await self.token_client.refresh(effect.token)
                    else:
                        session = await self.token_client.exchange_token(effect.token)
                except (TokenRequestError, httpx.TransportError) as e:
                    logger.debug(f"Token {effect.kind} failed: {e}")
                    event = TokenCallFailed(error=classify_exception(e), generation=effect.generation)
                except Exception as e:
                    logger.exception(f"Unexpected error from token client during {effect.kind}")
                    event = TokenCallFailed(error=classify_exception(e), generation=effect.generation)
                else:
                    event = TokenCallSucceeded(session=session, generation=effect.generation)

                if scope.cancel_called:
                    return
                if self._call_scope is scope:
                    self._call_scope = None
                self._post(event)

        self._task_group.start_soon(call_token_endpoint)

    def _cancel_call(self) -> None:
        if self._call_scope is not None:
            self._call_scope.cancel()
            self._call_scope = None

    # Observation

    @property
    def snapshot(self) -> AuthSnapshot:
        return self._snapshot

    @property
    def state(self) -> AuthStateType:
        return self._snapshot.state

    @property
    def context(self) -> AuthContext:
        return self._snapshot.context

    def matches(self, path: str) -> bool:
        return self._snapshot.matches(path)

    @property
    def is_authenticated(self) -> bool:
        return self.state.is_signed_in

    @property
    def access_token(self) -> str | None:
        return self.context.access_token.value

    @property
    def user(self) -> User | None:
        return self.context.user

    @property
    def auth(self) -> SessionAuth:
        """An httpx.Auth that sends the current access token as a bearer token."""
        return SessionAuth(self)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call `listener` with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_auth_state_changed(
        self, callback: Callable[[AuthChangeEvent, AuthContext], None]
    ) -> Callable[[], None]:
        """Call `callback` whenever the user becomes signed in or signed out."""
        signed_in = self.state.is_signed_in

        def listener(snapshot: AuthSnapshot) -> None:
            nonlocal signed_in
            if snapshot.state.is_signed_in and not signed_in:
                signed_in = True
                callback("SIGNED_IN", snapshot.context)
            elif snapshot.state.is_signed_out and signed_in:
                signed_in = False
                callback("SIGNED_OUT", snapshot.context)

        return self.subscribe(listener)

    def on_token_changed(self, callback: Callable[[AuthContext], None]) -> Callable[[], None]:
        """Call `callback` whenever the access token changes."""
        token = self.access_token

        def listener(snapshot: AuthSnapshot) -> None:
            nonlocal token
            if snapshot.context.access_token.value != token:
                token = snapshot.context.access_token.value
                callback(snapshot.context)

        return self.subscribe(listener)

    def _notify(self, snapshot: AuthSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Error in auth state listener")

    async def wait_for(self, predicate: Callable[[AuthSnapshot], bool]) -> AuthSnapshot:
        """Wait until a snapshot satisfies `predicate`, including transient ones."""
        if predicate(self._snapshot):
            return self._snapshot

        matched = anyio.Event()
        found: list[AuthSnapshot] = []

        def listener(snapshot: AuthSnapshot) -> None:
            if not found and predicate(snapshot):
                found.append(snapshot)
                matched.set()

        unsubscribe = self.subscribe(listener)
        try:
            await matched.wait()
        finally:
            unsubscribe()
        return found[0]

    async def wait_for_state(self, path: str) -> AuthSnapshot:
        return await self.wait_for(lambda snapshot: snapshot.matches(path))

    async def _send_and_settle(self, event: AuthEvent) -> AuthSnapshot:
        generation = self._snapshot.generation
        self.send(event)
        return await self.wait_for(
            lambda snapshot: snapshot.generation > generation and snapshot.state in SETTLED_STATES
        )

    async def _wait_until_resolved(self) -> AuthSnapshot:
        """Wait out a sign-in that is already in flight."""
        return await self.wait_for(lambda snapshot: snapshot.state is not AuthStateType.AUTHENTICATING)

    # Commands

    async def sign_in_with_token(self, token: str) -> AuthSnapshot:
        """Exchange an opaque token for a session. No-op when already signed in."""
        await self._wait_until_resolved()
        if not self.state.is_signed_out:
            return self._snapshot
        return await self._send_and_settle(TryToken(token=token))

    async def update_session(self, session: Session) -> AuthSnapshot:
        """Install a session obtained out of band."""
        return await self._send_and_settle(SessionUpdate(session=session))

    async def refresh_session(self) -> AuthSnapshot:
        """Refresh now instead of waiting for the timer."""
        await self._wait_until_resolved()
        if self.state is AuthStateType.REFRESHING:
            generation = self._snapshot.generation
            return await self.wait_for(
                lambda snapshot: snapshot.generation > generation and snapshot.state in SETTLED_STATES
            )
        if self.state is not AuthStateType.PENDING:
            return self._snapshot
        return await self._send_and_settle(RefreshRequested())

    async def sign_out(self) -> AuthSnapshot:
        generation = self._snapshot.generation
        self.send(SignedOut())
        return await self.wait_for(
            lambda snapshot: snapshot.generation > generation and snapshot.state is AuthStateType.SIGNED_OUT
        )
