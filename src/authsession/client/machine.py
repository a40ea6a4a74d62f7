"""
Hierarchical authentication state machine.

The machine is a pure function from (snapshot, event, now) to a new snapshot
plus a list of effects. It performs no I/O: persisting the session, arming the
refresh timer and calling the token endpoint are effects that AuthService
carries out and reports back as events.

Every token call and every timer carries the generation it was issued from.
Any transition that supersedes it bumps the generation, so a late response or
a stale timer is recognised and ignored.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Literal

from authsession.client.errors import INVALID_REFRESH_TOKEN_ERROR, is_retriable, url_error
from authsession.client.scheduler import RefreshPolicy
from authsession.client.url import UrlSessionParams
from authsession.shared.auth import ErrorPayload, Session, User
from authsession.shared.constants import AUTHENTICATION_ERROR_KEY

logger = logging.getLogger(__name__)


class AuthStateType(Enum):
    """Leaf states, named by their full path in the state hierarchy."""

    STARTING = "authentication.starting"
    AUTHENTICATING = "authentication.authenticating"
    IDLE = "authentication.signedIn.refreshTimer.idle"
    PENDING = "authentication.signedIn.refreshTimer.running.pending"
    REFRESHING = "authentication.signedIn.refreshTimer.running.refreshing"
    SIGNED_OUT = "authentication.signedOut.noErrors"
    FAILED = "authentication.signedOut.failed"

    def matches(self, path: str) -> bool:
        """True if this state is `path` or nested inside it."""
        return self.value == path or self.value.startswith(path + ".")

    @property
    def is_signed_in(self) -> bool:
        return self.matches("authentication.signedIn")

    @property
    def is_signed_out(self) -> bool:
        return self.matches("authentication.signedOut")


class SignInOrigin(Enum):
    STORAGE = "storage"
    URL = "url"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class AccessTokenState:
    value: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class RefreshTokenState:
    value: str | None = None


@dataclass(frozen=True)
class RefreshTimerState:
    attempts: int = 0


@dataclass(frozen=True)
class AuthContext:
    """Session context. Replaced as a whole on every transition."""

    user: User | None = None
    access_token: AccessTokenState = field(default_factory=AccessTokenState)
    refresh_token: RefreshTokenState = field(default_factory=RefreshTokenState)
    refresh_timer: RefreshTimerState = field(default_factory=RefreshTimerState)
    errors: Mapping[str, ErrorPayload] = field(default_factory=dict)

    @classmethod
    def from_session(cls, session: Session, now: datetime, previous: "AuthContext | None" = None) -> "AuthContext":
        expires_at = None
        if session.access_token_expires_in is not None:
            expires_at = now + timedelta(seconds=session.access_token_expires_in)
        user = session.user
        if user is None and previous is not None:
            user = previous.user
        return cls(
            user=user,
            access_token=AccessTokenState(value=session.access_token, expires_at=expires_at),
            refresh_token=RefreshTokenState(value=session.refresh_token),
        )

    def with_error(self, error: ErrorPayload, key: str = AUTHENTICATION_ERROR_KEY) -> "AuthContext":
        return replace(self, errors={**self.errors, key: error})


@dataclass(frozen=True)
class AuthSnapshot:
    state: AuthStateType
    context: AuthContext
    generation: int = 0
    # Why the in-flight sign-in call was made; only set while authenticating
    origin: SignInOrigin | None = None

    def matches(self, path: str) -> bool:
        return self.state.matches(path)


# Events


@dataclass(frozen=True)
class Start:
    stored_refresh_token: str | None = None
    url_params: UrlSessionParams | None = None


@dataclass(frozen=True)
class SessionUpdate:
    session: Session


@dataclass(frozen=True)
class TryToken:
    token: str


@dataclass(frozen=True)
class SignedOut:
    pass


@dataclass(frozen=True)
class RefreshRequested:
    pass


@dataclass(frozen=True)
class TimerFired:
    generation: int


@dataclass(frozen=True)
class TokenCallSucceeded:
    session: Session
    generation: int


@dataclass(frozen=True)
class TokenCallFailed:
    error: ErrorPayload
    generation: int


AuthEvent = (
    Start
    | SessionUpdate
    | TryToken
    | SignedOut
    | RefreshRequested
    | TimerFired
    | TokenCallSucceeded
    | TokenCallFailed
)


# Effects


@dataclass(frozen=True)
class PersistSession:
    refresh_token: str | None
    expires_at: datetime | None


@dataclass(frozen=True)
class ClearSession:
    pass


@dataclass(frozen=True)
class ArmTimer:
    delay: float
    generation: int


@dataclass(frozen=True)
class CancelTimer:
    pass


@dataclass(frozen=True)
class CallTokenEndpoint:
    kind: Literal["refresh", "exchange"]
    token: str
    generation: int


AuthEffect = PersistSession | ClearSession | ArmTimer | CancelTimer | CallTokenEndpoint


@dataclass
class Transition:
    snapshot: AuthSnapshot
    effects: list[AuthEffect] = field(default_factory=list)
    handled: bool = True


class AuthStateMachine:
    """Transition table for the session lifecycle."""

    def __init__(self, policy: RefreshPolicy | None = None, auto_sign_in: bool = True):
        self.policy = policy or RefreshPolicy()
        self.auto_sign_in = auto_sign_in

    def initial_snapshot(self, context: AuthContext | None = None) -> AuthSnapshot:
        return AuthSnapshot(state=AuthStateType.STARTING, context=context or AuthContext())

    def transition(self, snapshot: AuthSnapshot, event: AuthEvent, now: datetime) -> Transition:
        match event:
            case Start():
                result = self._start(snapshot, event, now)
            case SessionUpdate():
                result = self._session_update(snapshot, event, now)
            case TryToken():
                result = self._try_token(snapshot, event)
            case SignedOut():
                result = self._signed_out(snapshot)
            case RefreshRequested():
                result = self._refresh_requested(snapshot)
            case TimerFired():
                result = self._timer_fired(snapshot, event)
            case TokenCallSucceeded():
                result = self._call_succeeded(snapshot, event, now)
            case TokenCallFailed():
                result = self._call_failed(snapshot, event, now)
            case _:
                raise TypeError(f"Unknown event: {event!r}")

        if result.handled:
            logger.debug(f"{type(event).__name__}: {snapshot.state.value} -> {result.snapshot.state.value}")
        else:
            logger.debug(f"Ignoring {type(event).__name__} in {snapshot.state.value}")
        return result

    # Event handlers

    def _start(self, snapshot: AuthSnapshot, event: Start, now: datetime) -> Transition:
        if snapshot.state is not AuthStateType.STARTING:
            return self._ignore(snapshot)

        context = snapshot.context
        if context.access_token.value:
            persist = PersistSession(context.refresh_token.value, context.access_token.expires_at)
            return self._enter_idle(snapshot, context, now, [persist])

        url_params = event.url_params if self.auto_sign_in else None
        if url_params is not None:
            if url_params.refresh_token:
                return self._authenticate(snapshot, "refresh", url_params.refresh_token, SignInOrigin.URL)
            if url_params.error:
                error = url_error(url_params.error, url_params.error_description)
                return self._to(snapshot, AuthStateType.SIGNED_OUT, context.with_error(error))

        if event.stored_refresh_token:
            return self._authenticate(snapshot, "refresh", event.stored_refresh_token, SignInOrigin.STORAGE)

        return self._to(snapshot, AuthStateType.SIGNED_OUT, context)

    def _session_update(self, snapshot: AuthSnapshot, event: SessionUpdate, now: datetime) -> Transition:
        context = AuthContext.from_session(event.session, now)
        effects: list[AuthEffect] = [
            CancelTimer(),
            PersistSession(context.refresh_token.value, context.access_token.expires_at),
        ]
        return self._enter_idle(snapshot, context, now, effects)

    def _try_token(self, snapshot: AuthSnapshot, event: TryToken) -> Transition:
        if not snapshot.state.is_signed_out:
            return self._ignore(snapshot)
        return self._authenticate(snapshot, "exchange", event.token, SignInOrigin.EXPLICIT)

    def _signed_out(self, snapshot: AuthSnapshot) -> Transition:
        return self._to(
            snapshot,
            AuthStateType.SIGNED_OUT,
            AuthContext(),
            [CancelTimer(), ClearSession()],
        )

    def _refresh_requested(self, snapshot: AuthSnapshot) -> Transition:
        if snapshot.state is not AuthStateType.PENDING:
            return self._ignore(snapshot)
        return self._begin_refresh(snapshot, snapshot.context, [CancelTimer()])

    def _timer_fired(self, snapshot: AuthSnapshot, event: TimerFired) -> Transition:
        if snapshot.state is not AuthStateType.PENDING or event.generation != snapshot.generation:
            return self._ignore(snapshot)
        return self._begin_refresh(snapshot, snapshot.context)

    def _call_succeeded(self, snapshot: AuthSnapshot, event: TokenCallSucceeded, now: datetime) -> Transition:
        if not self._awaiting_call(snapshot, event.generation):
            return self._ignore(snapshot)

        context = AuthContext.from_session(event.session, now, previous=snapshot.context)
        effects: list[AuthEffect] = [PersistSession(context.refresh_token.value, context.access_token.expires_at)]

        if snapshot.state is AuthStateType.AUTHENTICATING:
            return self._enter_idle(snapshot, context, now, effects)

        return self._schedule(snapshot, context, now, effects)

    def _call_failed(self, snapshot: AuthSnapshot, event: TokenCallFailed, now: datetime) -> Transition:
        if not self._awaiting_call(snapshot, event.generation):
            return self._ignore(snapshot)

        error = event.error
        retriable = is_retriable(error)

        if snapshot.state is AuthStateType.AUTHENTICATING:
            context = snapshot.context.with_error(error)
            if snapshot.origin is SignInOrigin.EXPLICIT:
                return self._to(snapshot, AuthStateType.FAILED, context)
            if snapshot.origin is SignInOrigin.STORAGE and not retriable:
                return self._to(snapshot, AuthStateType.FAILED, context, [ClearSession()])
            return self._to(snapshot, AuthStateType.SIGNED_OUT, context)

        attempts = snapshot.context.refresh_timer.attempts + 1
        if retriable and not self.policy.should_give_up(attempts):
            logger.warning(f"Token refresh failed ({error.error}), attempt {attempts}: {error.message}")
            context = replace(
                snapshot.context.with_error(error),
                refresh_timer=RefreshTimerState(attempts=attempts),
            )
            return self._schedule(snapshot, context, now, [], after_failure=True)

        logger.warning(f"Token refresh failed ({error.error}), signing out: {error.message}")
        return self._to(
            snapshot,
            AuthStateType.FAILED,
            AuthContext().with_error(error),
            [CancelTimer(), ClearSession()],
        )

    # Building blocks

    def _awaiting_call(self, snapshot: AuthSnapshot, generation: int) -> bool:
        return (
            snapshot.state in (AuthStateType.AUTHENTICATING, AuthStateType.REFRESHING)
            and generation == snapshot.generation
        )

    def _enter_idle(
        self, snapshot: AuthSnapshot, context: AuthContext, now: datetime, effects: list[AuthEffect]
    ) -> Transition:
        """
        Enter refreshTimer.idle, which resolves immediately: schedule the next
        refresh, or refresh right away when the access token expiry is unknown.
        """
        idle = AuthSnapshot(state=AuthStateType.IDLE, context=context, generation=snapshot.generation)
        if context.access_token.expires_at is None:
            return self._begin_refresh(idle, context, effects)
        return self._schedule(idle, context, now, effects)

    def _schedule(
        self,
        snapshot: AuthSnapshot,
        context: AuthContext,
        now: datetime,
        effects: list[AuthEffect],
        after_failure: bool = False,
    ) -> Transition:
        if not after_failure:
            context = replace(context, refresh_timer=RefreshTimerState(attempts=0), errors={})
        delay = self.policy.next_delay(context.access_token.expires_at, now, after_failure=after_failure)
        generation = snapshot.generation + 1
        return Transition(
            AuthSnapshot(state=AuthStateType.PENDING, context=context, generation=generation),
            [*effects, ArmTimer(delay=delay, generation=generation)],
        )

    def _begin_refresh(
        self, snapshot: AuthSnapshot, context: AuthContext, effects: list[AuthEffect] | None = None
    ) -> Transition:
        effects = list(effects or [])
        refresh_token = context.refresh_token.value
        if not refresh_token:
            return self._to(
                snapshot,
                AuthStateType.FAILED,
                AuthContext().with_error(INVALID_REFRESH_TOKEN_ERROR),
                [*effects, CancelTimer(), ClearSession()],
            )
        generation = snapshot.generation + 1
        return Transition(
            AuthSnapshot(state=AuthStateType.REFRESHING, context=context, generation=generation),
            [*effects, CallTokenEndpoint(kind="refresh", token=refresh_token, generation=generation)],
        )

    def _authenticate(
        self,
        snapshot: AuthSnapshot,
        kind: Literal["refresh", "exchange"],
        token: str,
        origin: SignInOrigin,
    ) -> Transition:
        generation = snapshot.generation + 1
        return Transition(
            AuthSnapshot(
                state=AuthStateType.AUTHENTICATING,
                context=snapshot.context,
                generation=generation,
                origin=origin,
            ),
            [CallTokenEndpoint(kind=kind, token=token, generation=generation)],
        )

    def _to(
        self,
        snapshot: AuthSnapshot,
        state: AuthStateType,
        context: AuthContext,
        effects: list[AuthEffect] | None = None,
    ) -> Transition:
        generation = snapshot.generation + 1
        return Transition(AuthSnapshot(state=state, context=context, generation=generation), list(effects or []))

    def _ignore(self, snapshot: AuthSnapshot) -> Transition:
        return Transition(snapshot, [], handled=False)
