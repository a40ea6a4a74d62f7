"""
Tests for AuthService: the state machine driven by real tasks, a fake token
backend and a manual clock.
"""

from datetime import datetime, timedelta

import anyio
import pytest

from authsession.client.errors import (
    INVALID_REFRESH_TOKEN_ERROR,
    StateTransitionError,
    StorageConfigurationError,
    network_error,
)
from authsession.client.machine import AuthSnapshot, AuthStateType, SignedOut
from authsession.client.service import AuthService
from authsession.client.storage import FileSessionStore, MemorySessionStore
from authsession.client.url import UrlSessionExtractor
from authsession.settings import AuthSettings
from authsession.shared.auth import Session, User
from authsession.shared.constants import ACCESS_TOKEN_EXPIRES_AT_KEY, REFRESH_TOKEN_KEY, TOKEN_REFRESH_MARGIN

from .fakes import START_TIME, FakeTokenClient, settle

PENDING = "authentication.signedIn.refreshTimer.running.pending"
REFRESHING = "authentication.signedIn.refreshTimer.running.refreshing"


def make_service(token_client, storage, clock, **kwargs) -> AuthService:
    settings_kwargs = {key: kwargs.pop(key) for key in list(kwargs) if key in AuthSettings.model_fields}
    settings_kwargs.setdefault("auto_sign_in", False)
    return AuthService(
        AuthSettings(**settings_kwargs),
        token_client=token_client,
        storage=storage,
        clock=clock,
        **kwargs,
    )


async def wait_for_refresh(service: AuthService) -> AuthSnapshot:
    """Wait for a refresh to start and complete."""
    with anyio.fail_after(5):
        refreshing = await service.wait_for_state(REFRESHING)
        return await service.wait_for(
            lambda s: s.generation > refreshing.generation and s.state is not AuthStateType.REFRESHING
        )


class TestTimeBasedRefresh:
    @pytest.mark.anyio
    async def test_refresh_fires_at_expiry_minus_margin(self, token_client, storage, clock, signed_in_context):
        expires_at = signed_in_context.access_token.expires_at

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            with anyio.fail_after(5):
                await service.wait_for_state(PENDING)

            clock.set_time(expires_at - timedelta(seconds=TOKEN_REFRESH_MARGIN + 1))
            await settle()
            assert token_client.calls == []
            assert service.matches(PENDING)

            clock.set_time(expires_at - timedelta(seconds=TOKEN_REFRESH_MARGIN))
            snapshot = await wait_for_refresh(service)

            assert token_client.calls == [("refresh", "initial-refresh")]
            assert snapshot.matches(PENDING)

    @pytest.mark.anyio
    async def test_consecutive_refreshes(self, token_client, storage, clock, signed_in_context):
        # Long enough that expiry minus five margins lies ahead of the clock
        token_client.expires_in = 3600
        initial = signed_in_context.access_token

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            clock.set_time(initial.expires_at - timedelta(seconds=TOKEN_REFRESH_MARGIN))
            first = await wait_for_refresh(service)

            first_token = first.context.access_token
            assert first_token.value is not None
            assert first_token.value != initial.value
            assert first_token.expires_at > initial.expires_at
            assert first.context.refresh_timer.attempts == 0

            clock.set_time(first_token.expires_at - timedelta(seconds=TOKEN_REFRESH_MARGIN))
            second = await wait_for_refresh(service)

            second_token = second.context.access_token
            assert second_token.value != first_token.value
            assert second_token.expires_at > first_token.expires_at

            # Still well before the next refresh: nothing changes
            clock.set_time(second_token.expires_at - timedelta(seconds=TOKEN_REFRESH_MARGIN * 5))
            await settle()

            assert service.matches(PENDING)
            assert service.access_token == second_token.value
            assert service.context.access_token.expires_at == second_token.expires_at
            assert len(token_client.calls) == 2

    @pytest.mark.anyio
    async def test_refresh_persists_session(self, token_client, storage, clock, signed_in_context):
        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            clock.set_time(signed_in_context.access_token.expires_at)
            snapshot = await wait_for_refresh(service)

            assert storage.get(REFRESH_TOKEN_KEY) == snapshot.context.refresh_token.value == "refresh-1"
            assert (
                datetime.fromisoformat(storage.get(ACCESS_TOKEN_EXPIRES_AT_KEY))
                == snapshot.context.access_token.expires_at
            )

    @pytest.mark.anyio
    async def test_fixed_refresh_interval(self, token_client, storage, clock, signed_in_context):
        interval = 850

        async with make_service(
            token_client, storage, clock, context=signed_in_context, refresh_interval_time=interval
        ) as service:
            with anyio.fail_after(5):
                await service.wait_for_state(PENDING)

            clock.advance(interval)
            first = await wait_for_refresh(service)

            clock.advance(interval)
            second = await wait_for_refresh(service)

            assert first.context.access_token.value not in (None, "initial-access")
            assert second.context.access_token.value not in (None, first.context.access_token.value)
            assert len(token_client.calls) == 2


class TestRefreshFailures:
    @pytest.mark.anyio
    async def test_retriable_failure_keeps_session(self, token_client, storage, clock, signed_in_context):
        token_client.failure = network_error()

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            clock.set_time(signed_in_context.access_token.expires_at)
            snapshot = await wait_for_refresh(service)

            assert snapshot.matches(PENDING)
            assert snapshot.context.access_token.value == "initial-access"
            assert snapshot.context.refresh_timer.attempts == 1
            assert snapshot.context.errors["authentication"].error == "network-error"
            assert storage.get(REFRESH_TOKEN_KEY) == "initial-refresh"

            # Retried after the minimum retry delay, and the next success resets the counter
            clock.advance(1)
            snapshot = await wait_for_refresh(service)
            assert snapshot.context.refresh_timer.attempts == 2

            token_client.failure = None
            clock.advance(1)
            snapshot = await wait_for_refresh(service)
            assert snapshot.context.refresh_timer.attempts == 0
            assert snapshot.context.errors == {}

    @pytest.mark.anyio
    async def test_invalid_refresh_token_signs_out(self, token_client, storage, clock, signed_in_context):
        token_client.failure = INVALID_REFRESH_TOKEN_ERROR

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            clock.set_time(signed_in_context.access_token.expires_at)
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state("authentication.signedOut.failed")

            assert snapshot.context.user is None
            assert snapshot.context.access_token.value is None
            assert snapshot.context.refresh_token.value is None
            assert snapshot.context.errors["authentication"].error == "invalid-refresh-token"
            assert storage.get(REFRESH_TOKEN_KEY) is None
            assert storage.get(ACCESS_TOKEN_EXPIRES_AT_KEY) is None
            assert not service.scheduler.armed

    @pytest.mark.anyio
    async def test_unexpected_client_error_is_classified(self, token_client, storage, clock, signed_in_context):
        token_client.exception = RuntimeError("boom")

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            clock.set_time(signed_in_context.access_token.expires_at)
            snapshot = await wait_for_refresh(service)

            assert snapshot.matches(PENDING)
            assert snapshot.context.errors["authentication"].error == "internal-error"


class TestSessionUpdate:
    @pytest.mark.anyio
    async def test_saves_provided_session(self, token_client, storage, clock):
        session = Session(
            access_token="provided-access",
            access_token_expires_in=900,
            refresh_token="provided-refresh",
            user=User(id="user-2"),
        )

        async with make_service(token_client, storage, clock) as service:
            assert service.user is None
            assert service.access_token is None

            with anyio.fail_after(5):
                snapshot = await service.update_session(session)

            assert snapshot.matches(PENDING)
            assert snapshot.context.user == User(id="user-2")
            assert snapshot.context.access_token.value == "provided-access"
            assert snapshot.context.access_token.expires_at is not None
            assert snapshot.context.refresh_token.value == "provided-refresh"
            assert storage.get(REFRESH_TOKEN_KEY) == "provided-refresh"
            assert token_client.calls == []

    @pytest.mark.anyio
    async def test_refreshes_once_without_expiry(self, token_client, storage, clock):
        session = Session(access_token="provided-access", refresh_token="provided-refresh", user=User(id="user-2"))

        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.update_session(session)
            await settle()

            assert snapshot.matches(PENDING)
            assert token_client.calls == [("refresh", "provided-refresh")]
            assert snapshot.context.access_token.value == "access-1"
            assert storage.get(ACCESS_TOKEN_EXPIRES_AT_KEY) is not None


class TestTryToken:
    @pytest.mark.anyio
    async def test_valid_token_signs_in(self, token_client, storage, clock):
        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.sign_in_with_token("magic")

            assert snapshot.matches(PENDING)
            assert snapshot.context.user is not None
            assert token_client.calls == [("exchange", "magic")]

    @pytest.mark.anyio
    async def test_network_error_fails(self, token_client, storage, clock):
        token_client.failure = network_error()

        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.sign_in_with_token("magic")

            assert snapshot.matches("authentication.signedOut.failed")
            assert snapshot.context.errors["authentication"].error == "network-error"

    @pytest.mark.anyio
    async def test_invalid_token_fails(self, token_client, storage, clock):
        token_client.failure = INVALID_REFRESH_TOKEN_ERROR

        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.sign_in_with_token("magic")

            assert snapshot.matches("authentication.signedOut.failed")
            assert snapshot.context.errors["authentication"].model_dump() == {
                "error": "invalid-refresh-token",
                "message": "Invalid or expired refresh token",
                "status": 401,
            }


class TestStartup:
    @pytest.mark.anyio
    async def test_restores_stored_session(self, token_client, storage, clock):
        storage.set(REFRESH_TOKEN_KEY, "stored-refresh")

        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state(PENDING)

            assert token_client.calls == [("refresh", "stored-refresh")]
            assert snapshot.context.user is not None
            assert storage.get(REFRESH_TOKEN_KEY) == "refresh-1"

    @pytest.mark.anyio
    async def test_stored_session_network_error_keeps_storage(self, token_client, storage, clock):
        storage.set(REFRESH_TOKEN_KEY, "stored-refresh")
        token_client.failure = network_error()

        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state("authentication.signedOut")

            assert snapshot.matches("authentication.signedOut.noErrors")
            assert storage.get(REFRESH_TOKEN_KEY) == "stored-refresh"

    @pytest.mark.anyio
    async def test_no_session(self, token_client, storage, clock):
        async with make_service(token_client, storage, clock) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state("authentication.signedOut")

            assert snapshot.matches("authentication.signedOut.noErrors")
            assert snapshot.context.errors == {}

    @pytest.mark.anyio
    async def test_unreadable_session_file_starts_signed_out(self, token_client, clock, tmp_path):
        path = tmp_path / "session.json"
        path.write_text("{not json")

        async with make_service(token_client, FileSessionStore(path), clock) as service:
            assert service.matches("authentication.signedOut.noErrors")
            assert token_client.calls == []

    @pytest.mark.anyio
    async def test_startup_failure_raises_original_error(self, token_client, clock):
        class BrokenStore(MemorySessionStore):
            def get(self, key: str) -> str | None:
                raise StorageConfigurationError("Session store is unavailable")

        service = make_service(token_client, BrokenStore(), clock)

        with pytest.raises(StorageConfigurationError, match="unavailable"):
            async with service:
                pass

        assert not service.running

    @pytest.mark.anyio
    async def test_start_and_aclose(self, token_client, storage, clock, signed_in_context):
        service = make_service(token_client, storage, clock, context=signed_in_context)

        await service.start()
        assert service.running
        assert service.matches(PENDING)
        assert service.scheduler.armed

        await service.aclose()
        assert not service.running
        assert not service.scheduler.armed
        with pytest.raises(StateTransitionError):
            service.send(SignedOut())


class TestAutoSignIn:
    @pytest.mark.anyio
    async def test_url_error_with_description(self, token_client, storage, clock):
        storage.set(REFRESH_TOKEN_KEY, "stored-refresh")
        extractor = UrlSessionExtractor(
            "http://localhost:3000/?error=invalid-refresh-token"
            "&errorDescription=Invalid%20or%20expired%20refresh%20token"
        )

        async with make_service(token_client, storage, clock, url_extractor=extractor, auto_sign_in=True) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state("authentication.signedOut.noErrors")

            assert snapshot.context.errors["authentication"].model_dump() == {
                "error": "invalid-refresh-token",
                "message": "Invalid or expired refresh token",
                "status": 10,
            }
            assert token_client.calls == []

    @pytest.mark.anyio
    async def test_url_error_without_description(self, token_client, storage, clock):
        extractor = UrlSessionExtractor("http://localhost:3000/?error=invalid-refresh-token")

        async with make_service(token_client, storage, clock, url_extractor=extractor, auto_sign_in=True) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state("authentication.signedOut.noErrors")

            assert snapshot.context.errors["authentication"].message == "invalid-refresh-token"

    @pytest.mark.anyio
    async def test_url_refresh_token_network_error(self, token_client, storage, clock):
        token_client.failure = network_error()
        extractor = UrlSessionExtractor("http://localhost:3000/?refreshToken=url-refresh")

        async with make_service(token_client, storage, clock, url_extractor=extractor, auto_sign_in=True) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state("authentication.signedOut")

            assert snapshot.matches("authentication.signedOut.noErrors")
            assert snapshot.context.errors["authentication"].error == "network-error"

    @pytest.mark.anyio
    async def test_url_refresh_token_signs_in(self, token_client, storage, clock):
        extractor = UrlSessionExtractor(lambda: "http://localhost:3000/?refreshToken=url-refresh")

        async with make_service(token_client, storage, clock, url_extractor=extractor, auto_sign_in=True) as service:
            with anyio.fail_after(5):
                snapshot = await service.wait_for_state(PENDING)

            assert snapshot.context.user is not None
            assert token_client.calls == [("refresh", "url-refresh")]


class TestSignOut:
    @pytest.mark.anyio
    async def test_sign_out_clears_session(self, token_client, storage, clock, signed_in_context):
        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            with anyio.fail_after(5):
                await service.wait_for_state(PENDING)
                snapshot = await service.sign_out()

            assert snapshot.context.access_token.value is None
            assert storage.get(REFRESH_TOKEN_KEY) is None
            assert not service.scheduler.armed

    @pytest.mark.anyio
    async def test_sign_out_discards_in_flight_refresh(self, token_client, storage, clock, signed_in_context):
        token_client.gate = anyio.Event()

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            clock.set_time(signed_in_context.access_token.expires_at)
            with anyio.fail_after(5):
                await service.wait_for_state(REFRESHING)
                await service.sign_out()

            token_client.gate.set()
            await settle()

            assert service.matches("authentication.signedOut.noErrors")
            assert service.access_token is None
            assert storage.get(REFRESH_TOKEN_KEY) is None


class TestObservation:
    @pytest.mark.anyio
    async def test_auth_state_and_token_callbacks(self, token_client, storage, clock):
        auth_events: list[str] = []
        tokens: list[str | None] = []

        async with make_service(token_client, storage, clock) as service:
            service.on_auth_state_changed(lambda event, context: auth_events.append(event))
            service.on_token_changed(lambda context: tokens.append(context.access_token.value))

            with anyio.fail_after(5):
                await service.sign_in_with_token("magic")
                await service.refresh_session()
                await service.sign_out()

        assert auth_events == ["SIGNED_IN", "SIGNED_OUT"]
        assert tokens == ["access-1", "access-2", None]

    @pytest.mark.anyio
    async def test_failing_listener_does_not_stop_service(self, token_client, storage, clock):
        def broken(snapshot):
            raise ValueError("listener bug")

        async with make_service(token_client, storage, clock) as service:
            service.subscribe(broken)
            with anyio.fail_after(5):
                snapshot = await service.sign_in_with_token("magic")

            assert snapshot.matches(PENDING)

    @pytest.mark.anyio
    async def test_send_after_stop_raises(self, token_client, storage, clock):
        service = make_service(token_client, storage, clock)
        async with service:
            pass

        assert not service.running
        with pytest.raises(StateTransitionError):
            service.send(SignedOut())

    @pytest.mark.anyio
    async def test_stop_cancels_timer(self, storage, clock, signed_in_context):
        token_client = FakeTokenClient()

        async with make_service(token_client, storage, clock, context=signed_in_context) as service:
            with anyio.fail_after(5):
                await service.wait_for_state(PENDING)
            assert service.scheduler.armed

        assert not service.scheduler.armed
        clock.set_time(START_TIME + timedelta(days=1))
        await settle()
        assert token_client.calls == []
