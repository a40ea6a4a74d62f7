from datetime import timedelta

import pytest

from authsession.client.clock import ManualClock
from authsession.client.machine import AccessTokenState, AuthContext, RefreshTokenState
from authsession.client.storage import MemorySessionStore
from authsession.shared.auth import User

from .fakes import START_TIME, FakeTokenClient


@pytest.fixture
def clock():
    return ManualClock(START_TIME)


@pytest.fixture
def token_client():
    return FakeTokenClient()


@pytest.fixture
def storage():
    return MemorySessionStore()


@pytest.fixture
def signed_in_context():
    return AuthContext(
        user=User(id="user-1", email="ada@example.com"),
        access_token=AccessTokenState(value="initial-access", expires_at=START_TIME + timedelta(seconds=900)),
        refresh_token=RefreshTokenState(value="initial-refresh"),
    )
