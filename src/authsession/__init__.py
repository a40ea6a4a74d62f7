from authsession.client.machine import AuthContext, AuthStateMachine, AuthStateType
from authsession.client.service import AuthService
from authsession.client.storage import (
    CookieSessionStore,
    FileSessionStore,
    MemorySessionStore,
    SessionStore,
    create_session_store,
)
from authsession.client.token_client import HttpTokenClient, TokenClient
from authsession.client.url import UrlSessionExtractor
from authsession.settings import AuthSettings
from authsession.shared.auth import ErrorPayload, Session, User

__all__ = [
    "AuthContext",
    "AuthService",
    "AuthSettings",
    "AuthStateMachine",
    "AuthStateType",
    "CookieSessionStore",
    "ErrorPayload",
    "FileSessionStore",
    "HttpTokenClient",
    "MemorySessionStore",
    "Session",
    "SessionStore",
    "TokenClient",
    "UrlSessionExtractor",
    "User",
    "create_session_store",
]
