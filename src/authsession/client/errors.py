"""
Error taxonomy for the session engine.

Steady-state failures are not raised to consumers: every outcome of a token
request is classified into an ErrorPayload and written into the session
context. Exceptions are reserved for collaborator boundaries and misuse.
"""

import logging

import httpx
from pydantic import ValidationError

from authsession.shared.auth import ErrorPayload
from authsession.shared.constants import NETWORK_ERROR_CODE, VALIDATION_ERROR_CODE

logger = logging.getLogger(__name__)

NETWORK_ERROR = "network-error"
INVALID_REFRESH_TOKEN = "invalid-refresh-token"
INTERNAL_ERROR = "internal-error"

RETRIABLE_ERRORS = frozenset({NETWORK_ERROR, INTERNAL_ERROR})

INVALID_REFRESH_TOKEN_ERROR = ErrorPayload(
    error=INVALID_REFRESH_TOKEN,
    message="Invalid or expired refresh token",
    status=401,
)
INTERNAL_SERVER_ERROR = ErrorPayload(error=INTERNAL_ERROR, message="Internal error", status=500)


class AuthSessionError(Exception):
    """Base exception for session engine errors."""

    pass


class TokenRequestError(AuthSessionError):
    """Raised by a token client when a token request fails."""

    def __init__(self, error: ErrorPayload):
        super().__init__(f"{error.error}: {error.message} (status {error.status})")
        self.error = error


class StateTransitionError(AuthSessionError):
    """Raised when an event is sent to a service that cannot accept it."""

    pass


class StorageConfigurationError(AuthSessionError):
    """Raised when a session store cannot be constructed from the configuration."""

    pass


def network_error(message: str = "Network Error") -> ErrorPayload:
    return ErrorPayload(error=NETWORK_ERROR, message=message, status=NETWORK_ERROR_CODE)


def url_error(error: str, description: str | None = None) -> ErrorPayload:
    """Build the payload for an error code carried in the entry URL."""
    return ErrorPayload(error=error, message=description or error, status=VALIDATION_ERROR_CODE)


def is_retriable(error: ErrorPayload) -> bool:
    return error.error in RETRIABLE_ERRORS


def classify_response(response: httpx.Response) -> ErrorPayload:
    """
    Classify a non-successful token endpoint response.

    401 always means the refresh token was rejected. Server errors are retriable
    internal errors. Other client errors are passed through with the backend's
    own code and message and are treated as non-retriable.
    """
    body: dict = {}
    try:
        data = response.json()
        if isinstance(data, dict):
            body = data
    except ValueError:
        logger.debug(f"Token endpoint returned a non-JSON body with status {response.status_code}")

    message = body.get("message") or body.get("error_description")

    if response.status_code == 401:
        if message:
            return INVALID_REFRESH_TOKEN_ERROR.model_copy(update={"message": message})
        return INVALID_REFRESH_TOKEN_ERROR

    if response.status_code >= 500:
        return ErrorPayload(
            error=INTERNAL_ERROR,
            message=message or INTERNAL_SERVER_ERROR.message,
            status=response.status_code,
        )

    error = body.get("error")
    return ErrorPayload(
        error=error if isinstance(error, str) and error else INVALID_REFRESH_TOKEN,
        message=message or response.reason_phrase or "Token request rejected",
        status=response.status_code,
    )


def classify_exception(exc: BaseException) -> ErrorPayload:
    """Classify an exception escaping a token client."""
    if isinstance(exc, TokenRequestError):
        return exc.error
    if isinstance(exc, httpx.TransportError):
        return network_error(str(exc) or "Network Error")
    if isinstance(exc, ValidationError):
        return ErrorPayload(error=INTERNAL_ERROR, message="Invalid session in token response", status=500)
    return ErrorPayload(error=INTERNAL_ERROR, message=str(exc) or INTERNAL_SERVER_ERROR.message, status=500)
