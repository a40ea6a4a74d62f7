from collections.abc import Callable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import BaseModel

REFRESH_TOKEN_PARAM = "refreshToken"
ERROR_PARAM = "error"
ERROR_DESCRIPTION_PARAM = "errorDescription"

SESSION_PARAMS = (REFRESH_TOKEN_PARAM, ERROR_PARAM, ERROR_DESCRIPTION_PARAM)


class UrlSessionParams(BaseModel):
    """Session data embedded in the application's entry URL."""

    refresh_token: str | None = None
    error: str | None = None
    error_description: str | None = None


def extract_session_params(url: str) -> UrlSessionParams:
    """
    Parse `refreshToken`, `error` and `errorDescription` from a URL query.

    A refresh token takes precedence over an error: when both are present the
    error is dropped.
    """
    query = dict(parse_qsl(urlparse(url).query))

    refresh_token = query.get(REFRESH_TOKEN_PARAM) or None
    if refresh_token:
        return UrlSessionParams(refresh_token=refresh_token)

    error = query.get(ERROR_PARAM) or None
    if error:
        return UrlSessionParams(error=error, error_description=query.get(ERROR_DESCRIPTION_PARAM) or None)

    return UrlSessionParams()


def remove_session_params(url: str) -> str:
    """Return the URL without the session parameters consumed at startup."""
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in SESSION_PARAMS]
    return urlunparse(parsed._replace(query=urlencode(query)))


class UrlSessionExtractor:
    """
    Reads session parameters from the application's current location.

    `location` is either the URL itself or a callable returning it, so hosts can
    defer reading the location until the service starts.
    """

    def __init__(self, location: str | Callable[[], str | None] | None):
        self._location = location

    @property
    def location(self) -> str | None:
        if callable(self._location):
            return self._location()
        return self._location

    def extract(self) -> UrlSessionParams:
        location = self.location
        if not location:
            return UrlSessionParams()
        return extract_session_params(location)
