"""
Token endpoint client.

The session engine depends on two network operations: exchanging a refresh
token for a new session, and exchanging an opaque one-time token for a session.
Failures are raised as TokenRequestError carrying a classified ErrorPayload.
"""

import logging
from typing import Protocol
from urllib.parse import urljoin

import httpx
from pydantic import ValidationError

from authsession.client.errors import TokenRequestError, classify_exception, classify_response
from authsession.shared.auth import Session

logger = logging.getLogger(__name__)


class TokenClient(Protocol):
    """Protocol for token endpoint clients."""

    async def refresh(self, refresh_token: str) -> Session:
        """Exchange a refresh token for a new session."""
        ...

    async def exchange_token(self, token: str) -> Session:
        """Exchange an opaque sign-in token (magic link, URL token) for a session."""
        ...


class HttpTokenClient:
    """
    TokenClient talking to the backend over HTTP.

    Both operations post `{"refreshToken": <token>}` to the token endpoint; the
    backend answers with a camelCase session document.
    """

    def __init__(
        self,
        backend_url: str,
        token_path: str = "/token",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token_url = urljoin(str(backend_url).rstrip("/") + "/", token_path.lstrip("/"))
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "HttpTokenClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def refresh(self, refresh_token: str) -> Session:
        return await self._post_token(refresh_token)

    async def exchange_token(self, token: str) -> Session:
        return await self._post_token(token)

    async def _post_token(self, token: str) -> Session:
        try:
            response = await self.http_client.post(
                self.token_url,
                json={"refreshToken": token},
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            logger.debug(f"Token request to {self.token_url} failed: {e!r}")
            raise TokenRequestError(classify_exception(e)) from e

        if response.status_code != 200:
            error = classify_response(response)
            logger.debug(f"Token request rejected: {error.error} (HTTP {response.status_code})")
            raise TokenRequestError(error)

        try:
            content = await response.aread()
            data = Session.model_validate_json(content)
        except ValidationError as e:
            logger.error(f"Invalid token response: {e}")
            raise TokenRequestError(classify_exception(e)) from e

        return data
