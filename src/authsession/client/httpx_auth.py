import logging
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from authsession.client.service import AuthService

logger = logging.getLogger(__name__)


class SessionAuth(httpx.Auth):
    """
    Authentication for httpx backed by an AuthService.

    Sends the current access token as a bearer token. On a 401 the session is
    refreshed once and the request retried with the new token.
    """

    def __init__(self, service: "AuthService"):
        self.service = service

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = self.service.access_token
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

        response = yield request

        if response.status_code != 401 or not self.service.is_authenticated:
            return

        logger.debug("Request unauthorized, refreshing session")
        await self.service.refresh_session()

        new_token = self.service.access_token
        if new_token and new_token != token:
            request.headers["Authorization"] = f"Bearer {new_token}"
            yield request
