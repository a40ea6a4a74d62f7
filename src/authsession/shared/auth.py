from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class User(BaseModel):
    """
    Profile of the signed-in user as returned by the backend.

    Only the identifier is required; any other field the backend sends is kept.
    """

    id: str
    display_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    locale: str | None = None
    default_role: str | None = None
    roles: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Session(BaseModel):
    """
    A session issued by the backend.

    `access_token_expires_in` is a lifetime in seconds; it may be absent when the
    session was obtained out of band, in which case the client refreshes once to
    learn the real expiry.
    """

    access_token: str
    access_token_expires_in: int | None = None
    refresh_token: str
    user: User | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ErrorPayload(BaseModel):
    """A classified failure as surfaced in the session context."""

    error: str
    message: str
    status: int

    model_config = ConfigDict(frozen=True)
