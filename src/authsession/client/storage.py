"""
Session persistence.

A session store is a small synchronous key/value contract. The engine only ever
persists the refresh token and the access token expiry; the access token value
stays in memory.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol, runtime_checkable

import httpx

from authsession.client.errors import StorageConfigurationError
from authsession.shared.constants import ACCESS_TOKEN_EXPIRES_AT_KEY, REFRESH_TOKEN_KEY

logger = logging.getLogger(__name__)

StorageType = Literal["memory", "cookie", "file", "custom"]


@runtime_checkable
class SessionStore(Protocol):
    """Protocol for session store implementations."""

    def get(self, key: str) -> str | None:
        """Get a stored value, or None if the key is absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store a value."""
        ...

    def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is a no-op."""
        ...

    def clear(self) -> None:
        """Remove every key."""
        ...


class MemorySessionStore:
    """Session store that lives as long as the process."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()


class CookieSessionStore:
    """
    Session store backed by an httpx cookie jar.

    Passing the jar of an `httpx.AsyncClient` makes the persisted values travel
    with that client's requests.
    """

    def __init__(self, cookies: httpx.Cookies | None = None, domain: str = "", path: str = "/"):
        self.cookies = cookies if cookies is not None else httpx.Cookies()
        self.domain = domain
        self.path = path

    def get(self, key: str) -> str | None:
        return self.cookies.get(key, domain=self.domain, path=self.path)

    def set(self, key: str, value: str) -> None:
        self.cookies.set(key, value, domain=self.domain, path=self.path)

    def remove(self, key: str) -> None:
        self.cookies.delete(key)

    def clear(self) -> None:
        self.cookies.clear()


class FileSessionStore:
    """Session store persisted as a JSON object in a file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            raise StorageConfigurationError(f"Session file {self.path} does not contain a JSON object")
        return data

    def _dump(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f)
        tmp_path.replace(self.path)

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


def create_session_store(
    storage_type: StorageType = "memory",
    client_storage: SessionStore | None = None,
    path: Path | str | None = None,
) -> SessionStore:
    """
    Select the session store implementation.

    Args:
        storage_type: One of "memory", "cookie", "file" or "custom".
        client_storage: The store to use for "custom", or an `httpx.Cookies` jar for "cookie".
        path: The JSON file used by "file".
    """
    if storage_type == "memory":
        return MemorySessionStore()
    if storage_type == "cookie":
        if client_storage is not None and not isinstance(client_storage, httpx.Cookies):
            raise StorageConfigurationError("Cookie storage expects an httpx.Cookies jar")
        return CookieSessionStore(client_storage)
    if storage_type == "file":
        if path is None:
            raise StorageConfigurationError("File storage requires a storage path")
        return FileSessionStore(path)
    if storage_type == "custom":
        if client_storage is None or not isinstance(client_storage, SessionStore):
            raise StorageConfigurationError("Custom storage requires an object implementing SessionStore")
        return client_storage
    raise StorageConfigurationError(f"Unknown storage type: {storage_type}")


def load_stored_session(store: SessionStore) -> tuple[str | None, datetime | None]:
    """Read the persisted refresh token and access token expiry."""
    refresh_token = store.get(REFRESH_TOKEN_KEY)
    raw_expires_at = store.get(ACCESS_TOKEN_EXPIRES_AT_KEY)
    expires_at = None
    if raw_expires_at:
        try:
            expires_at = datetime.fromisoformat(raw_expires_at)
        except ValueError:
            logger.warning(f"Ignoring malformed access token expiry in storage: {raw_expires_at!r}")
    return refresh_token, expires_at


def persist_session(store: SessionStore, refresh_token: str | None, expires_at: datetime | None) -> None:
    if refresh_token:
        store.set(REFRESH_TOKEN_KEY, refresh_token)
    else:
        store.remove(REFRESH_TOKEN_KEY)

    if expires_at:
        store.set(ACCESS_TOKEN_EXPIRES_AT_KEY, expires_at.isoformat())
    else:
        store.remove(ACCESS_TOKEN_EXPIRES_AT_KEY)


def clear_stored_session(store: SessionStore) -> None:
    store.remove(REFRESH_TOKEN_KEY)
    store.remove(ACCESS_TOKEN_EXPIRES_AT_KEY)
