from pathlib import Path

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from authsession.client.scheduler import RefreshPolicy
from authsession.client.storage import StorageType
from authsession.shared.constants import RETRY_MIN_DELAY, TOKEN_REFRESH_MARGIN


class AuthSettings(BaseSettings):
    """Settings for the authentication session engine."""

    model_config = SettingsConfigDict(env_prefix="AUTHSESSION_")

    # Backend settings
    backend_url: AnyHttpUrl | None = Field(None, description="Base URL of the token-issuing backend.")
    token_path: str = "/token"
    http_timeout: float = 30.0

    # Refresh settings
    refresh_margin_seconds: int = Field(
        TOKEN_REFRESH_MARGIN,
        ge=0,
        description="Seconds before access token expiry at which the session is refreshed.",
    )
    refresh_interval_time: int | None = Field(
        None,
        gt=0,
        description="Refresh every N seconds regardless of the access token expiry.",
    )
    retry_min_delay_seconds: float = Field(RETRY_MIN_DELAY, ge=0)
    max_refresh_attempts: int | None = Field(
        None,
        ge=1,
        description="Sign out after this many consecutive failed refreshes. Unset retries forever.",
    )

    # Sign-in settings
    auto_sign_in: bool = Field(True, description="Restore a session from the entry URL at startup.")

    # Storage settings
    client_storage_type: StorageType = "memory"
    storage_path: Path | None = None

    def refresh_policy(self) -> RefreshPolicy:
        return RefreshPolicy(
            margin_seconds=self.refresh_margin_seconds,
            interval_seconds=self.refresh_interval_time,
            retry_min_delay=self.retry_min_delay_seconds,
            max_attempts=self.max_refresh_attempts,
        )
