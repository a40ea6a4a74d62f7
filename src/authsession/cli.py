"""
Command line interface for the session engine.

Usage:
    authsession refresh --backend-url=http://localhost:1337/v1/auth --refresh-token=<token>
    authsession watch --backend-url=http://localhost:1337/v1/auth --storage-path=session.json
"""

import logging
import sys
from pathlib import Path

import anyio
import click

from authsession.client.errors import TokenRequestError
from authsession.client.machine import AuthContext, AuthSnapshot, AuthStateType
from authsession.client.service import AuthService
from authsession.client.token_client import HttpTokenClient
from authsession.client.url import UrlSessionExtractor, remove_session_params
from authsession.settings import AuthSettings

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Manage an authentication session against a token-issuing backend."""
    configure_logging(verbose)


@cli.command()
@click.option("--backend-url", envvar="AUTHSESSION_BACKEND_URL", required=True, help="Backend base URL")
@click.option("--refresh-token", required=True, help="Refresh token to exchange")
@click.option("--token-path", default="/token", show_default=True, help="Token endpoint path")
def refresh(backend_url: str, refresh_token: str, token_path: str) -> None:
    """Exchange a refresh token once and print the new session as JSON."""

    async def run() -> int:
        async with HttpTokenClient(backend_url, token_path=token_path) as client:
            try:
                session = await client.refresh(refresh_token)
            except TokenRequestError as e:
                click.echo(e.error.model_dump_json(), err=True)
                return 1
        click.echo(session.model_dump_json(by_alias=True, exclude_none=True))
        return 0

    sys.exit(anyio.run(run))


@cli.command()
@click.option("--backend-url", envvar="AUTHSESSION_BACKEND_URL", required=True, help="Backend base URL")
@click.option(
    "--storage-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("session.json"),
    show_default=True,
    help="File the session is persisted to",
)
@click.option("--url", "entry_url", default=None, help="Entry URL carrying refreshToken or error parameters")
@click.option("--refresh-margin", type=int, default=None, help="Seconds before expiry to refresh")
@click.option("--refresh-interval", type=int, default=None, help="Refresh every N seconds instead")
def watch(
    backend_url: str,
    storage_path: Path,
    entry_url: str | None,
    refresh_margin: int | None,
    refresh_interval: int | None,
) -> None:
    """Keep a session alive, refreshing it before it expires, until interrupted."""
    overrides: dict = {
        "backend_url": backend_url,
        "client_storage_type": "file",
        "storage_path": storage_path,
    }
    if refresh_margin is not None:
        overrides["refresh_margin_seconds"] = refresh_margin
    if refresh_interval is not None:
        overrides["refresh_interval_time"] = refresh_interval
    settings = AuthSettings(**overrides)

    if entry_url:
        logger.info(f"Using entry URL {remove_session_params(entry_url)}")

    async def run() -> None:
        service = AuthService(settings, url_extractor=UrlSessionExtractor(entry_url))

        def report(snapshot: AuthSnapshot) -> None:
            expires_at = snapshot.context.access_token.expires_at
            logger.info(
                f"{snapshot.state.value} (expires at {expires_at.isoformat() if expires_at else 'unknown'}, "
                f"attempts {snapshot.context.refresh_timer.attempts})"
            )
            for category, error in snapshot.context.errors.items():
                logger.warning(f"{category}: {error.error}: {error.message} (status {error.status})")

        def on_change(event: str, context: AuthContext) -> None:
            user = context.user
            click.echo(f"{event}{f' as {user.display_name or user.email or user.id}' if user else ''}")

        service.subscribe(report)
        service.on_auth_state_changed(on_change)

        async with service:
            snapshot = await service.wait_for(
                lambda s: s.state not in (AuthStateType.STARTING, AuthStateType.AUTHENTICATING)
            )
            if snapshot.state.is_signed_out:
                click.echo("No session to keep alive", err=True)
                return
            await service.wait_for(lambda s: s.state.is_signed_out)

    try:
        anyio.run(run)
    except KeyboardInterrupt:
        click.echo("Stopped")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
