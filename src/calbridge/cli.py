"""CLI for calbridge: run the API, sweep sessions, mint tokens, migrate."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from calbridge import __version__
from calbridge.config import AppConfig, ConfigError, load_config
from calbridge.core.logging import configure_logging

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calbridge.toml (default: $CALBRIDGE_CONFIG or ./calbridge.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calbridge: delegated Google Calendar access for bots and assistants."""
    config = _load(config_path)
    configure_logging(config.logging.level, config.logging.format, config.logging.file)
    ctx.obj = config


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=3000, show_default=True, help="Bind port")
@click.pass_obj
def serve(config: AppConfig, host: str, port: int) -> None:
    """Run the HTTP API under uvicorn."""
    import uvicorn

    from calbridge.api.app import create_app

    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command()
@click.pass_obj
def sweep(config: AppConfig) -> None:
    """Delete expired pending authorizations once and exit."""
    removed = asyncio.run(_sweep(config))
    click.echo(f"Removed {removed} expired pending authorization(s)")


async def _sweep(config: AppConfig) -> int:
    from calbridge.pending import PendingStore

    database = _database(config)
    await database.connect()
    try:
        return await PendingStore(database.require_pool()).sweep_expired()
    finally:
        await database.close()


@cli.command("issue-token")
@click.argument("tenant_id")
@click.pass_obj
def issue_token(config: AppConfig, tenant_id: str) -> None:
    """Mint a direct bearer token for TENANT_ID (no existence check)."""
    from calbridge.identity import IdentityResolver
    from calbridge.signing import Signer

    if not config.signing.secret:
        click.echo("CALBRIDGE_SIGNING_SECRET is not set", err=True)
        sys.exit(1)
    resolver = IdentityResolver(
        Signer(config.signing.secret), tenants=None, token_ttl_s=config.signing.access_token_ttl_s
    )
    click.echo(resolver.issue_token(tenant_id))


@cli.command()
@click.option("--revision", default="heads", show_default=True, help="Target revision")
@click.pass_obj
def migrate(config: AppConfig, revision: str) -> None:
    """Apply database migrations."""
    from calbridge.migrations import run_migrations

    run_migrations(_database(config).dsn, revision)
    click.echo(f"Database migrated to {revision}")


def _database(config: AppConfig):
    from calbridge.db import Database

    return Database.from_config(config.database)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
