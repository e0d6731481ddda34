"""CLI for the Orbyt calendar sync service."""

from __future__ import annotations

import asyncio
import logging

import click
import httpx
import uvicorn

from orbyt_sync.config import DatabaseSettings, Settings, load_database_settings, load_settings
from orbyt_sync.core.logging import configure_logging
from orbyt_sync.db import Database
from orbyt_sync.errors import ConfigurationError
from orbyt_sync.models import RenewalReport
from orbyt_sync.providers import build_registry
from orbyt_sync.providers.base import HTTP_TIMEOUT_SECONDS
from orbyt_sync.service import IntegrationsService
from orbyt_sync.storage import PostgresStore
from orbyt_sync.vault import CredentialVault, generate_key

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Orbyt calendar sync: OAuth connections, sync, webhooks and write-back."""


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", type=int, default=8000, show_default=True, help="Port to listen on")
def serve(host: str, port: int) -> None:
    """Run the HTTP API (integrations, webhooks, cron)."""
    uvicorn.run("orbyt_sync.api.app:create_app", factory=True, host=host, port=port)


@cli.command("init-db")
def init_db() -> None:
    """Create the sync tables if they do not exist."""
    try:
        database_settings = load_database_settings()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging_from_env()
    asyncio.run(_init_db(database_settings))
    click.echo("Schema is up to date")


@cli.command("renew-webhooks")
def renew_webhooks() -> None:
    """Renew webhook subscriptions expiring within the next 24 hours."""
    try:
        settings = load_settings()
        vault = CredentialVault(settings.encryption_key)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(settings.logging.level, settings.logging.format)

    report = asyncio.run(_renew(settings, vault))
    click.echo(
        f"renewed={len(report.renewed)} "
        f"deactivated={len(report.deactivated)} "
        f"failed={len(report.failed)}"
    )
    for subscription_id, message in report.failed.items():
        click.echo(f"  failed: {subscription_id}: {message}")


@cli.command("generate-key")
def generate_key_cmd() -> None:
    """Print a fresh INTEGRATION_ENCRYPTION_KEY (64 hex characters)."""
    click.echo(generate_key())


def main() -> None:
    cli()


def _configure_logging_from_env() -> None:
    try:
        settings = load_settings()
    except ConfigurationError:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")
        return
    configure_logging(settings.logging.level, settings.logging.format)


async def _init_db(settings: DatabaseSettings) -> None:
    database = Database(settings)
    try:
        await database.connect(bootstrap=True)
    finally:
        await database.close()


async def _renew(settings: Settings, vault: CredentialVault) -> RenewalReport:
    async with Database(settings.database) as pool:
        http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
        providers = build_registry(settings, http_client)
        try:
            service = IntegrationsService.build(PostgresStore(pool), vault, providers, settings)
            return await service.webhooks.renew_expiring_subscriptions()
        finally:
            await providers.aclose()
            await http_client.aclose()
