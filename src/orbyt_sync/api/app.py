"""FastAPI application factory for the calendar sync service.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds the service from the environment (database
  pool, shared HTTP client, provider adapters) and tears it down on exit
- Health endpoint at GET /api/health
- Integrations, OAuth redirect, webhook and cron routers
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orbyt_sync.api.deps import init_dependencies, shutdown_dependencies
from orbyt_sync.api.middleware import register_error_handlers
from orbyt_sync.api.routers.auth import router as auth_router
from orbyt_sync.api.routers.cron import router as cron_router
from orbyt_sync.api.routers.integrations import router as integrations_router
from orbyt_sync.api.routers.webhooks import router as webhooks_router
from orbyt_sync.config import Settings, load_settings
from orbyt_sync.core.logging import configure_logging
from orbyt_sync.db import Database
from orbyt_sync.providers import build_registry
from orbyt_sync.providers.base import HTTP_TIMEOUT_SECONDS
from orbyt_sync.service import IntegrationsService
from orbyt_sync.storage import PostgresStore
from orbyt_sync.vault import CredentialVault

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every long-lived resource from the environment.

    On startup: settings, logging, the asyncpg pool, one shared HTTP client
    and the provider registry. On shutdown: wait for detached write-backs,
    then close the clients and the pool.
    """
    settings = load_settings()
    configure_logging(settings.logging.level, settings.logging.format)
    vault = CredentialVault(settings.encryption_key)

    database = Database(settings.database)
    pool = await database.connect()
    http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    providers = build_registry(settings, http_client)
    service = IntegrationsService.build(PostgresStore(pool), vault, providers, settings)
    init_dependencies(service, settings)
    logger.info("Calendar sync service started (providers: %s)", ", ".join(providers.names))

    try:
        yield
    finally:
        await service.writeback.drain()
        shutdown_dependencies()
        await providers.aclose()
        await http_client.aclose()
        await database.close()


def _injected_lifespan(service: IntegrationsService):
    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await service.writeback.drain()

    return _lifespan


def create_app(
    service: IntegrationsService | None = None,
    settings: Settings | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service, settings:
        Pre-built service and settings. When given, they are installed
        immediately and the lifespan builds nothing (used by tests and
        embedding callers). When omitted, both come from the environment
        at startup.
    cors_origins:
        Allowed CORS origins. Defaults to the local web app.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:3000"]

    if service is not None:
        if settings is None:
            raise ValueError("settings are required when a service is injected")
        init_dependencies(service, settings)
        app_lifespan = _injected_lifespan(service)
    else:
        app_lifespan = lifespan

    app = FastAPI(
        title="Orbyt Calendar Sync API",
        version="0.1.0",
        lifespan=app_lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(integrations_router)
    app.include_router(auth_router)
    app.include_router(webhooks_router)
    app.include_router(cron_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
