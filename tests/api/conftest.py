"""Shared fixtures for API tests.

The app is built with an injected ``IntegrationsService`` (in-memory store,
``FakeProvider``), so no database or network is required. Requests go
through ``httpx.ASGITransport``.
"""

from __future__ import annotations

import httpx
import pytest

from orbyt_sync.api.app import create_app
from orbyt_sync.api.deps import shutdown_dependencies


@pytest.fixture
def app(service, settings):
    application = create_app(service=service, settings=settings)
    yield application
    shutdown_dependencies()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http_client:
        yield http_client


@pytest.fixture
def auth_headers(user_id) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}
