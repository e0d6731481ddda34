"""Tests for the shared provider HTTP plumbing and the adapter registry."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest

from orbyt_sync.config import ProviderCredentials, Settings
from orbyt_sync.errors import PreconditionFailedError, RemoteProviderError
from orbyt_sync.models import Provider
from orbyt_sync.providers import base as base_module
from orbyt_sync.providers import build_registry
from orbyt_sync.providers.base import (
    ProviderRegistry,
    expiry_from_seconds,
    parse_instant,
    rfc3339,
    safe_error_message,
)
from orbyt_sync.providers.google import GoogleCalendarProvider
from orbyt_sync.providers.microsoft import MicrosoftCalendarProvider

pytestmark = pytest.mark.unit

USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


def _google(handler) -> GoogleCalendarProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarProvider(ProviderCredentials(client_id="id", client_secret="s"), client)


# ---------------------------------------------------------------------------
# Retries and error translation
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_rate_limited_request_is_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json={"sub": "1"})

        identity = await _google(handler).fetch_identity("at")

        assert identity.provider_account_id == "1"
        assert len(calls) == 3

    async def test_retries_are_bounded(self, monkeypatch):
        monkeypatch.setattr(base_module, "RATE_LIMIT_BASE_BACKOFF_SECONDS", 0.0)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, text="Service Unavailable")

        with pytest.raises(RemoteProviderError) as exc_info:
            await _google(handler).fetch_identity("at")

        assert exc_info.value.status_code == 503
        assert len(calls) == base_module.RATE_LIMIT_MAX_RETRIES + 1

    async def test_transport_failure_is_wrapped_and_redacted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused while sending access_token=abc123")

        with pytest.raises(RemoteProviderError) as exc_info:
            await _google(handler).fetch_identity("at")

        message = str(exc_info.value)
        assert "ConnectError" in message
        assert "abc123" not in message

    async def test_non_object_json_is_rejected(self):
        provider = _google(lambda request: httpx.Response(200, json=["not", "an", "object"]))
        with pytest.raises(RemoteProviderError):
            await provider.fetch_identity("at")


class TestSafeErrorMessage:
    def test_nested_error_message(self):
        response = httpx.Response(403, json={"error": {"message": "Rate  limit\nexceeded"}})
        assert safe_error_message(response) == "Rate limit exceeded"

    def test_oauth_error_description(self):
        response = httpx.Response(
            400, json={"error": "invalid_request", "error_description": "Missing code"}
        )
        assert safe_error_message(response) == "Missing code"

    def test_plain_text_is_redacted_and_truncated(self):
        response = httpx.Response(500, text="refresh_token=secret " + "x" * 400)
        message = safe_error_message(response)
        assert "secret" not in message
        assert len(message) == 200

    def test_empty_body(self):
        assert safe_error_message(httpx.Response(502)) == "Request failed without an error payload"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def test_rfc3339_uses_zulu_suffix():
    assert rfc3339(datetime(2026, 11, 2, 9, 0, tzinfo=UTC)) == "2026-11-02T09:00:00Z"


def test_parse_instant_assumes_utc_for_naive_values():
    assert parse_instant("2026-11-02T09:00:00") == datetime(2026, 11, 2, 9, 0, tzinfo=UTC)
    assert parse_instant("yesterday") is None
    assert parse_instant(None) is None


@pytest.mark.parametrize("value", [None, 0, -5, "soon"])
def test_expiry_defaults_to_one_hour(value):
    now = datetime(2026, 1, 1, tzinfo=UTC)
    assert expiry_from_seconds(value, now=now) == datetime(2026, 1, 1, 1, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_build_registry_only_includes_configured_providers(self):
        settings = Settings(
            encryption_key="k" * 64,
            google=ProviderCredentials(client_id="id", client_secret="s"),
        )
        registry = build_registry(settings)

        assert registry.names == [Provider.GOOGLE]
        assert Provider.GOOGLE in registry
        assert Provider.MICROSOFT not in registry

    def test_unconfigured_provider(self):
        registry = ProviderRegistry()
        with pytest.raises(PreconditionFailedError, match="not configured"):
            registry.get("microsoft")

    def test_unknown_provider(self):
        with pytest.raises(PreconditionFailedError, match="Unknown calendar provider"):
            ProviderRegistry().get("yahoo")

    async def test_aclose_leaves_shared_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        credentials = ProviderCredentials(client_id="id", client_secret="s")
        registry = ProviderRegistry(
            [
                GoogleCalendarProvider(credentials, client),
                MicrosoftCalendarProvider(credentials, client),
            ]
        )

        await registry.aclose()

        assert not client.is_closed
        await client.aclose()
