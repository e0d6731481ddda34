"""Tests for the Microsoft Graph adapter against a mocked HTTP transport."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from orbyt_sync.config import ProviderCredentials
from orbyt_sync.errors import AuthenticationError, RemoteProviderError
from orbyt_sync.models import EventStatus, OrbytEvent, WriteBackAction
from orbyt_sync.providers.microsoft import (
    MicrosoftCalendarProvider,
    graph_event_body,
    normalize_graph_event,
)

pytestmark = pytest.mark.unit

DELTA_URL = "https://graph.microsoft.com/v1.0/me/calendarView/delta"


def _provider(handler, *, tenant_id: str | None = None) -> MicrosoftCalendarProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    credentials = ProviderCredentials(
        client_id="ms-id", client_secret="ms-secret", tenant_id=tenant_id
    )
    return MicrosoftCalendarProvider(credentials, client)


def _event(**overrides) -> OrbytEvent:
    start = datetime(2026, 11, 2, 9, 0, tzinfo=UTC)
    fields = {
        "id": uuid.uuid4(),
        "household_id": uuid.uuid4(),
        "created_by": uuid.uuid4(),
        "title": "Piano lesson",
        "start_at": start,
        "end_at": start + timedelta(hours=1),
        "updated_at": start,
    }
    fields.update(overrides)
    return OrbytEvent(**fields)


def _graph_item(**overrides) -> dict:
    item = {
        "id": "AAMk-1",
        "subject": "Piano lesson",
        "bodyPreview": "Bring sheet music",
        "location": {"displayName": "Music school"},
        "start": {"dateTime": "2026-11-02T09:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2026-11-02T10:00:00.0000000", "timeZone": "UTC"},
        "isAllDay": False,
        "showAs": "busy",
        "lastModifiedDateTime": "2026-10-15T08:30:00Z",
    }
    item.update(overrides)
    return item


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_timed_event(self):
        remote = normalize_graph_event(_graph_item())

        assert remote.external_id == "AAMk-1"
        assert remote.title == "Piano lesson"
        assert remote.description == "Bring sheet music"
        assert remote.location == "Music school"
        assert remote.start_at == datetime(2026, 11, 2, 9, 0, tzinfo=UTC)
        assert remote.end_at == datetime(2026, 11, 2, 10, 0, tzinfo=UTC)
        assert remote.status == EventStatus.CONFIRMED
        assert remote.updated_at == datetime(2026, 10, 15, 8, 30, tzinfo=UTC)

    def test_all_day_event(self):
        remote = normalize_graph_event(
            _graph_item(
                isAllDay=True,
                start={"dateTime": "2026-12-24T00:00:00.0000000", "timeZone": "UTC"},
                end={"dateTime": "2026-12-25T00:00:00.0000000", "timeZone": "UTC"},
            )
        )
        assert remote.all_day is True
        assert remote.start_at == datetime(2026, 12, 24, tzinfo=UTC)

    @pytest.mark.parametrize(
        ("show_as", "expected"),
        [
            ("tentative", EventStatus.TENTATIVE),
            ("free", EventStatus.CONFIRMED),
            ("oof", EventStatus.CONFIRMED),
        ],
    )
    def test_show_as_mapping(self, show_as, expected):
        assert normalize_graph_event(_graph_item(showAs=show_as)).status == expected

    def test_removed_stub_is_cancelled(self):
        remote = normalize_graph_event({"id": "AAMk-2", "@removed": {"reason": "deleted"}})
        assert remote.is_cancelled

    def test_cancelled_flag(self):
        assert normalize_graph_event(_graph_item(isCancelled=True)).is_cancelled

    def test_unknown_time_zone_falls_back_to_utc(self):
        remote = normalize_graph_event(
            _graph_item(start={"dateTime": "2026-11-02T09:00:00", "timeZone": "Not/AZone"})
        )
        assert remote.start_at == datetime(2026, 11, 2, 9, 0, tzinfo=UTC)

    def test_transaction_id_links_back_to_local_event(self):
        local_id = uuid.uuid4()
        remote = normalize_graph_event(_graph_item(transactionId=str(local_id)))
        assert remote.local_event_id == local_id

    def test_empty_subject_gets_placeholder(self):
        assert normalize_graph_event(_graph_item(subject="  ")).title == "(No title)"

    def test_missing_start_is_dropped(self):
        assert normalize_graph_event(_graph_item(start=None)) is None


def test_event_body_uses_naive_utc_wall_time():
    body = graph_event_body(_event(description=None))
    assert body["start"] == {"dateTime": "2026-11-02T09:00:00", "timeZone": "UTC"}
    assert body["end"] == {"dateTime": "2026-11-02T10:00:00", "timeZone": "UTC"}
    assert body["body"] == {"contentType": "text", "content": ""}
    assert body["isAllDay"] is False


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuth:
    def test_authorization_url_uses_tenant(self):
        provider = _provider(lambda request: httpx.Response(500), tenant_id="contoso")
        url = provider.authorization_url("state-1", "https://orbyt.test/cb")

        parsed = urlparse(url)
        assert parsed.path == "/contoso/oauth2/v2.0/authorize"
        query = parse_qs(parsed.query)
        assert "offline_access" in query["scope"][0].split()
        assert query["state"] == ["state-1"]

    async def test_refresh_returns_rotated_token(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == "https://login.microsoftonline.com/common/oauth2/v2.0/token"
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            return httpx.Response(
                200,
                json={"access_token": "new-at", "refresh_token": "new-rt", "expires_in": "3600"},
            )

        grant = await _provider(handler).refresh("old-rt")

        assert grant.access_token == "new-at"
        assert grant.refresh_token == "new-rt"

    async def test_refresh_invalid_grant(self):
        provider = _provider(
            lambda request: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "AADSTS70008 expired"}
            )
        )
        with pytest.raises(AuthenticationError):
            await provider.refresh("old-rt")

    async def test_fetch_identity_falls_back_to_principal_name(self):
        provider = _provider(
            lambda request: httpx.Response(
                200, json={"id": "user-1", "mail": None, "userPrincipalName": "kid@contoso.com"}
            )
        )
        identity = await provider.fetch_identity("at")
        assert identity.provider_account_id == "user-1"
        assert identity.email == "kid@contoso.com"

    @pytest.mark.parametrize(
        ("scopes", "expected"),
        [
            ("offline_access User.Read Calendars.ReadWrite", True),
            ("https://graph.microsoft.com/Calendars.ReadWrite", True),
            ("User.Read Calendars.Read", False),
            ("", False),
        ],
    )
    def test_has_write_scope(self, scopes, expected):
        provider = _provider(lambda request: httpx.Response(500))
        assert provider.has_write_scope(scopes) is expected


# ---------------------------------------------------------------------------
# Delta queries
# ---------------------------------------------------------------------------


class TestDelta:
    async def test_full_sync_follows_next_link(self):
        requests: list[httpx.Request] = []
        next_link = f"{DELTA_URL}?$skiptoken=page-2"

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if len(requests) == 1:
                return httpx.Response(
                    200, json={"value": [_graph_item()], "@odata.nextLink": next_link}
                )
            return httpx.Response(
                200,
                json={
                    "value": [{"id": "AAMk-2", "@removed": {"reason": "deleted"}}],
                    "@odata.deltaLink": f"{DELTA_URL}?$deltatoken=d1",
                },
            )

        changes = await _provider(handler).list_changes_since(None, "at")

        assert [item.external_id for item in changes.items] == ["AAMk-1", "AAMk-2"]
        assert changes.next_cursor == f"{DELTA_URL}?$deltatoken=d1"
        assert "startDateTime" in requests[0].url.params
        assert 'outlook.timezone="UTC"' in requests[0].headers["Prefer"]
        assert "startDateTime" not in requests[1].url.params
        assert requests[1].url.params["$skiptoken"] == "page-2"

    async def test_incremental_sync_requests_delta_link(self):
        cursor = f"{DELTA_URL}?$deltatoken=d1"

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["$deltatoken"] == "d1"
            return httpx.Response(
                200, json={"value": [], "@odata.deltaLink": f"{DELTA_URL}?$deltatoken=d2"}
            )

        changes = await _provider(handler).list_changes_since(cursor, "at")
        assert changes.next_cursor.endswith("d2")

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(410, json={"error": {"code": "resyncRequired"}}),
            httpx.Response(400, json={"error": {"code": "SyncStateNotFound", "message": "x"}}),
        ],
    )
    async def test_expired_delta_token(self, response):
        provider = _provider(lambda request: response)
        changes = await provider.list_changes_since(f"{DELTA_URL}?$deltatoken=old", "at")
        assert changes.cursor_expired

    async def test_other_bad_request_is_an_error(self):
        provider = _provider(
            lambda request: httpx.Response(400, json={"error": {"code": "BadRequest"}})
        )
        with pytest.raises(RemoteProviderError):
            await provider.list_changes_since(f"{DELTA_URL}?$deltatoken=old", "at")


# ---------------------------------------------------------------------------
# Write-back and subscriptions
# ---------------------------------------------------------------------------


class TestWrites:
    async def test_create_sends_transaction_id(self):
        event = _event()

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["transactionId"] == str(event.id)
            assert body["subject"] == "Piano lesson"
            return httpx.Response(201, json={"id": "AAMk-new"})

        remote_id = await _provider(handler).write_event(
            WriteBackAction.CREATE, "at", event=event
        )
        assert remote_id == "AAMk-new"

    async def test_create_without_returned_id(self):
        provider = _provider(lambda request: httpx.Response(201, json={}))
        with pytest.raises(RemoteProviderError):
            await provider.write_event(WriteBackAction.CREATE, "at", event=_event())

    async def test_delete_of_missing_event(self):
        provider = _provider(lambda request: httpx.Response(404, json={"error": {}}))
        assert (
            await provider.write_event(
                WriteBackAction.DELETE, "at", event=_event(), remote_id="AAMk-1"
            )
            is None
        )

    async def test_watch_creates_subscription(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["resource"] == "me/events"
            assert body["clientState"] == "signed"
            assert body["changeType"] == "created,updated,deleted"
            return httpx.Response(
                201, json={"id": "sub-1", "expirationDateTime": "2026-10-20T10:00:00Z"}
            )

        channel = await _provider(handler).watch(
            "at", callback_url="https://orbyt.test/api/webhooks/microsoft", client_state="signed"
        )

        assert channel.subscription_id == "sub-1"
        assert channel.resource_id is None
        assert channel.expires_at == datetime(2026, 10, 20, 10, 0, tzinfo=UTC)
