"""Google Calendar v3 adapter."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

from orbyt_sync.errors import RemoteProviderError, ValidationError
from orbyt_sync.models import (
    AccountIdentity,
    ChangeSet,
    EventStatus,
    OrbytEvent,
    Provider,
    RemoteEvent,
    TokenGrant,
    WatchChannel,
    WebhookSubscription,
    WriteBackAction,
)
from orbyt_sync.providers.base import (
    FULL_SYNC_WINDOW_DAYS,
    LOCAL_EVENT_MARKER,
    CalendarProvider,
    all_day_bounds,
    parse_date,
    parse_instant,
    rfc3339,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_PRIMARY_EVENTS_PATH = "/calendars/primary/events"

GOOGLE_SCOPES = (
    "openid",
    "email",
    "https://www.googleapis.com/auth/calendar.events",
)
_GOOGLE_WRITE_SCOPES = {
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
}
_PAGE_SIZE = 250


def deterministic_event_id(event_id: uuid.UUID) -> str:
    """Client-chosen Google event id for a local event.

    Google accepts ids made of base32hex characters (``a-v``, ``0-9``);
    a UUID's hex digits are a subset, so retried creates collide with 409
    instead of duplicating the event.
    """
    return event_id.hex


def _boundary(value: Any) -> tuple[datetime | None, bool]:
    """Return (instant, is_all_day) for a Google ``start``/``end`` object."""
    if not isinstance(value, dict):
        return None, False
    if value.get("date"):
        return parse_date(value.get("date")), True
    return parse_instant(value.get("dateTime")), False


def _local_marker(item: dict[str, Any]) -> uuid.UUID | None:
    extended = item.get("extendedProperties")
    if not isinstance(extended, dict):
        return None
    private = extended.get("private")
    if not isinstance(private, dict):
        return None
    raw = private.get(LOCAL_EVENT_MARKER)
    if not isinstance(raw, str):
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


def normalize_google_event(item: dict[str, Any]) -> RemoteEvent | None:
    """Map a Google ``Event`` resource onto :class:`RemoteEvent`.

    Returns ``None`` for items that have no id, or that are live but carry
    no parseable start.
    """
    external_id = item.get("id")
    if not isinstance(external_id, str) or not external_id:
        return None

    if item.get("status") == "cancelled":
        return RemoteEvent(external_id=external_id, status=EventStatus.CANCELLED)

    start_at, all_day = _boundary(item.get("start"))
    if start_at is None:
        logger.debug("Skipping Google event %s without a parseable start", external_id)
        return None
    end_at, _ = _boundary(item.get("end"))

    status = EventStatus.TENTATIVE if item.get("status") == "tentative" else EventStatus.CONFIRMED
    organizer = item.get("organizer")
    metadata = {
        "htmlLink": item.get("htmlLink"),
        "colorId": item.get("colorId"),
        "organizer": organizer.get("email") if isinstance(organizer, dict) else None,
        "sequence": item.get("sequence"),
    }

    summary = item.get("summary")
    return RemoteEvent(
        external_id=external_id,
        status=status,
        title=summary if isinstance(summary, str) and summary.strip() else "(No title)",
        description=item.get("description"),
        location=item.get("location"),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        metadata={key: value for key, value in metadata.items() if value is not None},
        updated_at=parse_instant(item.get("updated")),
        local_event_id=_local_marker(item),
    )


def google_event_body(event: OrbytEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": event.title,
        "description": event.description,
        "location": event.location,
        "extendedProperties": {"private": {LOCAL_EVENT_MARKER: str(event.id)}},
    }
    if event.all_day:
        start_day, end_day = all_day_bounds(event)
        body["start"] = {"date": start_day.isoformat()}
        body["end"] = {"date": end_day.isoformat()}
    else:
        end_at = event.end_at or event.start_at
        body["start"] = {"dateTime": rfc3339(event.start_at), "timeZone": "UTC"}
        body["end"] = {"dateTime": rfc3339(end_at), "timeZone": "UTC"}
    return body


class GoogleCalendarProvider(CalendarProvider):
    name = Provider.GOOGLE
    watch_ttl = timedelta(days=7)

    # -- OAuth -------------------------------------------------------------

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self._credentials.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self._token_request(
            GOOGLE_OAUTH_TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "redirect_uri": redirect_uri,
            },
        )

    async def fetch_identity(self, access_token: str) -> AccountIdentity:
        payload = await self._request_json("GET", GOOGLE_USERINFO_URL, access_token=access_token)
        subject = payload.get("sub") or payload.get("id")
        if not isinstance(subject, str) or not subject:
            raise ValidationError("Google userinfo response has no account id")
        email = payload.get("email")
        return AccountIdentity(
            provider_account_id=subject,
            email=email if isinstance(email, str) else None,
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            GOOGLE_OAUTH_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
            },
        )

    def has_write_scope(self, scopes: str | None) -> bool:
        return bool(scopes) and any(scope in _GOOGLE_WRITE_SCOPES for scope in scopes.split())

    # -- Calendar ----------------------------------------------------------

    async def list_changes_since(
        self,
        cursor: str | None,
        access_token: str,
        *,
        window_days: int = FULL_SYNC_WINDOW_DAYS,
    ) -> ChangeSet:
        base_params: dict[str, Any] = {"singleEvents": "true", "maxResults": _PAGE_SIZE}
        if cursor:
            base_params["syncToken"] = cursor
        else:
            now = datetime.now(UTC)
            base_params["timeMin"] = rfc3339(now)
            base_params["timeMax"] = rfc3339(now + timedelta(days=window_days))

        items: list[RemoteEvent] = []
        next_cursor: str | None = None
        page_token: str | None = None
        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            try:
                payload = await self._request_json(
                    "GET",
                    f"{GOOGLE_CALENDAR_API_BASE_URL}{GOOGLE_PRIMARY_EVENTS_PATH}",
                    access_token=access_token,
                    params=params,
                )
            except RemoteProviderError as exc:
                if cursor and exc.status_code == 410:
                    logger.info("Google sync token expired; full sync required")
                    return ChangeSet(cursor_expired=True)
                raise

            raw_items = payload.get("items")
            if isinstance(raw_items, list):
                for raw in raw_items:
                    if not isinstance(raw, dict):
                        continue
                    normalized = normalize_google_event(raw)
                    if normalized is not None:
                        items.append(normalized)

            page_token = payload.get("nextPageToken")
            if not page_token:
                next_cursor = payload.get("nextSyncToken")
                break

        return ChangeSet(items=items, next_cursor=next_cursor)

    async def write_event(
        self,
        action: WriteBackAction,
        access_token: str,
        *,
        event: OrbytEvent,
        remote_id: str | None = None,
    ) -> str | None:
        events_url = f"{GOOGLE_CALENDAR_API_BASE_URL}{GOOGLE_PRIMARY_EVENTS_PATH}"

        if action == WriteBackAction.CREATE:
            body = google_event_body(event)
            body["id"] = deterministic_event_id(event.id)
            try:
                payload = await self._request_json(
                    "POST", events_url, access_token=access_token, json_body=body
                )
            except RemoteProviderError as exc:
                if exc.status_code == 409:
                    logger.info("Google event for %s already exists", event.id)
                    return body["id"]
                raise
            return payload.get("id") or body["id"]

        if not remote_id:
            raise ValidationError(f"Google {action} requires a remote event id")
        event_url = f"{events_url}/{quote(remote_id, safe='')}"

        if action == WriteBackAction.UPDATE:
            payload = await self._request_json(
                "PATCH", event_url, access_token=access_token, json_body=google_event_body(event)
            )
            return payload.get("id") or remote_id

        response = await self._request("DELETE", event_url, access_token=access_token)
        if response.status_code in (404, 410):
            logger.info("Google event %s already deleted", remote_id)
            return None
        self._raise_for_status(response)
        return None

    async def watch(
        self, access_token: str, *, callback_url: str, client_state: str
    ) -> WatchChannel:
        body = {
            "id": str(uuid.uuid4()),
            "type": "web_hook",
            "address": callback_url,
            "token": client_state,
            "params": {"ttl": str(int(self.watch_ttl.total_seconds()))},
        }
        payload = await self._request_json(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}{GOOGLE_PRIMARY_EVENTS_PATH}/watch",
            access_token=access_token,
            json_body=body,
        )
        expires_at = datetime.now(UTC) + self.watch_ttl
        expiration = payload.get("expiration")
        if isinstance(expiration, str | int) and str(expiration).isdigit():
            expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=UTC)
        return WatchChannel(
            subscription_id=payload.get("id") or body["id"],
            resource_id=payload.get("resourceId"),
            expires_at=expires_at,
        )

    async def stop_watch(self, access_token: str, subscription: WebhookSubscription) -> None:
        response = await self._request(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/channels/stop",
            access_token=access_token,
            json_body={"id": subscription.subscription_id, "resourceId": subscription.resource_id},
        )
        if response.status_code in (404, 410):
            logger.info("Google channel %s already stopped", subscription.subscription_id)
            return
        self._raise_for_status(response)
