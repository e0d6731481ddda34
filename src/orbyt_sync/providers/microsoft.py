"""Microsoft Graph (Outlook calendar) adapter."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, time, timedelta
from typing import Any
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

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
    CalendarProvider,
    all_day_bounds,
    error_code,
    parse_instant,
    rfc3339,
    to_utc,
)

logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"

MICROSOFT_SCOPES = ("offline_access", "User.Read", "Calendars.ReadWrite")
_WRITE_SCOPE = "calendars.readwrite"
_DELTA_PAGE_SIZE = 100
# Graph reports an unusable delta token as 410 or with one of these codes.
_EXPIRED_DELTA_CODES = {"syncStateNotFound", "SyncStateNotFound", "resyncRequired"}
_DELTA_HEADERS = {
    "Prefer": f'odata.maxpagesize={_DELTA_PAGE_SIZE}, outlook.timezone="UTC"',
}


def _graph_time(value: datetime) -> str:
    """Naive UTC wall time as Graph's ``dateTimeTimeZone`` expects it."""
    return to_utc(value).replace(tzinfo=None).isoformat(timespec="seconds")


def _parse_graph_boundary(value: Any, *, all_day: bool) -> datetime | None:
    if not isinstance(value, dict):
        return None
    raw = value.get("dateTime")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return None
    if all_day:
        return datetime.combine(parsed.date(), time.min, tzinfo=UTC)
    if parsed.tzinfo is not None:
        return parsed.astimezone(UTC)
    zone_name = value.get("timeZone") or "UTC"
    if zone_name.upper() == "UTC":
        return parsed.replace(tzinfo=UTC)
    try:
        return parsed.replace(tzinfo=ZoneInfo(zone_name)).astimezone(UTC)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown Graph time zone %r; assuming UTC", zone_name)
        return parsed.replace(tzinfo=UTC)


def normalize_graph_event(item: dict[str, Any]) -> RemoteEvent | None:
    """Map a Graph ``event`` (or a delta ``@removed`` stub) onto :class:`RemoteEvent`."""
    external_id = item.get("id")
    if not isinstance(external_id, str) or not external_id:
        return None

    if "@removed" in item or item.get("isCancelled") is True:
        return RemoteEvent(external_id=external_id, status=EventStatus.CANCELLED)

    all_day = bool(item.get("isAllDay"))
    start_at = _parse_graph_boundary(item.get("start"), all_day=all_day)
    if start_at is None:
        logger.debug("Skipping Graph event %s without a parseable start", external_id)
        return None
    end_at = _parse_graph_boundary(item.get("end"), all_day=all_day)

    show_as = item.get("showAs")
    status = EventStatus.TENTATIVE if show_as == "tentative" else EventStatus.CONFIRMED

    location = item.get("location")
    location_name = location.get("displayName") if isinstance(location, dict) else None

    local_event_id = None
    transaction_id = item.get("transactionId")
    if isinstance(transaction_id, str):
        try:
            local_event_id = uuid.UUID(transaction_id)
        except ValueError:
            local_event_id = None

    subject = item.get("subject")
    metadata = {"showAs": show_as, "webLink": item.get("webLink")}
    return RemoteEvent(
        external_id=external_id,
        status=status,
        title=subject if isinstance(subject, str) and subject.strip() else "(No title)",
        description=item.get("bodyPreview") or None,
        location=location_name or None,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        metadata={key: value for key, value in metadata.items() if value is not None},
        updated_at=parse_instant(item.get("lastModifiedDateTime")),
        local_event_id=local_event_id,
    )


def graph_event_body(event: OrbytEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": event.title,
        "body": {"contentType": "text", "content": event.description or ""},
        "location": {"displayName": event.location or ""},
        "isAllDay": event.all_day,
    }
    if event.all_day:
        start_day, end_day = all_day_bounds(event)
        start_at = datetime.combine(start_day, time.min, tzinfo=UTC)
        end_at = datetime.combine(end_day, time.min, tzinfo=UTC)
    else:
        start_at = event.start_at
        end_at = event.end_at or event.start_at
    body["start"] = {"dateTime": _graph_time(start_at), "timeZone": "UTC"}
    body["end"] = {"dateTime": _graph_time(end_at), "timeZone": "UTC"}
    return body


class MicrosoftCalendarProvider(CalendarProvider):
    name = Provider.MICROSOFT
    watch_ttl = timedelta(minutes=4200)

    @property
    def _tenant(self) -> str:
        return self._credentials.tenant_id or "common"

    @property
    def _token_url(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE_URL}/{self._tenant}/oauth2/v2.0/token"

    # -- OAuth -------------------------------------------------------------

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self._credentials.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": " ".join(MICROSOFT_SCOPES),
            "state": state,
        }
        authorize_url = f"{MICROSOFT_LOGIN_BASE_URL}/{self._tenant}/oauth2/v2.0/authorize"
        return f"{authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self._token_request(
            self._token_url,
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "redirect_uri": redirect_uri,
                "scope": " ".join(MICROSOFT_SCOPES),
            },
        )

    async def fetch_identity(self, access_token: str) -> AccountIdentity:
        payload = await self._request_json(
            "GET", f"{GRAPH_API_BASE_URL}/me", access_token=access_token
        )
        account_id = payload.get("id")
        if not isinstance(account_id, str) or not account_id:
            raise ValidationError("Microsoft /me response has no account id")
        email = payload.get("mail") or payload.get("userPrincipalName")
        return AccountIdentity(
            provider_account_id=account_id,
            email=email if isinstance(email, str) else None,
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        # Microsoft rotates refresh tokens; the grant carries the new one.
        return await self._token_request(
            self._token_url,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "scope": " ".join(MICROSOFT_SCOPES),
            },
        )

    def has_write_scope(self, scopes: str | None) -> bool:
        if not scopes:
            return False
        return any(scope.lower().endswith(_WRITE_SCOPE) for scope in scopes.split())

    # -- Calendar ----------------------------------------------------------

    async def list_changes_since(
        self,
        cursor: str | None,
        access_token: str,
        *,
        window_days: int = FULL_SYNC_WINDOW_DAYS,
    ) -> ChangeSet:
        url: str | None
        params: dict[str, Any] | None
        if cursor:
            url, params = cursor, None
        else:
            now = datetime.now(UTC)
            url = f"{GRAPH_API_BASE_URL}/me/calendarView/delta"
            params = {
                "startDateTime": rfc3339(now),
                "endDateTime": rfc3339(now + timedelta(days=window_days)),
            }

        items: list[RemoteEvent] = []
        next_cursor: str | None = None
        while url:
            response = await self._request(
                "GET",
                url,
                access_token=access_token,
                params=params,
                extra_headers=_DELTA_HEADERS,
            )
            if cursor and (
                response.status_code == 410
                or (response.status_code == 400 and error_code(response) in _EXPIRED_DELTA_CODES)
            ):
                logger.info("Microsoft delta token expired; full sync required")
                return ChangeSet(cursor_expired=True)
            self._raise_for_status(response)
            try:
                payload = response.json()
            except ValueError as exc:
                raise RemoteProviderError(
                    "microsoft returned invalid JSON for a delta page",
                    status_code=response.status_code,
                ) from exc

            for raw in payload.get("value") or []:
                if not isinstance(raw, dict):
                    continue
                normalized = normalize_graph_event(raw)
                if normalized is not None:
                    items.append(normalized)

            # nextLink and deltaLink already embed every query parameter
            params = None
            url = payload.get("@odata.nextLink")
            if not url:
                next_cursor = payload.get("@odata.deltaLink")

        return ChangeSet(items=items, next_cursor=next_cursor)

    async def write_event(
        self,
        action: WriteBackAction,
        access_token: str,
        *,
        event: OrbytEvent,
        remote_id: str | None = None,
    ) -> str | None:
        if action == WriteBackAction.CREATE:
            body = graph_event_body(event)
            # Graph deduplicates creates that repeat a transactionId
            body["transactionId"] = str(event.id)
            payload = await self._request_json(
                "POST", f"{GRAPH_API_BASE_URL}/me/events", access_token=access_token, json_body=body
            )
            created_id = payload.get("id")
            if not isinstance(created_id, str) or not created_id:
                raise RemoteProviderError("microsoft create response has no event id")
            return created_id

        if not remote_id:
            raise ValidationError(f"Microsoft {action} requires a remote event id")
        event_url = f"{GRAPH_API_BASE_URL}/me/events/{quote(remote_id, safe='')}"

        if action == WriteBackAction.UPDATE:
            payload = await self._request_json(
                "PATCH", event_url, access_token=access_token, json_body=graph_event_body(event)
            )
            return payload.get("id") or remote_id

        response = await self._request("DELETE", event_url, access_token=access_token)
        if response.status_code in (404, 410):
            logger.info("Microsoft event %s already deleted", remote_id)
            return None
        self._raise_for_status(response)
        return None

    async def watch(
        self, access_token: str, *, callback_url: str, client_state: str
    ) -> WatchChannel:
        requested_expiry = datetime.now(UTC) + self.watch_ttl
        payload = await self._request_json(
            "POST",
            f"{GRAPH_API_BASE_URL}/subscriptions",
            access_token=access_token,
            json_body={
                "changeType": "created,updated,deleted",
                "notificationUrl": callback_url,
                "resource": "me/events",
                "expirationDateTime": rfc3339(requested_expiry),
                "clientState": client_state,
            },
        )
        subscription_id = payload.get("id")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise RemoteProviderError("microsoft subscription response has no id")
        return WatchChannel(
            subscription_id=subscription_id,
            expires_at=parse_instant(payload.get("expirationDateTime")) or requested_expiry,
        )

    async def stop_watch(self, access_token: str, subscription: WebhookSubscription) -> None:
        response = await self._request(
            "DELETE",
            f"{GRAPH_API_BASE_URL}/subscriptions/{quote(subscription.subscription_id, safe='')}",
            access_token=access_token,
        )
        if response.status_code in (404, 410):
            logger.info("Microsoft subscription %s already removed", subscription.subscription_id)
            return
        self._raise_for_status(response)
