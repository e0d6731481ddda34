"""Provider adapter interface and the HTTP plumbing shared by adapters.

Adapters translate between one calendar API and the normalized
``RemoteEvent`` / ``TokenGrant`` shapes. The engines only ever see this
interface; they never branch on provider identity.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

import httpx

from orbyt_sync.config import ProviderCredentials
from orbyt_sync.errors import (
    AuthenticationError,
    PreconditionFailedError,
    RemoteProviderError,
    redact_secrets,
)
from orbyt_sync.models import (
    AccountIdentity,
    ChangeSet,
    OrbytEvent,
    Provider,
    TokenGrant,
    WatchChannel,
    WebhookSubscription,
    WriteBackAction,
)

logger = logging.getLogger(__name__)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
RATE_LIMIT_MAX_BACKOFF_SECONDS = 30.0

FULL_SYNC_WINDOW_DAYS = 90
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
HTTP_TIMEOUT_SECONDS = 30.0
LOCAL_EVENT_MARKER = "orbyt_event_id"

# OAuth error codes that mean the grant or client is no longer usable.
_AUTH_FAILURE_CODES = {"invalid_grant", "invalid_client", "unauthorized_client"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, redacted error description from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_secrets(" ".join(message.split()))[:200]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return redact_secrets(" ".join(description.split()))[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return redact_secrets(" ".join(error_payload.split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_secrets(" ".join(raw_text.split()))[:200]
    return "Request failed without an error payload"


def error_code(response: httpx.Response) -> str | None:
    """Return the machine-readable error code of an OAuth or Graph error body."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error_payload = payload.get("error")
    if isinstance(error_payload, str):
        return error_payload
    if isinstance(error_payload, dict) and isinstance(error_payload.get("code"), str):
        return error_payload["code"]
    return None


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_instant(value: Any) -> datetime | None:
    """Parse an RFC 3339 / ISO 8601 timestamp into an aware UTC datetime."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return to_utc(datetime.fromisoformat(value.strip()))
    except ValueError:
        return None


def parse_date(value: Any) -> datetime | None:
    """Parse a date-only value (``YYYY-MM-DD``) into midnight UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        day = date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None
    return datetime.combine(day, time.min, tzinfo=UTC)


def rfc3339(value: datetime) -> str:
    return to_utc(value).isoformat().replace("+00:00", "Z")


def all_day_bounds(event: OrbytEvent) -> tuple[date, date]:
    """Start day and exclusive end day of an all-day event (at least one day long)."""
    start_day = to_utc(event.start_at).date()
    end_day = to_utc(event.end_at).date() if event.end_at is not None else start_day
    if end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    return start_day, end_day


def expiry_from_seconds(value: Any, *, now: datetime | None = None) -> datetime:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int | float) or value <= 0:
        value = DEFAULT_TOKEN_LIFETIME_SECONDS
    return (now or datetime.now(UTC)) + timedelta(seconds=int(value))


# ---------------------------------------------------------------------------
# CalendarProvider
# ---------------------------------------------------------------------------


class CalendarProvider(abc.ABC):
    """One external calendar service.

    Subclasses implement the primary-calendar operations; the helpers below
    handle retries, error translation and token endpoint calls.
    """

    name: Provider
    #: Lifetime requested when creating a push-notification channel.
    watch_ttl: timedelta

    def __init__(
        self,
        credentials: ProviderCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(client_id={self._credentials.client_id!r})"

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- OAuth -------------------------------------------------------------

    @abc.abstractmethod
    def authorization_url(self, state: str, redirect_uri: str) -> str: ...

    @abc.abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant: ...

    @abc.abstractmethod
    async def fetch_identity(self, access_token: str) -> AccountIdentity: ...

    @abc.abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises ``AuthenticationError`` when the grant is revoked or invalid.
        """

    @abc.abstractmethod
    def has_write_scope(self, scopes: str | None) -> bool: ...

    # -- Calendar ----------------------------------------------------------

    @abc.abstractmethod
    async def list_changes_since(
        self,
        cursor: str | None,
        access_token: str,
        *,
        window_days: int = FULL_SYNC_WINDOW_DAYS,
    ) -> ChangeSet:
        """Delta since *cursor*, or a bounded full snapshot when *cursor* is None."""

    @abc.abstractmethod
    async def write_event(
        self,
        action: WriteBackAction,
        access_token: str,
        *,
        event: OrbytEvent,
        remote_id: str | None = None,
    ) -> str | None:
        """Create, update or delete *event* remotely; return the remote id (None on delete)."""

    @abc.abstractmethod
    async def watch(
        self, access_token: str, *, callback_url: str, client_state: str
    ) -> WatchChannel: ...

    @abc.abstractmethod
    async def stop_watch(self, access_token: str, subscription: WebhookSubscription) -> None:
        """Tear down a channel; a channel that is already gone is not an error."""

    # -- HTTP plumbing -----------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        form: dict[str, str] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        response = await self._request_once(
            method,
            url,
            access_token=access_token,
            params=params,
            json_body=json_body,
            form=form,
            extra_headers=extra_headers,
        )

        # Honour Retry-After on 429, exponential backoff otherwise
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header is not None:
                try:
                    backoff = min(float(retry_after_header), RATE_LIMIT_MAX_BACKOFF_SECONDS)
                except ValueError:
                    pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.name,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method,
                url,
                access_token=access_token,
                params=params,
                json_body=json_body,
                form=form,
                extra_headers=extra_headers,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        access_token: str | None,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        form: dict[str, str] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Accept": "application/json"}
        if access_token is not None:
            headers["Authorization"] = f"Bearer {access_token}"
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                data=form,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteProviderError(
                f"{self.name} request failed: {type(exc).__name__}: {redact_secrets(str(exc))}"
            ) from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        if 200 <= response.status_code < 300:
            return
        message = safe_error_message(response)
        if response.status_code == 401:
            raise AuthenticationError(f"{self.name} rejected the access token: {message}")
        raise RemoteProviderError(message, status_code=response.status_code)

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, **kwargs)
        self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteProviderError(
                f"{self.name} returned invalid JSON for a successful response",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteProviderError(
                f"{self.name} returned an unexpected JSON payload shape",
                status_code=response.status_code,
            )
        return payload

    async def _token_request(self, token_url: str, form: dict[str, str]) -> TokenGrant:
        """POST to an OAuth token endpoint and parse the grant."""
        response = await self._request("POST", token_url, form=form)
        if response.status_code in (400, 401) and error_code(response) in _AUTH_FAILURE_CODES:
            raise AuthenticationError(
                f"{self.name} token grant rejected: {safe_error_message(response)}"
            )
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteProviderError(
                f"{self.name} token endpoint returned invalid JSON",
                status_code=response.status_code,
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise RemoteProviderError(
                f"{self.name} token response is missing access_token",
                status_code=response.status_code,
            )
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None
        scopes = payload.get("scope")
        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expiry_from_seconds(payload.get("expires_in")),
            scopes=scopes if isinstance(scopes, str) else None,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Adapters keyed by provider tag."""

    def __init__(self, providers: Iterable[CalendarProvider] = ()) -> None:
        self._providers: dict[Provider, CalendarProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: CalendarProvider) -> None:
        self._providers[Provider(provider.name)] = provider

    def get(self, name: Provider | str) -> CalendarProvider:
        try:
            key = Provider(name)
        except ValueError:
            raise PreconditionFailedError(f"Unknown calendar provider: {name}") from None
        provider = self._providers.get(key)
        if provider is None:
            raise PreconditionFailedError(f"Calendar provider '{key}' is not configured")
        return provider

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    @property
    def names(self) -> list[Provider]:
        return sorted(self._providers)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
