"""Domain records for connected calendar accounts and their mirrored events.

Stored entities (``ConnectedAccount``, ``ExternalEvent``,
``WebhookSubscription``) plus the local ``OrbytEvent`` owned by the event
service, and the normalized shapes provider adapters exchange with the
engines (``RemoteEvent``, ``ChangeSet``, ``TokenGrant``...).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Provider(StrEnum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class WriteBackAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------


class ConnectedAccount(BaseModel):
    """An external calendar account linked by one user.

    ``access_token`` and ``refresh_token`` hold vault ciphertext, never
    plaintext, and are excluded from ``repr``.
    """

    model_config = ConfigDict(extra="forbid")

    id: UUID
    user_id: UUID
    provider: Provider
    provider_account_id: str
    email: str | None = None
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    token_expires_at: datetime | None = None
    scopes: str | None = None
    sync_cursor: str | None = Field(default=None, repr=False)
    last_sync_at: datetime | None = None
    last_sync_attempt_at: datetime | None = None
    sync_error: str | None = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    def summary(self) -> AccountSummary:
        return AccountSummary(
            id=self.id,
            provider=self.provider,
            email=self.email,
            last_sync_at=self.last_sync_at,
            sync_error=self.sync_error,
            is_active=self.is_active,
            created_at=self.created_at,
        )


class AccountSummary(BaseModel):
    """Public view of a connected account; carries no credential fields."""

    id: UUID
    provider: Provider
    email: str | None = None
    last_sync_at: datetime | None = None
    sync_error: str | None = None
    is_active: bool
    created_at: datetime


class ExternalEvent(BaseModel):
    """Local mirror of one event on a connected account's primary calendar."""

    model_config = ConfigDict(extra="forbid")

    id: UUID
    connected_account_id: UUID
    user_id: UUID
    external_id: str
    title: str
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime | None = None
    all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_updated_external: datetime | None = None
    local_event_id: UUID | None = None
    created_at: datetime
    updated_at: datetime


class WebhookSubscription(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: UUID
    connected_account_id: UUID
    provider: Provider
    subscription_id: str
    resource_id: str | None = None
    notification_url: str
    expires_at: datetime
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class OrbytEvent(BaseModel):
    """A household event as exposed by the event service.

    The last four fields link it to the copy on one connected account:
    ``external_event_id`` is the provider's event id, which together with
    ``connected_account_id`` identifies the ``ExternalEvent`` mirror row.
    """

    model_config = ConfigDict(extra="forbid")

    id: UUID
    household_id: UUID
    created_by: UUID
    title: str
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime | None = None
    all_day: bool = False
    rrule: str | None = None
    color: str | None = None
    category: str = "other"
    updated_at: datetime
    external_event_id: str | None = None
    external_provider: Provider | None = None
    connected_account_id: UUID | None = None
    last_synced_at: datetime | None = None


class NewOrbytEvent(BaseModel):
    """Fields of a local event created by auto-import."""

    household_id: UUID
    created_by: UUID
    title: str
    description: str | None = None
    location: str | None = None
    start_at: datetime
    end_at: datetime | None = None
    all_day: bool = False
    category: str = "other"


# ---------------------------------------------------------------------------
# Provider adapter exchange types
# ---------------------------------------------------------------------------


class RemoteEvent(BaseModel):
    """A provider event normalized to absolute UTC instants.

    Cancelled deliveries may carry nothing but ``external_id`` and
    ``status``. ``local_event_id`` is set when the event was created by
    write-back and still carries the local id in its private metadata.
    """

    external_id: str
    status: EventStatus = EventStatus.CONFIRMED
    title: str = "(No title)"
    description: str | None = None
    location: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    all_day: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None
    local_event_id: UUID | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED


class ChangeSet(BaseModel):
    """One page-merged batch of remote changes.

    ``cursor_expired`` means the provider rejected the stored cursor; no
    items are returned and the caller must retry with a full snapshot.
    """

    items: list[RemoteEvent] = Field(default_factory=list)
    next_cursor: str | None = None
    cursor_expired: bool = False


class TokenGrant(BaseModel):
    access_token: str = Field(repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None
    scopes: str | None = None


class AccountIdentity(BaseModel):
    provider_account_id: str
    email: str | None = None


class WatchChannel(BaseModel):
    subscription_id: str
    resource_id: str | None = None
    expires_at: datetime


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    account_id: UUID
    processed: int = 0
    imported: int = 0
    updated_locally: int = 0
    cancelled: int = 0
    full_sync: bool = False


@dataclass
class RenewalReport:
    renewed: list[UUID] = field(default_factory=list)
    deactivated: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "renewed": len(self.renewed),
            "deactivated": len(self.deactivated),
            "failed": len(self.failed),
            "errors": {str(key): value for key, value in self.failed.items()},
        }


@dataclass
class WriteBackReport:
    """Per-account outcome of one write-back fan-out."""

    event_id: UUID
    action: WriteBackAction
    succeeded: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)
