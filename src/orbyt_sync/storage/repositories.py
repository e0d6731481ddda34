"""Typed repository interfaces, one per entity, grouped under :class:`Store`.

Engines depend only on these abstractions. ``orbyt_sync.storage.postgres``
implements them on asyncpg; ``orbyt_sync.storage.memory`` keeps everything
in process for tests and local runs.
"""

from __future__ import annotations

import abc
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta
from uuid import UUID

from orbyt_sync.models import (
    ConnectedAccount,
    ExternalEvent,
    NewOrbytEvent,
    OrbytEvent,
    Provider,
    RemoteEvent,
    WatchChannel,
    WebhookSubscription,
)


class AccountRepository(abc.ABC):
    @abc.abstractmethod
    async def get(self, account_id: UUID) -> ConnectedAccount | None: ...

    @abc.abstractmethod
    async def list_for_user(self, user_id: UUID) -> list[ConnectedAccount]: ...

    @abc.abstractmethod
    async def upsert_connection(
        self,
        *,
        user_id: UUID,
        provider: Provider,
        provider_account_id: str,
        email: str | None,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime | None,
        scopes: str | None,
    ) -> ConnectedAccount:
        """Insert or refresh the account keyed by (user, provider, provider account).

        An existing row is re-activated and its sync error cleared; its
        sync cursor is kept so reconnecting does not force a full sync.
        """

    @abc.abstractmethod
    async def update_tokens(
        self,
        account_id: UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        """Persist refreshed ciphertexts. ``refresh_token=None`` keeps the stored one."""

    @abc.abstractmethod
    async def claim_sync_slot(
        self, account_id: UUID, *, now: datetime, cooldown: timedelta
    ) -> bool:
        """Atomically stamp ``last_sync_attempt_at`` unless an attempt is within *cooldown*."""

    @abc.abstractmethod
    async def clear_cursor(self, account_id: UUID) -> None: ...

    @abc.abstractmethod
    async def record_sync_success(
        self, account_id: UUID, *, cursor: str | None, synced_at: datetime
    ) -> None: ...

    @abc.abstractmethod
    async def record_sync_error(self, account_id: UUID, message: str) -> None: ...

    @abc.abstractmethod
    async def deactivate(self, account_id: UUID) -> None:
        """Soft-disable the account and wipe its tokens and cursor."""


class ExternalEventRepository(abc.ABC):
    @abc.abstractmethod
    async def get(self, external_event_id: UUID) -> ExternalEvent | None: ...

    @abc.abstractmethod
    async def get_by_external_id(
        self, account_id: UUID, external_id: str
    ) -> ExternalEvent | None: ...

    @abc.abstractmethod
    async def find_for_local_event(
        self, account_id: UUID, local_event_id: UUID
    ) -> ExternalEvent | None:
        """The mirror on *account_id* linked to *local_event_id*, if any."""

    @abc.abstractmethod
    async def upsert(
        self, *, account_id: UUID, user_id: UUID, remote: RemoteEvent
    ) -> ExternalEvent:
        """Insert or overwrite the mirror keyed by (account, external id).

        ``local_event_id`` is preserved on conflict unless *remote* names one.
        """

    @abc.abstractmethod
    async def mark_cancelled(self, account_id: UUID, external_id: str) -> bool: ...

    @abc.abstractmethod
    async def set_local_link(
        self, external_event_id: UUID, local_event_id: UUID | None
    ) -> None: ...

    @abc.abstractmethod
    async def clear_links_to(self, local_event_id: UUID) -> int: ...

    @abc.abstractmethod
    async def list_for_user(
        self, user_id: UUID, *, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        """Events of *user_id* starting within [start, end], ordered by start."""

    @abc.abstractmethod
    async def delete_for_account(self, account_id: UUID) -> int: ...


class SubscriptionRepository(abc.ABC):
    @abc.abstractmethod
    async def get_for_account(self, account_id: UUID) -> WebhookSubscription | None: ...

    @abc.abstractmethod
    async def get_by_subscription_id(
        self, provider: Provider, subscription_id: str
    ) -> WebhookSubscription | None: ...

    @abc.abstractmethod
    async def upsert(
        self,
        *,
        account_id: UUID,
        provider: Provider,
        channel: WatchChannel,
        notification_url: str,
    ) -> WebhookSubscription:
        """Insert or replace the subscription keyed by (account, provider) and activate it."""

    @abc.abstractmethod
    async def list_expiring(self, before: datetime) -> list[WebhookSubscription]:
        """Active subscriptions whose expiry is earlier than *before*."""

    @abc.abstractmethod
    async def deactivate(self, subscription_row_id: UUID) -> None: ...


class EventRepository(abc.ABC):
    """Boundary to the household event service and its membership table."""

    @abc.abstractmethod
    async def get(self, event_id: UUID) -> OrbytEvent | None: ...

    @abc.abstractmethod
    async def create(self, event: NewOrbytEvent) -> OrbytEvent: ...

    @abc.abstractmethod
    async def apply_remote_update(
        self, event_id: UUID, *, remote: RemoteEvent, synced_at: datetime
    ) -> None:
        """Overwrite the local fields from *remote* and stamp ``last_synced_at``."""

    @abc.abstractmethod
    async def set_external_link(
        self,
        event_id: UUID,
        *,
        external_id: str,
        provider: Provider,
        account_id: UUID,
        synced_at: datetime,
    ) -> None: ...

    @abc.abstractmethod
    async def mark_synced(self, event_id: UUID, synced_at: datetime) -> None: ...

    @abc.abstractmethod
    async def clear_external_link(self, event_id: UUID) -> None: ...

    @abc.abstractmethod
    async def clear_links_for_account(self, account_id: UUID) -> int: ...

    @abc.abstractmethod
    async def is_household_member(self, user_id: UUID, household_id: UUID) -> bool: ...

    @abc.abstractmethod
    async def primary_household(self, user_id: UUID) -> UUID | None:
        """The household the user joined first, or ``None``."""


class Store(abc.ABC):
    """All repositories sharing one connection scope."""

    accounts: AccountRepository
    external_events: ExternalEventRepository
    subscriptions: SubscriptionRepository
    events: EventRepository

    @abc.abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Store]:
        """Yield a store whose writes commit together or not at all."""
