"""In-process implementation of the repositories.

Mirrors the PostgreSQL upsert semantics (unique keys, preserved link columns)
so engine tests exercise the same behaviour without a database.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from orbyt_sync.models import (
    ConnectedAccount,
    EventStatus,
    ExternalEvent,
    NewOrbytEvent,
    OrbytEvent,
    Provider,
    RemoteEvent,
    WatchChannel,
    WebhookSubscription,
)
from orbyt_sync.storage.repositories import (
    AccountRepository,
    EventRepository,
    ExternalEventRepository,
    Store,
    SubscriptionRepository,
)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class _Membership:
    user_id: UUID
    household_id: UUID
    joined_at: datetime


@dataclass
class _State:
    accounts: dict[UUID, ConnectedAccount] = field(default_factory=dict)
    external_events: dict[UUID, ExternalEvent] = field(default_factory=dict)
    subscriptions: dict[UUID, WebhookSubscription] = field(default_factory=dict)
    events: dict[UUID, OrbytEvent] = field(default_factory=dict)
    memberships: list[_Membership] = field(default_factory=list)


class InMemoryAccountRepository(AccountRepository):
    def __init__(self, state: _State) -> None:
        self._state = state

    def _update(self, account_id: UUID, **changes) -> None:
        account = self._state.accounts.get(account_id)
        if account is None:
            return
        changes["updated_at"] = _now()
        self._state.accounts[account_id] = account.model_copy(update=changes)

    async def get(self, account_id: UUID) -> ConnectedAccount | None:
        return self._state.accounts.get(account_id)

    async def list_for_user(self, user_id: UUID) -> list[ConnectedAccount]:
        rows = [a for a in self._state.accounts.values() if a.user_id == user_id]
        return sorted(rows, key=lambda a: a.created_at)

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
        for account in self._state.accounts.values():
            if (
                account.user_id == user_id
                and account.provider == provider
                and account.provider_account_id == provider_account_id
            ):
                self._update(
                    account.id,
                    email=email,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                    scopes=scopes,
                    is_active=True,
                    sync_error=None,
                )
                return self._state.accounts[account.id]

        now = _now()
        account = ConnectedAccount(
            id=uuid.uuid4(),
            user_id=user_id,
            provider=provider,
            provider_account_id=provider_account_id,
            email=email,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            scopes=scopes,
            created_at=now,
            updated_at=now,
        )
        self._state.accounts[account.id] = account
        return account

    async def update_tokens(
        self,
        account_id: UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        changes: dict = {"access_token": access_token, "token_expires_at": token_expires_at}
        if refresh_token is not None:
            changes["refresh_token"] = refresh_token
        self._update(account_id, **changes)

    async def claim_sync_slot(
        self, account_id: UUID, *, now: datetime, cooldown: timedelta
    ) -> bool:
        account = self._state.accounts.get(account_id)
        if account is None:
            return False
        last = account.last_sync_attempt_at
        if last is not None and now - last < cooldown:
            return False
        self._update(account_id, last_sync_attempt_at=now)
        return True

    async def clear_cursor(self, account_id: UUID) -> None:
        self._update(account_id, sync_cursor=None)

    async def record_sync_success(
        self, account_id: UUID, *, cursor: str | None, synced_at: datetime
    ) -> None:
        self._update(account_id, sync_cursor=cursor, last_sync_at=synced_at, sync_error=None)

    async def record_sync_error(self, account_id: UUID, message: str) -> None:
        self._update(account_id, sync_error=message)

    async def deactivate(self, account_id: UUID) -> None:
        self._update(
            account_id,
            is_active=False,
            access_token=None,
            refresh_token=None,
            token_expires_at=None,
            sync_cursor=None,
        )


class InMemoryExternalEventRepository(ExternalEventRepository):
    def __init__(self, state: _State) -> None:
        self._state = state

    async def get(self, external_event_id: UUID) -> ExternalEvent | None:
        return self._state.external_events.get(external_event_id)

    async def get_by_external_id(self, account_id: UUID, external_id: str) -> ExternalEvent | None:
        for row in self._state.external_events.values():
            if row.connected_account_id == account_id and row.external_id == external_id:
                return row
        return None

    async def find_for_local_event(
        self, account_id: UUID, local_event_id: UUID
    ) -> ExternalEvent | None:
        for row in self._state.external_events.values():
            if row.connected_account_id == account_id and row.local_event_id == local_event_id:
                return row
        return None

    async def upsert(
        self, *, account_id: UUID, user_id: UUID, remote: RemoteEvent
    ) -> ExternalEvent:
        now = _now()
        fields = {
            "title": remote.title,
            "description": remote.description,
            "location": remote.location,
            "start_at": remote.start_at,
            "end_at": remote.end_at,
            "all_day": remote.all_day,
            "status": remote.status,
            "metadata": dict(remote.metadata),
            "last_updated_external": remote.updated_at,
            "updated_at": now,
        }
        existing = await self.get_by_external_id(account_id, remote.external_id)
        if existing is not None:
            if remote.local_event_id is not None:
                fields["local_event_id"] = remote.local_event_id
            row = existing.model_copy(update=fields)
        else:
            row = ExternalEvent(
                id=uuid.uuid4(),
                connected_account_id=account_id,
                user_id=user_id,
                external_id=remote.external_id,
                local_event_id=remote.local_event_id,
                created_at=now,
                **fields,
            )
        self._state.external_events[row.id] = row
        return row

    async def mark_cancelled(self, account_id: UUID, external_id: str) -> bool:
        row = await self.get_by_external_id(account_id, external_id)
        if row is None:
            return False
        self._state.external_events[row.id] = row.model_copy(
            update={"status": EventStatus.CANCELLED, "updated_at": _now()}
        )
        return True

    async def set_local_link(self, external_event_id: UUID, local_event_id: UUID | None) -> None:
        row = self._state.external_events.get(external_event_id)
        if row is not None:
            self._state.external_events[row.id] = row.model_copy(
                update={"local_event_id": local_event_id, "updated_at": _now()}
            )

    async def clear_links_to(self, local_event_id: UUID) -> int:
        cleared = 0
        for row in list(self._state.external_events.values()):
            if row.local_event_id == local_event_id:
                await self.set_local_link(row.id, None)
                cleared += 1
        return cleared

    async def list_for_user(
        self, user_id: UUID, *, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        rows = [
            row
            for row in self._state.external_events.values()
            if row.user_id == user_id and start <= row.start_at <= end
        ]
        return sorted(rows, key=lambda row: row.start_at)

    async def delete_for_account(self, account_id: UUID) -> int:
        doomed = [
            row.id
            for row in self._state.external_events.values()
            if row.connected_account_id == account_id
        ]
        for row_id in doomed:
            del self._state.external_events[row_id]
        return len(doomed)


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self, state: _State) -> None:
        self._state = state

    async def get_for_account(self, account_id: UUID) -> WebhookSubscription | None:
        for row in self._state.subscriptions.values():
            if row.connected_account_id == account_id:
                return row
        return None

    async def get_by_subscription_id(
        self, provider: Provider, subscription_id: str
    ) -> WebhookSubscription | None:
        for row in self._state.subscriptions.values():
            if row.provider == provider and row.subscription_id == subscription_id:
                return row
        return None

    async def upsert(
        self,
        *,
        account_id: UUID,
        provider: Provider,
        channel: WatchChannel,
        notification_url: str,
    ) -> WebhookSubscription:
        now = _now()
        fields = {
            "subscription_id": channel.subscription_id,
            "resource_id": channel.resource_id,
            "notification_url": notification_url,
            "expires_at": channel.expires_at,
            "is_active": True,
            "updated_at": now,
        }
        existing = None
        for row in self._state.subscriptions.values():
            if row.connected_account_id == account_id and row.provider == provider:
                existing = row
                break
        if existing is not None:
            row = existing.model_copy(update=fields)
        else:
            row = WebhookSubscription(
                id=uuid.uuid4(),
                connected_account_id=account_id,
                provider=provider,
                created_at=now,
                **fields,
            )
        self._state.subscriptions[row.id] = row
        return row

    async def list_expiring(self, before: datetime) -> list[WebhookSubscription]:
        rows = [
            row
            for row in self._state.subscriptions.values()
            if row.is_active and row.expires_at < before
        ]
        return sorted(rows, key=lambda row: row.expires_at)

    async def deactivate(self, subscription_row_id: UUID) -> None:
        row = self._state.subscriptions.get(subscription_row_id)
        if row is not None:
            self._state.subscriptions[row.id] = row.model_copy(
                update={"is_active": False, "updated_at": _now()}
            )


class InMemoryEventRepository(EventRepository):
    def __init__(self, state: _State) -> None:
        self._state = state

    def _update(self, event_id: UUID, **changes) -> None:
        event = self._state.events.get(event_id)
        if event is not None:
            self._state.events[event_id] = event.model_copy(update=changes)

    async def get(self, event_id: UUID) -> OrbytEvent | None:
        return self._state.events.get(event_id)

    async def create(self, event: NewOrbytEvent) -> OrbytEvent:
        row = OrbytEvent(id=uuid.uuid4(), updated_at=_now(), **event.model_dump())
        self._state.events[row.id] = row
        return row

    async def apply_remote_update(
        self, event_id: UUID, *, remote: RemoteEvent, synced_at: datetime
    ) -> None:
        self._update(
            event_id,
            title=remote.title,
            description=remote.description,
            location=remote.location,
            start_at=remote.start_at,
            end_at=remote.end_at,
            all_day=remote.all_day,
            updated_at=synced_at,
            last_synced_at=synced_at,
        )

    async def set_external_link(
        self,
        event_id: UUID,
        *,
        external_id: str,
        provider: Provider,
        account_id: UUID,
        synced_at: datetime,
    ) -> None:
        self._update(
            event_id,
            external_event_id=external_id,
            external_provider=provider,
            connected_account_id=account_id,
            last_synced_at=synced_at,
        )

    async def mark_synced(self, event_id: UUID, synced_at: datetime) -> None:
        self._update(event_id, last_synced_at=synced_at)

    async def clear_external_link(self, event_id: UUID) -> None:
        self._update(
            event_id,
            external_event_id=None,
            external_provider=None,
            connected_account_id=None,
            last_synced_at=None,
        )

    async def clear_links_for_account(self, account_id: UUID) -> int:
        linked = [e.id for e in self._state.events.values() if e.connected_account_id == account_id]
        for event_id in linked:
            await self.clear_external_link(event_id)
        return len(linked)

    async def is_household_member(self, user_id: UUID, household_id: UUID) -> bool:
        return any(
            m.user_id == user_id and m.household_id == household_id
            for m in self._state.memberships
        )

    async def primary_household(self, user_id: UUID) -> UUID | None:
        memberships = [m for m in self._state.memberships if m.user_id == user_id]
        if not memberships:
            return None
        return min(memberships, key=lambda m: m.joined_at).household_id


class InMemoryStore(Store):
    """Process-local store; a failed transaction restores the prior snapshot."""

    def __init__(self) -> None:
        self._state = _State()
        self.accounts = InMemoryAccountRepository(self._state)
        self.external_events = InMemoryExternalEventRepository(self._state)
        self.subscriptions = InMemorySubscriptionRepository(self._state)
        self.events = InMemoryEventRepository(self._state)
        self._in_transaction = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryStore]:
        if self._in_transaction:
            yield self
            return
        snapshot = copy.deepcopy(self._state)
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._state.__dict__.update(snapshot.__dict__)
            raise
        finally:
            self._in_transaction = False

    # -- Seeding helpers for the event service boundary --------------------

    def add_membership(
        self, user_id: UUID, household_id: UUID, *, joined_at: datetime | None = None
    ) -> None:
        self._state.memberships.append(
            _Membership(user_id=user_id, household_id=household_id, joined_at=joined_at or _now())
        )

    def add_event(self, event: OrbytEvent) -> OrbytEvent:
        self._state.events[event.id] = event
        return event
