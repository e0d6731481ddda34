"""asyncpg implementation of the repositories.

Every repository runs against an *executor*: the pool for autocommit
statements, or a single connection inside :meth:`PostgresStore.transaction`.

The event service tables are expected to expose::

    events (id, household_id, created_by, title, description, location,
            start_at, end_at, all_day, rrule, color, category, updated_at,
            external_event_id, external_provider, connected_account_id,
            last_synced_at)
    household_members (household_id, user_id, joined_at)
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import asyncpg

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

logger = logging.getLogger(__name__)

Executor = asyncpg.Pool | asyncpg.Connection

_ACCOUNT_COLUMNS = """
    id, user_id, provider, provider_account_id, email, access_token, refresh_token,
    token_expires_at, scopes, sync_cursor, last_sync_at, last_sync_attempt_at,
    sync_error, is_active, created_at, updated_at
"""

_EXTERNAL_EVENT_COLUMNS = """
    id, connected_account_id, user_id, external_id, title, description, location,
    start_at, end_at, all_day, status, metadata, last_updated_external,
    local_event_id, created_at, updated_at
"""

_SUBSCRIPTION_COLUMNS = """
    id, connected_account_id, provider, subscription_id, resource_id,
    notification_url, expires_at, is_active, created_at, updated_at
"""

_EVENT_COLUMNS = """
    id, household_id, created_by, title, description, location, start_at, end_at,
    all_day, rrule, color, category, updated_at, external_event_id,
    external_provider, connected_account_id, last_synced_at
"""


def _affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


def _external_event_from_row(row: asyncpg.Record) -> ExternalEvent:
    data: dict[str, Any] = dict(row)
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        data["metadata"] = json.loads(metadata)
    elif metadata is None:
        data["metadata"] = {}
    return ExternalEvent.model_validate(data)


class PostgresAccountRepository(AccountRepository):
    def __init__(self, executor: Executor) -> None:
        self._db = executor

    async def get(self, account_id: UUID) -> ConnectedAccount | None:
        row = await self._db.fetchrow(
            f"SELECT {_ACCOUNT_COLUMNS} FROM connected_accounts WHERE id = $1", account_id
        )
        return ConnectedAccount.model_validate(dict(row)) if row else None

    async def list_for_user(self, user_id: UUID) -> list[ConnectedAccount]:
        rows = await self._db.fetch(
            f"SELECT {_ACCOUNT_COLUMNS} FROM connected_accounts "
            "WHERE user_id = $1 ORDER BY created_at",
            user_id,
        )
        return [ConnectedAccount.model_validate(dict(row)) for row in rows]

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
        row = await self._db.fetchrow(
            f"""
            INSERT INTO connected_accounts
                (user_id, provider, provider_account_id, email, access_token,
                 refresh_token, token_expires_at, scopes)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (user_id, provider, provider_account_id) DO UPDATE SET
                email            = EXCLUDED.email,
                access_token     = EXCLUDED.access_token,
                refresh_token    = EXCLUDED.refresh_token,
                token_expires_at = EXCLUDED.token_expires_at,
                scopes           = EXCLUDED.scopes,
                is_active        = true,
                sync_error       = NULL,
                updated_at       = now()
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            user_id,
            str(provider),
            provider_account_id,
            email,
            access_token,
            refresh_token,
            token_expires_at,
            scopes,
        )
        return ConnectedAccount.model_validate(dict(row))

    async def update_tokens(
        self,
        account_id: UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        await self._db.execute(
            """
            UPDATE connected_accounts
            SET access_token     = $2,
                refresh_token    = COALESCE($3, refresh_token),
                token_expires_at = $4,
                updated_at       = now()
            WHERE id = $1
            """,
            account_id,
            access_token,
            refresh_token,
            token_expires_at,
        )

    async def claim_sync_slot(
        self, account_id: UUID, *, now: datetime, cooldown: timedelta
    ) -> bool:
        claimed = await self._db.fetchval(
            """
            UPDATE connected_accounts
            SET last_sync_attempt_at = $2
            WHERE id = $1
              AND (last_sync_attempt_at IS NULL OR last_sync_attempt_at <= $2 - $3::interval)
            RETURNING id
            """,
            account_id,
            now,
            cooldown,
        )
        return claimed is not None

    async def clear_cursor(self, account_id: UUID) -> None:
        await self._db.execute(
            "UPDATE connected_accounts SET sync_cursor = NULL, updated_at = now() WHERE id = $1",
            account_id,
        )

    async def record_sync_success(
        self, account_id: UUID, *, cursor: str | None, synced_at: datetime
    ) -> None:
        await self._db.execute(
            """
            UPDATE connected_accounts
            SET sync_cursor = $2, last_sync_at = $3, sync_error = NULL, updated_at = now()
            WHERE id = $1
            """,
            account_id,
            cursor,
            synced_at,
        )

    async def record_sync_error(self, account_id: UUID, message: str) -> None:
        await self._db.execute(
            "UPDATE connected_accounts SET sync_error = $2, updated_at = now() WHERE id = $1",
            account_id,
            message,
        )

    async def deactivate(self, account_id: UUID) -> None:
        await self._db.execute(
            """
            UPDATE connected_accounts
            SET is_active = false,
                access_token = NULL,
                refresh_token = NULL,
                token_expires_at = NULL,
                sync_cursor = NULL,
                updated_at = now()
            WHERE id = $1
            """,
            account_id,
        )


class PostgresExternalEventRepository(ExternalEventRepository):
    def __init__(self, executor: Executor) -> None:
        self._db = executor

    async def get(self, external_event_id: UUID) -> ExternalEvent | None:
        row = await self._db.fetchrow(
            f"SELECT {_EXTERNAL_EVENT_COLUMNS} FROM external_events WHERE id = $1",
            external_event_id,
        )
        return _external_event_from_row(row) if row else None

    async def get_by_external_id(self, account_id: UUID, external_id: str) -> ExternalEvent | None:
        row = await self._db.fetchrow(
            f"SELECT {_EXTERNAL_EVENT_COLUMNS} FROM external_events "
            "WHERE connected_account_id = $1 AND external_id = $2",
            account_id,
            external_id,
        )
        return _external_event_from_row(row) if row else None

    async def find_for_local_event(
        self, account_id: UUID, local_event_id: UUID
    ) -> ExternalEvent | None:
        row = await self._db.fetchrow(
            f"SELECT {_EXTERNAL_EVENT_COLUMNS} FROM external_events "
            "WHERE connected_account_id = $1 AND local_event_id = $2 "
            "ORDER BY updated_at DESC LIMIT 1",
            account_id,
            local_event_id,
        )
        return _external_event_from_row(row) if row else None

    async def upsert(
        self, *, account_id: UUID, user_id: UUID, remote: RemoteEvent
    ) -> ExternalEvent:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO external_events
                (connected_account_id, user_id, external_id, title, description,
                 location, start_at, end_at, all_day, status, metadata,
                 last_updated_external, local_event_id)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13)
            ON CONFLICT (connected_account_id, external_id) DO UPDATE SET
                title                 = EXCLUDED.title,
                description           = EXCLUDED.description,
                location              = EXCLUDED.location,
                start_at              = EXCLUDED.start_at,
                end_at                = EXCLUDED.end_at,
                all_day               = EXCLUDED.all_day,
                status                = EXCLUDED.status,
                metadata              = EXCLUDED.metadata,
                last_updated_external = EXCLUDED.last_updated_external,
                local_event_id        = COALESCE(EXCLUDED.local_event_id,
                                                 external_events.local_event_id),
                updated_at            = now()
            RETURNING {_EXTERNAL_EVENT_COLUMNS}
            """,
            account_id,
            user_id,
            remote.external_id,
            remote.title[:255],
            remote.description,
            remote.location,
            remote.start_at,
            remote.end_at,
            remote.all_day,
            str(remote.status),
            json.dumps(remote.metadata),
            remote.updated_at,
            remote.local_event_id,
        )
        return _external_event_from_row(row)

    async def mark_cancelled(self, account_id: UUID, external_id: str) -> bool:
        status = await self._db.execute(
            """
            UPDATE external_events SET status = $3, updated_at = now()
            WHERE connected_account_id = $1 AND external_id = $2
            """,
            account_id,
            external_id,
            str(EventStatus.CANCELLED),
        )
        return _affected_rows(status) > 0

    async def set_local_link(self, external_event_id: UUID, local_event_id: UUID | None) -> None:
        await self._db.execute(
            "UPDATE external_events SET local_event_id = $2, updated_at = now() WHERE id = $1",
            external_event_id,
            local_event_id,
        )

    async def clear_links_to(self, local_event_id: UUID) -> int:
        status = await self._db.execute(
            """
            UPDATE external_events SET local_event_id = NULL, updated_at = now()
            WHERE local_event_id = $1
            """,
            local_event_id,
        )
        return _affected_rows(status)

    async def list_for_user(
        self, user_id: UUID, *, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        rows = await self._db.fetch(
            f"""
            SELECT {_EXTERNAL_EVENT_COLUMNS} FROM external_events
            WHERE user_id = $1 AND start_at >= $2 AND start_at <= $3
            ORDER BY start_at
            """,
            user_id,
            start,
            end,
        )
        return [_external_event_from_row(row) for row in rows]

    async def delete_for_account(self, account_id: UUID) -> int:
        status = await self._db.execute(
            "DELETE FROM external_events WHERE connected_account_id = $1", account_id
        )
        return _affected_rows(status)


class PostgresSubscriptionRepository(SubscriptionRepository):
    def __init__(self, executor: Executor) -> None:
        self._db = executor

    async def get_for_account(self, account_id: UUID) -> WebhookSubscription | None:
        row = await self._db.fetchrow(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions "
            "WHERE connected_account_id = $1",
            account_id,
        )
        return WebhookSubscription.model_validate(dict(row)) if row else None

    async def get_by_subscription_id(
        self, provider: Provider, subscription_id: str
    ) -> WebhookSubscription | None:
        row = await self._db.fetchrow(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions "
            "WHERE provider = $1 AND subscription_id = $2",
            str(provider),
            subscription_id,
        )
        return WebhookSubscription.model_validate(dict(row)) if row else None

    async def upsert(
        self,
        *,
        account_id: UUID,
        provider: Provider,
        channel: WatchChannel,
        notification_url: str,
    ) -> WebhookSubscription:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO webhook_subscriptions
                (connected_account_id, provider, subscription_id, resource_id,
                 notification_url, expires_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (connected_account_id, provider) DO UPDATE SET
                subscription_id  = EXCLUDED.subscription_id,
                resource_id      = EXCLUDED.resource_id,
                notification_url = EXCLUDED.notification_url,
                expires_at       = EXCLUDED.expires_at,
                is_active        = true,
                updated_at       = now()
            RETURNING {_SUBSCRIPTION_COLUMNS}
            """,
            account_id,
            str(provider),
            channel.subscription_id,
            channel.resource_id,
            notification_url,
            channel.expires_at,
        )
        return WebhookSubscription.model_validate(dict(row))

    async def list_expiring(self, before: datetime) -> list[WebhookSubscription]:
        rows = await self._db.fetch(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions
            WHERE is_active AND expires_at < $1
            ORDER BY expires_at
            """,
            before,
        )
        return [WebhookSubscription.model_validate(dict(row)) for row in rows]

    async def deactivate(self, subscription_row_id: UUID) -> None:
        await self._db.execute(
            "UPDATE webhook_subscriptions SET is_active = false, updated_at = now() WHERE id = $1",
            subscription_row_id,
        )


class PostgresEventRepository(EventRepository):
    def __init__(self, executor: Executor) -> None:
        self._db = executor

    async def get(self, event_id: UUID) -> OrbytEvent | None:
        row = await self._db.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1", event_id
        )
        return OrbytEvent.model_validate(dict(row)) if row else None

    async def create(self, event: NewOrbytEvent) -> OrbytEvent:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO events
                (household_id, created_by, title, description, location,
                 start_at, end_at, all_day, category)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {_EVENT_COLUMNS}
            """,
            event.household_id,
            event.created_by,
            event.title[:255],
            event.description,
            event.location,
            event.start_at,
            event.end_at,
            event.all_day,
            event.category,
        )
        return OrbytEvent.model_validate(dict(row))

    async def apply_remote_update(
        self, event_id: UUID, *, remote: RemoteEvent, synced_at: datetime
    ) -> None:
        await self._db.execute(
            """
            UPDATE events
            SET title = $2, description = $3, location = $4, start_at = $5,
                end_at = $6, all_day = $7, updated_at = $8, last_synced_at = $8
            WHERE id = $1
            """,
            event_id,
            remote.title[:255],
            remote.description,
            remote.location,
            remote.start_at,
            remote.end_at,
            remote.all_day,
            synced_at,
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
        await self._db.execute(
            """
            UPDATE events
            SET external_event_id = $2, external_provider = $3,
                connected_account_id = $4, last_synced_at = $5
            WHERE id = $1
            """,
            event_id,
            external_id,
            str(provider),
            account_id,
            synced_at,
        )

    async def mark_synced(self, event_id: UUID, synced_at: datetime) -> None:
        await self._db.execute(
            "UPDATE events SET last_synced_at = $2 WHERE id = $1", event_id, synced_at
        )

    async def clear_external_link(self, event_id: UUID) -> None:
        await self._db.execute(
            """
            UPDATE events
            SET external_event_id = NULL, external_provider = NULL,
                connected_account_id = NULL, last_synced_at = NULL
            WHERE id = $1
            """,
            event_id,
        )

    async def clear_links_for_account(self, account_id: UUID) -> int:
        status = await self._db.execute(
            """
            UPDATE events
            SET external_event_id = NULL, external_provider = NULL,
                connected_account_id = NULL, last_synced_at = NULL
            WHERE connected_account_id = $1
            """,
            account_id,
        )
        return _affected_rows(status)

    async def is_household_member(self, user_id: UUID, household_id: UUID) -> bool:
        found = await self._db.fetchval(
            "SELECT 1 FROM household_members WHERE user_id = $1 AND household_id = $2",
            user_id,
            household_id,
        )
        return found is not None

    async def primary_household(self, user_id: UUID) -> UUID | None:
        return await self._db.fetchval(
            """
            SELECT household_id FROM household_members
            WHERE user_id = $1
            ORDER BY joined_at
            LIMIT 1
            """,
            user_id,
        )


class PostgresStore(Store):
    """Repositories bound to one asyncpg pool or connection."""

    def __init__(self, executor: Executor) -> None:
        self._executor = executor
        self.accounts = PostgresAccountRepository(executor)
        self.external_events = PostgresExternalEventRepository(executor)
        self.subscriptions = PostgresSubscriptionRepository(executor)
        self.events = PostgresEventRepository(executor)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresStore]:
        if not isinstance(self._executor, asyncpg.Pool):
            # Nested scope: savepoint on the same connection
            async with self._executor.transaction():
                yield self
            return
        async with self._executor.acquire() as conn:
            async with conn.transaction():
                yield PostgresStore(conn)
