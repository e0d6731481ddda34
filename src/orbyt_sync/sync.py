"""Pull-side synchronization of one connected account's primary calendar.

A sync run:

1. claims the per-account cooldown slot (one attempt per 60 seconds),
2. obtains a fresh access token (persisted before use),
3. asks the adapter for changes since the stored cursor, falling back to a
   bounded full snapshot when the provider has expired that cursor,
4. mirrors every item into ``external_events`` and reconciles the linked
   household event (auto-import, relink after write-back, last-write-wins
   refresh),
5. stores the new cursor, or the error text when the run fails.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID

from orbyt_sync.core.logging import account_context
from orbyt_sync.errors import (
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    RemoteProviderError,
    ValidationError,
    safe_error_text,
)
from orbyt_sync.models import (
    ConnectedAccount,
    ExternalEvent,
    NewOrbytEvent,
    RemoteEvent,
    SyncResult,
)
from orbyt_sync.providers.base import ProviderRegistry
from orbyt_sync.storage.repositories import Store
from orbyt_sync.tokens import AccountTokenManager

logger = logging.getLogger(__name__)

SYNC_COOLDOWN = timedelta(seconds=60)
COOLDOWN_MESSAGE = "Please wait at least 1 minute between syncs."
IMPORTED_EVENT_CATEGORY = "other"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _HouseholdResolver:
    """Resolves the auto-import destination at most once per run."""

    def __init__(self, store: Store, user_id: UUID, explicit: UUID | None) -> None:
        self._store = store
        self._user_id = user_id
        self._value = explicit
        self._resolved = explicit is not None

    async def get(self) -> UUID | None:
        if not self._resolved:
            self._value = await self._store.events.primary_household(self._user_id)
            self._resolved = True
            if self._value is None:
                logger.info("User %s has no household; events are mirrored only", self._user_id)
        return self._value


class SyncEngine:
    def __init__(
        self,
        store: Store,
        tokens: AccountTokenManager,
        providers: ProviderRegistry,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._providers = providers
        self._clock = clock

    async def sync_calendar(
        self,
        account_id: UUID,
        *,
        household_id: UUID | None = None,
        bypass_cooldown: bool = False,
    ) -> SyncResult:
        """Run one incremental (or fallback full) sync of *account_id*.

        Parameters
        ----------
        account_id:
            Connected account to sync.
        household_id:
            Destination for auto-imported events. Defaults to the household
            the account owner joined first.
        bypass_cooldown:
            Skip the per-account cooldown check (push notifications). The
            attempt time is still stamped.

        Raises
        ------
        RateLimitedError
            If another attempt on this account started less than 60 seconds ago
            and *bypass_cooldown* is not set.
        """
        account = await self._store.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Connected account {account_id} not found")
        if not account.is_active:
            raise ValidationError("Connected account is disconnected; reconnect to sync")
        if household_id is not None and not await self._store.events.is_household_member(
            account.user_id, household_id
        ):
            raise ForbiddenError("Not a member of the destination household")

        cooldown = timedelta(0) if bypass_cooldown else SYNC_COOLDOWN
        claimed = await self._store.accounts.claim_sync_slot(
            account.id, now=self._clock(), cooldown=cooldown
        )
        if not claimed and not bypass_cooldown:
            raise RateLimitedError(COOLDOWN_MESSAGE)

        with account_context(account.id):
            try:
                result = await self._run(account, household_id)
            except Exception as exc:
                message = safe_error_text(exc)
                await self._store.accounts.record_sync_error(account.id, message)
                logger.warning(
                    "Sync failed for %s account %s: %s", account.provider, account.id, message
                )
                raise

        logger.info(
            "Synced %s account %s: processed=%d imported=%d updated=%d cancelled=%d full=%s",
            account.provider,
            account.id,
            result.processed,
            result.imported,
            result.updated_locally,
            result.cancelled,
            result.full_sync,
        )
        return result

    async def _run(self, account: ConnectedAccount, household_id: UUID | None) -> SyncResult:
        provider = self._providers.get(account.provider)
        access_token = await self._tokens.access_token_for(account)

        full_sync = account.sync_cursor is None
        changes = await provider.list_changes_since(account.sync_cursor, access_token)
        if changes.cursor_expired:
            logger.info("Sync cursor expired for account %s; falling back to full sync", account.id)
            await self._store.accounts.clear_cursor(account.id)
            full_sync = True
            changes = await provider.list_changes_since(None, access_token)
            if changes.cursor_expired:
                raise RemoteProviderError(f"{account.provider} rejected a full sync request")

        result = SyncResult(account_id=account.id, full_sync=full_sync)
        households = _HouseholdResolver(self._store, account.user_id, household_id)

        for item in changes.items:
            result.processed += 1
            if item.is_cancelled:
                if await self._store.external_events.mark_cancelled(account.id, item.external_id):
                    result.cancelled += 1
                continue
            if item.start_at is None:
                continue

            mirror = await self._store.external_events.upsert(
                account_id=account.id, user_id=account.user_id, remote=item
            )
            try:
                await self._reconcile_local(account, mirror, item, households, result)
            except Exception:
                logger.warning(
                    "Could not reconcile remote event %s into the household calendar",
                    item.external_id,
                    exc_info=True,
                )

        await self._store.accounts.record_sync_success(
            account.id, cursor=changes.next_cursor, synced_at=self._clock()
        )
        return result

    async def _reconcile_local(
        self,
        account: ConnectedAccount,
        mirror: ExternalEvent,
        item: RemoteEvent,
        households: _HouseholdResolver,
        result: SyncResult,
    ) -> None:
        if mirror.local_event_id is not None:
            local = await self._store.events.get(mirror.local_event_id)
            if local is None:
                return
            local_seen = max(filter(None, (local.last_synced_at, local.updated_at)))
            if item.updated_at is not None and item.updated_at > local_seen:
                await self._store.events.apply_remote_update(
                    local.id, remote=item, synced_at=self._clock()
                )
                result.updated_locally += 1
            return

        # Created by write-back: relink instead of importing a duplicate
        if item.local_event_id is not None:
            local = await self._store.events.get(item.local_event_id)
            if local is not None:
                async with self._store.transaction() as tx:
                    await tx.external_events.set_local_link(mirror.id, local.id)
                    if local.connected_account_id in (None, account.id):
                        await tx.events.set_external_link(
                            local.id,
                            external_id=item.external_id,
                            provider=account.provider,
                            account_id=account.id,
                            synced_at=self._clock(),
                        )
                return

        household_id = await households.get()
        if household_id is None:
            return

        async with self._store.transaction() as tx:
            local = await tx.events.create(
                NewOrbytEvent(
                    household_id=household_id,
                    created_by=account.user_id,
                    title=item.title,
                    description=item.description,
                    location=item.location,
                    start_at=item.start_at,
                    end_at=item.end_at,
                    all_day=item.all_day,
                    category=IMPORTED_EVENT_CATEGORY,
                )
            )
            await tx.events.set_external_link(
                local.id,
                external_id=item.external_id,
                provider=account.provider,
                account_id=account.id,
                synced_at=self._clock(),
            )
            await tx.external_events.set_local_link(mirror.id, local.id)
        result.imported += 1
