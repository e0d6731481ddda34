"""Push household event changes out to every write-capable connected account.

Write-back is fan-out: each account is attempted independently, its failure
is logged and recorded in the returned report, and the caller's mutation is
never failed by it. Mutation paths use :meth:`WriteBackEngine.schedule` to
run it detached from the request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from orbyt_sync.core.logging import account_context
from orbyt_sync.errors import PreconditionFailedError, RemoteProviderError, safe_error_text
from orbyt_sync.models import (
    ConnectedAccount,
    OrbytEvent,
    RemoteEvent,
    WriteBackAction,
    WriteBackReport,
)
from orbyt_sync.providers.base import CalendarProvider, ProviderRegistry
from orbyt_sync.storage.repositories import Store
from orbyt_sync.tokens import AccountTokenManager

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WriteBackEngine:
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
        # Strong references so detached tasks are not garbage collected mid-flight
        self._pending: set[asyncio.Task] = set()

    async def write_back(
        self,
        user_id: UUID,
        event: OrbytEvent,
        action: WriteBackAction | str,
    ) -> WriteBackReport:
        """Apply *action* for *event* on each of the user's write-capable accounts.

        Never raises; per-account failures land in ``report.failed``.
        """
        action = WriteBackAction(action)
        report = WriteBackReport(event_id=event.id, action=action)
        try:
            accounts = await self._store.accounts.list_for_user(user_id)
        except Exception as exc:
            logger.warning(
                "Write-back for event %s could not list accounts: %s",
                event.id,
                safe_error_text(exc),
            )
            return report

        for account in accounts:
            if not account.is_active:
                continue
            try:
                provider = self._providers.get(account.provider)
            except PreconditionFailedError:
                report.skipped.append(account.id)
                continue
            if not provider.has_write_scope(account.scopes):
                report.skipped.append(account.id)
                continue

            with account_context(account.id):
                try:
                    wrote = await self._write_one(account, provider, event, action)
                except Exception as exc:
                    message = safe_error_text(exc)
                    logger.warning(
                        "Write-back %s of event %s to %s account %s failed: %s",
                        action,
                        event.id,
                        account.provider,
                        account.id,
                        message,
                    )
                    report.failed[account.id] = message
                    continue

            if wrote:
                report.succeeded.append(account.id)
            else:
                report.skipped.append(account.id)

        if report.succeeded or report.failed:
            logger.info(
                "Write-back %s of event %s: succeeded=%d failed=%d skipped=%d",
                action,
                event.id,
                len(report.succeeded),
                len(report.failed),
                len(report.skipped),
            )
        return report

    def schedule(
        self,
        user_id: UUID,
        event: OrbytEvent,
        action: WriteBackAction | str,
    ) -> asyncio.Task[WriteBackReport]:
        """Run :meth:`write_back` as a detached task; its failures are only logged."""
        task = asyncio.get_running_loop().create_task(
            self.write_back(user_id, event, action), name=f"write-back-{event.id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.info("Write-back task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Write-back task %s crashed", task.get_name(), exc_info=exc)

    async def drain(self) -> None:
        """Wait for scheduled write-backs to settle (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def push(self, account: ConnectedAccount, event: OrbytEvent) -> str:
        """Write one event to one account, surfacing errors.

        Updates the remote copy when one is known for this account,
        otherwise creates it. Returns the remote event id.
        """
        provider = self._providers.get(account.provider)
        remote_id = await self.resolve_remote_id(account, event)
        with account_context(account.id):
            access_token = await self._tokens.access_token_for(account)
            if remote_id:
                await provider.write_event(
                    WriteBackAction.UPDATE, access_token, event=event, remote_id=remote_id
                )
                await self._store.events.mark_synced(event.id, self._clock())
                return remote_id
            created_id = await provider.write_event(
                WriteBackAction.CREATE, access_token, event=event
            )
            if not created_id:
                raise RemoteProviderError(f"{account.provider} returned no id for the new event")
            await self._record_created(account, event, created_id)
            return created_id

    async def resolve_remote_id(self, account: ConnectedAccount, event: OrbytEvent) -> str | None:
        """The provider id of *event*'s copy on *account*, if one is known."""
        if event.connected_account_id == account.id and event.external_event_id:
            return event.external_event_id
        linked = await self._store.external_events.find_for_local_event(account.id, event.id)
        return linked.external_id if linked else None

    async def _write_one(
        self,
        account: ConnectedAccount,
        provider: CalendarProvider,
        event: OrbytEvent,
        action: WriteBackAction,
    ) -> bool:
        if action == WriteBackAction.CREATE:
            access_token = await self._tokens.access_token_for(account)
            created_id = await provider.write_event(action, access_token, event=event)
            if not created_id:
                return False
            await self._record_created(account, event, created_id)
            return True

        remote_id = await self.resolve_remote_id(account, event)
        if not remote_id:
            return False
        access_token = await self._tokens.access_token_for(account)
        await provider.write_event(action, access_token, event=event, remote_id=remote_id)

        if action == WriteBackAction.UPDATE:
            await self._store.events.mark_synced(event.id, self._clock())
        else:
            await self._store.external_events.mark_cancelled(account.id, remote_id)
        return True

    async def _record_created(
        self, account: ConnectedAccount, event: OrbytEvent, remote_id: str
    ) -> None:
        now = self._clock()
        mirror = RemoteEvent(
            external_id=remote_id,
            title=event.title,
            description=event.description,
            location=event.location,
            start_at=event.start_at,
            end_at=event.end_at,
            all_day=event.all_day,
            updated_at=now,
            local_event_id=event.id,
        )
        async with self._store.transaction() as tx:
            await tx.external_events.upsert(
                account_id=account.id, user_id=account.user_id, remote=mirror
            )
            # The local row carries one link; further accounts resolve through their mirror
            current = await tx.events.get(event.id)
            if current is not None and current.connected_account_id in (None, account.id):
                await tx.events.set_external_link(
                    event.id,
                    external_id=remote_id,
                    provider=account.provider,
                    account_id=account.id,
                    synced_at=now,
                )
