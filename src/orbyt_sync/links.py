"""Manual linking between household events and mirrored external events.

Both directions are written together: the household event points at the
mirror through (``connected_account_id``, ``external_event_id``) and the
mirror points back through ``local_event_id``. No provider is contacted.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID

from orbyt_sync.errors import ForbiddenError, NotFoundError
from orbyt_sync.models import OrbytEvent
from orbyt_sync.storage.repositories import Store

logger = logging.getLogger(__name__)


class LinkManager:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def _authorized_event(self, user_id: UUID, event_id: UUID) -> OrbytEvent:
        event = await self._store.events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        if not await self._store.events.is_household_member(user_id, event.household_id):
            raise ForbiddenError("Not a member of this event's household")
        return event

    async def link(self, user_id: UUID, event_id: UUID, external_event_id: UUID) -> None:
        event = await self._authorized_event(user_id, event_id)
        external = await self._store.external_events.get(external_event_id)
        if external is None:
            raise NotFoundError(f"External event {external_event_id} not found")
        if external.user_id != user_id:
            raise ForbiddenError("External event belongs to another user")
        account = await self._store.accounts.get(external.connected_account_id)
        if account is None:
            raise NotFoundError(f"Connected account {external.connected_account_id} not found")

        async with self._store.transaction() as tx:
            # Drop stale pointers on both sides: the mirror this event used to
            # have on the same account, and the event this mirror used to serve.
            previous_mirror = await tx.external_events.find_for_local_event(account.id, event.id)
            if previous_mirror is not None and previous_mirror.id != external.id:
                await tx.external_events.set_local_link(previous_mirror.id, None)
            if external.local_event_id not in (None, event.id):
                previous_event = await tx.events.get(external.local_event_id)
                if (
                    previous_event is not None
                    and previous_event.connected_account_id == account.id
                    and previous_event.external_event_id == external.external_id
                ):
                    await tx.events.clear_external_link(previous_event.id)
            await tx.events.set_external_link(
                event.id,
                external_id=external.external_id,
                provider=account.provider,
                account_id=account.id,
                synced_at=datetime.now(UTC),
            )
            await tx.external_events.set_local_link(external.id, event.id)
        logger.info("Linked event %s to external event %s", event.id, external.id)

    async def unlink(self, user_id: UUID, event_id: UUID) -> int:
        """Clear both sides of every link that touches *event_id*.

        External rows are matched by their back-pointer, not by the local
        link columns, so links that have drifted apart are cleared too.
        Returns the number of external events that were unlinked.
        """
        event = await self._authorized_event(user_id, event_id)
        async with self._store.transaction() as tx:
            await tx.events.clear_external_link(event.id)
            cleared = await tx.external_events.clear_links_to(event.id)
        logger.info("Unlinked event %s (%d external event(s))", event.id, cleared)
        return cleared
