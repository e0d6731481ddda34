"""Integrations service: the user-facing operations over connected calendars.

Wires the engines together and enforces ownership: every operation that
names a connected account first checks it belongs to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from orbyt_sync.config import Settings
from orbyt_sync.errors import ForbiddenError, NotFoundError, ValidationError
from orbyt_sync.links import LinkManager
from orbyt_sync.models import (
    AccountSummary,
    ConnectedAccount,
    ExternalEvent,
    Provider,
    SyncResult,
    WebhookSubscription,
)
from orbyt_sync.oauth import AuthorizationRequest, ConnectionManager
from orbyt_sync.providers.base import ProviderRegistry, to_utc
from orbyt_sync.storage.repositories import Store
from orbyt_sync.sync import SyncEngine
from orbyt_sync.tokens import AccountTokenManager
from orbyt_sync.vault import CredentialVault
from orbyt_sync.webhooks import WebhookSubscriptionManager
from orbyt_sync.writeback import WriteBackEngine

logger = logging.getLogger(__name__)


class IntegrationsService:
    def __init__(
        self,
        *,
        store: Store,
        providers: ProviderRegistry,
        connections: ConnectionManager,
        sync_engine: SyncEngine,
        webhooks: WebhookSubscriptionManager,
        writeback: WriteBackEngine,
        links: LinkManager,
    ) -> None:
        self.store = store
        self.providers = providers
        self.connections = connections
        self.sync_engine = sync_engine
        self.webhooks = webhooks
        self.writeback = writeback
        self.links = links

    @classmethod
    def build(
        cls,
        store: Store,
        vault: CredentialVault,
        providers: ProviderRegistry,
        settings: Settings,
    ) -> IntegrationsService:
        """Assemble the service and its engines around one store and vault."""
        tokens = AccountTokenManager(store, vault, providers)
        sync_engine = SyncEngine(store, tokens, providers)
        return cls(
            store=store,
            providers=providers,
            connections=ConnectionManager(store, vault, providers, settings),
            sync_engine=sync_engine,
            webhooks=WebhookSubscriptionManager(
                store, tokens, providers, vault, settings, sync_engine
            ),
            writeback=WriteBackEngine(store, tokens, providers),
            links=LinkManager(store),
        )

    async def _owned_account(self, user_id: UUID, account_id: UUID) -> ConnectedAccount:
        account = await self.store.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Connected account {account_id} not found")
        if account.user_id != user_id:
            raise ForbiddenError("Connected account belongs to another user")
        return account

    # -- Connection --------------------------------------------------------

    def get_authorization_url(
        self, user_id: UUID, provider: Provider | str
    ) -> AuthorizationRequest:
        return self.connections.get_authorization_url(user_id, provider)

    async def handle_callback(
        self, user_id: UUID, provider: Provider | str, code: str, state: str | None
    ) -> UUID:
        return await self.connections.handle_callback(user_id, provider, code, state)

    async def list_connected_accounts(self, user_id: UUID) -> list[AccountSummary]:
        accounts = await self.store.accounts.list_for_user(user_id)
        return [account.summary() for account in accounts]

    async def disconnect_account(self, user_id: UUID, account_id: UUID) -> None:
        """Disconnect an account.

        Order matters: the webhook is torn down first (it needs the tokens),
        then mirrored events and local links are removed, and finally the
        account is soft-disabled with its tokens and cursor wiped.
        """
        account = await self._owned_account(user_id, account_id)
        await self.webhooks.unregister_webhook(account.id)
        async with self.store.transaction() as tx:
            deleted = await tx.external_events.delete_for_account(account.id)
            unlinked = await tx.events.clear_links_for_account(account.id)
            await tx.accounts.deactivate(account.id)
        logger.info(
            "Disconnected %s account %s (external events deleted=%d, local links cleared=%d)",
            account.provider,
            account.id,
            deleted,
            unlinked,
        )

    # -- Sync --------------------------------------------------------------

    async def sync_calendar(
        self, user_id: UUID, account_id: UUID, *, household_id: UUID | None = None
    ) -> SyncResult:
        account = await self._owned_account(user_id, account_id)
        return await self.sync_engine.sync_calendar(account.id, household_id=household_id)

    async def list_external_events(
        self, user_id: UUID, start: datetime, end: datetime
    ) -> list[ExternalEvent]:
        start, end = to_utc(start), to_utc(end)
        if end < start:
            raise ValidationError("end must not be before start")
        return await self.store.external_events.list_for_user(user_id, start=start, end=end)

    async def check_scopes(self, user_id: UUID, account_id: UUID) -> dict[str, object]:
        account = await self._owned_account(user_id, account_id)
        provider = self.providers.get(account.provider)
        return {
            "account_id": account.id,
            "provider": account.provider,
            "scopes": (account.scopes or "").split(),
            "has_write_scope": provider.has_write_scope(account.scopes),
        }

    # -- Write-back --------------------------------------------------------

    async def write_back_event(self, user_id: UUID, event_id: UUID, account_id: UUID) -> str:
        """Manually push one household event to one connected account."""
        account = await self._owned_account(user_id, account_id)
        if not account.is_active:
            raise ValidationError("Connected account is disconnected")
        if not self.providers.get(account.provider).has_write_scope(account.scopes):
            raise ForbiddenError("Connected account was not granted calendar write access")
        event = await self.store.events.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        if not await self.store.events.is_household_member(user_id, event.household_id):
            raise ForbiddenError("Not a member of this event's household")
        return await self.writeback.push(account, event)

    # -- Webhooks ----------------------------------------------------------

    async def register_webhook(self, user_id: UUID, account_id: UUID) -> WebhookSubscription:
        account = await self._owned_account(user_id, account_id)
        return await self.webhooks.register_webhook(account.id)

    async def unregister_webhook(self, user_id: UUID, account_id: UUID) -> bool:
        account = await self._owned_account(user_id, account_id)
        return await self.webhooks.unregister_webhook(account.id)

    # -- Links -------------------------------------------------------------

    async def link_event(self, user_id: UUID, event_id: UUID, external_event_id: UUID) -> None:
        await self.links.link(user_id, event_id, external_event_id)

    async def unlink_event(self, user_id: UUID, event_id: UUID) -> int:
        return await self.links.unlink(user_id, event_id)
