"""Push-notification subscriptions and inbound notification handling.

Each active connected account may hold one subscription (a Google watch
channel or a Microsoft Graph subscription) that makes the provider call
``/api/webhooks/<provider>`` whenever the primary calendar changes. Those
calls only trigger a regular :meth:`SyncEngine.sync_calendar`; no event data
is read from the notification itself.

Subscriptions expire after a few days, so a periodic job renews everything
that expires within the next 24 hours.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from orbyt_sync.config import Settings
from orbyt_sync.core.logging import account_context
from orbyt_sync.errors import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
    safe_error_text,
)
from orbyt_sync.models import (
    ConnectedAccount,
    Provider,
    RenewalReport,
    WebhookSubscription,
)
from orbyt_sync.providers.base import ProviderRegistry
from orbyt_sync.storage.repositories import Store
from orbyt_sync.sync import SyncEngine
from orbyt_sync.tokens import AccountTokenManager
from orbyt_sync.vault import CredentialVault

logger = logging.getLogger(__name__)

RENEWAL_WINDOW = timedelta(hours=24)
RENEWAL_TIMEOUT_SECONDS = 30.0
GOOGLE_SYNC_STATE = "sync"


class WebhookSubscriptionManager:
    def __init__(
        self,
        store: Store,
        tokens: AccountTokenManager,
        providers: ProviderRegistry,
        vault: CredentialVault,
        settings: Settings,
        sync_engine: SyncEngine,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._providers = providers
        self._vault = vault
        self._settings = settings
        self._sync_engine = sync_engine

    def client_state(self, account_id: UUID) -> str:
        """Opaque secret the provider echoes back with every notification."""
        return self._vault.sign(f"webhook:{account_id}")

    def _client_state_matches(self, account_id: UUID, value: Any) -> bool:
        return isinstance(value, str) and self._vault.verify(f"webhook:{account_id}", value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def register_webhook(self, account_id: UUID) -> WebhookSubscription:
        """Create (or replace) the push subscription for *account_id*."""
        account = await self._store.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Connected account {account_id} not found")
        if not account.is_active:
            raise ValidationError("Connected account is disconnected")

        with account_context(account.id):
            access_token = await self._tokens.access_token_for(account)
            previous = await self._store.subscriptions.get_for_account(account.id)
            if previous is not None and previous.is_active:
                await self._stop_quietly(account, previous, access_token)
            subscription = await self._create(account, access_token)
        logger.info(
            "Registered %s webhook for account %s (expires %s)",
            account.provider,
            account.id,
            subscription.expires_at.isoformat(),
        )
        return subscription

    async def _create(self, account: ConnectedAccount, access_token: str) -> WebhookSubscription:
        provider = self._providers.get(account.provider)
        callback_url = self._settings.webhook_url(provider.name)
        channel = await provider.watch(
            access_token,
            callback_url=callback_url,
            client_state=self.client_state(account.id),
        )
        return await self._store.subscriptions.upsert(
            account_id=account.id,
            provider=provider.name,
            channel=channel,
            notification_url=callback_url,
        )

    async def _stop_quietly(
        self,
        account: ConnectedAccount,
        subscription: WebhookSubscription,
        access_token: str,
    ) -> None:
        provider = self._providers.get(account.provider)
        try:
            await provider.stop_watch(access_token, subscription)
        except Exception as exc:
            logger.warning(
                "Could not stop %s channel %s: %s",
                account.provider,
                subscription.subscription_id,
                safe_error_text(exc),
            )

    async def unregister_webhook(self, account_id: UUID) -> bool:
        """Tear down the account's subscription.

        Remote teardown is best effort; the local row is marked inactive
        regardless. Returns False when there was nothing active to remove.
        """
        subscription = await self._store.subscriptions.get_for_account(account_id)
        if subscription is None or not subscription.is_active:
            return False

        account = await self._store.accounts.get(account_id)
        try:
            if account is not None and account.is_active:
                access_token = await self._tokens.access_token_for(account)
                await self._providers.get(account.provider).stop_watch(access_token, subscription)
        except Exception as exc:
            logger.warning(
                "Remote unregister failed for account %s; deactivating locally: %s",
                account_id,
                safe_error_text(exc),
            )
        finally:
            await self._store.subscriptions.deactivate(subscription.id)
        logger.info("Unregistered webhook for account %s", account_id)
        return True

    async def renew_expiring_subscriptions(self, *, now: datetime | None = None) -> RenewalReport:
        """Renew every active subscription expiring within ``RENEWAL_WINDOW``.

        Each subscription is handled independently and bounded by
        ``RENEWAL_TIMEOUT_SECONDS``; a failure is recorded in the report and
        never stops the batch.
        """
        now = now or datetime.now(UTC)
        report = RenewalReport()
        expiring = await self._store.subscriptions.list_expiring(now + RENEWAL_WINDOW)

        for subscription in expiring:
            with account_context(subscription.connected_account_id):
                try:
                    renewed = await asyncio.wait_for(
                        self._renew_one(subscription), timeout=RENEWAL_TIMEOUT_SECONDS
                    )
                except AuthenticationError as exc:
                    logger.warning(
                        "Refresh grant rejected for account %s; deactivating webhook: %s",
                        subscription.connected_account_id,
                        safe_error_text(exc),
                    )
                    await self._store.subscriptions.deactivate(subscription.id)
                    report.deactivated.append(subscription.id)
                    continue
                except Exception as exc:
                    message = safe_error_text(exc)
                    if isinstance(exc, TimeoutError):
                        message = f"timed out after {RENEWAL_TIMEOUT_SECONDS:.0f}s"
                    logger.warning(
                        "Webhook renewal failed for subscription %s: %s", subscription.id, message
                    )
                    report.failed[subscription.id] = message
                    continue

            if renewed:
                report.renewed.append(subscription.id)
            else:
                report.deactivated.append(subscription.id)

        logger.info(
            "Webhook renewal: renewed=%d deactivated=%d failed=%d",
            len(report.renewed),
            len(report.deactivated),
            len(report.failed),
        )
        return report

    async def _renew_one(self, subscription: WebhookSubscription) -> bool:
        """Replace one channel; returns False when it was deactivated instead."""
        account = await self._store.accounts.get(subscription.connected_account_id)
        if account is None or not self._tokens.has_refresh_token(account):
            logger.info(
                "Account %s has no usable refresh token; deactivating webhook",
                subscription.connected_account_id,
            )
            await self._store.subscriptions.deactivate(subscription.id)
            return False

        access_token = await self._tokens.access_token_for(account)
        await self._stop_quietly(account, subscription, access_token)
        await self._create(account, access_token)
        return True

    # ------------------------------------------------------------------
    # Inbound notifications
    # ------------------------------------------------------------------

    async def handle_google_notification(
        self,
        *,
        channel_id: str,
        resource_id: str,
        resource_state: str | None,
        channel_token: str | None = None,
    ) -> bool:
        """Sync the account behind a Google channel. Returns True if a sync ran."""
        if resource_state == GOOGLE_SYNC_STATE:
            return False
        subscription = await self._store.subscriptions.get_by_subscription_id(
            Provider.GOOGLE, channel_id
        )
        if subscription is None or not subscription.is_active:
            logger.info("Ignoring Google notification for unknown channel %s", channel_id)
            return False
        if subscription.resource_id and subscription.resource_id != resource_id:
            logger.warning("Google channel %s resource id mismatch; ignoring", channel_id)
            return False
        if not self._client_state_matches(subscription.connected_account_id, channel_token):
            logger.warning("Google channel %s token mismatch; ignoring", channel_id)
            return False
        return await self._sync_from_notification(subscription.connected_account_id)

    async def handle_microsoft_notifications(self, payload: Any) -> int:
        """Process a Graph notification batch; returns the number of syncs run.

        Malformed entries are skipped and every entry is isolated, so one bad
        notification never prevents the others from being handled.
        """
        notifications = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(notifications, list):
            return 0

        synced: set[UUID] = set()
        for notification in notifications:
            if not isinstance(notification, dict):
                continue
            subscription_id = notification.get("subscriptionId")
            if not isinstance(subscription_id, str) or not subscription_id:
                continue
            try:
                subscription = await self._store.subscriptions.get_by_subscription_id(
                    Provider.MICROSOFT, subscription_id
                )
            except Exception:
                logger.warning(
                    "Lookup failed for Microsoft subscription %s", subscription_id, exc_info=True
                )
                continue
            if subscription is None or not subscription.is_active:
                logger.info("Ignoring notification for unknown subscription %s", subscription_id)
                continue
            account_id = subscription.connected_account_id
            if not self._client_state_matches(account_id, notification.get("clientState")):
                logger.warning("Microsoft subscription %s clientState mismatch", subscription_id)
                continue
            if account_id in synced:
                continue
            synced.add(account_id)
            await self._sync_from_notification(account_id)
        return len(synced)

    async def _sync_from_notification(self, account_id: UUID) -> bool:
        try:
            await self._sync_engine.sync_calendar(account_id, bypass_cooldown=True)
        except Exception as exc:
            logger.warning(
                "Notification-triggered sync for %s failed: %s", account_id, safe_error_text(exc)
            )
            return False
        return True
