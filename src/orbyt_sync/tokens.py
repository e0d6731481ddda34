"""Access-token lifecycle for connected accounts.

Every engine obtains provider access tokens through
:class:`AccountTokenManager`. A refreshed token (and a rotated refresh
token, when the provider issues one) is re-encrypted and persisted before it
is handed back, so a crash right after a refresh never loses the new grant.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from orbyt_sync.errors import AuthenticationError
from orbyt_sync.models import ConnectedAccount
from orbyt_sync.providers.base import ProviderRegistry
from orbyt_sync.storage.repositories import Store
from orbyt_sync.vault import CredentialVault

logger = logging.getLogger(__name__)

# Refresh slightly before the provider's expiry to absorb clock skew.
TOKEN_REFRESH_SKEW = timedelta(minutes=5)


class AccountTokenManager:
    def __init__(self, store: Store, vault: CredentialVault, providers: ProviderRegistry) -> None:
        self._store = store
        self._vault = vault
        self._providers = providers

    def has_refresh_token(self, account: ConnectedAccount) -> bool:
        return bool(account.is_active and account.refresh_token)

    async def access_token_for(
        self, account: ConnectedAccount, *, force_refresh: bool = False
    ) -> str:
        """Return a usable plaintext access token for *account*.

        The stored token is reused while it is comfortably within its
        lifetime; otherwise the refresh grant is exercised.
        """
        if not account.is_active:
            raise AuthenticationError(f"Connected account {account.id} is disconnected")
        if (
            not force_refresh
            and account.access_token
            and account.token_expires_at is not None
            and account.token_expires_at - datetime.now(UTC) > TOKEN_REFRESH_SKEW
        ):
            return self._vault.decrypt(account.access_token)
        return await self.refresh(account)

    async def refresh(self, account: ConnectedAccount) -> str:
        """Exchange the stored refresh token and persist the new grant.

        Raises
        ------
        AuthenticationError
            If the account has no refresh token or the provider rejects it.
        """
        if not account.refresh_token:
            raise AuthenticationError(
                f"Connected account {account.id} has no refresh token; reconnect required"
            )
        provider = self._providers.get(account.provider)
        refresh_token = self._vault.decrypt(account.refresh_token)
        grant = await provider.refresh(refresh_token)

        await self._store.accounts.update_tokens(
            account.id,
            access_token=self._vault.encrypt(grant.access_token),
            refresh_token=self._vault.encrypt(grant.refresh_token) if grant.refresh_token else None,
            token_expires_at=grant.expires_at,
        )
        logger.debug(
            "Refreshed %s access token for account %s (rotated=%s)",
            account.provider,
            account.id,
            grant.refresh_token is not None,
        )
        return grant.access_token
