"""OAuth connection flow for external calendar accounts.

The flow:
  1. ``get_authorization_url(user_id, provider)``
     - Builds a signed, timestamped ``state`` bound to the user and provider.
     - Returns the provider's consent URL and that state.

  2. ``handle_callback(user_id, provider, code, state)``
     - Verifies the state signature, binding and age before anything else.
     - Exchanges the code, resolves the remote identity, encrypts both tokens
       and upserts the connected account on (user, provider, remote account).

States are stateless: nothing is stored between the two legs, so any
replica can validate a callback. They expire after 10 minutes.

Security notes:
  - Tokens are never logged; states are logged truncated to 8 characters.
  - A tampered or expired state fails with no network call and no write.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from uuid import UUID

from orbyt_sync.config import Settings
from orbyt_sync.errors import ValidationError
from orbyt_sync.models import Provider
from orbyt_sync.providers.base import ProviderRegistry
from orbyt_sync.storage.repositories import Store
from orbyt_sync.vault import CredentialVault

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600
MAX_STATE_LENGTH = 128
MAX_CODE_LENGTH = 2048
_INVALID_STATE = "invalid OAuth state"


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str


def _state_message(user_id: UUID, provider: Provider | str, nonce: str) -> str:
    return f"{user_id}:{provider}:{nonce}"


def generate_state(
    vault: CredentialVault,
    user_id: UUID,
    provider: Provider | str,
    *,
    now: float | None = None,
) -> str:
    """Return ``<issued-at>-<random>.<hmac>`` bound to *user_id* and *provider*."""
    issued_at = int(time.time() if now is None else now)
    nonce = f"{issued_at}-{secrets.token_hex(16)}"
    signature = vault.sign(_state_message(user_id, provider, nonce))
    return f"{nonce}.{signature}"


def verify_state(
    vault: CredentialVault,
    state: str | None,
    user_id: UUID,
    provider: Provider | str,
    *,
    now: float | None = None,
) -> None:
    """Raise ``ValidationError`` unless *state* was issued for this user and provider.

    Rejects missing, oversized or malformed states, bad signatures, and
    states older than ``STATE_TTL_SECONDS``.
    """
    if not state or len(state) > MAX_STATE_LENGTH:
        raise ValidationError(_INVALID_STATE)
    nonce, separator, signature = state.rpartition(".")
    if not separator or not nonce or not signature:
        raise ValidationError(_INVALID_STATE)
    if not vault.verify(_state_message(user_id, provider, nonce), signature):
        raise ValidationError(_INVALID_STATE)

    issued_raw = nonce.split("-", 1)[0]
    if not issued_raw.isdigit():
        raise ValidationError(_INVALID_STATE)
    current = time.time() if now is None else now
    if current - int(issued_raw) > STATE_TTL_SECONDS:
        raise ValidationError(_INVALID_STATE)


class ConnectionManager:
    """Connects and reconnects external calendar accounts."""

    def __init__(
        self,
        store: Store,
        vault: CredentialVault,
        providers: ProviderRegistry,
        settings: Settings,
    ) -> None:
        self._store = store
        self._vault = vault
        self._providers = providers
        self._settings = settings

    def get_authorization_url(
        self, user_id: UUID, provider: Provider | str
    ) -> AuthorizationRequest:
        adapter = self._providers.get(provider)
        state = generate_state(self._vault, user_id, adapter.name)
        url = adapter.authorization_url(state, self._settings.callback_url(adapter.name))
        logger.info(
            "Issued %s authorization URL for user %s (state=%s...)",
            adapter.name,
            user_id,
            state[:8],
        )
        return AuthorizationRequest(url=url, state=state)

    async def handle_callback(
        self,
        user_id: UUID,
        provider: Provider | str,
        code: str,
        state: str | None,
    ) -> UUID:
        """Complete the connection and return the connected account id.

        Reconnecting the same remote account updates the existing row in
        place, so the returned id is stable across reconnects.
        """
        adapter = self._providers.get(provider)
        verify_state(self._vault, state, user_id, adapter.name)
        if not code or len(code) > MAX_CODE_LENGTH:
            raise ValidationError("authorization code is missing or too long")

        redirect_uri = self._settings.callback_url(adapter.name)
        grant = await adapter.exchange_code(code, redirect_uri)
        if not grant.refresh_token:
            logger.warning(
                "%s token exchange returned no refresh token (state=%s...)",
                adapter.name,
                state[:8],
            )
            raise ValidationError(
                f"{adapter.name} did not return a refresh token; revoke the app's access "
                "and reconnect"
            )

        identity = await adapter.fetch_identity(grant.access_token)
        account = await self._store.accounts.upsert_connection(
            user_id=user_id,
            provider=adapter.name,
            provider_account_id=identity.provider_account_id,
            email=identity.email,
            access_token=self._vault.encrypt(grant.access_token),
            refresh_token=self._vault.encrypt(grant.refresh_token),
            token_expires_at=grant.expires_at,
            scopes=grant.scopes,
        )
        logger.info(
            "Connected %s account %s for user %s (state=%s...)",
            adapter.name,
            account.id,
            user_id,
            state[:8],
        )
        return account.id
