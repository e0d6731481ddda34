"""Shared fixtures for the orbyt-sync test suite.

Engines are exercised against ``InMemoryStore`` and ``FakeProvider``, a
scriptable ``CalendarProvider`` that records every call and never touches
the network.
"""

from __future__ import annotations

import itertools
import uuid
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest

from orbyt_sync.config import ProviderCredentials, Settings
from orbyt_sync.errors import RemoteProviderError
from orbyt_sync.models import (
    AccountIdentity,
    ChangeSet,
    ConnectedAccount,
    OrbytEvent,
    Provider,
    TokenGrant,
    WatchChannel,
    WebhookSubscription,
    WriteBackAction,
)
from orbyt_sync.providers.base import CalendarProvider, ProviderRegistry
from orbyt_sync.service import IntegrationsService
from orbyt_sync.storage import InMemoryStore
from orbyt_sync.vault import CredentialVault

TEST_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f00f1e2d3c4b5a69788796a5b4c3d2e1f0"

# ---------------------------------------------------------------------------
# Provider double
# ---------------------------------------------------------------------------


class FakeProvider(CalendarProvider):
    """In-process provider; behaviour is scripted through public attributes."""

    watch_ttl = timedelta(days=7)

    def __init__(self, name: Provider = Provider.GOOGLE) -> None:
        self.name = name
        self._credentials = ProviderCredentials(client_id="client-id", client_secret="secret")
        self._owns_http_client = False
        self._ids = itertools.count(1)

        self.grant = TokenGrant(
            access_token="access-initial",
            refresh_token="refresh-initial",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
            scopes="calendar.read calendar.write",
        )
        self.identity = AccountIdentity(provider_account_id="remote-user-1", email="a@example.com")
        self.exchange_calls: list[str] = []
        self.refresh_calls: list[str] = []
        self.refresh_error: Exception | None = None

        self.changes: dict[str | None, ChangeSet] = {}
        self.list_calls: list[str | None] = []
        self.list_error: Exception | None = None

        self.write_calls: list[tuple[WriteBackAction, str, UUID, str | None]] = []
        self.failing_tokens: set[str] = set()

        self.watch_calls: list[tuple[str, str, str]] = []
        self.watch_error: Exception | None = None
        self.stop_calls: list[str] = []
        self.stop_error: Exception | None = None

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return f"https://provider.test/authorize?state={state}&redirect_uri={redirect_uri}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self.exchange_calls.append(code)
        return self.grant

    async def fetch_identity(self, access_token: str) -> AccountIdentity:
        return self.identity

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(
            access_token=f"access-refreshed-{len(self.refresh_calls)}",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )

    def has_write_scope(self, scopes: str | None) -> bool:
        return scopes is not None and "calendar.write" in scopes.split()

    async def list_changes_since(self, cursor, access_token, *, window_days=90) -> ChangeSet:
        self.list_calls.append(cursor)
        if self.list_error is not None:
            raise self.list_error
        return self.changes.get(cursor, ChangeSet(next_cursor=f"cursor-{len(self.list_calls)}"))

    async def write_event(self, action, access_token, *, event, remote_id=None) -> str | None:
        self.write_calls.append((WriteBackAction(action), access_token, event.id, remote_id))
        if access_token in self.failing_tokens:
            raise RemoteProviderError("backend unavailable", status_code=503)
        if action == WriteBackAction.CREATE:
            return f"remote-{next(self._ids)}"
        if action == WriteBackAction.UPDATE:
            return remote_id
        return None

    async def watch(self, access_token, *, callback_url, client_state) -> WatchChannel:
        self.watch_calls.append((access_token, callback_url, client_state))
        if self.watch_error is not None:
            raise self.watch_error
        return WatchChannel(
            subscription_id=f"channel-{next(self._ids)}",
            resource_id="resource-1",
            expires_at=datetime.now(UTC) + self.watch_ttl,
        )

    async def stop_watch(self, access_token: str, subscription: WebhookSubscription) -> None:
        self.stop_calls.append(subscription.subscription_id)
        if self.stop_error is not None:
            raise self.stop_error


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        encryption_key=TEST_KEY,
        public_base_url="https://orbyt.test",
        google=ProviderCredentials(client_id="google-id", client_secret="google-secret"),
        microsoft=ProviderCredentials(
            client_id="ms-id", client_secret="ms-secret", tenant_id="common"
        ),
        cron_secret="cron-secret",
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider(Provider.GOOGLE)


@pytest.fixture
def registry(fake_provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry([fake_provider])


@pytest.fixture
def service(store, vault, registry, settings) -> IntegrationsService:
    return IntegrationsService.build(store, vault, registry, settings)


@pytest.fixture
def user_id() -> UUID:
    return uuid.uuid4()


@pytest.fixture
def household_id(store: InMemoryStore, user_id: UUID) -> UUID:
    household = uuid.uuid4()
    store.add_membership(user_id, household)
    return household


@pytest.fixture
def make_account(store: InMemoryStore, vault: CredentialVault, user_id: UUID):
    """Factory: persist an active connected account with encrypted tokens."""

    async def _make(
        *,
        provider: Provider = Provider.GOOGLE,
        provider_account_id: str | None = None,
        access_token: str = "access-stored",
        refresh_token: str | None = "refresh-stored",
        expires_in: timedelta = timedelta(hours=1),
        scopes: str = "calendar.read calendar.write",
        owner: UUID | None = None,
    ) -> ConnectedAccount:
        account = await store.accounts.upsert_connection(
            user_id=owner or user_id,
            provider=provider,
            provider_account_id=provider_account_id or f"remote-{uuid.uuid4().hex[:8]}",
            email="person@example.com",
            access_token=vault.encrypt(access_token),
            refresh_token=vault.encrypt(refresh_token) if refresh_token else "",
            token_expires_at=datetime.now(UTC) + expires_in,
            scopes=scopes,
        )
        if refresh_token is None:
            # Rows written before refresh tokens were required
            account = account.model_copy(update={"refresh_token": None})
            store._state.accounts[account.id] = account
        return account

    return _make


@pytest.fixture
def make_event(store: InMemoryStore, user_id: UUID, household_id: UUID):
    """Factory: seed a household event owned by the event service."""

    def _make(**overrides) -> OrbytEvent:
        start = datetime(2026, 11, 2, 9, 0, tzinfo=UTC)
        fields = {
            "id": uuid.uuid4(),
            "household_id": household_id,
            "created_by": user_id,
            "title": "Parent-teacher meeting",
            "start_at": start,
            "end_at": start + timedelta(hours=1),
            "updated_at": datetime.now(UTC) - timedelta(days=1),
        }
        fields.update(overrides)
        return store.add_event(OrbytEvent(**fields))

    return _make


@pytest.fixture
def ms_provider() -> FakeProvider:
    return FakeProvider(Provider.MICROSOFT)


@pytest.fixture
def ms_service(store, vault, ms_provider, settings) -> IntegrationsService:
    """Service whose only configured provider is Microsoft."""
    return IntegrationsService.build(store, vault, ProviderRegistry([ms_provider]), settings)
