"""DDL for the tables the sync service owns.

``events`` and ``household_members`` belong to the household event service
and are only read and updated here; their expected columns are documented in
``orbyt_sync.storage.postgres``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_CONNECTED_ACCOUNTS_DDL = """
CREATE TABLE IF NOT EXISTS connected_accounts (
    id                   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id              UUID NOT NULL,
    provider             VARCHAR(20) NOT NULL,
    provider_account_id  VARCHAR(255) NOT NULL,
    email                VARCHAR(255),
    access_token         TEXT,
    refresh_token        TEXT,
    token_expires_at     TIMESTAMPTZ,
    scopes               TEXT,
    sync_cursor          TEXT,
    last_sync_at         TIMESTAMPTZ,
    last_sync_attempt_at TIMESTAMPTZ,
    sync_error           TEXT,
    is_active            BOOLEAN NOT NULL DEFAULT true,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_connected_accounts_provider_account
        UNIQUE (user_id, provider, provider_account_id)
)
"""

_EXTERNAL_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS external_events (
    id                    UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    connected_account_id  UUID NOT NULL REFERENCES connected_accounts (id) ON DELETE CASCADE,
    user_id               UUID NOT NULL,
    external_id           VARCHAR(255) NOT NULL,
    title                 VARCHAR(255) NOT NULL,
    description           TEXT,
    location              TEXT,
    start_at              TIMESTAMPTZ NOT NULL,
    end_at                TIMESTAMPTZ,
    all_day               BOOLEAN NOT NULL DEFAULT false,
    status                VARCHAR(20) NOT NULL DEFAULT 'confirmed',
    metadata              JSONB NOT NULL DEFAULT '{}'::jsonb,
    last_updated_external TIMESTAMPTZ,
    local_event_id        UUID,
    created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_external_events_account_external UNIQUE (connected_account_id, external_id)
)
"""

_EXTERNAL_EVENTS_USER_START_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS ix_external_events_user_start
ON external_events (user_id, start_at)
"""

_WEBHOOK_SUBSCRIPTIONS_DDL = """
CREATE TABLE IF NOT EXISTS webhook_subscriptions (
    id                   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    connected_account_id UUID NOT NULL REFERENCES connected_accounts (id) ON DELETE CASCADE,
    provider             VARCHAR(20) NOT NULL,
    subscription_id      VARCHAR(255) NOT NULL,
    resource_id          VARCHAR(255),
    notification_url     TEXT NOT NULL,
    expires_at           TIMESTAMPTZ NOT NULL,
    is_active            BOOLEAN NOT NULL DEFAULT true,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_webhook_subscriptions_account_provider UNIQUE (connected_account_id, provider)
)
"""

_WEBHOOK_SUBSCRIPTIONS_EXPIRY_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS ix_webhook_subscriptions_active_expiry
ON webhook_subscriptions (expires_at) WHERE is_active
"""

SCHEMA_STATEMENTS = (
    _CONNECTED_ACCOUNTS_DDL,
    _EXTERNAL_EVENTS_DDL,
    _EXTERNAL_EVENTS_USER_START_INDEX_DDL,
    _WEBHOOK_SUBSCRIPTIONS_DDL,
    _WEBHOOK_SUBSCRIPTIONS_EXPIRY_INDEX_DDL,
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the integration tables and indexes if they do not exist.

    Idempotent; safe to run on every deploy.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Integration schema ensured (%d statements)", len(SCHEMA_STATEMENTS))
