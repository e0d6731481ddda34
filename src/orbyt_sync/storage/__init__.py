"""Persistence for connected accounts, external events and webhook subscriptions."""

from orbyt_sync.storage.memory import InMemoryStore
from orbyt_sync.storage.postgres import PostgresStore
from orbyt_sync.storage.repositories import (
    AccountRepository,
    EventRepository,
    ExternalEventRepository,
    Store,
    SubscriptionRepository,
)
from orbyt_sync.storage.schema import ensure_schema

__all__ = [
    "AccountRepository",
    "EventRepository",
    "ExternalEventRepository",
    "InMemoryStore",
    "PostgresStore",
    "Store",
    "SubscriptionRepository",
    "ensure_schema",
]
