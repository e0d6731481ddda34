"""Calendar provider adapters."""

from __future__ import annotations

import httpx

from orbyt_sync.config import Settings
from orbyt_sync.providers.base import CalendarProvider, ProviderRegistry
from orbyt_sync.providers.google import GoogleCalendarProvider
from orbyt_sync.providers.microsoft import MicrosoftCalendarProvider

__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "MicrosoftCalendarProvider",
    "ProviderRegistry",
    "build_registry",
]


def build_registry(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> ProviderRegistry:
    """Register an adapter for every provider with configured credentials."""
    registry = ProviderRegistry()
    if settings.google is not None:
        registry.register(GoogleCalendarProvider(settings.google, http_client))
    if settings.microsoft is not None:
        registry.register(MicrosoftCalendarProvider(settings.microsoft, http_client))
    return registry
