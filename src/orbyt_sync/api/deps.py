"""FastAPI dependencies: the service singleton, settings and the calling user.

The singletons are installed by ``init_dependencies`` (from the app
lifespan, or directly by tests) and read by the ``get_*`` functions.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import Header

from orbyt_sync.config import Settings
from orbyt_sync.errors import AuthenticationError, ValidationError
from orbyt_sync.service import IntegrationsService

_service: IntegrationsService | None = None
_settings: Settings | None = None


def init_dependencies(service: IntegrationsService, settings: Settings) -> None:
    global _service, _settings
    _service = service
    _settings = settings


def shutdown_dependencies() -> None:
    global _service, _settings
    _service = None
    _settings = None


def get_service() -> IntegrationsService:
    if _service is None:
        raise RuntimeError("IntegrationsService not initialized")
    return _service


def get_settings() -> Settings:
    if _settings is None:
        raise RuntimeError("Settings not initialized")
    return _settings


def get_current_user(x_user_id: str | None = Header(default=None)) -> UUID:
    """Resolve the caller from the ``X-User-Id`` header set by the session layer."""
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise ValidationError("X-User-Id must be a UUID") from None
