"""Request/response models for the integrations API.

Successful procedure responses follow ``{"data": T, "meta": {...}}``; errors
use the ``{"error": {"code": ..., "message": ...}}`` envelope.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from orbyt_sync.models import Provider

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class AuthorizationUrlRequest(BaseModel):
    provider: Provider


class CallbackRequest(BaseModel):
    provider: Provider
    code: str
    state: str | None = None


class SyncCalendarRequest(BaseModel):
    household_id: UUID | None = None


class WriteBackRequest(BaseModel):
    event_id: UUID


class LinkEventRequest(BaseModel):
    event_id: UUID
    external_event_id: UUID


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class AuthorizationUrlResponse(BaseModel):
    url: str
    state: str


class ConnectedAccountResponse(BaseModel):
    account_id: UUID


class SyncCalendarResponse(BaseModel):
    account_id: UUID
    processed: int
    imported: int
    updated_locally: int
    cancelled: int
    full_sync: bool


class ScopeCheckResponse(BaseModel):
    account_id: UUID
    provider: Provider
    scopes: list[str]
    has_write_scope: bool


class WriteBackResponse(BaseModel):
    external_id: str


class WebhookResponse(BaseModel):
    subscription_id: str
    expires_at: datetime


class UnlinkEventResponse(BaseModel):
    unlinked: int


class SuccessResponse(BaseModel):
    success: bool = True
