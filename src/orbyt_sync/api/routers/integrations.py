"""Integrations endpoints: connect, sync, write back and link external calendars.

Every endpoint acts on behalf of the user named by the ``X-User-Id``
header. Provides a single router mounted at ``/api/integrations``.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query

from orbyt_sync.api.deps import get_current_user, get_service
from orbyt_sync.api.models import (
    ApiResponse,
    AuthorizationUrlRequest,
    AuthorizationUrlResponse,
    CallbackRequest,
    ConnectedAccountResponse,
    LinkEventRequest,
    ScopeCheckResponse,
    SuccessResponse,
    SyncCalendarRequest,
    SyncCalendarResponse,
    UnlinkEventResponse,
    WebhookResponse,
    WriteBackRequest,
    WriteBackResponse,
)
from orbyt_sync.models import AccountSummary, ExternalEvent
from orbyt_sync.service import IntegrationsService

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


@router.post("/authorize", response_model=ApiResponse[AuthorizationUrlResponse])
async def get_authorization_url(
    request: AuthorizationUrlRequest,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[AuthorizationUrlResponse]:
    """Return the provider consent URL and the signed state bound to the caller."""
    authorization = service.get_authorization_url(user_id, request.provider)
    return ApiResponse[AuthorizationUrlResponse](
        data=AuthorizationUrlResponse(url=authorization.url, state=authorization.state)
    )


@router.post("/callback", response_model=ApiResponse[ConnectedAccountResponse])
async def handle_callback(
    request: CallbackRequest,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[ConnectedAccountResponse]:
    """Complete the OAuth flow; reconnecting returns the same account id."""
    account_id = await service.handle_callback(
        user_id, request.provider, request.code, request.state
    )
    return ApiResponse[ConnectedAccountResponse](
        data=ConnectedAccountResponse(account_id=account_id)
    )


@router.get("/accounts", response_model=ApiResponse[list[AccountSummary]])
async def list_connected_accounts(
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[list[AccountSummary]]:
    accounts = await service.list_connected_accounts(user_id)
    return ApiResponse[list[AccountSummary]](data=accounts, meta={"total": len(accounts)})


@router.delete("/accounts/{account_id}", response_model=ApiResponse[SuccessResponse])
async def disconnect_account(
    account_id: UUID,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[SuccessResponse]:
    await service.disconnect_account(user_id, account_id)
    return ApiResponse[SuccessResponse](data=SuccessResponse())


@router.get("/accounts/{account_id}/scopes", response_model=ApiResponse[ScopeCheckResponse])
async def check_scopes(
    account_id: UUID,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[ScopeCheckResponse]:
    result = await service.check_scopes(user_id, account_id)
    return ApiResponse[ScopeCheckResponse](data=ScopeCheckResponse.model_validate(result))


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post("/accounts/{account_id}/sync", response_model=ApiResponse[SyncCalendarResponse])
async def sync_calendar(
    account_id: UUID,
    request: SyncCalendarRequest | None = Body(default=None),
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[SyncCalendarResponse]:
    """Pull changes from the provider now; at most once a minute per account."""
    household_id = request.household_id if request is not None else None
    result = await service.sync_calendar(user_id, account_id, household_id=household_id)
    return ApiResponse[SyncCalendarResponse](
        data=SyncCalendarResponse(
            account_id=result.account_id,
            processed=result.processed,
            imported=result.imported,
            updated_locally=result.updated_locally,
            cancelled=result.cancelled,
            full_sync=result.full_sync,
        )
    )


@router.get("/external-events", response_model=ApiResponse[list[ExternalEvent]])
async def list_external_events(
    start: datetime = Query(...),
    end: datetime = Query(...),
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[list[ExternalEvent]]:
    """Mirrored events of the caller's accounts starting inside ``[start, end]``."""
    events = await service.list_external_events(user_id, start, end)
    return ApiResponse[list[ExternalEvent]](data=events, meta={"total": len(events)})


# ---------------------------------------------------------------------------
# Write-back
# ---------------------------------------------------------------------------


@router.post("/accounts/{account_id}/write-back", response_model=ApiResponse[WriteBackResponse])
async def write_back_event(
    account_id: UUID,
    request: WriteBackRequest,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[WriteBackResponse]:
    external_id = await service.write_back_event(user_id, request.event_id, account_id)
    return ApiResponse[WriteBackResponse](data=WriteBackResponse(external_id=external_id))


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.post("/accounts/{account_id}/webhook", response_model=ApiResponse[WebhookResponse])
async def register_webhook(
    account_id: UUID,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[WebhookResponse]:
    subscription = await service.register_webhook(user_id, account_id)
    return ApiResponse[WebhookResponse](
        data=WebhookResponse(
            subscription_id=subscription.subscription_id,
            expires_at=subscription.expires_at,
        )
    )


@router.delete("/accounts/{account_id}/webhook", response_model=ApiResponse[SuccessResponse])
async def unregister_webhook(
    account_id: UUID,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[SuccessResponse]:
    """Stop push notifications; the local row is deactivated even if the provider call fails."""
    stopped = await service.unregister_webhook(user_id, account_id)
    return ApiResponse[SuccessResponse](data=SuccessResponse(), meta={"remote_stopped": stopped})


# ---------------------------------------------------------------------------
# Links
# ---------------------------------------------------------------------------


@router.post("/links", response_model=ApiResponse[SuccessResponse])
async def link_event(
    request: LinkEventRequest,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[SuccessResponse]:
    await service.link_event(user_id, request.event_id, request.external_event_id)
    return ApiResponse[SuccessResponse](data=SuccessResponse())


@router.delete("/links/{event_id}", response_model=ApiResponse[UnlinkEventResponse])
async def unlink_event(
    event_id: UUID,
    user_id: UUID = Depends(get_current_user),
    service: IntegrationsService = Depends(get_service),
) -> ApiResponse[UnlinkEventResponse]:
    unlinked = await service.unlink_event(user_id, event_id)
    return ApiResponse[UnlinkEventResponse](data=UnlinkEventResponse(unlinked=unlinked))
