"""Inbound push-notification endpoints for Google Calendar and Microsoft Graph.

Both providers expect a fast acknowledgement, so valid deliveries are
answered immediately and the resulting sync runs as a background task.
Processing failures are logged and never reach the provider.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from orbyt_sync.api.deps import get_service
from orbyt_sync.errors import safe_error_text
from orbyt_sync.service import IntegrationsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

_VALIDATION_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9\-_=+/.]{1,512}$")


async def _process_google(
    service: IntegrationsService,
    channel_id: str,
    resource_id: str,
    resource_state: str | None,
    channel_token: str | None,
) -> None:
    try:
        await service.webhooks.handle_google_notification(
            channel_id=channel_id,
            resource_id=resource_id,
            resource_state=resource_state,
            channel_token=channel_token,
        )
    except Exception as exc:
        logger.error(
            "Google notification for channel %s failed: %s", channel_id, safe_error_text(exc)
        )


async def _process_microsoft(service: IntegrationsService, payload: Any) -> None:
    try:
        await service.webhooks.handle_microsoft_notifications(payload)
    except Exception as exc:
        logger.error("Microsoft notification batch failed: %s", safe_error_text(exc))


@router.post("/google")
async def google_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    service: IntegrationsService = Depends(get_service),
) -> JSONResponse:
    channel_id = request.headers.get("x-goog-channel-id")
    resource_id = request.headers.get("x-goog-resource-id")
    resource_state = request.headers.get("x-goog-resource-state")
    if not channel_id or not resource_id:
        return JSONResponse(status_code=400, content={"error": "Missing headers"})

    # Handshake sent when the channel is created
    if resource_state == "sync":
        return JSONResponse(content={"ok": True})

    background_tasks.add_task(
        _process_google,
        service,
        channel_id,
        resource_id,
        resource_state,
        request.headers.get("x-goog-channel-token"),
    )
    return JSONResponse(content={"ok": True})


@router.api_route("/microsoft", methods=["GET", "POST"])
async def microsoft_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    service: IntegrationsService = Depends(get_service),
):
    validation_token = request.query_params.get("validationToken")
    if validation_token is not None:
        if not _VALIDATION_TOKEN_PATTERN.fullmatch(validation_token):
            return PlainTextResponse("Invalid token", status_code=400)
        return PlainTextResponse(validation_token, status_code=200)

    if request.method == "POST":
        try:
            payload = json.loads(await request.body())
        except ValueError:
            logger.info("Ignoring Microsoft notification with a malformed body")
            payload = None
        if payload:
            background_tasks.add_task(_process_microsoft, service, payload)

    return JSONResponse(status_code=202, content={"ok": True})
