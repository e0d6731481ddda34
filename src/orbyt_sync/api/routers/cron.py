"""Scheduled-job endpoints, guarded by ``Authorization: Bearer <CRON_SECRET>``.

Invoke locally with::

    curl -X POST http://localhost:8000/api/cron/renew-webhooks \\
        -H "Authorization: Bearer $CRON_SECRET"
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from orbyt_sync.api.deps import get_service, get_settings
from orbyt_sync.config import Settings
from orbyt_sync.service import IntegrationsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _authorized(authorization: str | None, secret: str | None) -> bool:
    if not secret or not authorization:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode())


@router.post("/renew-webhooks")
async def renew_webhooks(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
    service: IntegrationsService = Depends(get_service),
) -> JSONResponse:
    """Renew every webhook subscription that expires within the next 24 hours."""
    if not _authorized(authorization, settings.cron_secret):
        logger.warning("Rejected unauthorized webhook renewal request")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    report = await service.webhooks.renew_expiring_subscriptions()
    return JSONResponse(content={"success": True, **report.as_dict()})
