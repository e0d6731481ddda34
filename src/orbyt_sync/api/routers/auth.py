"""OAuth redirect target registered with each provider.

The provider redirects the browser here after consent. The code and state
are forwarded to the settings page, whose client completes the connection
through ``POST /api/integrations/callback`` with the user's session.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from orbyt_sync.api.deps import get_settings
from orbyt_sync.config import Settings
from orbyt_sync.models import Provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

_SETTINGS_PATH = "/settings"


def _settings_redirect(settings: Settings, **params: str) -> RedirectResponse:
    query = urlencode({"tab": "integrations", **params})
    return RedirectResponse(
        url=f"{settings.public_base_url}{_SETTINGS_PATH}?{query}", status_code=307
    )


@router.get("/callback/{provider}")
async def oauth_callback(
    provider: Provider,
    request: Request,
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    params = request.query_params
    error = params.get("error")
    if error:
        logger.info("%s consent returned error=%s", provider, error)
        return _settings_redirect(settings, error=params.get("error_description") or error)

    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        return _settings_redirect(settings, error="missing_params")

    return _settings_redirect(settings, provider=provider.value, code=code, state=state)
