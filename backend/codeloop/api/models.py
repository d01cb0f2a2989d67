import logging
from typing import Any

import httpx
from fastapi import APIRouter, Depends

from codeloop.errors import UpstreamProtocolError
from codeloop.gateway import list_available_models
from codeloop.services import Services, get_services


logger = logging.getLogger("codeloop.api.models")


router = APIRouter(prefix="/api", tags=["models"])

ALLOWED_MODELS: list[str] = [
    "claude-sonnet-4-5-20250929",
    "claude-opus-4-6",
    "claude-haiku-4-5-20251001",
    "gpt-5",
    "gpt-4.1",
]


@router.get("/models")
async def list_models(services: Services = Depends(get_services)) -> dict[str, Any]:
    settings = services.settings
    gateway: list[str] = []
    if settings.gateway is not None:
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                gateway = await list_available_models(
                    client, settings.gateway, services.gateway_caches
                )
        except (UpstreamProtocolError, httpx.HTTPError) as e:
            logger.warning("gateway model listing failed: %s", e)
    return {"models": ALLOWED_MODELS, "gateway_models": gateway, "default": settings.default_model}
