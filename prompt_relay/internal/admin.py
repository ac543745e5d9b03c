from __future__ import annotations

from fastapi import APIRouter, Depends

from prompt_relay.config import RelaySettings
from prompt_relay.dependencies import get_settings

router = APIRouter(prefix="/internal", tags=["internal"])


@router.get("/healthz")
async def healthz(settings: RelaySettings = Depends(get_settings)) -> dict[str, str]:
    return {
        "status": "ok",
        "provider": settings.provider,
        "stream_mode": settings.stream_mode,
    }
