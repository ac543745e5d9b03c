from __future__ import annotations

import time

import httpx
import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from prompt_relay.config import RelaySettings
from prompt_relay.core.types import Provider
from prompt_relay.dependencies import (
    get_http_client,
    get_provider,
    get_settings,
    require_proxy_secret,
)
from prompt_relay.logging import bind_request_context
from prompt_relay.proxy.adapter import (
    RELAY_HEADERS,
    RelayStreamingResponse,
    create_aggregate_response,
    create_relay_stream,
    create_text_response,
    empty_response,
    prepare_generation,
)
from prompt_relay.proxy.schemas import GenerateRequest

router = APIRouter(tags=["generate"])
logger = structlog.get_logger(__name__)

LIVENESS_METHODS = ["GET", "HEAD", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route("/", methods=LIVENESS_METHODS)
@router.api_route("/api/generate", methods=LIVENESS_METHODS)
async def liveness() -> PlainTextResponse:
    return PlainTextResponse("ok")


@router.post("/", dependencies=[Depends(require_proxy_secret)])
@router.post("/api/generate", dependencies=[Depends(require_proxy_secret)])
async def generate(
    request: Request,
    settings: RelaySettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    provider: Provider = Depends(get_provider),
):
    started_at = time.monotonic()
    bind_request_context(request.headers.get("x-request-id"), provider=provider.name)

    try:
        body = await request.json()
    except ValueError:
        body = {}
    payload = GenerateRequest.from_body(body)

    if not payload.prompt:
        logger.info("empty_prompt")
        return JSONResponse(content=empty_response())

    prepared = prepare_generation(payload, settings, provider, started_at=started_at)

    if not payload.stream:
        content = await create_text_response(
            prepared, client, is_disconnected=request.is_disconnected
        )
        return JSONResponse(content=content)

    if settings.stream_mode == "aggregate":
        content = await create_aggregate_response(
            prepared, client, is_disconnected=request.is_disconnected
        )
        return JSONResponse(content=content)

    stream = await create_relay_stream(prepared, client)
    return RelayStreamingResponse(stream, headers=dict(RELAY_HEADERS))
