from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from prompt_relay.config import RelaySettings
from prompt_relay.core.cancellation import CancellationScope, Deadline
from prompt_relay.core.generation import (
    RelayStream,
    collect_fragments,
    generate_text,
    iter_upstream_bytes,
    open_stream,
)
from prompt_relay.core.sse import SSEReassembler
from prompt_relay.core.types import GenerationConfig, GenerationRequest, Provider

from .errors import map_upstream_error, no_api_key
from .schemas import AggregateResponse, GenerateRequest, GenerateResponse

RELAY_HEADERS = {"Cache-Control": "no-store"}
RELAY_MEDIA_TYPE = "text/plain; charset=utf-8"

DisconnectCheck = Callable[[], Awaitable[bool]]


@dataclass
class PreparedGeneration:
    request: GenerationRequest
    provider: Provider
    config: GenerationConfig
    api_key: str
    timeout_seconds: float
    collect_budget_seconds: float
    started_at: float

    def deadline(self, *, aggregate: bool = False) -> Deadline:
        # Aggregation shares one deadline between the call and the collection loop.
        budget = self.timeout_seconds
        if aggregate:
            budget = min(budget, self.collect_budget_seconds)
        return Deadline.after(budget, start=self.started_at)


def empty_response() -> dict[str, Any]:
    return GenerateResponse(text="").model_dump()


def prepare_generation(
    payload: GenerateRequest,
    settings: RelaySettings,
    provider: Provider,
    *,
    started_at: float | None = None,
) -> PreparedGeneration:
    api_key = settings.provider_api_key
    if not api_key:
        raise no_api_key()

    return PreparedGeneration(
        request=GenerationRequest(prompt=payload.prompt, stream=payload.stream),
        provider=provider,
        config=GenerationConfig(
            model=settings.model or provider.default_model,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
        ),
        api_key=api_key,
        timeout_seconds=settings.timeout_ms / 1000,
        collect_budget_seconds=settings.collect_budget_ms / 1000,
        started_at=time.monotonic() if started_at is None else started_at,
    )


class RelayStreamingResponse(StreamingResponse):
    """``StreamingResponse`` that closes its relay however the response ends.

    Starlette sends the response headers before it starts iterating, and a
    caller that disconnects there leaves the iterator untouched.
    """

    media_type = RELAY_MEDIA_TYPE

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()


async def create_text_response(
    prepared: PreparedGeneration,
    client: httpx.AsyncClient,
    *,
    is_disconnected: DisconnectCheck | None = None,
) -> dict[str, Any]:
    scope = _scope(prepared.deadline(), is_disconnected)
    try:
        text = await generate_text(
            client,
            prepared.provider,
            prepared.request.prompt,
            prepared.config,
            api_key=prepared.api_key,
            scope=scope,
        )
    except Exception as exc:
        raise map_upstream_error(exc) from exc
    finally:
        await scope.aclose()

    return GenerateResponse(text=text).model_dump()


async def create_aggregate_response(
    prepared: PreparedGeneration,
    client: httpx.AsyncClient,
    *,
    is_disconnected: DisconnectCheck | None = None,
) -> dict[str, Any]:
    scope = _scope(prepared.deadline(aggregate=True), is_disconnected)
    try:
        response = await _open(prepared, client, scope)
        result = await collect_fragments(
            iter_upstream_bytes(response),
            SSEReassembler(prepared.provider.extract_stream_text, prepared.provider.sse_sentinel),
            scope,
        )
    except Exception as exc:
        raise map_upstream_error(exc) from exc
    finally:
        await scope.aclose()

    return AggregateResponse(text=result.text.strip(), partial=result.partial).model_dump()


async def create_relay_stream(
    prepared: PreparedGeneration,
    client: httpx.AsyncClient,
) -> RelayStream:
    """Open the upstream stream and return the iterator to hand to the caller.

    Failures up to this point are still reported as JSON errors; from here on
    the iterator owns the cancellation scope.
    """
    scope = CancellationScope(prepared.deadline())
    try:
        response = await _open(prepared, client, scope)
    except Exception as exc:
        await scope.aclose()
        raise map_upstream_error(exc) from exc

    return RelayStream(
        iter_upstream_bytes(response),
        SSEReassembler(prepared.provider.extract_stream_text, prepared.provider.sse_sentinel),
        scope,
    )


def _scope(deadline: Deadline, is_disconnected: DisconnectCheck | None) -> CancellationScope:
    scope = CancellationScope(deadline)
    if is_disconnected is not None:
        scope.watch_disconnect(is_disconnected)
    return scope


async def _open(
    prepared: PreparedGeneration,
    client: httpx.AsyncClient,
    scope: CancellationScope,
) -> httpx.Response:
    return await open_stream(
        client,
        prepared.provider,
        prepared.request.prompt,
        prepared.config,
        api_key=prepared.api_key,
        scope=scope,
    )
