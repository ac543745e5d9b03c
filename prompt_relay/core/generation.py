from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import Any, AsyncGenerator

import httpx
import structlog

from .cancellation import CancellationScope
from .errors import CallerDisconnectedError, UpstreamNetworkError, UpstreamStatusError
from .sse import SSEReassembler
from .types import AggregationResult, GenerationConfig, Provider

logger = structlog.get_logger(__name__)

STREAM_ERROR_MARKER = "[upstream_error]"


async def generate_text(
    client: httpx.AsyncClient,
    provider: Provider,
    prompt: str,
    config: GenerationConfig,
    *,
    api_key: str,
    scope: CancellationScope,
) -> str:
    upstream = provider.build_request(prompt, config, api_key=api_key, stream=False)
    request = client.build_request(
        "POST",
        upstream.url,
        json=upstream.json,
        headers=upstream.headers,
        params=upstream.params,
    )

    logger.info("upstream_request", provider=provider.name, model=config.model, stream=False)
    async with scope:
        response = await _send(client, request, scope, stream=False)

    payload = _response_payload(response)
    if not response.is_success:
        logger.warning(
            "upstream_status_error",
            provider=provider.name,
            status_code=response.status_code,
        )
        raise UpstreamStatusError(
            message=f"Upstream returned HTTP {response.status_code}.",
            status_code=response.status_code,
            body=payload,
        )

    return provider.extract_text(payload).strip()


async def open_stream(
    client: httpx.AsyncClient,
    provider: Provider,
    prompt: str,
    config: GenerationConfig,
    *,
    api_key: str,
    scope: CancellationScope,
) -> httpx.Response:
    """Send the streaming request and hand back the live response.

    The response is released by ``scope``; on a non-2xx status the error body
    is read first so it can be reported to the caller.
    """
    upstream = provider.build_request(prompt, config, api_key=api_key, stream=True)
    request = client.build_request(
        "POST",
        upstream.url,
        json=upstream.json,
        headers=upstream.headers,
        params=upstream.params,
    )

    logger.info("upstream_request", provider=provider.name, model=config.model, stream=True)
    response = await _send(client, request, scope, stream=True)
    scope.push_release(response.aclose)

    if response.is_success:
        return response

    try:
        await scope.run(response.aread())
    except (TimeoutError, httpx.HTTPError) as exc:
        raise UpstreamNetworkError(
            message=f"Failed to read upstream error body: {exc}",
            timed_out=isinstance(exc, TimeoutError),
        ) from exc

    logger.warning(
        "upstream_status_error",
        provider=provider.name,
        status_code=response.status_code,
    )
    raise UpstreamStatusError(
        message=f"Upstream returned HTTP {response.status_code}.",
        status_code=response.status_code,
        body=_response_payload(response),
    )


async def iter_upstream_bytes(response: httpx.Response) -> AsyncGenerator[bytes, None]:
    # A broken read ends the stream the same way a clean EOF does.
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                yield chunk
    except (httpx.TransportError, httpx.StreamError) as exc:
        logger.warning("upstream_read_failed", error=str(exc))


async def relay_fragments(
    chunks: AsyncGenerator[bytes, None],
    reassembler: SSEReassembler,
    scope: CancellationScope,
) -> AsyncGenerator[bytes, None]:
    """Yield text fragments as UTF-8 bytes the moment they are extracted.

    Headers are already committed once this runs, so the deadline, a caller
    disconnect and the end of the upstream stream all close it normally.
    """
    relayed = 0
    reason = "terminal"

    async with scope, aclosing(chunks):
        while not reassembler.terminal:
            try:
                chunk = await scope.run(anext(chunks))
            except StopAsyncIteration:
                reason = "eof"
                for fragment in reassembler.finish():
                    relayed += len(fragment)
                    yield fragment.encode("utf-8")
                break
            except TimeoutError:
                reason = "deadline"
                break

            for fragment in reassembler.feed(chunk):
                relayed += len(fragment)
                yield fragment.encode("utf-8")

            if reassembler.error is not None and not relayed:
                reason = "upstream_error"
                logger.warning("relay_upstream_error", error=reassembler.error)
                yield STREAM_ERROR_MARKER.encode("utf-8")
                break

        logger.info("relay_finished", reason=reason, chars=relayed)


class RelayStream:
    """Async iterator over relayed fragments that owns its scope from the start.

    An unstarted async generator skips its body on ``aclose``, so closing the
    bare ``relay_fragments`` generator before the first item would never
    release the upstream response. ``aclose`` here releases it either way.
    """

    def __init__(
        self,
        chunks: AsyncGenerator[bytes, None],
        reassembler: SSEReassembler,
        scope: CancellationScope,
    ) -> None:
        self.scope = scope
        self._chunks = chunks
        self._fragments = relay_fragments(chunks, reassembler, scope)

    def __aiter__(self) -> RelayStream:
        return self

    async def __anext__(self) -> bytes:
        return await anext(self._fragments)

    async def aclose(self) -> None:
        await self._fragments.aclose()
        await self._chunks.aclose()
        if not self.scope.closed:
            self.scope.cancel("disconnected")
            await asyncio.shield(self.scope.aclose())


async def collect_fragments(
    chunks: AsyncGenerator[bytes, None],
    reassembler: SSEReassembler,
    scope: CancellationScope,
) -> AggregationResult:
    ended = False

    async with scope, aclosing(chunks):
        while not reassembler.terminal:
            try:
                chunk = await scope.run(anext(chunks))
            except StopAsyncIteration:
                reassembler.finish()
                ended = True
                break
            except (TimeoutError, CallerDisconnectedError):
                break

            reassembler.feed(chunk)

    result = AggregationResult(
        text=reassembler.text,
        complete=reassembler.terminal or ended,
    )
    logger.info(
        "aggregation_finished",
        complete=result.complete,
        partial=result.partial,
        chars=len(result.text),
    )
    return result


async def _send(
    client: httpx.AsyncClient,
    request: httpx.Request,
    scope: CancellationScope,
    *,
    stream: bool,
) -> httpx.Response:
    try:
        return await scope.run(client.send(request, stream=stream))
    except TimeoutError as exc:
        raise UpstreamNetworkError(
            message="Upstream call exceeded its deadline.",
            timed_out=True,
        ) from exc
    except httpx.HTTPError as exc:
        logger.warning("upstream_transport_error", error=str(exc))
        raise UpstreamNetworkError(message=f"Upstream transport failure: {exc}") from exc


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
