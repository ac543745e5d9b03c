from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from prompt_relay.config import RelaySettings
from prompt_relay.main import create_app

SECRET = "s3cret"


class FakeUpstream:
    """Records outbound provider calls and answers with ``respond``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.respond: Callable[[httpx.Request], Any] = lambda request: httpx.Response(
            200, json=gemini_payload("Hello!")
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.respond(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result


def gemini_payload(*texts: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text} for text in texts]}}]}


def sse(payload: Any) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def event_stream(*chunks: bytes, hang: bool = False) -> httpx.Response:
    async def body() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk
        if hang:
            await asyncio.sleep(30)

    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=body(),
    )


def make_settings(**overrides: Any) -> RelaySettings:
    values: dict[str, Any] = {
        "proxy_secret": SECRET,
        "api_key": "test-key",
        "gemini_key": "",
        "groq_api_key": "",
        "json_logs": False,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return RelaySettings(_env_file=None, **values)


def make_client(settings: RelaySettings, upstream: FakeUpstream) -> TestClient:
    return TestClient(create_app(settings, transport=httpx.MockTransport(upstream)))


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def client(upstream: FakeUpstream) -> TestClient:
    return make_client(make_settings(), upstream)


def post(client: TestClient, body: Any, secret: str | None = SECRET, **kwargs: Any):
    headers = {} if secret is None else {"x-proxy-secret": secret}
    return client.post("/", json=body, headers=headers, **kwargs)


@pytest.mark.parametrize("path", ["/", "/api/generate"])
def test_non_post_returns_liveness_ack(client: TestClient, upstream: FakeUpstream, path: str):
    response = client.get(path)

    assert response.status_code == 200
    assert response.text == "ok"
    assert upstream.requests == []


def test_healthz_reports_configuration(client: TestClient):
    response = client.get("/internal/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "provider": "gemini", "stream_mode": "relay"}


@pytest.mark.parametrize("secret", [None, "", "wrong"])
def test_bad_secret_is_forbidden(client: TestClient, upstream: FakeUpstream, secret):
    response = post(client, {"prompt": "hi"}, secret=secret)

    assert response.status_code == 403
    assert response.json() == {"status": 403, "error": "forbidden"}
    assert upstream.requests == []


@pytest.mark.parametrize("secret", [None, "", "anything"])
def test_unconfigured_secret_rejects_everything(upstream: FakeUpstream, secret):
    client = make_client(make_settings(proxy_secret=""), upstream)

    response = post(client, {"prompt": "hi"}, secret=secret)

    assert response.status_code == 403
    assert response.json() == {"status": 403, "error": "forbidden"}


def test_generate_alias_path(client: TestClient):
    response = client.post(
        "/api/generate",
        json={"prompt": "hi"},
        headers={"x-proxy-secret": SECRET},
    )

    assert response.status_code == 200
    assert response.json() == {"text": "Hello!"}


@pytest.mark.parametrize(
    "body",
    [
        {"prompt": ""},
        {"prompt": "   \n"},
        {},
        {"prompt": None},
        {"prompt": False},
        {"prompt": 0},
        [1, 2],
    ],
)
def test_empty_prompt_short_circuits(client: TestClient, upstream: FakeUpstream, body):
    response = post(client, body)

    assert response.status_code == 200
    assert response.json() == {"text": ""}
    assert upstream.requests == []


def test_unparsable_body_is_treated_as_empty(client: TestClient, upstream: FakeUpstream):
    response = client.post(
        "/",
        content=b"{not json",
        headers={"x-proxy-secret": SECRET, "content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"text": ""}
    assert upstream.requests == []


def test_missing_api_key_is_reported(upstream: FakeUpstream):
    client = make_client(make_settings(api_key=""), upstream)

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"status": 500, "error": "no_api_key"}
    assert upstream.requests == []


def test_missing_api_key_still_allows_empty_prompt(upstream: FakeUpstream):
    client = make_client(make_settings(api_key=""), upstream)

    response = post(client, {"prompt": " "})

    assert response.status_code == 200
    assert response.json() == {"text": ""}


def test_non_stream_success(client: TestClient, upstream: FakeUpstream):
    upstream.respond = lambda request: httpx.Response(200, json=gemini_payload("  Hel", "lo!\n"))

    response = post(client, {"prompt": "  hi  "})

    assert response.status_code == 200
    assert response.json() == {"text": "Hello!"}

    sent = upstream.requests[0]
    assert sent.method == "POST"
    assert sent.url.path == "/v1beta/models/gemini-flash-lite-latest:generateContent"
    assert sent.headers["x-goog-api-key"] == "test-key"
    assert json.loads(sent.content) == {
        "contents": [{"role": "user", "parts": [{"text": "hi"}]}],
        "generationConfig": {"temperature": 0.6, "maxOutputTokens": 900},
    }


def test_non_stream_uses_configured_generation_parameters(upstream: FakeUpstream):
    client = make_client(
        make_settings(model="gemini-2.0-flash", temperature=0.2, max_output_tokens=64),
        upstream,
    )

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 200
    sent = upstream.requests[0]
    assert sent.url.path.endswith("/models/gemini-2.0-flash:generateContent")
    assert json.loads(sent.content)["generationConfig"] == {
        "temperature": 0.2,
        "maxOutputTokens": 64,
    }


def test_upstream_error_status_is_embedded(client: TestClient, upstream: FakeUpstream):
    error_body = {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}}
    upstream.respond = lambda request: httpx.Response(429, json=error_body)

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"status": 429, "error": error_body}


def test_upstream_error_with_text_body(client: TestClient, upstream: FakeUpstream):
    upstream.respond = lambda request: httpx.Response(502, text="bad gateway")

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"status": 502, "error": "bad gateway"}


def test_transport_failure_is_timeout_or_network(client: TestClient, upstream: FakeUpstream):
    def fail(request: httpx.Request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.respond = fail

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"status": 504, "error": "timeout_or_network"}


def test_deadline_on_upstream_call_is_timeout_or_network(upstream: FakeUpstream):
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(30)
        return httpx.Response(200, json=gemini_payload("late"))

    upstream.respond = slow
    client = make_client(make_settings(timeout_ms=100), upstream)

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"status": 504, "error": "timeout_or_network"}


def test_relay_stream_forwards_text(client: TestClient, upstream: FakeUpstream):
    stream = sse(gemini_payload("Hel")) + b": ping\n\n" + sse(gemini_payload("lo!"))
    upstream.respond = lambda request: event_stream(stream[:13], stream[13:50], stream[50:])

    with client.stream(
        "POST",
        "/",
        json={"prompt": "hi", "stream": True},
        headers={"x-proxy-secret": SECRET},
    ) as response:
        body = "".join(response.iter_text())

    assert response.status_code == 200
    assert body == "Hello!"
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["cache-control"] == "no-store"

    sent = upstream.requests[0]
    assert sent.url.path.endswith(":streamGenerateContent")
    assert sent.url.params["alt"] == "sse"
    assert sent.headers["accept"] == "text/event-stream"


def test_relay_stream_closes_normally_on_deadline(upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(sse(gemini_payload("Hel")), hang=True)
    client = make_client(make_settings(timeout_ms=300), upstream)

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 200
    assert response.text == "Hel"


def test_relay_stream_upstream_error_is_structured(client: TestClient, upstream: FakeUpstream):
    error_body = {"error": {"code": 503, "status": "UNAVAILABLE"}}
    upstream.respond = lambda request: httpx.Response(503, json=error_body)

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 500
    assert response.json() == {"status": 503, "error": error_body}


def test_relay_stream_in_band_marker(client: TestClient, upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(sse({"error": {"code": 500}}))

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 200
    assert response.text == "[upstream_error]"


def test_aggregate_mode_collects_until_sentinel(upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(
        sse(gemini_payload("Hel")),
        sse(gemini_payload("lo!")),
        sse("[DONE]"),
        hang=True,
    )
    client = make_client(make_settings(stream_mode="aggregate"), upstream)

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 200
    assert response.json() == {"text": "Hello!", "partial": False}


def test_aggregate_mode_natural_end_is_complete(upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(
        sse(gemini_payload("Hel")),
        sse(gemini_payload("lo!")),
    )
    client = make_client(make_settings(stream_mode="aggregate"), upstream)

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.json() == {"text": "Hello!", "partial": False}


def test_aggregate_mode_partial_on_deadline(upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(sse(gemini_payload("Hel")), hang=True)
    client = make_client(
        make_settings(stream_mode="aggregate", collect_budget_ms=200),
        upstream,
    )

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 200
    assert response.json() == {"text": "Hel", "partial": True}


def test_aggregate_mode_empty_on_deadline_without_text(upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(b": keep-alive\n\n", hang=True)
    client = make_client(
        make_settings(stream_mode="aggregate", collect_budget_ms=200),
        upstream,
    )

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 200
    assert response.json() == {"text": "", "partial": False}


def test_groq_provider_non_stream(upstream: FakeUpstream):
    upstream.respond = lambda request: httpx.Response(
        200,
        json={"choices": [{"message": {"role": "assistant", "content": "Hello!"}}]},
    )
    client = make_client(make_settings(provider="groq"), upstream)

    response = post(client, {"prompt": "hi"})

    assert response.json() == {"text": "Hello!"}
    sent = upstream.requests[0]
    assert str(sent.url) == "https://api.groq.com/openai/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer test-key"
    assert json.loads(sent.content) == {
        "model": "llama-3.1-8b-instant",
        "messages": [{"role": "user", "content": "hi"}],
        "temperature": 0.6,
        "max_tokens": 900,
        "stream": False,
    }


def test_groq_provider_relay_stream(upstream: FakeUpstream):
    upstream.respond = lambda request: event_stream(
        sse({"choices": [{"delta": {"role": "assistant"}}]}),
        sse({"choices": [{"delta": {"content": "Hel"}}]}),
        sse({"choices": [{"delta": {"content": "lo!"}}]}),
        sse("[DONE]"),
        hang=True,
    )
    client = make_client(make_settings(provider="groq"), upstream)

    response = post(client, {"prompt": "hi", "stream": True})

    assert response.status_code == 200
    assert response.text == "Hello!"
    assert json.loads(upstream.requests[0].content)["stream"] is True


def test_groq_is_never_sent_the_gemini_key(upstream: FakeUpstream):
    client = make_client(make_settings(provider="groq", api_key="", gemini_key="g-key"), upstream)

    response = post(client, {"prompt": "hi"})

    assert response.status_code == 500
    assert response.json() == {"status": 500, "error": "no_api_key"}
    assert upstream.requests == []


def test_provider_specific_keys_are_selected(upstream: FakeUpstream):
    upstream.respond = lambda request: httpx.Response(
        200,
        json={"choices": [{"message": {"content": "Hello!"}}]},
    )
    settings = make_settings(
        provider="groq",
        api_key="",
        gemini_key="g-key",
        groq_api_key="q-key",
    )
    client = make_client(settings, upstream)

    response = post(client, {"prompt": "hi"})

    assert response.json() == {"text": "Hello!"}
    assert upstream.requests[0].headers["authorization"] == "Bearer q-key"


def test_gemini_key_alias_is_used_for_gemini(upstream: FakeUpstream):
    client = make_client(make_settings(api_key="", gemini_key="g-key"), upstream)

    response = post(client, {"prompt": "hi"})

    assert response.json() == {"text": "Hello!"}
    assert upstream.requests[0].headers["x-goog-api-key"] == "g-key"
