from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from prompt_relay.core.types import SSE_DONE_SENTINEL, GenerationConfig, UpstreamRequest

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "llama-3.1-8b-instant"


@dataclass(slots=True)
class GroqProvider:
    """Groq or any other OpenAI-compatible chat-completion endpoint."""

    base_url: str = DEFAULT_BASE_URL
    name: str = "groq"
    default_model: str = DEFAULT_MODEL
    sse_sentinel: str = SSE_DONE_SENTINEL

    def build_request(
        self,
        prompt: str,
        config: GenerationConfig,
        *,
        api_key: str,
        stream: bool,
    ) -> UpstreamRequest:
        headers = {
            "content-type": "application/json",
            "authorization": f"Bearer {api_key}",
        }
        if stream:
            headers["accept"] = "text/event-stream"

        return UpstreamRequest(
            url=f"{self.base_url.rstrip('/')}/chat/completions",
            json={
                "model": config.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": config.temperature,
                "max_tokens": config.max_output_tokens,
                "stream": stream,
            },
            headers=headers,
        )

    def extract_text(self, payload: Any) -> str:
        return _first_choice_text(payload, "message")

    def extract_stream_text(self, payload: Any) -> str:
        return _first_choice_text(payload, "delta")


def _first_choice_text(payload: Any, key: str) -> str:
    if not isinstance(payload, dict):
        return ""

    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""

    first = choices[0]
    message = first.get(key) if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""
