from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from prompt_relay.core.types import SSE_DONE_SENTINEL, GenerationConfig, UpstreamRequest

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "models/gemini-flash-lite-latest"


@dataclass(slots=True)
class GeminiProvider:
    base_url: str = DEFAULT_BASE_URL
    name: str = "gemini"
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
        model = _model_path(config.model)
        base = self.base_url.rstrip("/")
        headers = {
            "content-type": "application/json",
            "x-goog-api-key": api_key,
        }
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": config.temperature,
                "maxOutputTokens": config.max_output_tokens,
            },
        }

        if not stream:
            return UpstreamRequest(
                url=f"{base}/{model}:generateContent",
                json=payload,
                headers=headers,
            )

        headers["accept"] = "text/event-stream"
        return UpstreamRequest(
            url=f"{base}/{model}:streamGenerateContent",
            json=payload,
            headers=headers,
            params={"alt": "sse"},
        )

    def extract_text(self, payload: Any) -> str:
        return extract_candidate_text(payload)

    def extract_stream_text(self, payload: Any) -> str:
        # Stream chunks carry the same candidate shape as a full response.
        return extract_candidate_text(payload)


def extract_candidate_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""

    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""

    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""

    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )


def _model_path(model: str) -> str:
    if model.startswith("models/"):
        return model
    return f"models/{model}"
