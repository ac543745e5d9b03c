from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

StreamMode = Literal["relay", "aggregate"]

SSE_DONE_SENTINEL = "[DONE]"


@dataclass(slots=True)
class GenerationRequest:
    prompt: str
    stream: bool = False


@dataclass(slots=True)
class GenerationConfig:
    model: str
    temperature: float
    max_output_tokens: int


@dataclass(slots=True)
class UpstreamRequest:
    url: str
    json: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AggregationResult:
    text: str
    complete: bool

    @property
    def partial(self) -> bool:
        return not self.complete and bool(self.text.strip())


class Provider(Protocol):
    name: str
    default_model: str
    sse_sentinel: str

    def build_request(
        self,
        prompt: str,
        config: GenerationConfig,
        *,
        api_key: str,
        stream: bool,
    ) -> UpstreamRequest: ...

    def extract_text(self, payload: Any) -> str: ...

    def extract_stream_text(self, payload: Any) -> str: ...
