from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class GenerateRequest(BaseModel):
    prompt: str = ""
    stream: bool = False

    model_config = ConfigDict(extra="allow")

    @field_validator("prompt", mode="before")
    @classmethod
    def _coerce_prompt(cls, value: Any) -> str:
        if not value:
            return ""
        return str(value).strip()

    @field_validator("stream", mode="before")
    @classmethod
    def _coerce_stream(cls, value: Any) -> bool:
        return bool(value)

    @classmethod
    def from_body(cls, body: Any) -> GenerateRequest:
        # Anything that is not a JSON object counts as an empty body.
        if not isinstance(body, dict):
            return cls()
        return cls.model_validate(body)


class GenerateResponse(BaseModel):
    text: str


class AggregateResponse(BaseModel):
    text: str
    partial: bool
