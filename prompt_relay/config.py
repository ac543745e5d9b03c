from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from prompt_relay.core.types import StreamMode
from prompt_relay.providers import gemini, groq


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    host: str = "0.0.0.0"
    port: int = 8080

    proxy_secret: str = Field(
        "",
        validation_alias=AliasChoices("RELAY_PROXY_SECRET", "PROXY_SECRET"),
    )
    api_key: str = ""
    gemini_key: str = Field(
        "",
        validation_alias=AliasChoices("RELAY_GEMINI_KEY", "GEMINI_KEY"),
    )
    groq_api_key: str = Field(
        "",
        validation_alias=AliasChoices("RELAY_GROQ_API_KEY", "GROQ_API_KEY"),
    )

    provider: Literal["gemini", "groq"] = "gemini"
    model: str | None = None
    gemini_base_url: str = gemini.DEFAULT_BASE_URL
    groq_base_url: str = groq.DEFAULT_BASE_URL

    temperature: float = Field(0.6, ge=0.0, le=2.0)
    max_output_tokens: int = Field(900, ge=1)
    timeout_ms: int = Field(65_000, gt=0)
    stream_mode: StreamMode = "relay"
    collect_budget_ms: int = Field(55_000, gt=0)

    json_logs: bool = True
    log_level: str = "INFO"

    @property
    def provider_api_key(self) -> str:
        # A provider-specific key is never sent to the other provider.
        if self.api_key:
            return self.api_key
        if self.provider == "groq":
            return self.groq_api_key
        return self.gemini_key


@lru_cache
def load_settings() -> RelaySettings:
    return RelaySettings()
