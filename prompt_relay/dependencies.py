from __future__ import annotations

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from prompt_relay.config import RelaySettings
from prompt_relay.core.auth import SECRET_HEADER, is_authorized
from prompt_relay.core.types import Provider
from prompt_relay.providers.gemini import GeminiProvider
from prompt_relay.providers.groq import GroqProvider
from prompt_relay.proxy.errors import ProxyError, forbidden


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProxyError)
    async def handle_proxy_error(
        _request: Request,
        exc: ProxyError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_error(),
        )


def get_settings(request: Request) -> RelaySettings:
    return request.app.state.settings


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_provider(settings: RelaySettings = Depends(get_settings)) -> Provider:
    if settings.provider == "groq":
        return GroqProvider(base_url=settings.groq_base_url)
    return GeminiProvider(base_url=settings.gemini_base_url)


def require_proxy_secret(
    request: Request,
    settings: RelaySettings = Depends(get_settings),
) -> None:
    if not is_authorized(request.headers.get(SECRET_HEADER), settings.proxy_secret):
        raise forbidden()
