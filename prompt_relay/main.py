from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from prompt_relay.config import RelaySettings, load_settings
from prompt_relay.dependencies import register_exception_handlers
from prompt_relay.internal import admin
from prompt_relay.logging import configure_logging
from prompt_relay.routers import generate


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.http_client.aclose()


def create_app(
    settings: RelaySettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(json_logs=settings.json_logs, level=settings.log_level)

    app = FastAPI(
        title="prompt-relay",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.http_client = httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(settings.timeout_ms / 1000),
    )

    register_exception_handlers(app)

    app.include_router(generate.router)
    app.include_router(admin.router)

    return app


app = create_app()
