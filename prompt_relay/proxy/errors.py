from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from prompt_relay.core.errors import UpstreamNetworkError, UpstreamStatusError


@dataclass
class ProxyError(Exception):
    """Error rendered to the bot client as ``{"status": ..., "error": ...}``.

    ``status`` is reported in the body and may differ from the HTTP status,
    e.g. an upstream 429 is sent as HTTP 500 with ``status: 429``.
    """

    status_code: int
    error: Any
    status: int | None = None

    def to_error(self) -> dict[str, Any]:
        return {
            "status": self.status if self.status is not None else self.status_code,
            "error": self.error,
        }


def forbidden() -> ProxyError:
    return ProxyError(status_code=403, error="forbidden")


def no_api_key() -> ProxyError:
    return ProxyError(status_code=500, error="no_api_key")


def map_upstream_error(exc: Exception) -> ProxyError:
    """Map upstream failures to the proxy's error envelope."""

    if isinstance(exc, ProxyError):
        return exc

    if isinstance(exc, UpstreamStatusError):
        return ProxyError(status_code=500, error=exc.body, status=exc.status_code)

    if isinstance(exc, UpstreamNetworkError):
        return ProxyError(status_code=500, error="timeout_or_network", status=504)

    return ProxyError(status_code=500, error="internal_error")
