from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class UpstreamError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class UpstreamStatusError(UpstreamError):
    """Provider answered with a non-2xx status."""

    status_code: int = 500
    body: Any = None


@dataclass
class UpstreamNetworkError(UpstreamError):
    """Deadline exceeded or transport failure before a usable response."""

    timed_out: bool = False


@dataclass
class CallerDisconnectedError(UpstreamNetworkError):
    """The inbound caller went away while upstream work was still pending."""
