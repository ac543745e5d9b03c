from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, TypeVar

import structlog

from .errors import CallerDisconnectedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.25


class Deadline:
    """Absolute point on the monotonic clock after which upstream work stops."""

    __slots__ = ("expires_at", "_clock")

    def __init__(self, expires_at: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(
        cls,
        seconds: float,
        *,
        start: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> Deadline:
        origin = clock() if start is None else start
        return cls(origin + seconds, clock)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0


class CancellationScope:
    """Request-scoped cancellation shared by the deadline and caller disconnect.

    Every upstream await goes through ``run`` so it is bounded by the time left
    on the deadline. ``watch_disconnect`` polls the inbound connection and
    interrupts the ``run`` in progress in the task that started watching.
    ``cancel`` only records the first reason it is given, and release callbacks
    registered with ``push_release`` run exactly once when the scope closes,
    whichever exit path gets there first.
    """

    def __init__(self, deadline: Deadline) -> None:
        self.deadline = deadline
        self.reason: str | None = None
        self._releases: list[Callable[[], Awaitable[None]]] = []
        self._closed = False
        self._owner: asyncio.Task | None = None
        self._watcher: asyncio.Task | None = None
        self._interruptible = False
        self._interrupted = False

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def watching(self) -> bool:
        return self._watcher is not None and not self._watcher.done()

    def cancel(self, reason: str) -> bool:
        if self.reason is not None:
            return False

        self.reason = reason
        logger.info("upstream_cancelled", reason=reason)
        return True

    def push_release(self, callback: Callable[[], Awaitable[None]]) -> None:
        if self._closed:
            raise RuntimeError("Cancellation scope is already closed.")
        self._releases.append(callback)

    def watch_disconnect(
        self,
        is_disconnected: Callable[[], Awaitable[bool]],
        *,
        interval: float = DISCONNECT_POLL_SECONDS,
    ) -> None:
        if self._watcher is not None:
            return

        self._owner = asyncio.current_task()
        self._watcher = asyncio.create_task(self._watch(is_disconnected, interval))
        self.push_release(self._stop_watching)

    async def run(self, awaitable: Awaitable[T]) -> T:
        if self.reason == "disconnected":
            _discard(awaitable)
            raise CallerDisconnectedError(message="Caller disconnected.")

        self._interruptible = asyncio.current_task() is self._owner
        try:
            return await asyncio.wait_for(awaitable, timeout=self.deadline.remaining())
        except TimeoutError:
            self.cancel("deadline")
            raise
        except asyncio.CancelledError:
            if self._interrupted and self._owner is not None:
                self._interrupted = False
                if self._owner.uncancel() == 0:
                    raise CallerDisconnectedError(message="Caller disconnected.") from None
            raise
        finally:
            self._interruptible = False

    async def aclose(self) -> None:
        if self._closed:
            return

        self._closed = True
        releases, self._releases = self._releases[::-1], []
        for release in releases:
            await release()

    async def __aenter__(self) -> CancellationScope:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and issubclass(
            exc_type, (asyncio.CancelledError, GeneratorExit)
        ):
            self.cancel("disconnected")

        # Releases must finish even if the surrounding task is being cancelled.
        await asyncio.shield(self.aclose())

    async def _watch(
        self,
        is_disconnected: Callable[[], Awaitable[bool]],
        interval: float,
    ) -> None:
        while not self._closed:
            if await is_disconnected():
                self._on_disconnect()
                return
            await asyncio.sleep(interval)

    def _on_disconnect(self) -> None:
        if not self.cancel("disconnected"):
            return

        # Only the owner's pending upstream await is interrupted; anything
        # else notices the reason on its next ``run``.
        if self._interruptible and self._owner is not None:
            self._interrupted = True
            self._owner.cancel()

    async def _stop_watching(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is None or watcher.done():
            return

        watcher.cancel()
        await asyncio.wait({watcher})


def _discard(awaitable: Awaitable[object]) -> None:
    close = getattr(awaitable, "close", None)
    if close is not None:
        close()
