from __future__ import annotations

import codecs
import json
from typing import Any, Callable

import structlog

from .types import SSE_DONE_SENTINEL

logger = structlog.get_logger(__name__)

DATA_FIELD = "data:"


class SSEReassembler:
    """Rebuild Server-Sent-Events from arbitrarily chunked upstream bytes.

    Events end at a blank line. Anything after the last line break of a chunk
    is kept as ``tail`` until the next chunk completes it, and lines of an
    unfinished event stay in ``pending_lines``. Each ``data:`` payload is
    parsed as JSON and handed to ``extract``; the returned text fragments are
    accumulated in arrival order.
    """

    def __init__(
        self,
        extract: Callable[[Any], str],
        sentinel: str = SSE_DONE_SENTINEL,
    ) -> None:
        self._extract = extract
        self._sentinel = sentinel
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []

        self.tail = ""
        self.pending_lines: list[str] = []
        self.terminal = False
        self.error: Any = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one upstream chunk, returning the fragments it completed."""
        return self._consume(self._decoder.decode(chunk))

    def finish(self) -> list[str]:
        """Flush whatever is buffered once the upstream stream has ended."""
        fragments = self._consume(self._decoder.decode(b"", final=True))
        if self.terminal:
            return fragments

        if self.tail:
            self.pending_lines.append(self.tail.rstrip("\r"))
            self.tail = ""

        fragments.extend(self._flush_event())
        return fragments

    def _consume(self, decoded: str) -> list[str]:
        if self.terminal or not decoded:
            return []

        lines = (self.tail + decoded).split("\n")
        self.tail = lines.pop()

        fragments: list[str] = []
        for line in lines:
            line = line.rstrip("\r")
            if line:
                self.pending_lines.append(line)
                continue

            fragments.extend(self._flush_event())
            if self.terminal:
                self.tail = ""
                break

        return fragments

    def _flush_event(self) -> list[str]:
        lines, self.pending_lines = self.pending_lines, []

        fragments: list[str] = []
        for line in lines:
            line = line.strip()
            if not line.startswith(DATA_FIELD):
                continue

            data = line[len(DATA_FIELD) :].strip()
            if not data:
                continue

            if data == self._sentinel:
                self.terminal = True
                break

            try:
                payload = json.loads(data)
            except ValueError:
                logger.debug("sse_payload_discarded", size=len(data))
                continue

            if self.error is None and isinstance(payload, dict) and payload.get("error"):
                self.error = payload["error"]

            fragment = self._extract(payload)
            if fragment:
                self._parts.append(fragment)
                fragments.append(fragment)

        return fragments
