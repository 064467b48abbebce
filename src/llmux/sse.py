"""Server-sent events framing.

httpx gives us lines (``Response.aiter_lines``); this module turns lines into
events. ``iter_lines`` covers sources that only hand out raw byte chunks.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

_LINE_END = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class SSEEvent:
    """One dispatched event."""

    data: str
    event: str | None = None
    id: str | None = None
    retry_ms: int | None = None


class SSEParser:
    """Incremental line-oriented SSE parser.

    Feed one line at a time (without its terminator). A blank line dispatches
    the accumulated event. Lines starting with ``:`` are comments.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None
        self._retry: int | None = None

    def feed(self, line: str) -> list[SSEEvent]:
        line = line.rstrip("\r\n")
        if not line:
            event = self._dispatch()
            return [event] if event is not None else []
        if line.startswith(":"):
            return []

        field_name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field_name == "data":
            self._data.append(value)
        elif field_name == "event":
            self._event = value or None
        elif field_name == "id":
            if "\x00" not in value:
                self._id = value
        elif field_name == "retry":
            if value.isdigit():
                self._retry = int(value)
        # Unknown fields are ignored.
        return []

    def flush(self) -> list[SSEEvent]:
        """Dispatch a trailing event that was not followed by a blank line."""
        event = self._dispatch()
        return [event] if event is not None else []

    def _dispatch(self) -> SSEEvent | None:
        if not self._data and self._event is None:
            return None
        event = SSEEvent(
            data="\n".join(self._data),
            event=self._event,
            id=self._id,
            retry_ms=self._retry,
        )
        self._data = []
        self._event = None
        self._retry = None
        return event


async def iter_lines(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
    """Split a byte/str chunk stream into lines, across chunk boundaries.

    Multi-byte UTF-8 sequences split between chunks are reassembled.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    async for chunk in chunks:
        text = chunk if isinstance(chunk, str) else decoder.decode(chunk)
        if not text:
            continue
        pending += text
        while True:
            m = _LINE_END.search(pending)
            if m is None:
                break
            # A "\r" at the very end may be the first half of "\r\n".
            if m.group() == "\r" and m.end() == len(pending):
                break
            yield pending[: m.start()]
            pending = pending[m.end() :]
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r\n")


async def iter_events(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """Parse SSE lines into events, flushing a trailing unterminated event."""
    parser = SSEParser()
    async for line in lines:
        for event in parser.feed(line):
            yield event
    for event in parser.flush():
        yield event
