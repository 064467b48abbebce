"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider and transport classes as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import json
import time
from typing import TYPE_CHECKING, Any

from llmux.deltas import CanonicalDelta, guard_stream
from llmux.errors import RealtimeConnectionError
from llmux.types import ProviderResponse
from tests.conftest import FakeProvider

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable

    from llmux.realtime.config import RealtimeConfig
    from llmux.types import ProviderRequest


# =============================================================================
# Providers
# =============================================================================


@dataclass
class ScriptedProvider(FakeProvider):
    """FakeProvider that plays back scripted results and exceptions.

    ``script`` feeds ``generate_text``; ``stream_script`` feeds stream
    establishment, where a list item is the delta sequence to stream.
    """

    script: list[ProviderResponse | BaseException] = field(default_factory=list)
    stream_script: list[list[CanonicalDelta] | BaseException] = field(default_factory=list)

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        self.generate_calls += 1
        self.requests.append(request)
        if not self.script:
            return ProviderResponse(text="ok")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        self.stream_calls += 1
        self.requests.append(request)
        item: list[CanonicalDelta] | BaseException = (
            self.stream_script.pop(0) if self.stream_script else [CanonicalDelta.done_delta()]
        )
        if isinstance(item, BaseException):
            raise item
        return guard_stream(aiter_of(item))


@dataclass
class GateProvider(FakeProvider):
    """FakeProvider whose ``generate_text`` blocks until released.

    For single-flight and concurrency tests.
    """

    started: asyncio.Event = field(default_factory=asyncio.Event)
    release: asyncio.Event = field(default_factory=asyncio.Event)
    fail_with: BaseException | None = None

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        self.generate_calls += 1
        self.started.set()
        await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return ProviderResponse(text=f"gated:{self.generate_calls}")


# =============================================================================
# Streams
# =============================================================================


async def aiter_of(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


def sse_lines(*payloads: dict[str, Any] | str, event: str | None = None) -> list[str]:
    """Encode payloads as SSE lines, one event each."""
    lines: list[str] = []
    for payload in payloads:
        if event is not None:
            lines.append(f"event: {event}")
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}")
        lines.append("")
    return lines


async def drain(stream: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in stream]


# =============================================================================
# Realtime
# =============================================================================

_CLOSE = object()


class FakeTransport:
    """In-memory realtime transport.

    Server frames are pushed with ``push``; ``drop`` makes ``receive`` fail
    like a lost connection. ``connect`` acknowledges with ``session.created``
    unless ``ack`` is False or ``reject`` names an error message.
    """

    def __init__(
        self,
        *,
        ack: bool = True,
        reject: str | None = None,
        connect_error: BaseException | None = None,
        session_id: str = "sess_test",
    ) -> None:
        self.ack = ack
        self.reject = reject
        self.connect_error = connect_error
        self.session_id = session_id
        self.connected = False
        self.closed = False
        self.sent: list[dict[str, Any]] = []
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        if self.reject is not None:
            self.push({"type": "error", "error": {"message": self.reject}})
        elif self.ack:
            self.push({"type": "session.created", "session": {"id": self.session_id}})

    async def send(self, event: dict[str, Any]) -> None:
        if not self.connected:
            raise RealtimeConnectionError("Transport is not connected")
        self.sent.append(event)

    async def receive(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._inbox.get()
            if item is _CLOSE:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True
        self.connected = False
        self._inbox.put_nowait(_CLOSE)

    def push(self, frame: dict[str, Any]) -> None:
        self._inbox.put_nowait(frame)

    def drop(self) -> None:
        self.connected = False
        self._inbox.put_nowait(RealtimeConnectionError("connection dropped"))

    def hang_up(self) -> None:
        """Orderly close initiated by the server."""
        self._inbox.put_nowait(_CLOSE)

    def sent_types(self) -> list[str]:
        return [e["type"] for e in self.sent]


class FakeTransportFactory:
    """Hands out scripted transports in order, then fresh default ones."""

    def __init__(self, *transports: FakeTransport) -> None:
        self._script = list(transports)
        self.created: list[FakeTransport] = []
        self.configs: list[RealtimeConfig] = []

    def __call__(self, config: RealtimeConfig) -> FakeTransport:
        self.configs.append(config)
        transport = self._script.pop(0) if self._script else FakeTransport()
        self.created.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]


class RecordingSleep:
    """Instant stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds; fail after *timeout* seconds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
