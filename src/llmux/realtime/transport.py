"""Duplex JSON transports for realtime sessions."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from llmux.errors import RealtimeConnectionError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from websockets.asyncio.client import ClientConnection

    from llmux.realtime.config import RealtimeConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class RealtimeTransport(Protocol):
    """A connection carrying JSON event envelopes in both directions.

    ``receive()`` ends normally on an orderly close and raises
    ``RealtimeConnectionError`` when the connection drops.
    """

    async def connect(self) -> None: ...

    async def send(self, event: dict[str, Any]) -> None: ...

    def receive(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """Realtime transport over ``websockets``."""

    def __init__(
        self,
        config: RealtimeConfig,
        *,
        api_key: str,
        open_timeout_s: float = 10.0,
    ) -> None:
        self.url = f"{config.url}?{urlencode({'model': config.model})}"
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        self._open_timeout_s = open_timeout_s
        self._ws: ClientConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        logger.info("Connecting to realtime endpoint %s", self.url)
        try:
            self._ws = await connect(
                self.url,
                additional_headers=self._headers,
                open_timeout=self._open_timeout_s,
                max_size=None,
            )
        except asyncio.CancelledError:
            raise
        except (OSError, TimeoutError, WebSocketException) as e:
            raise RealtimeConnectionError(
                f"Could not connect to {self.url}: {e}",
                hint="Check the API key and network connectivity.",
            ) from e

    async def send(self, event: dict[str, Any]) -> None:
        if self._ws is None:
            raise RealtimeConnectionError("Transport is not connected")
        try:
            await self._ws.send(json.dumps(event))
        except ConnectionClosed as e:
            raise RealtimeConnectionError(f"Connection closed while sending: {e}") from e

    async def receive(self) -> AsyncIterator[dict[str, Any]]:
        if self._ws is None:
            raise RealtimeConnectionError("Transport is not connected")
        try:
            async for message in self._ws:
                try:
                    event = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON realtime frame")
                    continue
                if isinstance(event, dict):
                    yield event
        except ConnectionClosedOK:
            return
        except ConnectionClosed as e:
            raise RealtimeConnectionError(f"Realtime connection dropped: {e}") from e

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as e:
                logger.debug("Ignoring error while closing websocket: %s", e)
