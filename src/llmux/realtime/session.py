"""Realtime voice/text session: connection and turn state machines."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import enum
import inspect
import logging
import os
from typing import TYPE_CHECKING, Any

from llmux.config import api_key_env_var
from llmux.deltas import DeltaKind, ToolCallAssembler
from llmux.errors import (
    ConfigurationError,
    InvalidInputError,
    RealtimeConnectionError,
)
from llmux.normalizer import RealtimeDecoder
from llmux.realtime import events
from llmux.realtime.audio import AudioBuffer, decode_pcm16, encode_pcm16, rms_level
from llmux.realtime.config import ConversationSettings, RealtimeConfig, TurnDetection
from llmux.realtime.items import ConversationItem
from llmux.realtime.transport import WebSocketTransport
from llmux.realtime.vad import EnergyVAD
from llmux.tools import ToolResult, ToolStatus

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from llmux.deltas import CanonicalDelta
    from llmux.realtime.transport import RealtimeTransport
    from llmux.tools import ToolRegistry
    from llmux.types import ToolCall

    TransportFactory = Callable[[RealtimeConfig], RealtimeTransport]
    AudioSink = Callable[[bytes], Awaitable[None] | None]

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class TurnState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


@dataclass(frozen=True)
class SessionEvent:
    """Something a session consumer may want to react to.

    ``type`` is one of ``state_changed``, ``turn_changed``,
    ``transcript_delta``, ``text_delta``, ``audio_delta``, ``tool_result``,
    ``item_added``, ``error`` or ``fatal``.
    """

    type: str
    payload: Any = None


_END = object()


class RealtimeSession:
    """A duplex realtime conversation.

    Connection state and turn state are independent enums, so "listening"
    and "speaking" can never hold together. Every transition goes through
    ``_set_connection``/``_set_turn`` on the event loop; multi-step
    operations (start, reconnect, end, listening changes, truncation) run
    under one lock.

    Server frames drive the turn: ``response.created`` moves to processing,
    the first output audio chunk to speaking, and ``response.done`` (or an
    exhausted playback queue) back to idle. A completed tool call is run
    through the tool registry and its output sent back; the turn stays in
    processing until the follow-up response completes.
    """

    def __init__(
        self,
        config: RealtimeConfig | None = None,
        transport_factory: TransportFactory | None = None,
        *,
        api_key: str | None = None,
        settings: ConversationSettings | None = None,
        tools: ToolRegistry | None = None,
        audio_sink: AudioSink | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.config = config or RealtimeConfig()
        self.settings = settings or ConversationSettings()
        self.tools = tools
        self._api_key = api_key
        self._transport_factory = transport_factory
        self._audio_sink = audio_sink
        self._sleep = sleep

        self._connection = ConnectionState.DISCONNECTED
        self._turn = TurnState.IDLE
        self._lock = asyncio.Lock()
        self._transport: RealtimeTransport | None = None
        self._frames: AsyncIterator[dict[str, Any]] | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._playback_task: asyncio.Task[None] | None = None
        self._tool_tasks: set[asyncio.Task[None]] = set()
        self._side_tasks: set[asyncio.Task[None]] = set()
        self._events: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._ending = False

        self._items: list[ConversationItem] = []
        self._decoder: RealtimeDecoder | None = None
        self._assembler = ToolCallAssembler()
        self._playback: asyncio.Queue[bytes] = asyncio.Queue()
        self._pending_audio = AudioBuffer(self.settings.max_audio_buffer_bytes)
        self._vad = EnergyVAD(
            threshold=self.settings.local_vad_threshold,
            silence_duration_s=self.settings.silence_duration_s,
            sample_rate=self.config.sample_rate,
        )
        self._audio_since_commit = False
        self._audio_done = False
        self._playing = False
        self._followup_pending = False
        self._speaking_item_id: str | None = None
        self._played_bytes = 0
        self._audio_level = 0.0
        self.reconnect_attempts = 0
        self.session_id: str | None = None

    # -- read-only state -----------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection

    @property
    def turn_state(self) -> TurnState:
        return self._turn

    @property
    def items(self) -> list[ConversationItem]:
        return list(self._items)

    @property
    def audio_level(self) -> float:
        return self._audio_level

    @property
    def buffered_audio_bytes(self) -> int:
        return len(self._pending_audio)

    # -- events ----------------------------------------------------------------

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield session events until the session ends."""
        while True:
            item = await self._events.get()
            if item is _END:
                return
            yield item

    def _emit(self, type_: str, payload: Any = None) -> None:
        if not self._closed:
            self._events.put_nowait(SessionEvent(type_, payload))

    def _set_connection(self, new: ConnectionState) -> None:
        old, self._connection = self._connection, new
        if old is not new:
            logger.info("Realtime connection %s -> %s", old.value, new.value)
            self._emit("state_changed", {"from": old, "to": new})

    def _set_turn(self, new: TurnState) -> None:
        old, self._turn = self._turn, new
        if old is not new:
            logger.debug("Realtime turn %s -> %s", old.value, new.value)
            self._emit("turn_changed", {"from": old, "to": new})

    # -- lifecycle -------------------------------------------------------------

    async def start(
        self,
        model: str | None = None,
        voice: str | None = None,
        instructions: str | None = None,
    ) -> None:
        """Connect, configure the session and wait for the server's acknowledgment.

        Raises ``RealtimeConnectionError`` when the transport rejects the
        connection or the acknowledgment does not arrive in time.
        """
        async with self._lock:
            if self._connection not in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                raise InvalidInputError(
                    f"Session already {self._connection.value}",
                    hint="Call end() before starting again.",
                )
            overrides: dict[str, Any] = {}
            if model is not None:
                overrides["model"] = model
            if voice is not None:
                overrides["voice"] = voice
            if instructions is not None:
                overrides["instructions"] = instructions
            if overrides:
                self.config = replace(self.config, **overrides)
            if self._closed:
                self._events = asyncio.Queue()
                self._closed = False
            self._ending = False
            self.reconnect_attempts = 0

            self._set_connection(ConnectionState.CONNECTING)
            try:
                await self._open()
            except BaseException:
                self._set_connection(ConnectionState.DISCONNECTED)
                raise
            self._set_connection(ConnectionState.CONNECTED)
            if self._playback_task is not None:
                # Left over from a session that failed without end().
                self._playback_task.cancel()
            self._receive_task = asyncio.create_task(self._receive_loop())
            self._playback_task = asyncio.create_task(self._playback_loop())

    async def end(self) -> None:
        """Disconnect and stop all background work. Conversation items are kept."""
        self._ending = True
        current = asyncio.current_task()
        tasks = [
            t
            for t in (
                self._receive_task, self._playback_task, *self._tool_tasks, *self._side_tasks
            )
            if t is not None and t is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        async with self._lock:
            self._receive_task = None
            self._playback_task = None
            self._tool_tasks.clear()
            self._side_tasks.clear()

            await self._close_transport()
            self._abandon_response()
            self._pending_audio.clear()
            self._vad.reset()
            self._audio_since_commit = False

            self._set_turn(TurnState.IDLE)
            self._set_connection(ConnectionState.DISCONNECTED)
            self._closed = True
            self._events.put_nowait(_END)

    async def __aenter__(self) -> RealtimeSession:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.end()

    # -- listening & audio -------------------------------------------------------

    async def start_listening(self) -> bool:
        """Enter the listening turn. A no-op unless the turn is idle."""
        async with self._lock:
            if self._turn is not TurnState.IDLE:
                return False
            self._vad.reset()
            self._set_turn(TurnState.LISTENING)
            return True

    async def stop_listening(self) -> bool:
        """Leave the listening turn. A no-op unless the turn is listening.

        Buffered audio is sent when connected, kept for the reconnect when
        ``buffer_while_disconnected`` is set, and discarded otherwise. If
        uncommitted audio was sent, the turn is committed and a response
        requested.
        """
        async with self._lock:
            if self._turn is not TurnState.LISTENING:
                return False
            if self._connection is ConnectionState.CONNECTED:
                await self._flush_pending_audio()
            elif not self.settings.buffer_while_disconnected:
                self._pending_audio.clear()
            self._vad.reset()
            if self._audio_since_commit and self._connection is ConnectionState.CONNECTED:
                await self._commit_turn()
            else:
                self._set_turn(TurnState.IDLE)
            return True

    async def send_audio(self, data: bytes) -> bool:
        """Feed captured PCM16 audio. Returns False when the chunk is ignored.

        Audio is only accepted while listening. With local turn detection a
        chunk is forwarded only while voice is detected or inside the
        trailing silence window; the end of that window commits the turn.
        """
        if self._turn is not TurnState.LISTENING or not data:
            return False
        self._audio_level = rms_level(data)

        if self.config.turn_detection is TurnDetection.LOCAL:
            result = self._vad.process(data)
            if result.should_forward:
                await self._forward_audio(data)
            if (
                result.speech_ended
                and self._audio_since_commit
                and self._connection is ConnectionState.CONNECTED
            ):
                async with self._lock:
                    if self._turn is TurnState.LISTENING:
                        await self._commit_turn()
            return result.should_forward

        await self._forward_audio(data)
        return True

    async def toggle_recording(self) -> bool:
        """Stop listening if listening, otherwise try to start. Returns True when now listening."""
        if self._turn is TurnState.LISTENING:
            await self.stop_listening()
        else:
            await self.start_listening()
        return self._turn is TurnState.LISTENING

    async def commit_audio(self) -> None:
        """Commit the server-side input buffer as a user item without requesting a response."""
        await self._send(events.input_audio_commit())
        self._audio_since_commit = False

    async def clear_audio_buffer(self) -> None:
        """Discard uncommitted input audio, both buffered here and on the server."""
        self._pending_audio.clear()
        self._vad.reset()
        self._audio_since_commit = False
        await self._send(events.input_audio_clear())

    async def _forward_audio(self, data: bytes) -> None:
        if self._connection is ConnectionState.CONNECTED and self._transport is not None:
            try:
                await self._transport.send(events.input_audio_append(encode_pcm16(data)))
                self._audio_since_commit = True
                return
            except RealtimeConnectionError as e:
                logger.warning("Audio send failed, connection dropped: %s", e)
        if self.settings.buffer_while_disconnected:
            self._pending_audio.append(data)
        else:
            logger.debug("Discarding %d bytes of audio while disconnected", len(data))

    async def _flush_pending_audio(self) -> None:
        if not self._pending_audio:
            return
        data = self._pending_audio.drain()
        await self._send(events.input_audio_append(encode_pcm16(data)))
        self._audio_since_commit = True

    async def _commit_turn(self) -> None:
        await self._send(events.input_audio_commit())
        await self._send(events.response_create())
        self._audio_since_commit = False
        self._set_turn(TurnState.PROCESSING)

    # -- text & responses ---------------------------------------------------------

    async def send_text(self, text: str) -> ConversationItem:
        """Add a user text message and request a response."""
        if not text:
            raise InvalidInputError("Text must be non-empty")
        item = ConversationItem.user_text(text)
        await self._send(events.conversation_item_create(item))
        self._items.append(item)
        self._emit("item_added", item)
        await self.create_response()
        return item

    async def create_response(self, **overrides: Any) -> None:
        await self._send(events.response_create(**overrides))
        self._set_turn(TurnState.PROCESSING)

    async def cancel_response(self) -> None:
        """Interrupt the current response and stop playback."""
        await self._send(events.response_cancel())
        self._abandon_response()
        self._set_turn(TurnState.IDLE)

    # -- history ------------------------------------------------------------------

    async def truncate_at(self, item_id: str) -> list[ConversationItem]:
        """Drop *item_id* and every later item; earlier items are untouched.

        Removed items are also deleted server-side when connected. Returns
        the removed items.
        """
        async with self._lock:
            index = next((i for i, it in enumerate(self._items) if it.id == item_id), None)
            if index is None:
                raise InvalidInputError(f"Unknown conversation item: {item_id!r}")
            removed = self._items[index:]
            del self._items[index:]
            if self._connection is ConnectionState.CONNECTED:
                for item in removed:
                    await self._send(events.conversation_item_delete(item.id))
            return removed

    async def clear_conversation(self) -> None:
        if self._items:
            await self.truncate_at(self._items[0].id)

    def export_as_text(self) -> str:
        """Message items as ``role: text`` lines, in conversation order."""
        return "\n".join(
            f"{it.role}: {it.text}" for it in self._items if it.type == "message" and it.text
        )

    # -- connection internals --------------------------------------------------------

    def _make_transport(self) -> RealtimeTransport:
        if self._transport_factory is not None:
            return self._transport_factory(self.config)
        env_var = api_key_env_var("openai")
        api_key = self._api_key or (os.getenv(env_var) if env_var else None)
        if not api_key:
            raise ConfigurationError(
                "No API key for the realtime session",
                hint=f"Set {env_var} or pass api_key=...",
            )
        return WebSocketTransport(
            self.config, api_key=api_key, open_timeout_s=self.settings.connect_timeout_s
        )

    async def _open(self) -> None:
        transport = self._make_transport()
        try:
            await transport.connect()
            frames = transport.receive()
            tools = self.tools.specs() if self.tools is not None else ()
            await transport.send(events.session_update(self.config.session_payload(tools)))
            await asyncio.wait_for(
                self._await_session_created(frames), timeout=self.settings.connect_timeout_s
            )
        except asyncio.TimeoutError as e:
            await _close_quietly(transport)
            raise RealtimeConnectionError(
                f"No session.created within {self.settings.connect_timeout_s}s"
            ) from e
        except BaseException:
            await _close_quietly(transport)
            raise
        self._transport = transport
        self._frames = frames

    async def _await_session_created(self, frames: AsyncIterator[dict[str, Any]]) -> None:
        async for frame in frames:
            kind = frame.get("type")
            if kind == "session.created":
                session = frame.get("session")
                if isinstance(session, dict):
                    self.session_id = session.get("id")
                return
            if kind == "error":
                error = frame.get("error") or {}
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise RealtimeConnectionError(f"Session rejected: {message}")
        raise RealtimeConnectionError("Connection closed before session.created")

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        self._frames = None
        if transport is not None:
            await _close_quietly(transport)

    async def _send(self, event: dict[str, Any]) -> None:
        if self._transport is None or self._connection is not ConnectionState.CONNECTED:
            raise RealtimeConnectionError(
                f"Cannot send {event['type']}: session is {self._connection.value}"
            )
        await self._transport.send(event)

    async def _receive_loop(self) -> None:
        while True:
            frames = self._frames
            if frames is None:
                return
            try:
                async for frame in frames:
                    try:
                        self._handle_frame(frame)
                    except InvalidInputError as e:
                        logger.warning("Dropping malformed realtime frame: %s", e)
                        self._emit("error", e)
                reason: BaseException | None = None
            except RealtimeConnectionError as e:
                reason = e
            if self._ending:
                return
            logger.warning("Realtime connection lost: %s", reason or "closed by server")
            if not await self._reconnect(reason):
                return

    async def _reconnect(self, reason: BaseException | None) -> bool:
        async with self._lock:
            if self._ending:
                return False
            await self._close_transport()
            if not self.settings.auto_reconnect:
                self._fail(reason or RealtimeConnectionError("Connection closed"))
                return False
            self._set_connection(ConnectionState.RECONNECTING)
            last: BaseException | None = reason
            for attempt in range(1, self.settings.max_reconnect_attempts + 1):
                self.reconnect_attempts = attempt
                logger.warning(
                    "Reconnecting (attempt %d/%d) in %.1fs",
                    attempt,
                    self.settings.max_reconnect_attempts,
                    self.settings.reconnect_delay_s,
                )
                await self._sleep(self.settings.reconnect_delay_s)
                try:
                    await self._open()
                except (RealtimeConnectionError, ConfigurationError) as e:
                    last = e
                    continue
                self._set_connection(ConnectionState.CONNECTED)
                # Frames for a response begun on the old socket never arrive here.
                self._abandon_response()
                if self._turn is not TurnState.LISTENING:
                    self._set_turn(TurnState.IDLE)
                try:
                    await self._flush_pending_audio()
                except RealtimeConnectionError as e:
                    logger.warning("Could not flush buffered audio: %s", e)
                return True
            self._fail(
                RealtimeConnectionError(
                    f"Reconnect failed after {self.settings.max_reconnect_attempts} attempts: "
                    f"{last}"
                )
            )
            return False

    def _fail(self, error: BaseException) -> None:
        self._drain_playback()
        self._pending_audio.clear()
        self._set_turn(TurnState.IDLE)
        self._set_connection(ConnectionState.ERROR)
        self._emit("fatal", error)

    # -- server frames -----------------------------------------------------------------

    def _handle_frame(self, frame: dict[str, Any]) -> None:
        kind = frame.get("type")
        logger.debug("Realtime frame %s", kind)

        if kind == "conversation.item.created":
            raw = frame.get("item")
            if isinstance(raw, dict):
                item = ConversationItem.from_wire(raw)
                if all(it.id != item.id for it in self._items):
                    self._items.append(item)
                    self._emit("item_added", item)
        elif kind == "response.output_item.done":
            raw = frame.get("item")
            if isinstance(raw, dict) and raw.get("id"):
                # The finished item carries the full transcript.
                done = ConversationItem.from_wire(raw)
                if any(it.id == done.id for it in self._items):
                    self._items = [done if it.id == done.id else it for it in self._items]
                else:
                    self._items.append(done)
                    self._emit("item_added", done)
        elif kind == "conversation.item.deleted":
            item_id = frame.get("item_id")
            self._items = [it for it in self._items if it.id != item_id]
        elif kind == "input_audio_buffer.speech_started":
            if self._turn is TurnState.SPEAKING:
                # Barge-in: the user talks over playback.
                self._truncate_unheard_audio()
                self._drain_playback()
                self._set_turn(TurnState.LISTENING)
        elif kind == "input_audio_buffer.speech_stopped":
            if self._turn is TurnState.LISTENING:
                self._set_turn(TurnState.PROCESSING)
        elif kind == "input_audio_buffer.committed":
            self._audio_since_commit = False
        elif kind == "response.created":
            self._decoder = RealtimeDecoder()
            self._audio_done = False
            self._followup_pending = False
            if self._turn in (TurnState.IDLE, TurnState.LISTENING):
                self._set_turn(TurnState.PROCESSING)
        elif kind == "response.audio.delta":
            chunk = decode_pcm16(frame.get("delta") or "")
            item_id = frame.get("item_id")
            if item_id and item_id != self._speaking_item_id:
                self._speaking_item_id = item_id
                self._played_bytes = 0
            if self._turn is TurnState.PROCESSING:
                self._set_turn(TurnState.SPEAKING)
            if self._turn is TurnState.SPEAKING:
                self._playback.put_nowait(chunk)
            self._emit("audio_delta", chunk)
        elif kind == "response.audio.done":
            self._audio_done = True
            self._maybe_finish_playback()

        if self._decoder is None or self._decoder.finished:
            self._decoder = RealtimeDecoder()
        for delta in self._decoder.decode_payload(kind, frame):
            self._on_delta(delta, kind)

    def _on_delta(self, delta: CanonicalDelta, kind: Any) -> None:
        if delta.kind is DeltaKind.TEXT:
            transcript = kind == "response.audio_transcript.delta"
            self._emit("transcript_delta" if transcript else "text_delta", delta.content)
        elif delta.kind is DeltaKind.TOOL_CALL and delta.tool_call is not None:
            try:
                call = self._assembler.add(delta.tool_call)
            except InvalidInputError as e:
                result = ToolResult(
                    delta.tool_call.id, delta.tool_call.name or "", ToolStatus.ERROR, error=str(e)
                )
                self._spawn_tool(self._answer_tool(result))
                return
            if call is not None:
                self._spawn_tool(self._run_tool(call))
        elif delta.kind is DeltaKind.ERROR:
            logger.warning("Realtime server error: %s", delta.content)
            self._emit("error", delta.error)
        elif delta.kind is DeltaKind.DONE:
            self._decoder = None
            if self._tool_tasks or self._followup_pending:
                return
            if self._turn is TurnState.SPEAKING:
                self._audio_done = True
                self._maybe_finish_playback()
            elif self._turn is TurnState.PROCESSING:
                self._set_turn(TurnState.IDLE)

    # -- tools -------------------------------------------------------------------------

    def _spawn_tool(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, call: ToolCall) -> None:
        if self.tools is None:
            result = ToolResult(
                call.id, call.name, ToolStatus.NOT_FOUND, error="No tools are registered"
            )
        else:
            result = await self.tools.execute_call(call, timeout_s=self.settings.tool_timeout_s)
        await self._answer_tool(result)

    async def _answer_tool(self, result: ToolResult) -> None:
        self._emit("tool_result", result)
        item = ConversationItem.function_output(result.call_id or "", result.output_text())
        try:
            await self._send(events.conversation_item_create(item))
            self._followup_pending = True
            await self._send(events.response_create())
        except RealtimeConnectionError as e:
            logger.warning("Could not return tool result for %s: %s", result.tool_name, e)
            # No follow-up response will come; release the turn unless other tools still run.
            self._followup_pending = False
            others = self._tool_tasks - {asyncio.current_task()}
            if not others and self._turn in (TurnState.PROCESSING, TurnState.SPEAKING):
                self._drain_playback()
                self._set_turn(TurnState.IDLE)

    # -- playback ----------------------------------------------------------------------

    async def _playback_loop(self) -> None:
        while True:
            chunk = await self._playback.get()
            self._playing = True
            try:
                if self._audio_sink is not None:
                    result = self._audio_sink(chunk)
                    if inspect.isawaitable(result):
                        await result
                self._played_bytes += len(chunk)
            finally:
                self._playing = False
            self._maybe_finish_playback()

    def _maybe_finish_playback(self) -> None:
        if (
            self._turn is TurnState.SPEAKING
            and self._audio_done
            and self._playback.empty()
            and not self._playing
            and not self._tool_tasks
            and not self._followup_pending
        ):
            self._set_turn(TurnState.IDLE)

    def _abandon_response(self) -> None:
        """Forget the in-flight response: playback, partial deltas and pending follow-ups."""
        self._drain_playback()
        self._decoder = None
        self._assembler = ToolCallAssembler()
        self._followup_pending = False
        self._audio_done = False
        self._speaking_item_id = None
        self._played_bytes = 0

    def _truncate_unheard_audio(self) -> None:
        if self._speaking_item_id is None:
            return
        # PCM16 mono: two bytes per sample.
        heard_ms = int(self._played_bytes * 1000 // (2 * self.config.sample_rate))
        self._send_later(
            events.conversation_item_truncate(self._speaking_item_id, audio_end_ms=heard_ms)
        )

    def _send_later(self, event: dict[str, Any]) -> None:
        async def _send_quietly() -> None:
            try:
                await self._send(event)
            except RealtimeConnectionError as e:
                logger.warning("Could not send %s: %s", event["type"], e)

        task = asyncio.ensure_future(_send_quietly())
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    def _drain_playback(self) -> None:
        while True:
            try:
                self._playback.get_nowait()
            except asyncio.QueueEmpty:
                return


async def _close_quietly(transport: RealtimeTransport) -> None:
    try:
        await transport.close()
    except RealtimeConnectionError as e:
        logger.debug("Ignoring error while closing transport: %s", e)
