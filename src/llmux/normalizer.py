"""Normalize provider stream grammars into CanonicalDelta sequences.

Each provider speaks its own event grammar over SSE (or WebSocket frames for
realtime). A ``StreamDecoder`` owns the per-stream state for one grammar:
JSON fragment buffering, open tool calls, usage, and finish reason. The
``normalize`` driver feeds it events and wraps the output in ``guard_stream``
so every stream ends with exactly one DONE.
"""

from __future__ import annotations

import enum
import json
import logging
from typing import TYPE_CHECKING, Any

from llmux.deltas import CanonicalDelta, guard_stream
from llmux.errors import APIError, AuthenticationError, RateLimitError
from llmux.sse import SSEEvent, iter_events
from llmux.types import Channel, FinishReason, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Mapping

logger = logging.getLogger(__name__)

# Unparseable JSON is buffered while it may still be a prefix of a valid
# payload. Past this size it is treated as a corrupted stream.
_MAX_FRAGMENT_BUFFER = 1024 * 1024


class Grammar(str, enum.Enum):
    """Wire grammar selector."""

    OPENAI_CHAT = "openai_chat"
    OPENAI_COMPATIBLE = "openai_compatible"
    OPENAI_RESPONSES = "openai_responses"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    REALTIME = "realtime"


def provider_error(provider: str, body: Any) -> APIError:
    """Build an APIError from an in-stream error object."""
    if not isinstance(body, dict):
        return APIError(f"{provider} stream error: {body}", provider=provider, phase="stream")

    message = body.get("message") or json.dumps(body, sort_keys=True)
    code = body.get("code")
    status = code if isinstance(code, int) and 100 <= code <= 599 else None
    kind = " ".join(
        str(v) for v in (body.get("type"), body.get("status"), code) if v is not None
    ).lower()

    err_cls: type[APIError] = APIError
    retryable: bool | None = None
    if status == 429 or "rate_limit" in kind or "resource_exhausted" in kind:
        err_cls, retryable = RateLimitError, True
    elif status in {401, 403} or any(
        k in kind for k in ("authentication", "permission", "unauthenticated", "invalid_api_key")
    ):
        err_cls, retryable = AuthenticationError, False
    elif "overloaded" in kind or "server_error" in kind or "unavailable" in kind:
        retryable = True
    return err_cls(
        f"{provider} stream error: {message}",
        retryable=retryable,
        status_code=status,
        provider=provider,
        phase="stream",
    )


class StreamDecoder:
    """Per-stream decoding state shared by all grammars.

    Subclasses implement ``handle(event_name, payload)`` for one parsed JSON
    payload and return the deltas it produces.
    """

    provider = "unknown"

    def __init__(self, *, tag_final: bool = False) -> None:
        self._tag_final = tag_final
        self._buffer = ""
        self._open_calls: dict[str, str] = {}
        self._saw_tool_call = False
        self.usage: Usage | None = None
        self.finish_reason: FinishReason | None = None
        self.finished = False

    # -- entry points -------------------------------------------------------

    def decode(self, event: SSEEvent) -> list[CanonicalDelta]:
        """Decode one SSE event."""
        if self.finished:
            return []
        data = event.data.strip()
        if not data:
            return []
        if data == "[DONE]":
            if self._buffer:
                return self._fail_fragment()
            return self._done()

        candidate = self._buffer + data
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            if self._buffer and _parses(data):
                # The buffered prefix can never complete now.
                return self._fail_fragment()
            if len(candidate) > _MAX_FRAGMENT_BUFFER:
                return self._fail_fragment()
            logger.debug("Buffering partial %s payload (%d chars)", self.provider, len(candidate))
            self._buffer = candidate
            return []
        self._buffer = ""
        return self.decode_payload(event.event, payload)

    def decode_payload(self, event_name: str | None, payload: Any) -> list[CanonicalDelta]:
        """Decode one already-parsed payload (used directly for WebSocket frames)."""
        if self.finished:
            return []
        if not isinstance(payload, dict):
            return []
        return self.handle(event_name, payload)

    def finish(self) -> list[CanonicalDelta]:
        """Flush state at end of input."""
        if self.finished:
            return []
        if self._buffer:
            return self._fail_fragment()
        return self._done()

    def handle(self, event_name: str | None, payload: dict[str, Any]) -> list[CanonicalDelta]:
        raise NotImplementedError

    # -- helpers for subclasses --------------------------------------------

    def _text(self, content: Any) -> list[CanonicalDelta]:
        if not isinstance(content, str) or not content:
            return []
        channel = Channel.FINAL if self._tag_final else None
        return [CanonicalDelta.text_delta(content, channel=channel)]

    def _reasoning(self, content: Any) -> list[CanonicalDelta]:
        if not isinstance(content, str) or not content:
            return []
        return [CanonicalDelta.reasoning_delta(content)]

    def _call_fragment(
        self, call_id: str, *, name: str | None = None, arguments: str = ""
    ) -> list[CanonicalDelta]:
        self._saw_tool_call = True
        self._open_calls[call_id] = self._open_calls.get(call_id, "") + arguments
        return [CanonicalDelta.tool_call_delta(call_id, name=name, arguments=arguments)]

    def _complete_call(
        self, call_id: str, *, name: str | None = None, full_arguments: str | None = None
    ) -> list[CanonicalDelta]:
        """Close a call; emit only the unseen suffix of *full_arguments*."""
        self._saw_tool_call = True
        seen = self._open_calls.pop(call_id, None)
        suffix = ""
        if full_arguments is not None:
            if seen is None:
                suffix = full_arguments
            elif full_arguments.startswith(seen):
                suffix = full_arguments[len(seen) :]
        return [
            CanonicalDelta.tool_call_delta(
                call_id, name=name, arguments=suffix, is_complete=True
            )
        ]

    def _complete_open_calls(self) -> list[CanonicalDelta]:
        out: list[CanonicalDelta] = []
        for call_id in list(self._open_calls):
            out.extend(self._complete_call(call_id))
        return out

    def _fail(self, body: Any) -> list[CanonicalDelta]:
        err = provider_error(self.provider, body)
        logger.debug("%s signaled an in-stream error: %s", self.provider, err)
        self.finished = True
        return [
            CanonicalDelta.error_delta(err),
            CanonicalDelta.done_delta(finish_reason=FinishReason.ERROR, usage=self.usage),
        ]

    def _fail_fragment(self) -> list[CanonicalDelta]:
        preview = self._buffer[:80]
        self._buffer = ""
        self.finished = True
        err = APIError(
            f"{self.provider} stream ended inside a malformed JSON payload: {preview!r}",
            provider=self.provider,
            phase="stream",
        )
        return [
            CanonicalDelta.error_delta(err),
            CanonicalDelta.done_delta(finish_reason=FinishReason.ERROR, usage=self.usage),
        ]

    def _done(self) -> list[CanonicalDelta]:
        out = self._complete_open_calls()
        self.finished = True
        reason = self.finish_reason
        if self._saw_tool_call and reason in (None, FinishReason.STOP):
            reason = FinishReason.TOOL_CALLS
        out.append(CanonicalDelta.done_delta(finish_reason=reason, usage=self.usage))
        return out


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def _int(value: Any) -> int:
    return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, dict) else {}


class OpenAIChatDecoder(StreamDecoder):
    """Chat-completions grammar (OpenAI and compatible servers)."""

    provider = "openai"

    def __init__(self, *, tag_final: bool = False, provider: str | None = None) -> None:
        super().__init__(tag_final=tag_final)
        if provider:
            self.provider = provider
        self._ids_by_index: dict[int, str] = {}

    def handle(self, event_name: str | None, payload: dict[str, Any]) -> list[CanonicalDelta]:
        if "error" in payload:
            return self._fail(payload["error"])

        usage = payload.get("usage")
        if isinstance(usage, dict):
            details = _mapping(usage.get("completion_tokens_details"))
            reasoning = details.get("reasoning_tokens")
            self.usage = Usage(
                input_tokens=_int(usage.get("prompt_tokens")),
                output_tokens=_int(usage.get("completion_tokens")),
                reasoning_tokens=_int(reasoning) if reasoning is not None else None,
            )

        out: list[CanonicalDelta] = []
        for choice in payload.get("choices") or []:
            delta = _mapping(_mapping(choice).get("delta"))
            out.extend(self._reasoning(delta.get("reasoning_content") or delta.get("reasoning")))
            out.extend(self._text(delta.get("content")))
            for tc in delta.get("tool_calls") or []:
                out.extend(self._tool_call(_mapping(tc)))
            finish = _mapping(choice).get("finish_reason")
            if finish:
                self.finish_reason = FinishReason.from_provider(finish)
                out.extend(self._complete_open_calls())
        return out

    def _tool_call(self, tc: Mapping[str, Any]) -> list[CanonicalDelta]:
        out: list[CanonicalDelta] = []
        index = tc.get("index", 0)
        index = index if isinstance(index, int) else 0
        call_id = tc.get("id") or None
        known = self._ids_by_index.get(index)
        if call_id and known and call_id != known and known in self._open_calls:
            # Same slot reused for a new call: the previous one is finished.
            out.extend(self._complete_call(known))
        call_id = call_id or known or f"call_{index}"
        self._ids_by_index[index] = call_id
        fn = _mapping(tc.get("function"))
        name = fn.get("name") or None
        arguments = fn.get("arguments") or ""
        out.extend(self._call_fragment(call_id, name=name, arguments=arguments))
        return out


class OpenAIResponsesDecoder(StreamDecoder):
    """OpenAI Responses API grammar."""

    provider = "openai"

    def __init__(self, *, tag_final: bool = False) -> None:
        super().__init__(tag_final=tag_final)
        self._call_for_item: dict[str, str] = {}
        self._names: dict[str, str] = {}

    def handle(self, event_name: str | None, payload: dict[str, Any]) -> list[CanonicalDelta]:
        kind = payload.get("type") or event_name
        if kind == "response.output_text.delta":
            return self._text(payload.get("delta"))
        if kind in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            return self._reasoning(payload.get("delta"))
        if kind == "response.output_item.added":
            item = _mapping(payload.get("item"))
            if item.get("type") != "function_call":
                return []
            call_id = item.get("call_id") or item.get("id") or ""
            if item.get("id"):
                self._call_for_item[item["id"]] = call_id
            name = item.get("name") or None
            if name:
                self._names[call_id] = name
            return self._call_fragment(call_id, name=name, arguments=item.get("arguments") or "")
        if kind == "response.function_call_arguments.delta":
            call_id = self._resolve(payload)
            return self._call_fragment(call_id, arguments=payload.get("delta") or "")
        if kind == "response.function_call_arguments.done":
            call_id = self._resolve(payload)
            return self._complete_call(
                call_id,
                name=self._names.get(call_id),
                full_arguments=payload.get("arguments"),
            )
        if kind == "response.output_item.done":
            item = _mapping(payload.get("item"))
            call_id = self._call_for_item.get(item.get("id") or "", item.get("call_id") or "")
            if item.get("type") == "function_call" and call_id in self._open_calls:
                return self._complete_call(
                    call_id, name=item.get("name"), full_arguments=item.get("arguments")
                )
            return []
        if kind in ("response.completed", "response.incomplete"):
            response = _mapping(payload.get("response"))
            self._read_usage(response)
            if kind == "response.incomplete":
                reason = _mapping(response.get("incomplete_details")).get("reason")
                self.finish_reason = FinishReason.from_provider(reason) or FinishReason.OTHER
            else:
                self.finish_reason = FinishReason.STOP
            return self._done()
        if kind == "response.failed":
            response = _mapping(payload.get("response"))
            return self._fail(response.get("error") or {"message": "response failed"})
        if kind == "error":
            return self._fail(payload.get("error") or payload)
        return []

    def _resolve(self, payload: Mapping[str, Any]) -> str:
        item_id = payload.get("item_id") or ""
        return self._call_for_item.get(item_id) or payload.get("call_id") or item_id

    def _read_usage(self, response: Mapping[str, Any]) -> None:
        usage = response.get("usage")
        if not isinstance(usage, dict):
            return
        details = _mapping(usage.get("output_tokens_details"))
        reasoning = details.get("reasoning_tokens")
        self.usage = Usage(
            input_tokens=_int(usage.get("input_tokens")),
            output_tokens=_int(usage.get("output_tokens")),
            reasoning_tokens=_int(reasoning) if reasoning is not None else None,
        )


class AnthropicDecoder(StreamDecoder):
    """Anthropic Messages streaming grammar."""

    provider = "anthropic"

    def __init__(self, *, tag_final: bool = False) -> None:
        super().__init__(tag_final=tag_final)
        self._calls_by_block: dict[int, str] = {}
        self._names: dict[str, str] = {}

    def handle(self, event_name: str | None, payload: dict[str, Any]) -> list[CanonicalDelta]:
        kind = payload.get("type") or event_name
        if kind == "message_start":
            usage = _mapping(_mapping(payload.get("message")).get("usage"))
            self.usage = Usage(
                input_tokens=_int(usage.get("input_tokens")),
                output_tokens=_int(usage.get("output_tokens")),
            )
            return []
        if kind == "content_block_start":
            index = payload.get("index", 0)
            block = _mapping(payload.get("content_block"))
            block_type = block.get("type")
            if block_type == "tool_use":
                call_id = block.get("id") or f"toolu_{index}"
                self._calls_by_block[index] = call_id
                name = block.get("name") or ""
                self._names[call_id] = name
                return self._call_fragment(call_id, name=name)
            if block_type == "thinking":
                return self._reasoning(block.get("thinking"))
            if block_type == "text":
                return self._text(block.get("text"))
            return []
        if kind == "content_block_delta":
            delta = _mapping(payload.get("delta"))
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return self._text(delta.get("text"))
            if delta_type == "thinking_delta":
                return self._reasoning(delta.get("thinking"))
            if delta_type == "input_json_delta":
                call_id = self._calls_by_block.get(payload.get("index", 0))
                if call_id is None:
                    return []
                return self._call_fragment(call_id, arguments=delta.get("partial_json") or "")
            # signature_delta authenticates thinking blocks; it is not output.
            return []
        if kind == "content_block_stop":
            call_id = self._calls_by_block.pop(payload.get("index", 0), None)
            if call_id is None:
                return []
            return self._complete_call(call_id, name=self._names.get(call_id))
        if kind == "message_delta":
            delta = _mapping(payload.get("delta"))
            if delta.get("stop_reason"):
                self.finish_reason = FinishReason.from_provider(delta["stop_reason"])
            usage = _mapping(payload.get("usage"))
            if usage:
                base = self.usage or Usage()
                self.usage = Usage(
                    input_tokens=_int(usage.get("input_tokens")) or base.input_tokens,
                    output_tokens=_int(usage.get("output_tokens")),
                )
            return []
        if kind == "message_stop":
            return self._done()
        if kind == "error":
            return self._fail(payload.get("error") or payload)
        return []


class GoogleDecoder(StreamDecoder):
    """Gemini ``streamGenerateContent?alt=sse`` grammar."""

    provider = "gemini"

    def __init__(self, *, tag_final: bool = False) -> None:
        super().__init__(tag_final=tag_final)
        self._call_seq = 0

    def handle(self, event_name: str | None, payload: dict[str, Any]) -> list[CanonicalDelta]:
        if "error" in payload:
            return self._fail(payload["error"])

        out: list[CanonicalDelta] = []
        for candidate in payload.get("candidates") or []:
            candidate = _mapping(candidate)
            for part in _mapping(candidate.get("content")).get("parts") or []:
                part = _mapping(part)
                if part.get("thought") is True:
                    out.extend(self._reasoning(part.get("text")))
                else:
                    out.extend(self._text(part.get("text")))
                fc = part.get("functionCall")
                if isinstance(fc, dict):
                    self._call_seq += 1
                    call_id = fc.get("id") or f"call_{self._call_seq}"
                    arguments = json.dumps(fc.get("args") or {}, separators=(",", ":"))
                    out.extend(
                        self._complete_call(
                            call_id, name=fc.get("name") or "", full_arguments=arguments
                        )
                    )
            reason = candidate.get("finishReason")
            if reason:
                self.finish_reason = FinishReason.from_provider(reason)

        usage = payload.get("usageMetadata")
        if isinstance(usage, dict):
            prompt = _int(usage.get("promptTokenCount"))
            output = usage.get("candidatesTokenCount")
            if output is None:
                output = max(0, _int(usage.get("totalTokenCount")) - prompt)
            thoughts = usage.get("thoughtsTokenCount")
            self.usage = Usage(
                input_tokens=prompt,
                output_tokens=_int(output),
                reasoning_tokens=_int(thoughts) if thoughts is not None else None,
            )
        return out


class RealtimeDecoder(StreamDecoder):
    """Realtime server events for one model response."""

    provider = "openai-realtime"

    def __init__(self, *, tag_final: bool = False) -> None:
        super().__init__(tag_final=tag_final)
        self._names: dict[str, str] = {}

    def handle(self, event_name: str | None, payload: dict[str, Any]) -> list[CanonicalDelta]:
        kind = payload.get("type") or event_name
        if kind in ("response.text.delta", "response.audio_transcript.delta"):
            return self._text(payload.get("delta"))
        if kind == "response.output_item.added":
            item = _mapping(payload.get("item"))
            if item.get("type") == "function_call" and item.get("call_id"):
                self._names[item["call_id"]] = item.get("name") or ""
                return self._call_fragment(item["call_id"], name=item.get("name"))
            return []
        if kind == "response.function_call_arguments.delta":
            call_id = payload.get("call_id") or payload.get("item_id") or ""
            return self._call_fragment(call_id, arguments=payload.get("delta") or "")
        if kind == "response.function_call_arguments.done":
            call_id = payload.get("call_id") or payload.get("item_id") or ""
            return self._complete_call(
                call_id,
                name=payload.get("name") or self._names.get(call_id),
                full_arguments=payload.get("arguments"),
            )
        if kind == "response.done":
            response = _mapping(payload.get("response"))
            usage = _mapping(response.get("usage"))
            if usage:
                self.usage = Usage(
                    input_tokens=_int(usage.get("input_tokens")),
                    output_tokens=_int(usage.get("output_tokens")),
                )
            status = response.get("status")
            if status == "failed":
                details = _mapping(response.get("status_details"))
                return self._fail(details.get("error") or {"message": "response failed"})
            if status in (None, "completed"):
                self.finish_reason = FinishReason.STOP
            else:
                self.finish_reason = FinishReason.from_provider(status)
            return self._done()
        if kind == "error":
            return self._fail(payload.get("error") or payload)
        return []


def make_decoder(grammar: Grammar | str, *, tag_final: bool = False) -> StreamDecoder:
    """Return a fresh decoder for *grammar*."""
    grammar = Grammar(grammar)
    if grammar is Grammar.OPENAI_CHAT:
        return OpenAIChatDecoder(tag_final=tag_final)
    if grammar is Grammar.OPENAI_COMPATIBLE:
        return OpenAIChatDecoder(tag_final=tag_final, provider="openai-compatible")
    if grammar is Grammar.OPENAI_RESPONSES:
        return OpenAIResponsesDecoder(tag_final=tag_final)
    if grammar is Grammar.ANTHROPIC:
        return AnthropicDecoder(tag_final=tag_final)
    if grammar is Grammar.GOOGLE:
        return GoogleDecoder(tag_final=tag_final)
    return RealtimeDecoder(tag_final=tag_final)


async def _decode_events(
    events: AsyncIterable[SSEEvent], decoder: StreamDecoder
) -> AsyncIterator[CanonicalDelta]:
    async for event in events:
        for delta in decoder.decode(event):
            yield delta
        if decoder.finished:
            return
    for delta in decoder.finish():
        yield delta


async def normalize(
    lines: AsyncIterable[str],
    grammar: Grammar | str,
    *,
    tag_final: bool = False,
    decoder: StreamDecoder | None = None,
) -> AsyncIterator[CanonicalDelta]:
    """Turn SSE lines into a well-formed CanonicalDelta stream."""
    decoder = decoder or make_decoder(grammar, tag_final=tag_final)
    async for delta in guard_stream(_decode_events(iter_events(lines), decoder)):
        yield delta


async def normalize_frames(
    frames: AsyncIterable[str | bytes | dict[str, Any]],
    grammar: Grammar | str = Grammar.REALTIME,
    *,
    tag_final: bool = False,
) -> AsyncIterator[CanonicalDelta]:
    """Normalize WebSocket-style frames (one JSON document per frame)."""
    decoder = make_decoder(grammar, tag_final=tag_final)

    async def _deltas() -> AsyncIterator[CanonicalDelta]:
        async for frame in frames:
            if isinstance(frame, dict):
                decoded = decoder.decode_payload(frame.get("type"), frame)
            else:
                text = frame.decode("utf-8") if isinstance(frame, bytes) else frame
                decoded = decoder.decode(SSEEvent(data=text))
            for delta in decoded:
                yield delta
            if decoder.finished:
                return
        for delta in decoder.finish():
            yield delta

    async for delta in guard_stream(_deltas()):
        yield delta
