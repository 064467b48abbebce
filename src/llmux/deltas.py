"""Canonical streaming deltas and stream-shape guarantees."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import enum
import logging
from typing import TYPE_CHECKING

from llmux.errors import APIError, InvalidInputError, LlmuxError
from llmux.types import Channel, FinishReason, ProviderResponse, ToolCall, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)


class DeltaKind(str, enum.Enum):
    """What a CanonicalDelta carries."""

    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of tool-call arguments.

    Fragments for one ``id`` concatenate, in arrival order, into the complete
    argument JSON. The fragment flagged ``is_complete`` is the last one for
    that id (its ``arguments`` may be empty).
    """

    id: str
    name: str | None = None
    arguments: str = ""
    is_complete: bool = False


@dataclass(frozen=True)
class ToolResultDelta:
    """Output of a tool executed on the caller's behalf."""

    call_id: str
    output: str
    is_error: bool = False


@dataclass(frozen=True)
class CanonicalDelta:
    """One normalized unit of streamed output."""

    kind: DeltaKind
    content: str | None = None
    tool_call: ToolCallDelta | None = None
    tool_result: ToolResultDelta | None = None
    channel: Channel | None = None
    usage: Usage | None = None
    finish_reason: FinishReason | None = None
    error: BaseException | None = None

    @classmethod
    def text_delta(cls, content: str, *, channel: Channel | None = None) -> CanonicalDelta:
        return cls(DeltaKind.TEXT, content=content, channel=channel)

    @classmethod
    def reasoning_delta(cls, content: str) -> CanonicalDelta:
        return cls(DeltaKind.REASONING, content=content, channel=Channel.THINKING)

    @classmethod
    def tool_call_delta(
        cls,
        call_id: str,
        *,
        name: str | None = None,
        arguments: str = "",
        is_complete: bool = False,
    ) -> CanonicalDelta:
        return cls(
            DeltaKind.TOOL_CALL,
            tool_call=ToolCallDelta(
                id=call_id, name=name, arguments=arguments, is_complete=is_complete
            ),
        )

    @classmethod
    def tool_result_delta(
        cls, call_id: str, output: str, *, is_error: bool = False
    ) -> CanonicalDelta:
        return cls(
            DeltaKind.TOOL_RESULT,
            tool_result=ToolResultDelta(call_id=call_id, output=output, is_error=is_error),
        )

    @classmethod
    def error_delta(cls, error: BaseException | str) -> CanonicalDelta:
        exc = APIError(error, phase="stream") if isinstance(error, str) else error
        return cls(DeltaKind.ERROR, content=str(exc), error=exc)

    @classmethod
    def done_delta(
        cls,
        *,
        finish_reason: FinishReason | None = None,
        usage: Usage | None = None,
    ) -> CanonicalDelta:
        return cls(DeltaKind.DONE, finish_reason=finish_reason, usage=usage)

    @property
    def is_done(self) -> bool:
        return self.kind is DeltaKind.DONE


class ToolCallAssembler:
    """Reassemble fragmented tool-call arguments keyed by call id."""

    def __init__(self) -> None:
        self._names: dict[str, str] = {}
        self._fragments: dict[str, list[str]] = {}
        self._order: list[str] = []

    def add(self, delta: ToolCallDelta) -> ToolCall | None:
        """Record a fragment; return the finished call when the delta completes it.

        Raises InvalidInputError when the reassembled arguments are not JSON.
        """
        if delta.id not in self._fragments:
            self._fragments[delta.id] = []
            self._order.append(delta.id)
        if delta.name and delta.id not in self._names:
            self._names[delta.id] = delta.name
        if delta.arguments:
            self._fragments[delta.id].append(delta.arguments)
        if not delta.is_complete:
            return None
        return self._complete(delta.id)

    def _complete(self, call_id: str) -> ToolCall:
        text = "".join(self._fragments.pop(call_id, []))
        self._order.remove(call_id)
        name = self._names.pop(call_id, "")
        return ToolCall.from_json(call_id, name, text)

    def arguments_so_far(self, call_id: str) -> str:
        return "".join(self._fragments.get(call_id, []))

    @property
    def pending(self) -> list[str]:
        """Ids that have fragments but no completion yet, in first-seen order."""
        return list(self._order)

    def finish(self) -> list[ToolCall]:
        """Complete every pending call (used when a stream ends without explicit stops)."""
        return [self._complete(call_id) for call_id in list(self._order)]


async def guard_stream(source: AsyncIterable[CanonicalDelta]) -> AsyncIterator[CanonicalDelta]:
    """Enforce the stream shape: exactly one DONE, nothing after it.

    Exceptions raised by *source* become an ERROR delta followed by DONE, so
    output the caller already consumed stays valid.
    """
    saw_error = False
    try:
        async for delta in source:
            if delta.kind is DeltaKind.ERROR:
                saw_error = True
            yield delta
            if delta.kind is DeltaKind.DONE:
                return
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug("Stream failed mid-iteration: %s", e)
        yield CanonicalDelta.error_delta(e)
        yield CanonicalDelta.done_delta(finish_reason=FinishReason.ERROR)
        return
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()

    yield CanonicalDelta.done_delta(finish_reason=FinishReason.ERROR if saw_error else None)


async def collect_stream(deltas: AsyncIterable[CanonicalDelta]) -> ProviderResponse:
    """Fold a delta stream into a ProviderResponse.

    An ERROR delta is raised as its underlying exception.
    """
    text: list[str] = []
    reasoning: list[str] = []
    assembler = ToolCallAssembler()
    response = ProviderResponse()
    async for delta in deltas:
        if delta.kind is DeltaKind.TEXT and delta.content:
            text.append(delta.content)
        elif delta.kind is DeltaKind.REASONING and delta.content:
            reasoning.append(delta.content)
        elif delta.kind is DeltaKind.TOOL_CALL and delta.tool_call is not None:
            try:
                call = assembler.add(delta.tool_call)
            except InvalidInputError as e:
                raise APIError(
                    f"Malformed tool-call arguments in stream: {e}", phase="stream"
                ) from e
            if call is not None:
                response.tool_calls.append(call)
        elif delta.kind is DeltaKind.ERROR:
            err = delta.error
            if isinstance(err, LlmuxError):
                raise err
            raise APIError(delta.content or "stream failed", phase="stream") from err
        elif delta.kind is DeltaKind.DONE:
            response.usage = delta.usage
            response.finish_reason = delta.finish_reason
            break
    try:
        response.tool_calls.extend(assembler.finish())
    except InvalidInputError as e:
        raise APIError(f"Malformed tool-call arguments in stream: {e}", phase="stream") from e
    response.text = "".join(text)
    response.reasoning = "".join(reasoning) or None
    return response
