"""Canonical deltas: tool-call assembly and stream-shape guarantees."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from llmux.deltas import (
    CanonicalDelta,
    DeltaKind,
    ToolCallAssembler,
    ToolCallDelta,
    collect_stream,
    guard_stream,
)
from llmux.errors import APIError, InvalidInputError, RateLimitError
from llmux.types import Channel, FinishReason, Usage
from tests.helpers import aiter_of, drain

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

pytestmark = pytest.mark.unit


# =============================================================================
# ToolCallAssembler
# =============================================================================


def test_assembler_concatenates_fragments_in_arrival_order() -> None:
    assembler = ToolCallAssembler()

    assert assembler.add(ToolCallDelta("c1", name="get_weather", arguments='{"ci')) is None
    assert assembler.add(ToolCallDelta("c1", arguments='ty": "Par')) is None
    assert assembler.arguments_so_far("c1") == '{"city": "Par'
    call = assembler.add(ToolCallDelta("c1", arguments='is"}', is_complete=True))

    assert call is not None
    assert call.name == "get_weather"
    assert call.arguments.to_python() == {"city": "Paris"}
    assert assembler.pending == []


def test_assembler_keeps_interleaved_calls_apart() -> None:
    assembler = ToolCallAssembler()
    assembler.add(ToolCallDelta("a", name="one", arguments='{"x":'))
    assembler.add(ToolCallDelta("b", name="two", arguments='{"y":'))
    assembler.add(ToolCallDelta("a", arguments="1}"))
    assembler.add(ToolCallDelta("b", arguments="2}"))

    assert assembler.pending == ["a", "b"]
    calls = assembler.finish()
    assert [(c.id, c.name, c.arguments.to_python()) for c in calls] == [
        ("a", "one", {"x": 1}),
        ("b", "two", {"y": 2}),
    ]


def test_assembler_completion_with_no_arguments_yields_empty_object() -> None:
    call = ToolCallAssembler().add(ToolCallDelta("c", name="now", is_complete=True))

    assert call is not None
    assert call.arguments.to_python() == {}


def test_assembler_raises_for_malformed_json() -> None:
    assembler = ToolCallAssembler()
    assembler.add(ToolCallDelta("c", name="broken", arguments='{"x": '))

    with pytest.raises(InvalidInputError):
        assembler.add(ToolCallDelta("c", is_complete=True))


# =============================================================================
# guard_stream
# =============================================================================


@pytest.mark.asyncio
async def test_guard_synthesizes_done_when_source_omits_it() -> None:
    out = await drain(guard_stream(aiter_of([CanonicalDelta.text_delta("hi")])))

    assert [d.kind for d in out] == [DeltaKind.TEXT, DeltaKind.DONE]
    assert out[-1].finish_reason is None


@pytest.mark.asyncio
async def test_guard_drops_everything_after_done() -> None:
    source = [
        CanonicalDelta.text_delta("a"),
        CanonicalDelta.done_delta(finish_reason=FinishReason.STOP),
        CanonicalDelta.text_delta("late"),
        CanonicalDelta.done_delta(),
    ]

    out = await drain(guard_stream(aiter_of(source)))

    assert [d.kind for d in out] == [DeltaKind.TEXT, DeltaKind.DONE]
    assert out[-1].finish_reason is FinishReason.STOP


@pytest.mark.asyncio
async def test_guard_turns_source_exception_into_error_then_done() -> None:
    async def _failing() -> AsyncIterator[CanonicalDelta]:
        yield CanonicalDelta.text_delta("partial")
        raise RateLimitError("slow down", status_code=429)

    out = await drain(guard_stream(_failing()))

    assert [d.kind for d in out] == [DeltaKind.TEXT, DeltaKind.ERROR, DeltaKind.DONE]
    assert isinstance(out[1].error, RateLimitError)
    assert out[1].content == "slow down"
    assert out[2].finish_reason is FinishReason.ERROR


@pytest.mark.asyncio
async def test_guard_marks_synthesized_done_as_error_after_error_delta() -> None:
    out = await drain(guard_stream(aiter_of([CanonicalDelta.error_delta("boom")])))

    assert [d.kind for d in out] == [DeltaKind.ERROR, DeltaKind.DONE]
    assert isinstance(out[0].error, APIError)
    assert out[1].finish_reason is FinishReason.ERROR


@pytest.mark.asyncio
async def test_guard_closes_source_when_consumer_stops_early() -> None:
    closed = False

    async def _endless() -> AsyncIterator[CanonicalDelta]:
        nonlocal closed
        try:
            while True:
                yield CanonicalDelta.text_delta("x")
        finally:
            closed = True

    guarded = guard_stream(_endless())
    first = await guarded.__anext__()
    await guarded.aclose()

    assert first.kind is DeltaKind.TEXT
    assert closed is True


# =============================================================================
# collect_stream
# =============================================================================


@pytest.mark.asyncio
async def test_collect_folds_text_reasoning_calls_and_usage() -> None:
    deltas = [
        CanonicalDelta.reasoning_delta("think "),
        CanonicalDelta.reasoning_delta("hard"),
        CanonicalDelta.text_delta("Hel", channel=Channel.FINAL),
        CanonicalDelta.text_delta("lo"),
        CanonicalDelta.tool_call_delta("c1", name="add", arguments='{"a": 1, '),
        CanonicalDelta.tool_call_delta("c1", arguments='"b": 2}', is_complete=True),
        CanonicalDelta.done_delta(
            finish_reason=FinishReason.TOOL_CALLS, usage=Usage(input_tokens=3, output_tokens=4)
        ),
    ]

    response = await collect_stream(aiter_of(deltas))

    assert response.text == "Hello"
    assert response.reasoning == "think hard"
    assert [(c.id, c.arguments.to_python()) for c in response.tool_calls] == [
        ("c1", {"a": 1, "b": 2})
    ]
    assert response.finish_reason is FinishReason.TOOL_CALLS
    assert response.usage == Usage(input_tokens=3, output_tokens=4)


@pytest.mark.asyncio
async def test_collect_raises_the_error_carried_by_an_error_delta() -> None:
    err = RateLimitError("limited", status_code=429)
    deltas = [CanonicalDelta.error_delta(err), CanonicalDelta.done_delta()]

    with pytest.raises(RateLimitError) as exc:
        await collect_stream(aiter_of(deltas))
    assert exc.value is err


@pytest.mark.asyncio
async def test_collect_reports_malformed_tool_arguments_as_api_error() -> None:
    deltas = [
        CanonicalDelta.tool_call_delta("c1", name="f", arguments="{oops", is_complete=True),
        CanonicalDelta.done_delta(),
    ]

    with pytest.raises(APIError, match="Malformed tool-call arguments"):
        await collect_stream(aiter_of(deltas))
