"""Tool registry: schemas, typed arguments, timed execution and history."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field
import pytest

from llmux.errors import InvalidInputError, ToolArgumentError
from llmux.tools import (
    ParameterType,
    Tool,
    ToolArguments,
    ToolParameter,
    ToolRegistry,
    ToolResult,
    ToolStatus,
)
from llmux.types import Role, ToolCall
from llmux.values import JSONValue

if TYPE_CHECKING:
    from tests.conftest import ManualClock

pytestmark = pytest.mark.unit


async def _add(args: ToolArguments) -> int:
    return args.integer_value("a") + args.integer_value("b")


ADD = Tool(
    "add",
    "Add two integers",
    (ToolParameter("a", "integer"), ToolParameter("b", "integer")),
    handler=_add,
)


# =============================================================================
# Schemas
# =============================================================================


def test_parameters_schema_lists_required_names() -> None:
    tool = Tool(
        "search",
        "Search the catalog",
        (
            ToolParameter("query", ParameterType.STRING, "What to find"),
            ToolParameter("sort", "string", enum=("price", "rating"), required=False),
            ToolParameter("tags", "array", items="string", required=False),
        ),
    )

    assert tool.schema() == {
        "name": "search",
        "description": "Search the catalog",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to find"},
                "sort": {"type": "string", "description": "", "enum": ["price", "rating"]},
                "tags": {"type": "array", "description": "", "items": {"type": "string"}},
            },
            "required": ["query"],
        },
    }
    assert tool.optional_names == frozenset({"sort", "tags"})


def test_duplicate_parameters_and_empty_names_are_rejected() -> None:
    with pytest.raises(InvalidInputError):
        Tool("t", "d", (ToolParameter("x", "string"), ToolParameter("x", "number")))
    with pytest.raises(InvalidInputError):
        Tool("", "d")
    with pytest.raises(ValueError):
        ToolParameter("x", "decimal")


class _Forecast(BaseModel):
    city: str = Field(description="City name")
    days: int = 3


def test_pydantic_model_tools_validate_before_the_handler_runs() -> None:
    seen: list[_Forecast] = []
    tool = Tool.from_model("forecast", "Weather forecast", _Forecast, seen.append)

    schema = tool.parameters_schema()
    assert "title" not in schema
    assert schema["required"] == ["city"]
    assert [(p.name, p.type, p.required) for p in tool.parameters] == [
        ("city", ParameterType.STRING, True),
        ("days", ParameterType.INTEGER, False),
    ]

    assert tool.handler is not None
    tool.handler(ToolArguments({"city": "Oslo"}))
    assert seen == [_Forecast(city="Oslo", days=3)]
    with pytest.raises(ToolArgumentError):
        tool.handler(ToolArguments({"days": "many"}))


# =============================================================================
# ToolArguments
# =============================================================================


def test_typed_accessors_return_values_of_the_requested_type() -> None:
    args = ToolArguments(
        {"s": "x", "n": 2, "f": 2.5, "i": 4.0, "b": False, "l": [1], "o": {"k": None}}
    )

    assert args.string_value("s") == "x"
    assert args.number_value("n") == 2.0
    assert isinstance(args.number_value("n"), float)
    assert args.number_value("f") == 2.5
    assert args.integer_value("i") == 4
    assert args.boolean_value("b") is False
    assert args.array_value("l") == [1]
    assert args.object_value("o") == {"k": None}


def test_missing_and_mistyped_arguments_raise_with_the_argument_name() -> None:
    args = ToolArguments({"count": "three", "ratio": 1.5, "gone": None})

    with pytest.raises(ToolArgumentError, match="must be an integer") as exc:
        args.integer_value("count")
    assert exc.value.argument == "count"

    with pytest.raises(ToolArgumentError, match="must be an integer"):
        args.integer_value("ratio")
    with pytest.raises(ToolArgumentError, match="Missing required argument 'absent'"):
        args.string_value("absent")
    with pytest.raises(ToolArgumentError, match="Missing required argument 'gone'"):
        args.string_value("gone")


def test_optional_arguments_read_as_none_when_absent() -> None:
    args = ToolArguments({}, optional=("limit",))

    assert args.integer_value("limit") is None
    assert "limit" not in args


def test_arguments_must_be_an_object() -> None:
    with pytest.raises(ToolArgumentError):
        ToolArguments(JSONValue.from_python([1, 2]))


# =============================================================================
# Registry
# =============================================================================


def test_register_replaces_and_unregister_reports_presence() -> None:
    registry = ToolRegistry([ADD])
    replacement = Tool("add", "Add, but newer", ADD.parameters, handler=_add)

    registry.register(replacement)

    assert len(registry) == 1
    assert registry.get("add") is replacement
    assert "add" in registry
    assert registry.specs() == (replacement,)
    assert registry.unregister("add") is True
    assert registry.unregister("add") is False
    assert registry.names == []


@pytest.mark.asyncio
async def test_successful_execution_renders_output_and_records_history(
    clock: ManualClock,
) -> None:
    registry = ToolRegistry([ADD], clock=clock)

    result = await registry.execute("add", {"a": 2, "b": 3}, call_id="call_1")

    assert result == ToolResult("call_1", "add", ToolStatus.SUCCESS, output="5")
    assert result.ok
    [record] = registry.history
    assert record.tool_name == "add"
    assert record.arguments == '{"a":2,"b":3}'
    assert record.result is result
    assert record.duration_s == 0.0


@pytest.mark.asyncio
async def test_sync_handlers_and_structured_output() -> None:
    def _lookup(args: ToolArguments) -> dict[str, Any]:
        return {"city": args.string_value("city"), "temp_c": 21}

    registry = ToolRegistry([Tool("lookup", "d", (ToolParameter("city", "string"),), _lookup)])

    result = await registry.execute("lookup", '{"city": "Lima"}')

    assert result.status is ToolStatus.SUCCESS
    assert result.output == '{"city":"Lima","temp_c":21}'


@pytest.mark.asyncio
async def test_slow_handler_times_out_and_records_one_entry() -> None:
    async def _slow(args: ToolArguments) -> str:
        await asyncio.sleep(2.0)
        return "late"

    registry = ToolRegistry([Tool("slow", "Sleeps", handler=_slow)])

    started = time.monotonic()
    result = await registry.execute("slow", timeout_s=0.5)
    elapsed = time.monotonic() - started

    assert result.status is ToolStatus.TIMEOUT
    assert result.output_text() == "Error: Tool execution timed out"
    assert elapsed < 1.5
    assert len(registry.history) == 1
    assert registry.history[0].result.status is ToolStatus.TIMEOUT


@pytest.mark.asyncio
async def test_failures_come_back_as_results() -> None:
    async def _boom(args: ToolArguments) -> str:
        raise RuntimeError("disk full")

    registry = ToolRegistry([ADD, Tool("boom", "Fails", handler=_boom)])

    missing = await registry.execute("nope")
    crashed = await registry.execute("boom")
    bad_json = await registry.execute("add", "{not json")
    bad_type = await registry.execute("add", {"a": "two", "b": 1})

    assert missing.status is ToolStatus.NOT_FOUND
    assert crashed.status is ToolStatus.ERROR
    assert crashed.output_text() == "Error: disk full"
    assert bad_json.status is ToolStatus.ERROR
    assert bad_json.error is not None
    assert bad_json.error.startswith("Failed to parse arguments")
    assert bad_type.status is ToolStatus.ERROR
    assert "'a'" in (bad_type.error or "")
    assert [r.result.status for r in registry.history] == [
        ToolStatus.NOT_FOUND,
        ToolStatus.ERROR,
        ToolStatus.ERROR,
        ToolStatus.ERROR,
    ]


@pytest.mark.asyncio
async def test_schema_only_tools_are_offered_but_not_executed() -> None:
    registry = ToolRegistry([Tool("lookup", "Declared for the model only")])

    result = await registry.execute("lookup", {})

    assert [t.name for t in registry.specs()] == ["lookup"]
    assert result.status is ToolStatus.NOT_FOUND
    assert len(registry.history) == 1


@pytest.mark.asyncio
async def test_history_is_in_invocation_order_and_bounded() -> None:
    async def _wait(args: ToolArguments) -> str:
        await asyncio.sleep(args.number_value("s"))
        return "done"

    registry = ToolRegistry(
        [Tool("wait", "d", (ToolParameter("s", "number"),), _wait)], history_limit=2
    )

    await asyncio.gather(
        registry.execute("wait", {"s": 0.0}, call_id="first"),
        registry.execute("wait", {"s": 0.05}, call_id="second"),
        registry.execute("wait", {"s": 0.0}, call_id="third"),
    )

    assert [r.result.call_id for r in registry.history] == ["second", "third"]
    assert [r.result.call_id for r in registry.get_history(1)] == ["third"]
    registry.clear_history()
    assert registry.history == []


@pytest.mark.asyncio
async def test_execute_call_answers_with_a_tool_message() -> None:
    registry = ToolRegistry([ADD])
    call = ToolCall.from_json("call_7", "add", '{"a": 1, "b": 1}')

    message = (await registry.execute_call(call)).to_message()

    assert message.role is Role.TOOL
    assert message.tool_call_id == "call_7"
    assert message.text == "2"
