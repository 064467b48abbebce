"""Executable tools: schema, typed argument access, and a timed registry."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import enum
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any
import uuid

from llmux.errors import InvalidInputError, LlmuxError, ToolArgumentError
from llmux.types import Message
from llmux.values import JSONKind, JSONValue, parse_json

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping

    from pydantic import BaseModel

    from llmux.types import ToolCall

    ToolHandler = Callable[["ToolArguments"], Any | Awaitable[Any]]

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_S = 30.0
DEFAULT_HISTORY_LIMIT = 100


class ParameterType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class ToolParameter:
    """One named parameter of a tool."""

    name: str
    type: ParameterType
    description: str = ""
    required: bool = True
    enum: tuple[str, ...] | None = None
    items: ParameterType | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidInputError("Tool parameter name must be non-empty")
        object.__setattr__(self, "type", ParameterType(self.type))
        if self.items is not None:
            object.__setattr__(self, "items", ParameterType(self.items))
        if self.enum is not None:
            object.__setattr__(self, "enum", tuple(self.enum))

    def schema(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type.value, "description": self.description}
        if self.enum is not None:
            out["enum"] = list(self.enum)
        if self.items is not None:
            out["items"] = {"type": self.items.value}
        return out


@dataclass(frozen=True)
class Tool:
    """A named, described, executable function offered to a model.

    ``handler`` receives a ``ToolArguments`` and may be sync or async. The
    handler is not part of a tool's identity: two tools with the same shape
    compare equal and produce the same cache key.
    """

    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()
    handler: ToolHandler | None = field(default=None, compare=False, repr=False)
    json_schema: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidInputError("Tool name must be non-empty")
        params = tuple(self.parameters)
        seen: set[str] = set()
        for p in params:
            if p.name in seen:
                raise InvalidInputError(
                    f"Duplicate parameter {p.name!r} on tool {self.name!r}"
                )
            seen.add(p.name)
        object.__setattr__(self, "parameters", params)

    @property
    def optional_names(self) -> frozenset[str]:
        return frozenset(p.name for p in self.parameters if not p.required)

    def parameters_schema(self) -> dict[str, Any]:
        if self.json_schema is not None:
            return dict(self.json_schema)
        return {
            "type": "object",
            "properties": {p.name: p.schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def schema(self) -> dict[str, Any]:
        """Provider-neutral ``{name, description, parameters}`` shape."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema(),
        }

    @classmethod
    def from_model(
        cls,
        name: str,
        description: str,
        model: type[BaseModel],
        handler: Callable[[Any], Any],
    ) -> Tool:
        """Build a tool whose parameters are a pydantic model.

        The handler receives the validated model instance; validation
        failures surface as ``ToolArgumentError``.
        """
        from pydantic import ValidationError

        schema = model.model_json_schema()
        schema.pop("title", None)
        required = set(schema.get("required", ()))
        params = tuple(
            ToolParameter(
                name=prop_name,
                type=_parameter_type(prop),
                description=str(prop.get("description", "")),
                required=prop_name in required,
            )
            for prop_name, prop in schema.get("properties", {}).items()
        )

        def invoke(args: ToolArguments) -> Any:
            try:
                parsed = model.model_validate(args.to_dict())
            except ValidationError as e:
                raise ToolArgumentError(
                    f"Invalid arguments for tool {name!r}: {e.error_count()} error(s)",
                    hint=str(e),
                ) from e
            return handler(parsed)

        return cls(
            name=name,
            description=description,
            parameters=params,
            handler=invoke,
            json_schema=schema,
        )


def _parameter_type(prop: Mapping[str, Any]) -> ParameterType:
    candidates = [prop] + list(prop.get("anyOf", ()))
    for candidate in candidates:
        raw = candidate.get("type")
        if raw and raw != "null":
            try:
                return ParameterType(raw)
            except ValueError:
                break
    return ParameterType.OBJECT


class ToolArguments:
    """Typed, strict access to a tool call's JSON object arguments.

    Accessors raise ``ToolArgumentError`` for absent keys and type
    mismatches; names listed in *optional* return None when absent instead.
    """

    def __init__(
        self,
        values: JSONValue | Mapping[str, Any] | None = None,
        *,
        optional: Iterable[str] = (),
    ) -> None:
        if values is None:
            value = JSONValue.from_python({})
        elif isinstance(values, JSONValue):
            value = values
        else:
            value = JSONValue.from_python(dict(values))
        if value.kind is not JSONKind.OBJECT:
            raise ToolArgumentError(
                f"Tool arguments must be a JSON object, got {value.kind.value}"
            )
        self._value = value
        self._optional = frozenset(optional)

    @classmethod
    def for_tool(cls, tool: Tool, values: JSONValue | Mapping[str, Any] | None) -> ToolArguments:
        return cls(values, optional=tool.optional_names)

    @property
    def raw(self) -> JSONValue:
        return self._value

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._value.get(key) is not None

    def keys(self) -> list[str]:
        return self._value.keys()

    def to_dict(self) -> dict[str, Any]:
        return self._value.to_python()

    def __repr__(self) -> str:
        return f"ToolArguments({self._value.canonical()})"

    def _lookup(self, key: str, kinds: tuple[JSONKind, ...], expected: str) -> JSONValue | None:
        found = self._value.get(key)
        if found is None or found.kind is JSONKind.NULL:
            if key in self._optional:
                return None
            raise ToolArgumentError(f"Missing required argument {key!r}", argument=key)
        if found.kind not in kinds:
            raise ToolArgumentError(
                f"Argument {key!r} must be {expected}, got {found.kind.value}",
                argument=key,
            )
        return found

    def string_value(self, key: str) -> str | None:
        found = self._lookup(key, (JSONKind.STRING,), "a string")
        return None if found is None else found.value

    def number_value(self, key: str) -> float | None:
        found = self._lookup(key, (JSONKind.INT, JSONKind.FLOAT), "a number")
        return None if found is None else float(found.value)

    def integer_value(self, key: str) -> int | None:
        found = self._lookup(key, (JSONKind.INT, JSONKind.FLOAT), "an integer")
        if found is None:
            return None
        if found.kind is JSONKind.FLOAT and not float(found.value).is_integer():
            raise ToolArgumentError(
                f"Argument {key!r} must be an integer, got {found.value!r}", argument=key
            )
        return int(found.value)

    def boolean_value(self, key: str) -> bool | None:
        found = self._lookup(key, (JSONKind.BOOL,), "a boolean")
        return None if found is None else found.value

    def array_value(self, key: str) -> list[Any] | None:
        found = self._lookup(key, (JSONKind.ARRAY,), "an array")
        return None if found is None else found.to_python()

    def object_value(self, key: str) -> dict[str, Any] | None:
        found = self._lookup(key, (JSONKind.OBJECT,), "an object")
        return None if found is None else found.to_python()


class ToolStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool execution. Failures are values, not exceptions."""

    call_id: str | None
    tool_name: str
    status: ToolStatus
    output: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is ToolStatus.SUCCESS

    def output_text(self) -> str:
        """Text handed back to the model for this result."""
        if self.status is ToolStatus.SUCCESS:
            return self.output
        if self.status is ToolStatus.TIMEOUT:
            return "Error: Tool execution timed out"
        return f"Error: {self.error}"

    def to_message(self) -> Message:
        if self.call_id is None:
            raise InvalidInputError("Tool result has no call id to answer")
        return Message.tool_result(self.call_id, self.output_text())


@dataclass(frozen=True)
class ToolExecutionRecord:
    id: str
    tool_name: str
    arguments: str
    result: ToolResult
    started_at: float
    completed_at: float

    @property
    def duration_s(self) -> float:
        return self.completed_at - self.started_at


@dataclass
class _Slot:
    record: ToolExecutionRecord | None = None


def _discard_outcome(task: asyncio.Future[Any]) -> None:
    """Retrieve an abandoned handler's outcome so it is never reported as lost."""
    if not task.cancelled():
        task.exception()


def _render_output(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return JSONValue.from_python(value).canonical()
    except InvalidInputError:
        return str(value)


class ToolRegistry:
    """Name-keyed tools with timed execution and a bounded history.

    History is kept in invocation order: each call reserves its slot when it
    starts, so a slow call started earlier stays ahead of faster later ones.
    """

    def __init__(
        self,
        tools: Iterable[Tool] = (),
        *,
        default_timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if default_timeout_s <= 0:
            raise InvalidInputError("default_timeout_s must be > 0")
        if history_limit < 1:
            raise InvalidInputError("history_limit must be >= 1")
        self.default_timeout_s = default_timeout_s
        self._tools: dict[str, Tool] = {}
        self._slots: deque[_Slot] = deque(maxlen=history_limit)
        self._clock = clock
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add *tool*; an existing tool with the same name is replaced."""
        if tool.name in self._tools:
            logger.debug("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> tuple[Tool, ...]:
        """Registered tools, suitable for ``ProviderRequest.tools``."""
        return tuple(self._tools.values())

    @property
    def history(self) -> list[ToolExecutionRecord]:
        return [s.record for s in self._slots if s.record is not None]

    def get_history(self, limit: int | None = None) -> list[ToolExecutionRecord]:
        records = self.history
        return records if limit is None else records[-limit:] if limit > 0 else []

    def clear_history(self) -> None:
        self._slots.clear()

    async def execute(
        self,
        name: str,
        arguments: JSONValue | Mapping[str, Any] | str | None = None,
        *,
        timeout_s: float | None = None,
        call_id: str | None = None,
    ) -> ToolResult:
        """Run tool *name*, racing it against *timeout_s*.

        Never raises for tool failures: unknown tools, bad arguments,
        handler errors and timeouts all come back as a ``ToolResult``. On
        timeout the handler is cancelled and its eventual outcome ignored.
        """
        slot = _Slot()
        self._slots.append(slot)
        started = self._clock()
        raw_args = arguments if isinstance(arguments, str) else _args_text(arguments)

        def finish(status: ToolStatus, output: str = "", error: str | None = None) -> ToolResult:
            result = ToolResult(call_id, name, status, output=output, error=error)
            slot.record = ToolExecutionRecord(
                id=uuid.uuid4().hex,
                tool_name=name,
                arguments=raw_args,
                result=result,
                started_at=started,
                completed_at=self._clock(),
            )
            return result

        tool = self._tools.get(name)
        if tool is None or tool.handler is None:
            return finish(ToolStatus.NOT_FOUND, error=f"Tool {name!r} not found")

        try:
            if isinstance(arguments, str):
                parsed = parse_json(arguments) if arguments.strip() else None
            else:
                parsed = arguments
            args = ToolArguments.for_tool(tool, parsed)
        except LlmuxError as e:
            return finish(ToolStatus.ERROR, error=f"Failed to parse arguments: {e}")

        timeout = self.default_timeout_s if timeout_s is None else timeout_s
        task = asyncio.ensure_future(self._invoke(tool.handler, args))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            task.add_done_callback(_discard_outcome)
            finish(ToolStatus.ERROR, error="Tool execution cancelled")
            raise

        if not done:
            task.cancel()
            task.add_done_callback(_discard_outcome)
            logger.warning("Tool %s timed out after %.2fs", name, timeout)
            return finish(ToolStatus.TIMEOUT, error=f"Timed out after {timeout}s")

        if task.cancelled():
            return finish(ToolStatus.ERROR, error="Tool execution cancelled")
        exc = task.exception()
        if exc is not None:
            logger.debug("Tool %s failed: %s", name, exc)
            return finish(ToolStatus.ERROR, error=str(exc) or type(exc).__name__)
        return finish(ToolStatus.SUCCESS, output=_render_output(task.result()))

    async def execute_call(self, call: ToolCall, *, timeout_s: float | None = None) -> ToolResult:
        return await self.execute(call.name, call.arguments, timeout_s=timeout_s, call_id=call.id)

    @staticmethod
    async def _invoke(handler: ToolHandler, args: ToolArguments) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(args)
        result = await asyncio.to_thread(handler, args)
        if inspect.isawaitable(result):
            result = await result
        return result


def _args_text(arguments: JSONValue | Mapping[str, Any] | None) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, JSONValue):
        return arguments.canonical()
    try:
        return JSONValue.from_python(dict(arguments)).canonical()
    except InvalidInputError:
        return repr(dict(arguments))
