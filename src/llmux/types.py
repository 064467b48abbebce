"""Provider-agnostic request/response model."""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from llmux.errors import InvalidInputError
from llmux.values import JSONValue, parse_json

if TYPE_CHECKING:
    from collections.abc import Iterable

ReasoningEffort = Literal["minimal", "low", "medium", "high"]
_REASONING_EFFORTS = frozenset({"minimal", "low", "medium", "high"})


class Role(str, enum.Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Channel(str, enum.Enum):
    """Lane of a multi-channel response."""

    THINKING = "thinking"
    ANALYSIS = "analysis"
    COMMENTARY = "commentary"
    FINAL = "final"


class FinishReason(str, enum.Enum):
    """Why the model stopped generating."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"
    OTHER = "other"

    @classmethod
    def from_provider(cls, raw: str | None) -> FinishReason | None:
        """Map provider-specific stop reasons onto the shared set."""
        if not raw:
            return None
        value = raw.lower()
        mapping = {
            "stop": cls.STOP,
            "end_turn": cls.STOP,
            "stop_sequence": cls.STOP,
            "completed": cls.STOP,
            "length": cls.LENGTH,
            "max_tokens": cls.LENGTH,
            "max_output_tokens": cls.LENGTH,
            "tool_calls": cls.TOOL_CALLS,
            "tool_use": cls.TOOL_CALLS,
            "function_call": cls.TOOL_CALLS,
            "content_filter": cls.CONTENT_FILTER,
            "safety": cls.CONTENT_FILTER,
            "recitation": cls.CONTENT_FILTER,
            "error": cls.ERROR,
            "failed": cls.ERROR,
        }
        return mapping.get(value, cls.OTHER)


@dataclass(frozen=True)
class ContentPart:
    """One piece of message content."""

    kind: Literal["text", "image", "audio", "file"]
    text: str | None = None
    data: bytes | None = None
    uri: str | None = None
    mime_type: str | None = None

    def __post_init__(self) -> None:
        if self.kind == "text":
            if self.text is None:
                raise InvalidInputError("Text content part requires text")
        elif self.data is None and self.uri is None:
            raise InvalidInputError(
                f"{self.kind} content part requires data or uri",
                hint="Pass raw bytes via data= or a remote reference via uri=.",
            )

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls("text", text=text)

    @classmethod
    def image(
        cls, *, data: bytes | None = None, uri: str | None = None, mime_type: str = "image/png"
    ) -> ContentPart:
        return cls("image", data=data, uri=uri, mime_type=mime_type)

    @classmethod
    def audio(
        cls, *, data: bytes | None = None, uri: str | None = None, mime_type: str = "audio/wav"
    ) -> ContentPart:
        return cls("audio", data=data, uri=uri, mime_type=mime_type)

    @classmethod
    def file(
        cls,
        *,
        data: bytes | None = None,
        uri: str | None = None,
        mime_type: str = "application/octet-stream",
    ) -> ContentPart:
        return cls("file", data=data, uri=uri, mime_type=mime_type)


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: JSONValue = field(default_factory=lambda: JSONValue.from_python({}))

    @classmethod
    def from_json(cls, id: str, name: str, text: str | None) -> ToolCall:  # noqa: A002
        """Build a call from raw argument text; blank text means no arguments."""
        if text is None or not text.strip():
            return cls(id=id, name=name)
        return cls(id=id, name=name, arguments=parse_json(text))

    @property
    def arguments_json(self) -> str:
        return self.arguments.canonical()


@dataclass(frozen=True)
class Message:
    """A conversational message turn."""

    role: Role
    parts: tuple[ContentPart, ...] = ()
    channel: Channel | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "parts", tuple(self.parts))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.channel is not None:
            object.__setattr__(self, "channel", Channel(self.channel))
        if self.role is Role.TOOL and not self.tool_call_id:
            raise InvalidInputError(
                "Tool messages require tool_call_id",
                hint="Use Message.tool_result(call_id, output).",
            )

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(p.text or "" for p in self.parts if p.kind == "text")

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, (ContentPart.of_text(text),))

    @classmethod
    def user(cls, text: str, *extra: ContentPart) -> Message:
        return cls(Role.USER, (ContentPart.of_text(text), *extra))

    @classmethod
    def assistant(
        cls,
        text: str = "",
        *,
        tool_calls: Iterable[ToolCall] = (),
        channel: Channel | None = None,
    ) -> Message:
        parts = (ContentPart.of_text(text),) if text else ()
        return cls(Role.ASSISTANT, parts, channel=channel, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(cls, call_id: str, output: str) -> Message:
        return cls(Role.TOOL, (ContentPart.of_text(output),), tool_call_id=call_id)


@dataclass(frozen=True)
class GenerationSettings:
    """Sampling and provider knobs for one request."""

    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    reasoning_effort: ReasoningEffort | None = None
    stop_sequences: tuple[str, ...] = ()
    provider_options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))
        if self.max_tokens is not None and self.max_tokens < 1:
            raise InvalidInputError(f"max_tokens must be >= 1, got {self.max_tokens}")
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise InvalidInputError(
                f"temperature must be within [0, 2], got {self.temperature}"
            )
        if self.top_p is not None and not 0 <= self.top_p <= 1:
            raise InvalidInputError(f"top_p must be within [0, 1], got {self.top_p}")
        if (
            self.reasoning_effort is not None
            and self.reasoning_effort not in _REASONING_EFFORTS
        ):
            raise InvalidInputError(
                f"Unknown reasoning_effort: {self.reasoning_effort!r}",
                hint="Use one of: minimal, low, medium, high.",
            )


@runtime_checkable
class ToolSpec(Protocol):
    """What a request needs to know about a tool: its public shape."""

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    def parameters_schema(self) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ProviderRequest:
    """An immutable generation request."""

    messages: tuple[Message, ...]
    tools: tuple[ToolSpec, ...] = ()
    settings: GenerationSettings = field(default_factory=GenerationSettings)

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "tools", tuple(self.tools))
        if not self.messages:
            raise InvalidInputError(
                "ProviderRequest requires at least one message",
                hint="Pass messages=[Message.user('...')].",
            )

    @classmethod
    def text(
        cls,
        prompt: str,
        *,
        system: str | None = None,
        settings: GenerationSettings | None = None,
    ) -> ProviderRequest:
        messages = [Message.system(system)] if system else []
        messages.append(Message.user(prompt))
        return cls(tuple(messages), settings=settings or GenerationSettings())

    @property
    def system_instruction(self) -> str | None:
        """Join system messages; providers that take a separate system field use this."""
        texts = [m.text for m in self.messages if m.role is Role.SYSTEM and m.text]
        return "\n\n".join(texts) if texts else None


@dataclass(frozen=True)
class Usage:
    """Token accounting."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def merge(self, other: Usage | None) -> Usage:
        """Combine partial usage reports, keeping the larger value per field."""
        if other is None:
            return self
        reasoning = other.reasoning_tokens
        if reasoning is None:
            reasoning = self.reasoning_tokens
        return Usage(
            input_tokens=max(self.input_tokens, other.input_tokens),
            output_tokens=max(self.output_tokens, other.output_tokens),
            reasoning_tokens=reasoning,
        )


@dataclass
class ProviderResponse:
    """A standardized response from a provider generation call."""

    text: str = ""
    usage: Usage | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    reasoning: str | None = None
    response_id: str | None = None
