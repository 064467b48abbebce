"""Conversation items exchanged with a realtime server."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal
import uuid

from llmux.errors import InvalidInputError

ItemType = Literal["message", "function_call", "function_call_output"]
_ITEM_TYPES = ("message", "function_call", "function_call_output")


@dataclass(frozen=True)
class ItemContent:
    type: str
    text: str | None = None
    transcript: str | None = None
    audio: str | None = None

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        for key in ("text", "transcript", "audio"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True)
class ConversationItem:
    id: str
    type: ItemType
    role: str | None = None
    content: tuple[ItemContent, ...] = ()
    call_id: str | None = None
    name: str | None = None
    arguments: str | None = None
    output: str | None = None

    def __post_init__(self) -> None:
        if self.type not in _ITEM_TYPES:
            raise InvalidInputError(f"Unknown conversation item type: {self.type!r}")
        object.__setattr__(self, "content", tuple(self.content))

    @staticmethod
    def new_id() -> str:
        return f"item_{uuid.uuid4().hex[:20]}"

    @classmethod
    def user_text(cls, text: str) -> ConversationItem:
        return cls(
            id=cls.new_id(),
            type="message",
            role="user",
            content=(ItemContent("input_text", text=text),),
        )

    @classmethod
    def function_output(cls, call_id: str, output: str) -> ConversationItem:
        return cls(id=cls.new_id(), type="function_call_output", call_id=call_id, output=output)

    @property
    def text(self) -> str:
        return "".join(c.text or c.transcript or "" for c in self.content)

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "type": self.type}
        if self.type == "message":
            out["role"] = self.role
            out["content"] = [c.to_wire() for c in self.content]
        elif self.type == "function_call":
            out.update(call_id=self.call_id, name=self.name, arguments=self.arguments or "")
        else:
            out.update(call_id=self.call_id, output=self.output or "")
        return out

    @classmethod
    def from_wire(cls, raw: dict[str, Any]) -> ConversationItem:
        content = tuple(
            ItemContent(
                type=str(c.get("type", "")),
                text=c.get("text"),
                transcript=c.get("transcript"),
                audio=c.get("audio"),
            )
            for c in raw.get("content") or ()
            if isinstance(c, dict)
        )
        return cls(
            id=str(raw.get("id") or cls.new_id()),
            type=raw.get("type", "message"),
            role=raw.get("role"),
            content=content,
            call_id=raw.get("call_id"),
            name=raw.get("name"),
            arguments=raw.get("arguments"),
            output=raw.get("output"),
        )
