"""Closed JSON value type for tool arguments and cache keys.

Tool-call arguments arrive as arbitrary JSON. Keeping them in a small tagged
type (instead of ``Any``) makes hashing and round-tripping total: every value
has exactly one canonical text form.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import json
import math
from typing import Any

from llmux.errors import InvalidInputError


class JSONKind(str, enum.Enum):
    """Tag for a JSONValue."""

    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class JSONValue:
    """A JSON value with an explicit kind.

    Arrays hold a tuple of JSONValue; objects hold a tuple of ``(key, value)``
    pairs in insertion order. Both are immutable so values can be hashed.
    """

    kind: JSONKind
    value: Any = None

    @classmethod
    def null(cls) -> JSONValue:
        return cls(JSONKind.NULL)

    @classmethod
    def from_python(cls, obj: Any) -> JSONValue:
        """Convert plain Python data (as produced by ``json.loads``) into a JSONValue."""
        if isinstance(obj, JSONValue):
            return obj
        if obj is None:
            return cls(JSONKind.NULL)
        # bool before int: bool is an int subclass.
        if isinstance(obj, bool):
            return cls(JSONKind.BOOL, obj)
        if isinstance(obj, int):
            return cls(JSONKind.INT, obj)
        if isinstance(obj, float):
            if not math.isfinite(obj):
                raise InvalidInputError(
                    f"Non-finite number is not valid JSON: {obj!r}",
                    hint="Replace NaN/Infinity with null or a string.",
                )
            return cls(JSONKind.FLOAT, obj)
        if isinstance(obj, str):
            return cls(JSONKind.STRING, obj)
        if isinstance(obj, (list, tuple)):
            return cls(JSONKind.ARRAY, tuple(cls.from_python(v) for v in obj))
        if isinstance(obj, dict):
            pairs = []
            for k, v in obj.items():
                if not isinstance(k, str):
                    raise InvalidInputError(
                        f"JSON object keys must be strings, got {type(k).__name__}"
                    )
                pairs.append((k, cls.from_python(v)))
            return cls(JSONKind.OBJECT, tuple(pairs))
        raise InvalidInputError(
            f"Unsupported JSON value type: {type(obj).__name__}",
            hint="Only None, bool, int, float, str, list/tuple and dict are allowed.",
        )

    def to_python(self) -> Any:
        """Return plain Python data (fresh containers on every call)."""
        if self.kind is JSONKind.ARRAY:
            return [v.to_python() for v in self.value]
        if self.kind is JSONKind.OBJECT:
            return {k: v.to_python() for k, v in self.value}
        return self.value

    def canonical(self) -> str:
        """Return the canonical JSON text: sorted keys, no whitespace."""
        return json.dumps(
            self.to_python(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )

    def get(self, key: str) -> JSONValue | None:
        """Look up *key* on an object value; None for other kinds or absent keys."""
        if self.kind is not JSONKind.OBJECT:
            return None
        for k, v in self.value:
            if k == key:
                return v
        return None

    def keys(self) -> list[str]:
        if self.kind is not JSONKind.OBJECT:
            return []
        return [k for k, _ in self.value]


def _reject_constant(name: str) -> Any:
    raise InvalidInputError(f"Non-finite number is not valid JSON: {name}")


def parse_json(text: str) -> JSONValue:
    """Parse JSON text into a JSONValue.

    Raises InvalidInputError on malformed input or NaN/Infinity literals.
    """
    try:
        data = json.loads(text, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Invalid JSON: {e.msg}") from e
    return JSONValue.from_python(data)


def canonical_json(obj: Any) -> str:
    """Return the canonical JSON text for plain Python data."""
    return JSONValue.from_python(obj).canonical()
