"""Client-to-server realtime event envelopes.

Every builder returns a plain ``{"type": ..., "event_id": ...}`` dict ready
for ``json.dumps``; ids are unique per process.
"""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING, Any
import uuid

if TYPE_CHECKING:
    from llmux.realtime.items import ConversationItem

_counter = itertools.count(1)
_prefix = uuid.uuid4().hex[:8]


def new_event_id() -> str:
    return f"evt_{_prefix}{next(_counter):06d}"


def _event(event_type: str, **fields: Any) -> dict[str, Any]:
    return {"event_id": new_event_id(), "type": event_type, **fields}


def session_update(session: dict[str, Any]) -> dict[str, Any]:
    return _event("session.update", session=session)


def input_audio_append(audio_b64: str) -> dict[str, Any]:
    return _event("input_audio_buffer.append", audio=audio_b64)


def input_audio_commit() -> dict[str, Any]:
    return _event("input_audio_buffer.commit")


def input_audio_clear() -> dict[str, Any]:
    return _event("input_audio_buffer.clear")


def conversation_item_create(
    item: ConversationItem, *, previous_item_id: str | None = None
) -> dict[str, Any]:
    fields: dict[str, Any] = {"item": item.to_wire()}
    if previous_item_id is not None:
        fields["previous_item_id"] = previous_item_id
    return _event("conversation.item.create", **fields)


def conversation_item_delete(item_id: str) -> dict[str, Any]:
    return _event("conversation.item.delete", item_id=item_id)


def conversation_item_truncate(
    item_id: str, *, content_index: int = 0, audio_end_ms: int = 0
) -> dict[str, Any]:
    return _event(
        "conversation.item.truncate",
        item_id=item_id,
        content_index=content_index,
        audio_end_ms=audio_end_ms,
    )


def response_create(**response: Any) -> dict[str, Any]:
    """``response.create``; keyword overrides go into the ``response`` field."""
    if response:
        return _event("response.create", response=response)
    return _event("response.create")


def response_cancel() -> dict[str, Any]:
    return _event("response.cancel")
