"""Shared utilities for provider implementations."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

from llmux.errors import InvalidInputError, UnsupportedOperationError

if TYPE_CHECKING:
    from llmux.providers.base import ProviderCapabilities
    from llmux.types import ContentPart, ProviderRequest


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def data_url(part: ContentPart) -> str:
    """Return a ``data:`` URL for inline bytes, or the part's remote URI."""
    if part.data is not None:
        return f"data:{part.mime_type or 'application/octet-stream'};base64,{b64(part.data)}"
    if part.uri is not None:
        return part.uri
    raise InvalidInputError(f"{part.kind} part has neither data nor uri")


def check_capabilities(
    request: ProviderRequest, capabilities: ProviderCapabilities, *, provider: str
) -> None:
    """Reject requests that need features the provider lacks."""
    if request.tools and not capabilities.supports_tools:
        raise UnsupportedOperationError(f"{provider} does not support tool calling")
    kinds = {p.kind for m in request.messages for p in m.parts}
    if "image" in kinds and not capabilities.supports_vision:
        raise UnsupportedOperationError(
            f"{provider} does not accept image input",
            hint="Pick a vision-capable model or drop the image parts.",
        )
    if "audio" in kinds and not capabilities.supports_audio:
        raise UnsupportedOperationError(f"{provider} does not accept audio input")
