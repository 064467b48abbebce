"""Anthropic Messages API provider."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

from llmux.errors import ConfigurationError, LlmuxError
from llmux.normalizer import Grammar
from llmux.providers._errors import wrap_provider_error
from llmux.providers._sse import open_sse_stream
from llmux.providers._utils import b64, check_capabilities
from llmux.providers.base import ProviderCapabilities
from llmux.types import FinishReason, ProviderResponse, Role, ToolCall, Usage
from llmux.values import JSONValue

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.deltas import CanonicalDelta
    from llmux.types import ContentPart, Message, ProviderRequest

_DEFAULT_BASE_URL = "https://api.anthropic.com"
_ANTHROPIC_VERSION = "2023-06-01"
_ANTHROPIC_MAX_TOKENS = 8192
_THINKING_BUDGETS = {
    "minimal": 1024,
    "low": 2048,
    "medium": 4096,
    "high": 6144,
}


class AnthropicProvider:
    """Anthropic Messages API provider."""

    name = "anthropic"

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize with a model id and API key."""
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or _DEFAULT_BASE_URL).rstrip("/")
        self.timeout_s = timeout_s
        self._client: Any = None
        self._http = http_client

    def _get_client(self) -> Any:
        """Lazily initialize and return the async Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise ConfigurationError(
                    "anthropic package not installed",
                    hint="pip install anthropic",
                ) from e
            self._client = AsyncAnthropic(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout_s
            )
        return self._client

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout_s)
        return self._http

    @property
    def model_id(self) -> str:
        return self.model

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            supports_tools=True,
            supports_vision=True,
            supports_streaming=True,
            supports_audio=False,
            supports_reasoning=True,
            context_length=200_000,
        )

    def build_payload(self, request: ProviderRequest, *, stream: bool = False) -> dict[str, Any]:
        """Translate a request into a Messages API body."""
        check_capabilities(request, self.capabilities, provider=self.name)
        settings = request.settings
        messages: list[dict[str, Any]] = []
        for message in request.messages:
            converted = _anthropic_message(message)
            if converted is not None:
                _append_message(messages, converted)

        max_tokens = settings.max_tokens or _ANTHROPIC_MAX_TOKENS
        payload: dict[str, Any] = {"model": self.model, "messages": messages}
        if request.system_instruction:
            payload["system"] = request.system_instruction
        if settings.reasoning_effort is not None:
            budget = _THINKING_BUDGETS[settings.reasoning_effort]
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
            # The thinking budget counts against max_tokens.
            max_tokens = max(max_tokens, budget + 1024)
        else:
            if settings.temperature is not None:
                payload["temperature"] = settings.temperature
            if settings.top_p is not None:
                payload["top_p"] = settings.top_p
        payload["max_tokens"] = max_tokens
        if settings.stop_sequences:
            payload["stop_sequences"] = list(settings.stop_sequences)
        if request.tools:
            payload["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters_schema(),
                }
                for t in request.tools
            ]
        payload.update(settings.provider_options)
        if stream:
            payload["stream"] = True
        return payload

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """Generate a response using Anthropic's Messages API."""
        payload = self.build_payload(request)
        client = self._get_client()
        try:
            response = await client.messages.create(**payload)
        except asyncio.CancelledError:
            raise
        except LlmuxError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase="generate",
                message="Anthropic generate failed",
            ) from e
        return _parse_response(response)

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        return await open_sse_stream(
            self._get_http(),
            url=f"{self.base_url}/v1/messages",
            payload=self.build_payload(request, stream=True),
            headers={"x-api-key": self.api_key, "anthropic-version": _ANTHROPIC_VERSION},
            grammar=Grammar.ANTHROPIC,
            provider=self.name,
        )

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client, self._client = self._client, None
        if client is not None:
            await client.close()
        http, self._http = self._http, None
        if http is not None:
            await http.aclose()


def _content_block(part: ContentPart) -> dict[str, Any]:
    if part.kind == "text":
        return {"type": "text", "text": part.text}
    block_type = "image" if part.kind == "image" else "document"
    if part.data is not None:
        source = {"type": "base64", "media_type": part.mime_type, "data": b64(part.data)}
    else:
        source = {"type": "url", "url": part.uri}
    return {"type": block_type, "source": source}


def _anthropic_message(message: Message) -> dict[str, Any] | None:
    if message.role is Role.SYSTEM:
        return None
    if message.role is Role.TOOL:
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.text,
                }
            ],
        }
    blocks = [_content_block(p) for p in message.parts]
    if message.role is Role.ASSISTANT:
        for call in message.tool_calls:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments.to_python(),
                }
            )
        return {"role": "assistant", "content": blocks} if blocks else None
    return {"role": "user", "content": blocks}


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation, e.g. a tool_result
    user message followed by the next user prompt becomes one message.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        messages[-1]["content"] = messages[-1]["content"] + msg["content"]
    else:
        messages.append(msg)


def _parse_response(response: Any) -> ProviderResponse:
    """Parse an Anthropic Message into ProviderResponse."""
    text_parts: list[str] = []
    reasoning_parts: list[str] = []
    tool_calls: list[ToolCall] = []

    for block in getattr(response, "content", None) or []:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            text_parts.append(getattr(block, "text", ""))
        elif block_type == "thinking":
            thinking = getattr(block, "thinking", "")
            if isinstance(thinking, str) and thinking:
                reasoning_parts.append(thinking)
        elif block_type == "tool_use":
            tool_calls.append(
                ToolCall(
                    id=getattr(block, "id", ""),
                    name=getattr(block, "name", ""),
                    arguments=JSONValue.from_python(getattr(block, "input", None) or {}),
                )
            )

    usage = None
    usage_raw = getattr(response, "usage", None)
    if usage_raw is not None:
        usage = Usage(
            input_tokens=int(getattr(usage_raw, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage_raw, "output_tokens", 0) or 0),
        )

    response_id = getattr(response, "id", None)
    return ProviderResponse(
        text="".join(text_parts),
        usage=usage,
        tool_calls=tool_calls,
        finish_reason=FinishReason.from_provider(getattr(response, "stop_reason", None)),
        reasoning="\n\n".join(reasoning_parts).strip() if reasoning_parts else None,
        response_id=response_id if isinstance(response_id, str) else None,
    )
