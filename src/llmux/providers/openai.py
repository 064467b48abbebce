"""OpenAI Responses API provider."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import httpx

from llmux.errors import ConfigurationError, LlmuxError
from llmux.normalizer import Grammar
from llmux.providers._errors import wrap_provider_error
from llmux.providers._sse import open_sse_stream
from llmux.providers._utils import check_capabilities, data_url
from llmux.providers.base import ProviderCapabilities
from llmux.types import FinishReason, ProviderResponse, Role, ToolCall, Usage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.deltas import CanonicalDelta
    from llmux.types import Message, ProviderRequest

_DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider:
    """OpenAI Responses API provider.

    Non-streaming calls go through the ``openai`` SDK; streaming reads the raw
    SSE body with httpx so the shared normalizer sees the wire events.
    """

    name = "openai"

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
        """Lazily initialize and return the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ConfigurationError(
                    "openai package not installed",
                    hint="pip install openai",
                ) from e
            self._client = AsyncOpenAI(
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
        )

    def build_payload(self, request: ProviderRequest, *, stream: bool = False) -> dict[str, Any]:
        """Translate a request into a Responses API body."""
        check_capabilities(request, self.capabilities, provider=self.name)
        settings = request.settings
        payload: dict[str, Any] = {
            "model": self.model,
            "input": [item for m in request.messages for item in _input_items(m)],
        }
        if request.system_instruction:
            payload["instructions"] = request.system_instruction
        if settings.max_tokens is not None:
            payload["max_output_tokens"] = settings.max_tokens
        if settings.temperature is not None:
            payload["temperature"] = settings.temperature
        if settings.top_p is not None:
            payload["top_p"] = settings.top_p
        if settings.reasoning_effort is not None:
            payload["reasoning"] = {"effort": settings.reasoning_effort, "summary": "auto"}
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters_schema(),
                }
                for t in request.tools
            ]
        payload.update(settings.provider_options)
        if stream:
            payload["stream"] = True
        return payload

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """Generate a response using OpenAI's responses endpoint."""
        payload = self.build_payload(request)
        client = self._get_client()
        try:
            response = await client.responses.create(**payload)
        except asyncio.CancelledError:
            raise
        except LlmuxError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase="generate",
                message="OpenAI generate failed",
            ) from e
        return _parse_response(response)

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        """Open a Responses API event stream."""
        return await open_sse_stream(
            self._get_http(),
            url=f"{self.base_url}/responses",
            payload=self.build_payload(request, stream=True),
            headers={"Authorization": f"Bearer {self.api_key}"},
            grammar=Grammar.OPENAI_RESPONSES,
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


def _input_items(message: Message) -> list[dict[str, Any]]:
    """Convert one message into Responses API input items."""
    if message.role is Role.SYSTEM:
        return []
    if message.role is Role.TOOL:
        return [
            {
                "type": "function_call_output",
                "call_id": message.tool_call_id,
                "output": message.text,
            }
        ]
    if message.role is Role.ASSISTANT:
        items: list[dict[str, Any]] = []
        if message.text:
            items.append(
                {
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": message.text}],
                }
            )
        for call in message.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": call.id,
                    "name": call.name,
                    "arguments": call.arguments_json,
                }
            )
        return items

    content: list[dict[str, Any]] = []
    for part in message.parts:
        if part.kind == "text":
            content.append({"type": "input_text", "text": part.text})
        elif part.kind == "image":
            content.append({"type": "input_image", "image_url": data_url(part)})
        elif part.kind == "file":
            if part.data is not None:
                content.append(
                    {"type": "input_file", "filename": "attachment", "file_data": data_url(part)}
                )
            else:
                content.append({"type": "input_file", "file_url": part.uri})
    return [{"role": "user", "content": content}]


def _parse_response(response: Any) -> ProviderResponse:
    """Parse a Responses API object into ProviderResponse."""
    tool_calls: list[ToolCall] = []
    reasoning_parts: list[str] = []
    for item in getattr(response, "output", None) or []:
        item_type = getattr(item, "type", None)
        if item_type == "function_call":
            tool_calls.append(
                ToolCall.from_json(
                    getattr(item, "call_id", ""),
                    getattr(item, "name", ""),
                    getattr(item, "arguments", None),
                )
            )
        elif item_type == "reasoning":
            for summary_item in getattr(item, "summary", None) or []:
                text = getattr(summary_item, "text", None)
                if text:
                    reasoning_parts.append(text)

    usage: Usage | None = None
    usage_raw = getattr(response, "usage", None)
    if usage_raw is not None:
        details = getattr(usage_raw, "output_tokens_details", None)
        reasoning_tokens = getattr(details, "reasoning_tokens", None) if details else None
        usage = Usage(
            input_tokens=int(getattr(usage_raw, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage_raw, "output_tokens", 0) or 0),
            reasoning_tokens=int(reasoning_tokens) if reasoning_tokens is not None else None,
        )

    response_id = getattr(response, "id", None)
    return ProviderResponse(
        text=getattr(response, "output_text", "") or "",
        usage=usage,
        tool_calls=tool_calls,
        finish_reason=_extract_finish_reason(response, has_tool_calls=bool(tool_calls)),
        reasoning="\n\n".join(reasoning_parts).strip() if reasoning_parts else None,
        response_id=response_id if isinstance(response_id, str) else None,
    )


def _extract_finish_reason(response: Any, *, has_tool_calls: bool) -> FinishReason | None:
    """Prefer incomplete_details.reason, which names the actionable root cause."""
    status = getattr(response, "status", None)
    if not isinstance(status, str):
        return None
    if status.lower() == "incomplete":
        details = getattr(response, "incomplete_details", None)
        reason = getattr(details, "reason", None) if details is not None else None
        if isinstance(reason, str) and reason:
            return FinishReason.from_provider(reason)
    if has_tool_calls:
        return FinishReason.TOOL_CALLS
    return FinishReason.from_provider(status)
