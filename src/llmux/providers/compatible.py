"""Chat-completions provider for OpenAI-compatible servers."""

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

BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "grok": "https://api.x.ai/v1",
    "groq": "https://api.groq.com/openai/v1",
    "mistral": "https://api.mistral.ai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}

# Servers that reject ``stream_options``.
_NO_STREAM_OPTIONS = frozenset({"mistral"})


class OpenAICompatibleProvider:
    """Chat-completions API, shared by Grok, Groq, Mistral, OpenRouter and Ollama."""

    def __init__(
        self,
        model: str,
        *,
        provider: str = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
        supports_vision: bool = False,
    ) -> None:
        if base_url is None and provider not in BASE_URLS:
            raise ConfigurationError(
                f"No default base URL for provider {provider!r}",
                hint="Pass base_url=... for custom OpenAI-compatible servers.",
            )
        self.name = provider
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or BASE_URLS[provider]).rstrip("/")
        self.timeout_s = timeout_s
        self._supports_vision = supports_vision
        self._client: Any = None
        self._http = http_client

    def _get_client(self) -> Any:
        """Lazily initialize an OpenAI SDK client pointed at the compatible server."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ConfigurationError(
                    "openai package not installed",
                    hint="pip install openai",
                ) from e
            self._client = AsyncOpenAI(
                # The SDK insists on a key; local servers ignore it.
                api_key=self.api_key or "unused",
                base_url=self.base_url,
                timeout=self.timeout_s,
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
        return ProviderCapabilities(
            supports_tools=True,
            supports_vision=self._supports_vision,
            supports_streaming=True,
            supports_audio=False,
            supports_reasoning=False,
        )

    def build_payload(self, request: ProviderRequest, *, stream: bool = False) -> dict[str, Any]:
        """Translate a request into a chat-completions body."""
        check_capabilities(request, self.capabilities, provider=self.name)
        settings = request.settings
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [_chat_message(m) for m in request.messages],
        }
        if settings.max_tokens is not None:
            payload["max_tokens"] = settings.max_tokens
        if settings.temperature is not None:
            payload["temperature"] = settings.temperature
        if settings.top_p is not None:
            payload["top_p"] = settings.top_p
        if settings.stop_sequences:
            payload["stop"] = list(settings.stop_sequences)
        if settings.reasoning_effort is not None:
            payload["reasoning_effort"] = settings.reasoning_effort
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters_schema(),
                    },
                }
                for t in request.tools
            ]
        payload.update(settings.provider_options)
        if stream:
            payload["stream"] = True
            if self.name not in _NO_STREAM_OPTIONS:
                payload["stream_options"] = {"include_usage": True}
        return payload

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        payload = self.build_payload(request)
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(**payload)
        except asyncio.CancelledError:
            raise
        except LlmuxError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase="generate",
                message=f"{self.name} generate failed",
            ) from e
        return _parse_completion(completion)

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        grammar = Grammar.OPENAI_CHAT if self.name == "openai" else Grammar.OPENAI_COMPATIBLE
        return await open_sse_stream(
            self._get_http(),
            url=f"{self.base_url}/chat/completions",
            payload=self.build_payload(request, stream=True),
            headers=self._headers(),
            grammar=grammar,
            provider=self.name,
        )

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()
        http, self._http = self._http, None
        if http is not None:
            await http.aclose()


def _chat_message(message: Message) -> dict[str, Any]:
    if message.role is Role.TOOL:
        return {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.text}
    if message.role is Role.ASSISTANT:
        out: dict[str, Any] = {"role": "assistant", "content": message.text or None}
        if message.tool_calls:
            out["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": c.arguments_json},
                }
                for c in message.tool_calls
            ]
        return out
    if all(p.kind == "text" for p in message.parts):
        return {"role": message.role.value, "content": message.text}
    content: list[dict[str, Any]] = []
    for part in message.parts:
        if part.kind == "text":
            content.append({"type": "text", "text": part.text})
        elif part.kind == "image":
            content.append({"type": "image_url", "image_url": {"url": data_url(part)}})
    return {"role": message.role.value, "content": content}


def _parse_completion(completion: Any) -> ProviderResponse:
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ProviderResponse()
    choice = choices[0]
    message = getattr(choice, "message", None)
    tool_calls = [
        ToolCall.from_json(
            getattr(tc, "id", ""),
            getattr(getattr(tc, "function", None), "name", ""),
            getattr(getattr(tc, "function", None), "arguments", None),
        )
        for tc in (getattr(message, "tool_calls", None) or [])
    ]
    usage_raw = getattr(completion, "usage", None)
    usage = None
    if usage_raw is not None:
        usage = Usage(
            input_tokens=int(getattr(usage_raw, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage_raw, "completion_tokens", 0) or 0),
        )
    reasoning = getattr(message, "reasoning_content", None) or getattr(message, "reasoning", None)
    response_id = getattr(completion, "id", None)
    return ProviderResponse(
        text=getattr(message, "content", None) or "",
        usage=usage,
        tool_calls=tool_calls,
        finish_reason=FinishReason.from_provider(getattr(choice, "finish_reason", None)),
        reasoning=reasoning if isinstance(reasoning, str) and reasoning else None,
        response_id=response_id if isinstance(response_id, str) else None,
    )
