"""Google Gemini provider."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any
import uuid

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

_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
_THINKING_BUDGETS = {"minimal": 0, "low": 1024, "medium": 8192, "high": 24576}


def _tool_output(text: str) -> dict[str, Any]:
    """Gemini function responses must be objects."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {"result": text}
    return parsed if isinstance(parsed, dict) else {"result": parsed}


def _call_names(request: ProviderRequest) -> dict[str, str]:
    return {c.id: c.name for m in request.messages for c in m.tool_calls}


class GeminiProvider:
    """Google Gemini API provider.

    ``generate_text`` uses google-genai; ``stream_text`` reads
    ``streamGenerateContent?alt=sse`` directly.
    """

    name = "gemini"

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        base_url: str | None = None,
        timeout_s: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create provider with a model id and API key."""
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or _DEFAULT_BASE_URL).rstrip("/")
        self.timeout_s = timeout_s
        self._client: Any = None
        self._http = http_client

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            try:
                from google import genai
            except ImportError as e:
                raise ConfigurationError(
                    "google-genai package not installed",
                    hint="pip install google-genai",
                ) from e
            self._client = genai.Client(api_key=self.api_key)
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
            supports_vision=True,
            supports_streaming=True,
            supports_audio=True,
            supports_reasoning=True,
            context_length=1_000_000,
        )

    # -- REST body (streaming) ---------------------------------------------

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        """Translate a request into a ``generateContent`` REST body."""
        check_capabilities(request, self.capabilities, provider=self.name)
        names = _call_names(request)
        contents: list[dict[str, Any]] = []
        for message in request.messages:
            if message.role is Role.SYSTEM:
                continue
            role = "model" if message.role is Role.ASSISTANT else "user"
            parts = _rest_parts(message, names)
            if not parts:
                continue
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})

        payload: dict[str, Any] = {"contents": contents}
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}

        settings = request.settings
        generation: dict[str, Any] = {}
        if settings.max_tokens is not None:
            generation["maxOutputTokens"] = settings.max_tokens
        if settings.temperature is not None:
            generation["temperature"] = settings.temperature
        if settings.top_p is not None:
            generation["topP"] = settings.top_p
        if settings.stop_sequences:
            generation["stopSequences"] = list(settings.stop_sequences)
        if settings.reasoning_effort is not None:
            generation["thinkingConfig"] = {
                "includeThoughts": True,
                "thinkingBudget": _THINKING_BUDGETS[settings.reasoning_effort],
            }
        if generation:
            payload["generationConfig"] = generation
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": t.parameters_schema(),
                        }
                        for t in request.tools
                    ]
                }
            ]
        payload.update(settings.provider_options)
        return payload

    async def stream_text(self, request: ProviderRequest) -> AsyncIterator[CanonicalDelta]:
        return await open_sse_stream(
            self._get_http(),
            url=f"{self.base_url}/models/{self.model}:streamGenerateContent",
            params={"alt": "sse"},
            payload=self.build_payload(request),
            headers={"x-goog-api-key": self.api_key},
            grammar=Grammar.GOOGLE,
            provider=self.name,
        )

    # -- SDK (non-streaming) -----------------------------------------------

    async def generate_text(self, request: ProviderRequest) -> ProviderResponse:
        """Generate content from the Gemini model."""
        check_capabilities(request, self.capabilities, provider=self.name)
        client = self._get_client()
        from google.genai import types

        settings = request.settings
        config_kwargs: dict[str, Any] = {}
        if request.system_instruction:
            config_kwargs["system_instruction"] = request.system_instruction
        if settings.max_tokens is not None:
            config_kwargs["max_output_tokens"] = settings.max_tokens
        if settings.temperature is not None:
            config_kwargs["temperature"] = settings.temperature
        if settings.top_p is not None:
            config_kwargs["top_p"] = settings.top_p
        if settings.stop_sequences:
            config_kwargs["stop_sequences"] = list(settings.stop_sequences)
        if settings.reasoning_effort is not None:
            config_kwargs["thinking_config"] = types.ThinkingConfig(
                include_thoughts=True,
                thinking_budget=_THINKING_BUDGETS[settings.reasoning_effort],
            )
        if request.tools:
            config_kwargs["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=t.name,
                            description=t.description,
                            parameters_json_schema=t.parameters_schema(),
                        )
                        for t in request.tools
                    ]
                )
            ]
        config_kwargs.update(settings.provider_options)

        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=_sdk_contents(request, types),
                config=types.GenerateContentConfig(**config_kwargs),
            )
        except asyncio.CancelledError:
            raise
        except LlmuxError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=self.name,
                phase="generate",
                message="Gemini generate failed",
            ) from e
        return _parse_response(response)

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aio.aclose()
        http, self._http = self._http, None
        if http is not None:
            await http.aclose()


def _rest_part(part: ContentPart) -> dict[str, Any]:
    if part.kind == "text":
        return {"text": part.text}
    if part.data is not None:
        return {"inlineData": {"mimeType": part.mime_type, "data": b64(part.data)}}
    return {"fileData": {"mimeType": part.mime_type, "fileUri": part.uri}}


def _rest_parts(message: Message, names: dict[str, str]) -> list[dict[str, Any]]:
    if message.role is Role.TOOL:
        call_id = message.tool_call_id or ""
        return [
            {
                "functionResponse": {
                    "id": call_id,
                    "name": names.get(call_id, "unknown_tool"),
                    "response": _tool_output(message.text),
                }
            }
        ]
    parts = [_rest_part(p) for p in message.parts]
    for call in message.tool_calls:
        parts.append(
            {"functionCall": {"id": call.id, "name": call.name, "args": call.arguments.to_python()}}
        )
    return parts


def _sdk_contents(request: ProviderRequest, types: Any) -> list[Any]:
    names = _call_names(request)
    contents: list[Any] = []
    for message in request.messages:
        if message.role is Role.SYSTEM:
            continue
        role = "model" if message.role is Role.ASSISTANT else "user"
        parts: list[Any] = []
        if message.role is Role.TOOL:
            call_id = message.tool_call_id or ""
            parts.append(
                types.Part.from_function_response(
                    name=names.get(call_id, "unknown_tool"),
                    response=_tool_output(message.text),
                )
            )
        for part in message.parts if message.role is not Role.TOOL else ():
            if part.kind == "text":
                parts.append(types.Part.from_text(text=part.text))
            elif part.data is not None:
                parts.append(types.Part.from_bytes(data=part.data, mime_type=part.mime_type))
            else:
                parts.append(types.Part.from_uri(file_uri=part.uri, mime_type=part.mime_type))
        for call in message.tool_calls:
            parts.append(
                types.Part.from_function_call(name=call.name, args=call.arguments.to_python())
            )
        if not parts:
            continue
        if contents and contents[-1].role == role:
            contents[-1].parts.extend(parts)
        else:
            contents.append(types.Content(role=role, parts=parts))
    return contents


def _parse_response(response: Any) -> ProviderResponse:
    """Parse a google-genai response into ProviderResponse."""
    text_parts: list[str] = []
    reasoning_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    finish_reason: FinishReason | None = None

    candidates = getattr(response, "candidates", None) or []
    if candidates:
        candidate = candidates[0]
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            text = getattr(part, "text", None)
            if text and getattr(part, "thought", False):
                reasoning_parts.append(text)
            elif text:
                text_parts.append(text)
            fc = getattr(part, "function_call", None)
            if fc is not None:
                tool_calls.append(
                    ToolCall(
                        id=str(getattr(fc, "id", None) or f"call_{uuid.uuid4().hex[:8]}"),
                        name=str(getattr(fc, "name", "")),
                        arguments=JSONValue.from_python(getattr(fc, "args", None) or {}),
                    )
                )
        raw_reason = getattr(candidate, "finish_reason", None)
        if raw_reason is not None:
            finish_reason = FinishReason.from_provider(getattr(raw_reason, "name", str(raw_reason)))
    if tool_calls and finish_reason in (None, FinishReason.STOP):
        finish_reason = FinishReason.TOOL_CALLS

    usage = None
    um = getattr(response, "usage_metadata", None)
    if um is not None:
        thoughts = getattr(um, "thoughts_token_count", None)
        usage = Usage(
            input_tokens=int(getattr(um, "prompt_token_count", 0) or 0),
            output_tokens=int(getattr(um, "candidates_token_count", 0) or 0),
            reasoning_tokens=int(thoughts) if thoughts is not None else None,
        )

    response_id = getattr(response, "response_id", None)
    return ProviderResponse(
        text="".join(text_parts),
        usage=usage,
        tool_calls=tool_calls,
        finish_reason=finish_reason,
        reasoning="\n\n".join(reasoning_parts).strip() if reasoning_parts else None,
        response_id=response_id if isinstance(response_id, str) else None,
    )
