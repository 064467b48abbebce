"""Realtime session and conversation configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
from typing import TYPE_CHECKING, Any

from llmux.errors import ConfigurationError

if TYPE_CHECKING:
    from llmux.types import ToolSpec

DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview"
DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime"
WIRE_SAMPLE_RATE = 24_000


class TurnDetection(str, enum.Enum):
    """Where voice activity is detected: on the server, locally, or not at all."""

    SERVER = "server"
    LOCAL = "local"
    NONE = "none"


@dataclass(frozen=True)
class ServerVAD:
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 200
    create_response: bool = True

    def payload(self) -> dict[str, Any]:
        return {
            "type": "server_vad",
            "threshold": self.threshold,
            "prefix_padding_ms": self.prefix_padding_ms,
            "silence_duration_ms": self.silence_duration_ms,
            "create_response": self.create_response,
        }


@dataclass(frozen=True)
class RealtimeConfig:
    """What the session asks the server for in ``session.update``."""

    model: str = DEFAULT_REALTIME_MODEL
    voice: str = "alloy"
    instructions: str | None = None
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    sample_rate: int = WIRE_SAMPLE_RATE
    turn_detection: TurnDetection = TurnDetection.SERVER
    server_vad: ServerVAD = field(default_factory=ServerVAD)
    temperature: float | None = None
    max_response_output_tokens: int | None = None
    transcription_model: str | None = None
    modalities: tuple[str, ...] = ("text", "audio")
    tool_choice: str = "auto"
    url: str = DEFAULT_REALTIME_URL

    def __post_init__(self) -> None:
        object.__setattr__(self, "turn_detection", TurnDetection(self.turn_detection))
        object.__setattr__(self, "modalities", tuple(self.modalities))
        if not self.model:
            raise ConfigurationError("Realtime model must be non-empty")
        if self.sample_rate <= 0:
            raise ConfigurationError("sample_rate must be > 0")
        unknown = set(self.modalities) - {"text", "audio"}
        if not self.modalities or unknown:
            raise ConfigurationError(
                f"Invalid modalities: {self.modalities!r}",
                hint="Use a non-empty subset of ('text', 'audio').",
            )
        if self.temperature is not None and not (0.6 <= self.temperature <= 1.2):
            raise ConfigurationError(
                "Realtime temperature must be within [0.6, 1.2]",
                hint="The realtime API rejects temperatures outside this range.",
            )

    def session_payload(self, tools: tuple[ToolSpec, ...] = ()) -> dict[str, Any]:
        """Body of the ``session`` field of a ``session.update`` event."""
        session: dict[str, Any] = {
            "modalities": list(self.modalities),
            "voice": self.voice,
            "input_audio_format": self.input_audio_format,
            "output_audio_format": self.output_audio_format,
            # Local VAD commits turns itself; the server must not.
            "turn_detection": (
                self.server_vad.payload()
                if self.turn_detection is TurnDetection.SERVER
                else None
            ),
        }
        if self.instructions is not None:
            session["instructions"] = self.instructions
        if self.temperature is not None:
            session["temperature"] = self.temperature
        if self.max_response_output_tokens is not None:
            session["max_response_output_tokens"] = self.max_response_output_tokens
        if self.transcription_model is not None:
            session["input_audio_transcription"] = {"model": self.transcription_model}
        if tools:
            session["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters_schema(),
                }
                for t in tools
            ]
            session["tool_choice"] = self.tool_choice
        return session


@dataclass(frozen=True)
class ConversationSettings:
    """Client-side behavior of a realtime conversation."""

    auto_reconnect: bool = True
    max_reconnect_attempts: int = 3
    reconnect_delay_s: float = 2.0
    buffer_while_disconnected: bool = True
    max_audio_buffer_bytes: int = 1024 * 1024
    local_vad_threshold: float = 0.01
    silence_duration_s: float = 0.5
    connect_timeout_s: float = 10.0
    tool_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("max_reconnect_attempts must be >= 0")
        if self.reconnect_delay_s < 0:
            raise ConfigurationError("reconnect_delay_s must be >= 0")
        if self.max_audio_buffer_bytes < 1:
            raise ConfigurationError("max_audio_buffer_bytes must be >= 1")
        if not (0.0 <= self.local_vad_threshold <= 1.0):
            raise ConfigurationError("local_vad_threshold must be within [0, 1]")
        if self.silence_duration_s < 0:
            raise ConfigurationError("silence_duration_s must be >= 0")
        if self.connect_timeout_s <= 0 or self.tool_timeout_s <= 0:
            raise ConfigurationError("Timeouts must be > 0")

    @classmethod
    def production(cls) -> ConversationSettings:
        return cls()

    @classmethod
    def development(cls) -> ConversationSettings:
        return cls(
            auto_reconnect=False,
            max_reconnect_attempts=1,
            reconnect_delay_s=1.0,
            buffer_while_disconnected=False,
        )
