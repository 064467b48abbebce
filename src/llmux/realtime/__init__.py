"""Realtime (duplex audio/text) sessions."""

from llmux.realtime.config import (
    ConversationSettings,
    RealtimeConfig,
    ServerVAD,
    TurnDetection,
)
from llmux.realtime.items import ConversationItem, ItemContent
from llmux.realtime.session import (
    ConnectionState,
    RealtimeSession,
    SessionEvent,
    TurnState,
)
from llmux.realtime.transport import RealtimeTransport, WebSocketTransport
from llmux.realtime.vad import EnergyVAD, VADResult

__all__ = [
    "ConnectionState",
    "ConversationItem",
    "ConversationSettings",
    "EnergyVAD",
    "ItemContent",
    "RealtimeConfig",
    "RealtimeSession",
    "RealtimeTransport",
    "ServerVAD",
    "SessionEvent",
    "TurnDetection",
    "TurnState",
    "VADResult",
    "WebSocketTransport",
]
