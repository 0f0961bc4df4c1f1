"""
chat-relay — fleet-wide chat synchronization for game servers.

Relays chat, presence and vanish state between independent server processes
over Redis pub/sub with per-origin sequencing, dedup and vanish-aware delivery.
"""

from chat_relay.config import RelayConfig
from chat_relay.dedup import DedupCache
from chat_relay.errors import (
    RelayError,
    TransportError,
    EncodingError,
    EncodingTooLargeError,
    DecodeError,
    VisibilityProviderError,
    QueueOverflowError,
    SessionClosingError,
    MessagingError,
    ConfigError,
)
from chat_relay.messaging import DirectMessenger, TargetInfo
from chat_relay.models.event import Actor, ChatEvent, EventKind
from chat_relay.node import RelayNode
from chat_relay.relay import ArchiveSink, RelayEngine
from chat_relay.sequencer import Sequencer
from chat_relay.transport.codec import Codec
from chat_relay.transport.session import SessionState, TransportSession
from chat_relay.visibility import VanishDirectory, VisibilityGate, VisibilityProvider

__version__ = "0.1.0"
__all__ = [
    "RelayConfig",
    "RelayNode",
    "RelayEngine",
    "ArchiveSink",
    "TransportSession",
    "SessionState",
    "Codec",
    "Sequencer",
    "DedupCache",
    "VisibilityGate",
    "VisibilityProvider",
    "VanishDirectory",
    "DirectMessenger",
    "TargetInfo",
    "Actor",
    "ChatEvent",
    "EventKind",
    "RelayError",
    "TransportError",
    "EncodingError",
    "EncodingTooLargeError",
    "DecodeError",
    "VisibilityProviderError",
    "QueueOverflowError",
    "SessionClosingError",
    "MessagingError",
    "ConfigError",
]
