"""
ChatEvent, the canonical unit of fleet-wide synchronization.
"""

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

MAX_SEQUENCE = 2**64 - 1


class EventKind(str, Enum):
    CHAT_MESSAGE = "chat_message"
    PRESENCE_JOIN = "presence_join"
    PRESENCE_QUIT = "presence_quit"
    VANISH_CHANGED = "vanish_changed"
    PRIVATE_MESSAGE = "private_message"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        """Map a wire kind to a member; unknown values become UNRECOGNIZED."""
        try:
            kind = cls(value)
        except ValueError:
            return cls.UNRECOGNIZED
        return kind


# Kinds the visibility gate may hide from ordinary audiences
GATED_KINDS = frozenset({
    EventKind.CHAT_MESSAGE,
    EventKind.PRIVATE_MESSAGE,
    EventKind.PRESENCE_JOIN,
    EventKind.PRESENCE_QUIT,
})


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str   # stable UUID string
    name: str        # display name snapshot at event time


class ChatPayload(BaseModel):
    channel: str = "global"
    text: str


class PrivatePayload(BaseModel):
    recipient: str
    text: str


class VanishPayload(BaseModel):
    vanished: bool


class EmptyPayload(BaseModel):
    pass


PAYLOAD_MODELS: dict[EventKind, type[BaseModel]] = {
    EventKind.CHAT_MESSAGE: ChatPayload,
    EventKind.PRIVATE_MESSAGE: PrivatePayload,
    EventKind.VANISH_CHANGED: VanishPayload,
    EventKind.PRESENCE_JOIN: EmptyPayload,
    EventKind.PRESENCE_QUIT: EmptyPayload,
}

DedupKey = tuple[str, str, int]


def freeze(value: Any) -> Any:
    """Read-only deep copy of a JSON-like value (mappings become mappingproxy, lists tuples)."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Plain dict/list copy of a frozen value."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class ChatEvent(BaseModel):
    """Immutable once sequenced.

    ``dedup_key`` identifies the logical event across the whole fleet; the
    same key observed twice always carries the same payload.
    """

    model_config = ConfigDict(frozen=True)

    origin_id: str
    epoch: str
    sequence: int = Field(ge=1, le=MAX_SEQUENCE)
    timestamp: int = Field(ge=0)
    kind: EventKind
    actor: Actor
    payload: Mapping[str, Any] = Field(default_factory=lambda: freeze({}))
    raw_kind: Optional[str] = None  # original wire kind when kind is UNRECOGNIZED

    @field_validator("payload", mode="after")
    @classmethod
    def _freeze_payload(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze(value)

    @field_serializer("payload")
    def _serialize_payload(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return thaw(value)

    @property
    def dedup_key(self) -> DedupKey:
        return (self.origin_id, self.epoch, self.sequence)

    @property
    def wire_kind(self) -> str:
        if self.kind is EventKind.UNRECOGNIZED and self.raw_kind:
            return self.raw_kind
        return self.kind.value

    @property
    def text(self) -> Optional[str]:
        return self.payload.get("text")

    @property
    def channel(self) -> Optional[str]:
        return self.payload.get("channel")

    @property
    def recipient(self) -> Optional[str]:
        return self.payload.get("recipient")

    @property
    def vanished(self) -> Optional[bool]:
        return self.payload.get("vanished")

    def __repr__(self) -> str:
        return (
            f"ChatEvent(origin_id={self.origin_id!r}, sequence={self.sequence}, "
            f"kind={self.wire_kind!r}, actor={self.actor.name!r})"
        )
