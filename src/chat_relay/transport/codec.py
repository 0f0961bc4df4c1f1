"""
Wire codec for ChatEvent.

Deterministic compact JSON with short keys:

    {"a":{"id":..,"n":..},"e":epoch,"k":kind,"o":origin,"p":{..},"s":seq,"t":ms,"v":1}

Unknown kinds decode to EventKind.UNRECOGNIZED so a rolling upgrade never
takes down older nodes.
"""

import json
from typing import Any, Optional

from pydantic import ValidationError

from chat_relay.errors import DecodeError, EncodingError, EncodingTooLargeError
from chat_relay.models.event import PAYLOAD_MODELS, Actor, ChatEvent, EventKind, thaw

WIRE_VERSION = 1
DEFAULT_MAX_PAYLOAD_BYTES = 32 * 1024


def _canonical_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def validate_payload(kind: EventKind, payload: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Normalize a payload for ``kind``. Unrecognized payloads pass through untouched."""
    model = PAYLOAD_MODELS.get(kind)
    if model is None:
        return dict(payload or {})
    return model.model_validate(payload or {}).model_dump()


class Codec:
    def __init__(self, max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES):
        self.max_payload_bytes = max_payload_bytes

    def to_wire(self, event: ChatEvent) -> dict[str, Any]:
        return {
            "v": WIRE_VERSION,
            "o": event.origin_id,
            "e": event.epoch,
            "s": event.sequence,
            "t": event.timestamp,
            "k": event.wire_kind,
            "a": {"id": event.actor.player_id, "n": event.actor.name},
            "p": thaw(event.payload),
        }

    def encode(self, event: ChatEvent) -> bytes:
        try:
            data = _canonical_bytes(self.to_wire(event))
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Event {event.dedup_key} is not serializable: {e}")
        if len(data) > self.max_payload_bytes:
            raise EncodingTooLargeError(len(data), self.max_payload_bytes)
        return data

    def decode(self, data: bytes) -> ChatEvent:
        try:
            raw = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"Malformed event body: {e}")
        if not isinstance(raw, dict):
            raise DecodeError("Event body is not an object")

        wire_kind = raw.get("k")
        actor = raw.get("a")
        if not isinstance(wire_kind, str) or not isinstance(actor, dict):
            raise DecodeError("Event is missing kind or actor", details={"keys": sorted(raw)})
        kind = EventKind.parse(wire_kind)
        payload = raw.get("p")
        if payload is not None and not isinstance(payload, dict):
            raise DecodeError("Event payload is not an object")

        try:
            return ChatEvent(
                origin_id=raw["o"],
                epoch=raw["e"],
                sequence=raw["s"],
                timestamp=raw["t"],
                kind=kind,
                actor=Actor(player_id=actor["id"], name=actor["n"]),
                payload=validate_payload(kind, payload),
                raw_kind=wire_kind if kind is EventKind.UNRECOGNIZED else None,
            )
        except KeyError as e:
            raise DecodeError(f"Event is missing field {e}")
        except ValidationError as e:
            raise DecodeError(f"Invalid {wire_kind} event: {e.error_count()} validation error(s)",
                              details={"errors": e.errors(include_url=False)})
