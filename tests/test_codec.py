import json

import pytest

from chat_relay.errors import DecodeError, EncodingTooLargeError
from chat_relay.models.event import Actor, ChatEvent, EventKind
from chat_relay.transport.codec import Codec


def make_event(**overrides) -> ChatEvent:
    fields = dict(
        origin_id="svr-a",
        epoch="abc123",
        sequence=7,
        timestamp=1_700_000_000_000,
        kind=EventKind.CHAT_MESSAGE,
        actor=Actor(player_id="p-1", name="Alice"),
        payload={"channel": "global", "text": "hello"},
    )
    fields.update(overrides)
    return ChatEvent(**fields)


class TestEncode:
    def test_deterministic_compact_json(self):
        codec = Codec()
        event = make_event()
        first = codec.encode(event)
        assert first == codec.encode(make_event())
        assert b" " not in first.replace(b"hello", b"")
        raw = json.loads(first)
        assert raw["v"] == 1
        assert raw["o"] == "svr-a"
        assert raw["s"] == 7
        assert raw["k"] == "chat_message"
        assert raw["a"] == {"id": "p-1", "n": "Alice"}

    def test_oversized_event_is_rejected_not_truncated(self):
        codec = Codec(max_payload_bytes=256)
        event = make_event(payload={"channel": "global", "text": "x" * 500})
        with pytest.raises(EncodingTooLargeError) as exc_info:
            codec.encode(event)
        assert exc_info.value.limit == 256
        assert exc_info.value.size > 256

    def test_unicode_text_survives(self):
        codec = Codec()
        event = make_event(payload={"channel": "global", "text": "héllo ✓"})
        assert codec.decode(codec.encode(event)).text == "héllo ✓"


class TestDecode:
    def test_decodes_known_event(self):
        codec = Codec()
        event = make_event()
        decoded = codec.decode(codec.encode(event))
        assert decoded == event
        assert decoded.dedup_key == ("svr-a", "abc123", 7)

    def test_unknown_kind_is_forward_tolerant(self):
        codec = Codec()
        body = json.dumps({
            "v": 2, "o": "svr-new", "e": "ep", "s": 1, "t": 5,
            "k": "emote", "a": {"id": "p-9", "n": "Zed"}, "p": {"anim": "wave"},
        }).encode()
        decoded = codec.decode(body)
        assert decoded.kind is EventKind.UNRECOGNIZED
        assert decoded.raw_kind == "emote"
        assert decoded.payload == {"anim": "wave"}
        # re-encoding keeps the original kind on the wire
        assert json.loads(codec.encode(decoded))["k"] == "emote"

    def test_presence_payload_defaults_to_empty(self):
        codec = Codec()
        event = make_event(kind=EventKind.PRESENCE_JOIN, payload={})
        body = json.loads(codec.encode(event))
        del body["p"]
        decoded = codec.decode(json.dumps(body).encode())
        assert decoded.kind is EventKind.PRESENCE_JOIN
        assert decoded.payload == {}

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2, 3]",
        b'{"o": "svr-a"}',
        b'{"v":1,"o":"a","e":"e","s":0,"t":1,"k":"chat_message","a":{"id":"p","n":"n"},"p":{"text":"x"}}',
        b'{"v":1,"o":"a","e":"e","s":1,"t":1,"k":"chat_message","a":{"id":"p","n":"n"},"p":{"channel":"g"}}',
        b'{"v":1,"o":"a","e":"e","s":1,"t":1,"k":"vanish_changed","a":{"id":"p","n":"n"},"p":"yes"}',
        b'{"v":1,"o":"a","e":"e","s":1,"t":1,"k":"chat_message","a":{"id":"p"},"p":{"text":"x"}}',
        b"\xff\xfe",
    ])
    def test_malformed_input_raises_decode_error(self, body):
        with pytest.raises(DecodeError):
            Codec().decode(body)


def test_sequence_beyond_uint64_is_rejected():
    body = json.dumps({
        "v": 1, "o": "a", "e": "e", "s": 2**64, "t": 1, "k": "presence_join",
        "a": {"id": "p", "n": "n"}, "p": {},
    }).encode()
    with pytest.raises(DecodeError):
        Codec().decode(body)


def test_nested_payload_is_read_only_and_reencodes():
    codec = Codec()
    body = json.dumps({
        "v": 1, "o": "svr-new", "e": "ep", "s": 1, "t": 5, "k": "emote",
        "a": {"id": "p-9", "n": "Zed"}, "p": {"tags": ["wave", {"loop": True}]},
    }).encode()
    decoded = codec.decode(body)

    with pytest.raises(TypeError):
        decoded.payload["tags"][1]["loop"] = False
    assert json.loads(codec.encode(decoded))["p"] == {"tags": ["wave", {"loop": True}]}
    assert decoded.model_dump(mode="json")["payload"] == {"tags": ["wave", {"loop": True}]}
