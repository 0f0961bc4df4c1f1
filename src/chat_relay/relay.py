"""
Relay engine. Turns local game events into fleet-wide, deduplicated,
visibility-gated deliveries.

Outbound: publish_local() sequences, encodes and enqueues the event, then
delivers it locally (loop-back) so the origin's players see it without a
broker round-trip.

Inbound: on_remote_message() decodes, drops self-origin echoes and
duplicates, archives, then fans out to every registered consumer with a
per-consumer suppression flag.

Inbound delivery runs on the transport I/O thread in broker order; loop-back
delivery runs on the producer's thread. Consumers must be thread-safe.
"""

import logging
import threading
from typing import Any, Callable, Iterable, Optional, Protocol

from chat_relay import metrics
from chat_relay.dedup import DedupCache
from chat_relay.errors import DecodeError, EncodingError, SessionClosingError
from chat_relay.models.event import Actor, ChatEvent, EventKind
from chat_relay.sequencer import Sequencer
from chat_relay.transport.codec import Codec, validate_payload
from chat_relay.transport.session import SessionState, TransportSession
from chat_relay.visibility import VisibilityGate

logger = logging.getLogger(__name__)

DEFAULT_CHAT_CHANNEL = "archivechat:chat"
DEFAULT_PRIVATE_CHANNEL = "archivechat:private"

DeliveryCallback = Callable[[ChatEvent, bool], None]


class ArchiveSink(Protocol):
    def archive(self, event: ChatEvent) -> None: ...


class Consumer:
    __slots__ = ("callback", "privileged", "kinds")

    def __init__(self, callback: DeliveryCallback, privileged: bool, kinds: Optional[frozenset[EventKind]]):
        self.callback = callback
        self.privileged = privileged
        self.kinds = kinds

    def accepts(self, kind: EventKind) -> bool:
        if self.kinds is not None:
            return kind in self.kinds
        if kind is EventKind.UNRECOGNIZED:
            return False
        if kind is EventKind.VANISH_CHANGED:
            return self.privileged
        return True

    def __repr__(self) -> str:
        return f"Consumer(callback={self.callback!r}, privileged={self.privileged})"


class RelayEngine:
    def __init__(
        self,
        origin_id: str,
        transport: TransportSession,
        *,
        codec: Optional[Codec] = None,
        sequencer: Optional[Sequencer] = None,
        dedup: Optional[DedupCache] = None,
        visibility: Optional[VisibilityGate] = None,
        archive: Optional[ArchiveSink] = None,
        chat_channel: str = DEFAULT_CHAT_CHANNEL,
        private_channel: str = DEFAULT_PRIVATE_CHANNEL,
    ):
        self.origin_id = origin_id
        self._transport = transport
        self._codec = codec or Codec()
        self._sequencer = sequencer or Sequencer()
        self._dedup = dedup or DedupCache()
        self._visibility = visibility or VisibilityGate()
        self._archive = archive
        self._chat_channel = chat_channel
        self._private_channel = private_channel
        self._consumers: list[Consumer] = []
        self._consumers_lock = threading.Lock()
        # held from stamping through loop-back so enqueue order matches sequence order
        self._publish_lock = threading.RLock()
        self._remove_handlers = [
            transport.add_message_handler(self._on_transport_message),
            transport.add_state_listener(self._on_state_change),
        ]

    @property
    def epoch(self) -> str:
        return self._sequencer.epoch

    @property
    def transport(self) -> TransportSession:
        return self._transport

    @property
    def channels(self) -> list[str]:
        return [self._chat_channel, self._private_channel]

    def channel_for(self, kind: EventKind) -> str:
        return self._private_channel if kind is EventKind.PRIVATE_MESSAGE else self._chat_channel

    # -- consumers ---------------------------------------------------------

    def register_consumer(
        self,
        callback: DeliveryCallback,
        privileged: bool = False,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> Callable[[], None]:
        """Register a delivery callback ``(event, suppressed_for_ordinary)``.

        vanish_changed events only reach privileged consumers; unrecognized
        events only reach consumers that list them in ``kinds``.
        Returns a cleanup function.
        """
        consumer = Consumer(callback, privileged, frozenset(kinds) if kinds is not None else None)
        with self._consumers_lock:
            self._consumers.append(consumer)

        def remove() -> None:
            with self._consumers_lock:
                try:
                    self._consumers.remove(consumer)
                except ValueError:
                    pass
        return remove

    # -- event source facade -----------------------------------------------

    def notify_chat_sent(self, actor: Actor, channel: str, text: str) -> Optional[ChatEvent]:
        return self.publish_local(EventKind.CHAT_MESSAGE, actor, {"channel": channel, "text": text})

    def notify_presence(self, actor: Actor, joined: bool) -> Optional[ChatEvent]:
        kind = EventKind.PRESENCE_JOIN if joined else EventKind.PRESENCE_QUIT
        return self.publish_local(kind, actor)

    def notify_vanish_changed(self, actor: Actor, vanished: bool) -> Optional[ChatEvent]:
        return self.publish_local(EventKind.VANISH_CHANGED, actor, {"vanished": vanished})

    def notify_private_message(self, actor: Actor, recipient: str, text: str) -> Optional[ChatEvent]:
        return self.publish_local(EventKind.PRIVATE_MESSAGE, actor, {"recipient": recipient, "text": text})

    # -- outbound ----------------------------------------------------------

    def publish_local(
        self,
        kind: EventKind,
        actor: Actor,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[ChatEvent]:
        """Sequence, encode, enqueue and loop-back deliver a local event.

        Returns the sequenced event, or None if it could not be encoded.
        Raises SessionClosingError once shutdown has begun. Never waits on the broker.
        """
        if kind is EventKind.UNRECOGNIZED:
            raise ValueError("Cannot publish an unrecognized event kind")
        if self._transport.closing:
            raise SessionClosingError()

        body = validate_payload(kind, payload)
        with self._publish_lock:
            sequence, timestamp = self._sequencer.stamp(self.origin_id)
            event = ChatEvent(
                origin_id=self.origin_id,
                epoch=self._sequencer.epoch,
                sequence=sequence,
                timestamp=timestamp,
                kind=kind,
                actor=actor,
                payload=body,
            )
            try:
                data = self._codec.encode(event)
            except EncodingError as e:
                metrics.track_encoding_failure()
                logger.warning(f"Dropping local {kind.value} event seq={sequence} from {actor.name}: {e}")
                return None

            self._transport.publish(self.channel_for(kind), data)
            metrics.track_published(kind.value)
            self._dispatch(event)
        return event

    # -- inbound -----------------------------------------------------------

    def _on_transport_message(self, channel: str, data: bytes) -> None:
        if channel not in (self._chat_channel, self._private_channel):
            return
        self.on_remote_message(data)

    def on_remote_message(self, data: bytes) -> Optional[ChatEvent]:
        """Handle one inbound broker message. Returns the event if it was delivered."""
        try:
            event = self._codec.decode(data)
        except DecodeError as e:
            metrics.track_decode_failure()
            logger.warning(f"Dropping undecodable message ({len(data)} bytes): {e}")
            return None

        if event.origin_id == self.origin_id:
            # already delivered on loop-back
            return None
        if not self._dedup.check_and_remember(event.dedup_key):
            metrics.track_duplicate()
            logger.debug(f"Duplicate {event.dedup_key} ignored")
            return None
        if event.kind is EventKind.UNRECOGNIZED:
            logger.debug(f"Received unrecognized event kind {event.raw_kind!r} from {event.origin_id}")

        self._dispatch(event)
        return event

    def _dispatch(self, event: ChatEvent) -> None:
        self._archive_event(event)
        with self._consumers_lock:
            consumers = [c for c in self._consumers if c.accepts(event.kind)]
        # decide for every consumer before any callback runs, so a consumer
        # that updates visibility state cannot affect its siblings' decisions
        decisions = [
            (c, self._visibility.should_suppress(self.origin_id, event, privileged=c.privileged))
            for c in consumers
        ]
        for consumer, suppressed in decisions:
            try:
                consumer.callback(event, suppressed)
            except Exception:
                logger.exception(f"Consumer {consumer!r} failed on {event!r}")
        if decisions:
            metrics.track_delivered(event.kind.value)

    def _archive_event(self, event: ChatEvent) -> None:
        if self._archive is None:
            return
        try:
            self._archive.archive(event)
        except Exception:
            logger.exception(f"Archival sink failed for {event.dedup_key}")

    def _on_state_change(self, state: SessionState) -> None:
        if state is SessionState.CONNECTED:
            logger.info(f"Relay {self.origin_id} online; events published while offline by others are not replayed")
        elif state is SessionState.DISCONNECTED:
            logger.warning(f"Relay {self.origin_id} offline; local events are buffered "
                           f"({len(self._transport.outbound)}/{self._transport.outbound.capacity})")

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self._transport.start()

    def stop(self) -> None:
        self._transport.stop()
        self._visibility.close()
        for remove in self._remove_handlers:
            remove()
