"""
RelayNode: one per game-server process. Wires config, broker, transport
session, relay engine, vanish directory, presence directory and direct
messaging with explicit references; nothing is looked up globally.
"""

import logging
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Iterable, Optional

from chat_relay import metrics
from chat_relay.config import RelayConfig
from chat_relay.dedup import DedupCache
from chat_relay.messaging import DirectMessenger
from chat_relay.models.event import ChatEvent, EventKind, Actor
from chat_relay.presence import PresenceDirectory
from chat_relay.relay import ArchiveSink, RelayEngine
from chat_relay.transport.backoff import ExponentialBackoff
from chat_relay.transport.broker import Broker, RedisBroker
from chat_relay.transport.codec import Codec
from chat_relay.transport.session import SessionState, TransportSession
from chat_relay.visibility import VanishDirectory, VisibilityGate, VisibilityProvider

logger = logging.getLogger(__name__)

PRESENCE_KINDS = {EventKind.PRESENCE_JOIN, EventKind.PRESENCE_QUIT, EventKind.VANISH_CHANGED}


class RelayNode:
    def __init__(
        self,
        config: RelayConfig,
        *,
        visibility_provider: Optional[VisibilityProvider] = None,
        archive: Optional[ArchiveSink] = None,
        broker: Optional[Broker] = None,
        is_local_player: Optional[Callable[[str], Optional[str]]] = None,
        local_players: Optional[Callable[[], Iterable[Actor]]] = None,
        presence: Optional[PresenceDirectory] = None,
    ):
        """Wire one relay process.

        ``presence`` defaults to a Redis-backed directory when the broker is a
        RedisBroker; other brokers run without one unless it is passed in.
        ``local_players`` lets the node rebuild its presence set after a
        reconnect; without it the set is only updated from live events.
        """
        self.config = config
        self.broker = broker or RedisBroker(config.redis_url)
        self.session = TransportSession(
            self.broker,
            [config.chat_channel, config.private_channel],
            queue_capacity=config.queue_capacity,
            backoff=ExponentialBackoff(
                base=config.backoff_base,
                cap=config.backoff_cap,
                multiplier=config.backoff_multiplier,
                jitter=config.backoff_jitter,
            ),
            drain_timeout=config.drain_timeout,
            thread_name=f"chat-relay-io-{config.origin_id}",
        )
        self.vanish_directory = VanishDirectory(
            fallback=visibility_provider.is_vanished if visibility_provider is not None else None,
            local_server_id=config.origin_id,
        )
        self.engine = RelayEngine(
            config.origin_id,
            self.session,
            codec=Codec(config.max_payload_bytes),
            dedup=DedupCache(config.dedup_capacity, config.dedup_ttl),
            visibility=VisibilityGate(self.vanish_directory, timeout_s=config.visibility_timeout),
            archive=archive,
            chat_channel=config.chat_channel,
            private_channel=config.private_channel,
        )
        self.vanish_directory.attach(self.engine)

        self.presence = presence
        if self.presence is None and isinstance(self.broker, RedisBroker):
            redis_broker = self.broker
            self.presence = PresenceDirectory(config.origin_id, client=lambda: redis_broker.client)
        if self.presence is not None:
            self.engine.register_consumer(self._mirror_presence, privileged=True, kinds=PRESENCE_KINDS)

        self.messenger: Optional[DirectMessenger] = None
        if is_local_player is not None:
            self.messenger = DirectMessenger(
                self.engine,
                is_local_player,
                is_online_anywhere=self.is_online_anywhere if self.presence is not None else None,
            )

        self._local_players = local_players
        self._heartbeat: Optional[Future] = None
        self._connected_before = False
        self.session.add_state_listener(self._on_state_change)

    @property
    def origin_id(self) -> str:
        return self.config.origin_id

    @property
    def connected(self) -> bool:
        return self.session.connected

    def start(self) -> None:
        metrics.init_metrics()
        if self.config.metrics_port is not None:
            metrics.start_metrics_server(self.config.metrics_port)
        self.engine.start()
        logger.info(f"Relay node {self.origin_id} started (epoch {self.engine.epoch})")

    def stop(self, cleanup_timeout: float = 2.0) -> None:
        self._cancel_heartbeat()
        if self.presence is not None and self.session.connected:
            self._wait(self.session.submit(self.presence.cleanup()), cleanup_timeout, "presence cleanup")
        if self.messenger is not None:
            self.messenger.close()
        self.engine.stop()
        logger.info(f"Relay node {self.origin_id} stopped")

    def is_online_anywhere(self, player_name: str, timeout: float = 2.0) -> bool:
        if self.presence is None or not self.session.connected:
            return False
        result = self._wait(self.session.submit(self.presence.is_online_anywhere(player_name)), timeout,
                            f"online lookup for {player_name}")
        return bool(result)

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _wait(future: Optional[Future], timeout: float, what: str) -> Optional[object]:
        if future is None:
            return None
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Timed out waiting for {what}")
        except Exception as e:
            logger.warning(f"{what} failed: {e}")
        return None

    def _submit(self, coro, what: str) -> Optional[Future]:
        future = self.session.submit(coro)
        if future is not None:
            def log_failure(done: Future) -> None:
                if not done.cancelled() and done.exception() is not None:
                    logger.warning(f"{what} failed: {done.exception()}")
            future.add_done_callback(log_failure)
        return future

    def _mirror_presence(self, event: ChatEvent, _suppressed: bool) -> None:
        if self.presence is None or event.origin_id != self.origin_id or not self.session.connected:
            return
        vanished = self.vanish_directory.is_vanished(event.actor.player_id, self.origin_id)
        self._submit(self.presence.apply(event, vanished), f"presence update for {event.actor.name}")

    def _on_state_change(self, state: SessionState) -> None:
        if state is SessionState.CONNECTED:
            self._on_connected()
        else:
            self._cancel_heartbeat()

    def _on_connected(self) -> None:
        if self._connected_before:
            dropped = self.vanish_directory.forget_remote()
            if dropped:
                logger.info(f"Forgot {dropped} remote vanish entries recorded before the outage")
        self._connected_before = True
        if self.presence is None:
            return
        if self._local_players is not None:
            visible = [
                actor.name for actor in self._local_players()
                if not self.vanish_directory.is_vanished(actor.player_id, self.origin_id)
            ]
            self._submit(self.presence.replace(visible, self.config.heartbeat_ttl), "presence resync")
        self._cancel_heartbeat()
        self._heartbeat = self.session.submit(
            self.presence.run_heartbeat(self.config.heartbeat_interval, self.config.heartbeat_ttl)
        )

    def _cancel_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
