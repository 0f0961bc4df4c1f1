"""
Cross-server private messages with reply and last-sent tracking.
"""

import logging
import threading
from typing import Callable, NamedTuple, Optional

from chat_relay.errors import MessagingError
from chat_relay.models.event import Actor, ChatEvent, EventKind
from chat_relay.relay import RelayEngine

logger = logging.getLogger(__name__)


class TargetInfo(NamedTuple):
    """A reply/last target. ``player_id`` is None when only the name is known (cross-server)."""

    player_id: Optional[str]
    name: str

    @classmethod
    def cross_server(cls, name: str) -> "TargetInfo":
        return cls(None, name)


class DirectMessenger:
    def __init__(
        self,
        engine: RelayEngine,
        is_local_player: Callable[[str], Optional[str]],
        is_online_anywhere: Optional[Callable[[str], bool]] = None,
    ):
        """``is_local_player(name)`` returns the local player's id, or None if not on this server.

        ``is_online_anywhere(name)`` checks the fleet presence directory for
        recipients on other servers. Vanished players are never listed there,
        so they cannot be found. Without it every remote name is accepted.
        It may block, so send() must not be called from the transport thread.
        """
        self._engine = engine
        self._is_local_player = is_local_player
        self._is_online_anywhere = is_online_anywhere
        self._lock = threading.Lock()
        self._reply_targets: dict[str, TargetInfo] = {}
        self._last_targets: dict[str, TargetInfo] = {}
        self._remove = engine.register_consumer(
            self._on_event,
            kinds={EventKind.PRIVATE_MESSAGE, EventKind.PRESENCE_QUIT},
        )

    def send(self, sender: Actor, recipient_name: str, text: str) -> Optional[ChatEvent]:
        if not text or not text.strip():
            raise MessagingError("Message cannot be empty", code="empty_message")
        if recipient_name.lower() == sender.name.lower():
            raise MessagingError("You cannot message yourself", code="cannot_message_self")

        recipient_id = self._is_local_player(recipient_name)
        if (recipient_id is None and self._is_online_anywhere is not None
                and not self._is_online_anywhere(recipient_name)):
            raise MessagingError(f"Player {recipient_name} not found", code="player_not_found")
        with self._lock:
            if recipient_id is not None:
                self._last_targets[sender.player_id] = TargetInfo(recipient_id, recipient_name)
            else:
                self._last_targets[sender.player_id] = TargetInfo.cross_server(recipient_name)
        return self._engine.notify_private_message(sender, recipient_name, text)

    def reply_target(self, player_id: str) -> Optional[TargetInfo]:
        with self._lock:
            return self._reply_targets.get(player_id)

    def last_target(self, player_id: str) -> Optional[TargetInfo]:
        with self._lock:
            return self._last_targets.get(player_id)

    def forget(self, player_id: str) -> None:
        with self._lock:
            self._reply_targets.pop(player_id, None)
            self._last_targets.pop(player_id, None)

    def _on_event(self, event: ChatEvent, _suppressed: bool) -> None:
        if event.kind is EventKind.PRESENCE_QUIT:
            if event.origin_id == self._engine.origin_id:
                self.forget(event.actor.player_id)
            return
        recipient = event.recipient or ""
        recipient_id = self._is_local_player(recipient)
        if recipient_id is None:
            return
        with self._lock:
            self._reply_targets[recipient_id] = TargetInfo(event.actor.player_id, event.actor.name)
            if event.origin_id == self._engine.origin_id:
                # local delivery: the sender can reply to the recipient too
                self._reply_targets[event.actor.player_id] = TargetInfo(recipient_id, recipient)
        logger.debug(f"Private message {event.actor.name} -> {recipient} via {event.origin_id}")

    def close(self) -> None:
        self._remove()
