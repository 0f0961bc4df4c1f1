"""
Visibility gate: decides, per consumer, whether an event is hidden because
its actor is vanished.

The provider is queried live for every decision; nothing is cached here.
Provider failures fail open: hiding legitimate chat is worse than leaking a
vanished player's line.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from chat_relay import metrics
from chat_relay.errors import VisibilityProviderError
from chat_relay.models.event import GATED_KINDS, ChatEvent, EventKind

if TYPE_CHECKING:
    from chat_relay.relay import RelayEngine

logger = logging.getLogger(__name__)


class VisibilityProvider(Protocol):
    def is_vanished(self, player_id: str, server_id: str) -> bool: ...


class VisibilityGate:
    def __init__(self, provider: Optional[VisibilityProvider] = None, timeout_s: Optional[float] = None,
                 max_workers: int = 2):
        self._provider = provider
        self._timeout_s = timeout_s
        self._executor: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()
        if provider is not None and timeout_s is not None:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chat-relay-visibility")

    def _release(self, _future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight -= 1

    def _submit(self, player_id: str, server_id: str) -> Future:
        assert self._provider is not None and self._executor is not None
        with self._in_flight_lock:
            # all workers busy with earlier calls: do not queue behind them
            if self._in_flight >= self._max_workers:
                raise VisibilityProviderError(
                    f"is_vanished({player_id}, {server_id}) skipped, {self._in_flight} call(s) still pending"
                )
            self._in_flight += 1
        future = self._executor.submit(self._provider.is_vanished, player_id, server_id)
        future.add_done_callback(self._release)
        return future

    def _query(self, player_id: str, server_id: str) -> bool:
        assert self._provider is not None
        if self._executor is None:
            try:
                return bool(self._provider.is_vanished(player_id, server_id))
            except Exception as e:
                raise VisibilityProviderError(f"is_vanished({player_id}, {server_id}) failed: {e}") from e

        future = self._submit(player_id, server_id)
        try:
            return bool(future.result(timeout=self._timeout_s))
        except FutureTimeoutError:
            future.cancel()
            raise VisibilityProviderError(
                f"is_vanished({player_id}, {server_id}) timed out after {self._timeout_s}s"
            )
        except Exception as e:
            raise VisibilityProviderError(f"is_vanished({player_id}, {server_id}) failed: {e}") from e

    def should_suppress(self, consumer_server_id: str, event: ChatEvent, privileged: bool = False) -> bool:
        if privileged or self._provider is None:
            return False
        if event.kind not in GATED_KINDS:
            return False
        try:
            return self._query(event.actor.player_id, event.origin_id)
        except VisibilityProviderError as e:
            metrics.track_visibility_failure()
            logger.warning(f"Visibility check failed for consumer on {consumer_server_id}, not suppressing: {e}")
            return False

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


class VanishDirectory:
    """Visibility provider fed by vanish_changed events seen on the bus.

    Lets a process answer ``is_vanished`` for players on other servers. A
    player's entry is dropped when they quit the server it was recorded for.

    ``fallback`` is the live provider. For ``local_server_id`` (or for every
    server when that is None) its answer is final and recorded state is not
    consulted. For other servers a recorded entry or the fallback can mark a
    player vanished. Bus-fed entries can go stale across an outage, so
    forget_remote() drops them when the connection comes back.
    """

    def __init__(
        self,
        fallback: Optional[Callable[[str, str], bool]] = None,
        local_server_id: Optional[str] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._vanished: set[tuple[str, str]] = set()
        self._fallback = fallback
        self._local_server_id = local_server_id

    def is_vanished(self, player_id: str, server_id: str) -> bool:
        if self._fallback is not None and self._local_server_id in (None, server_id):
            return bool(self._fallback(player_id, server_id))
        with self._lock:
            if (player_id, server_id) in self._vanished:
                return True
        if self._fallback is not None:
            return bool(self._fallback(player_id, server_id))
        return False

    def set_vanished(self, player_id: str, server_id: str, vanished: bool) -> None:
        with self._lock:
            if vanished:
                self._vanished.add((player_id, server_id))
            else:
                self._vanished.discard((player_id, server_id))

    def forget_remote(self) -> int:
        """Drop entries recorded for other servers. Returns how many were dropped."""
        with self._lock:
            stale = {entry for entry in self._vanished if entry[1] != self._local_server_id}
            self._vanished -= stale
        return len(stale)

    def on_event(self, event: ChatEvent, _suppressed: bool) -> None:
        if event.kind is EventKind.VANISH_CHANGED:
            self.set_vanished(event.actor.player_id, event.origin_id, bool(event.vanished))
        elif event.kind is EventKind.PRESENCE_QUIT:
            self.set_vanished(event.actor.player_id, event.origin_id, False)

    def attach(self, engine: "RelayEngine") -> Callable[[], None]:
        return engine.register_consumer(
            self.on_event,
            privileged=True,
            kinds={EventKind.VANISH_CHANGED, EventKind.PRESENCE_QUIT},
        )
