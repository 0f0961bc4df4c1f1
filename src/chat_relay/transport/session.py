"""
Transport session. Owns the broker connection.

State machine:

    disconnected -> connecting -> connected -> disconnected -> ...
                                     \\-> draining (stop() only) -> disconnected

All network I/O runs on one daemon thread with its own asyncio loop.
publish() only enqueues into the bounded outbound buffer and wakes the
flusher, so game-server threads never block on the broker. Inbound messages
are handed to handlers on the I/O thread in broker order; there is no
reordering or replay here.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Coroutine, Optional, Sequence

from chat_relay import metrics
from chat_relay.errors import SessionClosingError, TransportError
from chat_relay.transport.backoff import ExponentialBackoff
from chat_relay.transport.broker import Broker
from chat_relay.transport.buffer import OutboundBuffer

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT_S = 5.0
DEFAULT_STABLE_AFTER_S = 10.0

MessageHandler = Callable[[str, bytes], None]
StateListener = Callable[["SessionState"], None]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DRAINING = "draining"


class TransportSession:
    def __init__(
        self,
        broker: Broker,
        channels: Sequence[str],
        *,
        queue_capacity: int = 1024,
        backoff: Optional[ExponentialBackoff] = None,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_S,
        stable_after: float = DEFAULT_STABLE_AFTER_S,
        thread_name: str = "chat-relay-io",
    ):
        """``stable_after``: seconds a connection must survive before the backoff resets."""
        self._broker = broker
        self._channels = list(channels)
        self._outbound: OutboundBuffer[tuple[str, bytes]] = OutboundBuffer(queue_capacity)
        self._backoff = backoff or ExponentialBackoff()
        self._drain_timeout = drain_timeout
        self._stable_after = stable_after
        self._thread_name = thread_name

        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._closing = False
        self._connected_event = threading.Event()
        self._message_handlers: list[MessageHandler] = []
        self._state_listeners: list[StateListener] = []

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()
        self._wakeup: Optional[asyncio.Event] = None
        self._stop_event: Optional[asyncio.Event] = None

    # -- observation -------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def outbound(self) -> OutboundBuffer[tuple[str, bytes]]:
        return self._outbound

    @property
    def broker(self) -> Broker:
        return self._broker

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    def add_message_handler(self, handler: MessageHandler) -> Callable[[], None]:
        """Add an inbound handler. Returns a cleanup function."""
        self._message_handlers.append(handler)

        def remove() -> None:
            try:
                self._message_handlers.remove(handler)
            except ValueError:
                pass
        return remove

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Observe state transitions (called on the I/O thread). Returns a cleanup function."""
        self._state_listeners.append(listener)

        def remove() -> None:
            try:
                self._state_listeners.remove(listener)
            except ValueError:
                pass
        return remove

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return self._connected_event.wait(timeout)

    # -- producer side -----------------------------------------------------

    def publish(self, channel: str, data: bytes) -> None:
        """Enqueue for publishing. Never blocks; raises SessionClosingError once stop() began."""
        if self._closing:
            raise SessionClosingError()
        self._outbound.put((channel, data))
        self._wake()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Optional[Future]:
        """Schedule an auxiliary coroutine on the I/O loop. Returns None if the loop is not running."""
        loop = self._loop
        if loop is None or loop.is_closed() or not self._loop_ready.is_set():
            coro.close()
            return None
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def _wake(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # loop closed between the check and the call; the item stays queued
            logger.debug("I/O loop already closed, wake-up skipped")

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._closing:
            raise SessionClosingError("Cannot restart a stopped session")
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._thread_main, name=self._thread_name, daemon=True)
        self._thread.start()
        self._loop_ready.wait(timeout=5.0)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Drain the outbound buffer (bounded by drain_timeout), then close."""
        self._closing = True
        thread, loop, stop_event = self._thread, self._loop, self._stop_event
        if thread is None:
            return
        if loop is not None and stop_event is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(stop_event.set)
            except RuntimeError:
                logger.debug("I/O loop already closed")
        thread.join(timeout if timeout is not None else self._drain_timeout + 5.0)
        if thread.is_alive():
            logger.warning("Transport I/O thread did not exit in time")

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._wakeup = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._loop_ready.set()
        try:
            loop.run_until_complete(self._run())
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                self._loop_ready.clear()
                loop.close()

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            if self._state is state:
                return
            self._state = state
        if state is SessionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()
        metrics.set_session_state(state.value)
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception(f"State listener failed on transition to {state.value}")

    # -- I/O loop ----------------------------------------------------------

    async def _run(self) -> None:
        assert self._stop_event is not None
        loop = asyncio.get_running_loop()
        first = True
        while not self._stop_event.is_set():
            self._set_state(SessionState.CONNECTING)
            if not first:
                metrics.track_reconnect()
            first = False
            try:
                await self._broker.connect()
                await self._broker.subscribe(self._channels)
            except (TransportError, OSError) as e:
                await self._broker.close()
                self._set_state(SessionState.DISCONNECTED)
                delay = self._backoff.next_delay()
                logger.warning(f"Broker connect failed ({e}); retry {self._backoff.attempts} in {delay:.2f}s")
                await self._sleep_or_stop(delay)
                continue

            self._set_state(SessionState.CONNECTED)
            logger.info(f"Connected to broker, subscribed to {self._channels}")

            connected_at = loop.time()
            error = await self._serve()
            if self._stop_event.is_set() and error is None:
                break
            self._set_state(SessionState.DISCONNECTED)
            await self._broker.close()
            # a connection that dropped right away keeps climbing the backoff ladder
            if loop.time() - connected_at >= self._stable_after:
                self._backoff.reset()
            delay = self._backoff.next_delay()
            logger.warning(f"Broker connection lost ({error}); reconnecting in {delay:.2f}s")
            await self._sleep_or_stop(delay)

        await self._drain()

    async def _serve(self) -> Optional[BaseException]:
        """Run listener and flusher until one fails or stop is requested."""
        assert self._stop_event is not None
        listener = asyncio.ensure_future(self._listen())
        flusher = asyncio.ensure_future(self._flush_loop())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait({listener, flusher, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task is stopper or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                return exc
            return TransportError("Broker stream ended")
        return None

    async def _listen(self) -> None:
        async for channel, data in self._broker.listen():
            for handler in list(self._message_handlers):
                try:
                    handler(channel, data)
                except Exception:
                    logger.exception(f"Inbound handler failed for message on {channel}")

    async def _flush_loop(self) -> None:
        assert self._wakeup is not None
        while True:
            item = self._outbound.pop()
            if item is None:
                self._wakeup.clear()
                if len(self._outbound) == 0:
                    await self._wakeup.wait()
                continue
            await self._send(item)

    async def _send(self, item: tuple[str, bytes]) -> None:
        channel, data = item
        try:
            await self._broker.publish(channel, data)
        except (asyncio.CancelledError, TransportError, OSError):
            self._outbound.requeue(item)
            raise

    async def _flush_remaining(self) -> None:
        while True:
            item = self._outbound.pop()
            if item is None:
                return
            await self._send(item)

    async def _drain(self) -> None:
        was_connected = self._state is SessionState.CONNECTED
        self._set_state(SessionState.DRAINING)
        if was_connected:
            try:
                await asyncio.wait_for(self._flush_remaining(), timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Drain timed out after {self._drain_timeout}s")
            except (TransportError, OSError) as e:
                logger.warning(f"Drain aborted by broker error: {e}")
        remaining = len(self._outbound)
        if remaining:
            logger.warning(f"Closing with {remaining} unsent event(s)")
        await self._broker.close()
        self._set_state(SessionState.DISCONNECTED)
        logger.info("Transport session closed")

    async def _sleep_or_stop(self, delay: float) -> None:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
