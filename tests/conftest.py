"""Shared fakes: an in-memory pub/sub hub and a thread-free transport."""

import asyncio
import fnmatch
import threading
import time
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_relay.errors import SessionClosingError, TransportError
from chat_relay.models.event import Actor
from chat_relay.transport.session import SessionState

_CLOSED = object()


class MemoryHub:
    """Broker shared by several MemoryBroker connections (one per session thread)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list["MemoryBroker"] = []
        self.available = True
        self.published: list[tuple[str, bytes]] = []

    def connection(self) -> "MemoryBroker":
        return MemoryBroker(self)

    def attach(self, broker: "MemoryBroker") -> None:
        with self._lock:
            self._subscribers.append(broker)

    def detach(self, broker: "MemoryBroker") -> None:
        with self._lock:
            if broker in self._subscribers:
                self._subscribers.remove(broker)

    def deliver(self, channel: str, data: bytes) -> None:
        with self._lock:
            self.published.append((channel, data))
            targets = list(self._subscribers)
        for broker in targets:
            broker.push(channel, data)

    def go_down(self) -> None:
        """Drop every connection and refuse new ones until go_up()."""
        self.available = False
        with self._lock:
            targets = list(self._subscribers)
        for broker in targets:
            broker.kill()

    def go_up(self) -> None:
        self.available = True


class MemoryBroker:
    def __init__(self, hub: MemoryHub) -> None:
        self.hub = hub
        self.channels: set[str] = set()
        self.connect_attempts = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._open = False
        self.enabled = True

    def drop(self) -> None:
        """Simulate this process losing the broker (others unaffected)."""
        self.enabled = False
        self.kill()

    def restore(self) -> None:
        self.enabled = True

    async def connect(self) -> None:
        self.connect_attempts += 1
        if not self.hub.available or not self.enabled:
            raise TransportError("broker unavailable")
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._open = True

    async def subscribe(self, channels: Sequence[str]) -> None:
        self.channels = set(channels)
        self.hub.attach(self)

    async def publish(self, channel: str, data: bytes) -> None:
        if not self._open or not self.hub.available or not self.enabled:
            raise TransportError("not connected")
        self.hub.deliver(channel, data)

    def push(self, channel: str, data: bytes) -> None:
        if channel in self.channels and self._loop is not None and self._queue is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (channel, data))

    def kill(self) -> None:
        if self._loop is not None and self._queue is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)

    async def listen(self) -> AsyncIterator[tuple[str, bytes]]:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                raise TransportError("connection dropped")
            yield item

    async def close(self) -> None:
        self._open = False
        self.hub.detach(self)


class FakePipeline:
    """Buffers commands like redis.asyncio's Pipeline and runs them on execute()."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._commands.clear()

    def __getattr__(self, name: str):
        def queue(*args):
            self._commands.append((name, args))
            return self
        return queue

    async def execute(self) -> list[Any]:
        self._redis._check()
        commands, self._commands = self._commands, []
        return [await getattr(self._redis, name)(*args) for name, args in commands]


class FakeRedis:
    """The handful of set/key commands the presence directory uses."""

    def __init__(self) -> None:
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def sadd(self, key, *members):
        self._check()
        self.sets.setdefault(key, set()).update(members)

    async def srem(self, key, member):
        self._check()
        self.sets.get(key, set()).discard(member)

    async def sismember(self, key, member):
        self._check()
        return member in self.sets.get(key, set())

    async def expire(self, key, ttl):
        self._check()
        self.ttls[key] = ttl

    async def delete(self, key):
        self._check()
        self.sets.pop(key, None)
        self.ttls.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.sets):
            if match is None or fnmatch.fnmatch(key, match):
                yield key


class FakeTransport:
    """Records publishes synchronously; no threads, no loop."""

    def __init__(self) -> None:
        self.published: list[tuple[str, bytes]] = []
        self.closing = False
        self.message_handlers: list[Callable[[str, bytes], None]] = []
        self.state_listeners: list[Callable[[SessionState], None]] = []
        self.started = False

    def add_message_handler(self, handler):
        self.message_handlers.append(handler)
        return lambda: self.message_handlers.remove(handler)

    def add_state_listener(self, listener):
        self.state_listeners.append(listener)
        return lambda: self.state_listeners.remove(listener)

    def publish(self, channel: str, data: bytes) -> None:
        if self.closing:
            raise SessionClosingError()
        self.published.append((channel, data))

    def inject(self, channel: str, data: bytes) -> None:
        for handler in list(self.message_handlers):
            handler(channel, data)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.closing = True


class Recorder:
    """Delivery callback that records (event, suppressed) pairs thread-safely."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: list[tuple[Any, bool]] = []

    def __call__(self, event, suppressed: bool) -> None:
        with self._lock:
            self.calls.append((event, suppressed))

    @property
    def texts(self) -> list[str]:
        with self._lock:
            return [e.text for e, _ in self.calls if e.text is not None]


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def hub() -> MemoryHub:
    return MemoryHub()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recorder_factory() -> Callable[[], Recorder]:
    return Recorder


@pytest.fixture
def alice() -> Actor:
    return Actor(player_id="6f1c2a6e-0000-4000-8000-000000000001", name="Alice")


@pytest.fixture
def bob() -> Actor:
    return Actor(player_id="6f1c2a6e-0000-4000-8000-000000000002", name="Bob")
