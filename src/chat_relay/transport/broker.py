"""
Broker adapters. A broker is one pub/sub connection owned by a
TransportSession; all methods run on the session's event loop.
"""

import logging
from typing import AsyncIterator, Optional, Protocol, Sequence

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from chat_relay.errors import TransportError

logger = logging.getLogger(__name__)


class Broker(Protocol):
    async def connect(self) -> None: ...

    async def subscribe(self, channels: Sequence[str]) -> None: ...

    async def publish(self, channel: str, data: bytes) -> None: ...

    def listen(self) -> AsyncIterator[tuple[str, bytes]]: ...

    async def close(self) -> None: ...


class RedisBroker:
    """Redis pub/sub over ``redis.asyncio``.

    One client is used for PUBLISH and other commands, one PubSub for
    SUBSCRIBE. ``client`` is exposed for auxiliary commands (presence sets).
    """

    def __init__(self, url: str, health_check_interval: int = 30, socket_timeout: Optional[float] = None):
        self.url = url
        self._health_check_interval = health_check_interval
        self._socket_timeout = socket_timeout
        self._client: Optional[aioredis.Redis] = None
        self._pubsub: Optional[PubSub] = None

    @property
    def client(self) -> Optional[aioredis.Redis]:
        return self._client

    async def connect(self) -> None:
        await self.close()
        try:
            self._client = aioredis.from_url(
                self.url,
                health_check_interval=self._health_check_interval,
                socket_keepalive=True,
                socket_timeout=self._socket_timeout,
            )
            await self._client.ping()
        except (RedisError, OSError) as e:
            await self.close()
            raise TransportError(f"Failed to connect to Redis at {self.url}: {e}") from e

    async def subscribe(self, channels: Sequence[str]) -> None:
        if self._client is None:
            raise TransportError("Redis client not connected")
        try:
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(*channels)
        except (RedisError, OSError) as e:
            raise TransportError(f"Failed to subscribe to {list(channels)}: {e}") from e

    async def publish(self, channel: str, data: bytes) -> None:
        if self._client is None:
            raise TransportError("Redis client not connected")
        try:
            await self._client.publish(channel, data)
        except (RedisError, OSError) as e:
            raise TransportError(f"Publish to {channel} failed: {e}") from e

    async def listen(self) -> AsyncIterator[tuple[str, bytes]]:
        if self._pubsub is None:
            raise TransportError("Not subscribed")
        try:
            async for msg in self._pubsub.listen():
                if msg.get("type") != "message":
                    continue
                channel = msg.get("channel")
                data = msg.get("data")
                if isinstance(channel, bytes):
                    channel = channel.decode("utf-8", "replace")
                if isinstance(data, memoryview):
                    data = data.tobytes()
                if isinstance(data, str):
                    data = data.encode("utf-8")
                if not isinstance(data, (bytes, bytearray)):
                    logger.warning(f"Dropping pub/sub message with unexpected payload type {type(data)!r}")
                    continue
                yield str(channel), bytes(data)
        except (RedisError, OSError) as e:
            raise TransportError(f"Redis subscription lost: {e}") from e
        raise TransportError("Redis subscription closed")

    async def close(self) -> None:
        pubsub, client = self._pubsub, self._client
        self._pubsub = None
        self._client = None
        if pubsub is not None:
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Ignoring error closing pubsub: {e}")
        if client is not None:
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Ignoring error closing Redis client: {e}")
