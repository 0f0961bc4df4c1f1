"""
Fleet-wide online-player directory.

Each server keeps a Redis set ``<prefix><server>`` of lower-cased names of its
visible players. A heartbeat refreshes the set's TTL so a crashed server's
entries expire on their own.

All methods are coroutines meant to run on the transport loop (see
TransportSession.submit); when the broker is not connected they are no-ops.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chat_relay.models.event import ChatEvent, EventKind

logger = logging.getLogger(__name__)

ONLINE_PREFIX = "archivechat:online:"
SCAN_BATCH = 100


class PresenceDirectory:
    def __init__(
        self,
        server_name: str,
        client: Callable[[], Optional[Redis]],
        prefix: str = ONLINE_PREFIX,
    ):
        self.server_name = server_name
        self._client = client
        self._prefix = prefix

    @property
    def key(self) -> str:
        return f"{self._prefix}{self.server_name}"

    async def register(self, player_name: str) -> None:
        redis = self._client()
        if redis is None:
            return
        await redis.sadd(self.key, player_name.lower())

    async def unregister(self, player_name: str) -> None:
        redis = self._client()
        if redis is None:
            return
        await redis.srem(self.key, player_name.lower())

    async def replace(self, player_names: Iterable[str], ttl_s: int) -> None:
        """Reset this server's set to exactly ``player_names`` (used after a reconnect).

        Presence changes made while disconnected were never mirrored, so the
        old set cannot be patched up incrementally.
        """
        redis = self._client()
        if redis is None:
            return
        names = sorted({name.lower() for name in player_names})
        async with redis.pipeline(transaction=True) as pipe:
            pipe.delete(self.key)
            if names:
                pipe.sadd(self.key, *names)
                pipe.expire(self.key, ttl_s)
            await pipe.execute()

    async def is_online_anywhere(self, player_name: str) -> bool:
        """SCAN every server set for ``player_name``. False when offline or on error."""
        redis = self._client()
        if redis is None:
            return False
        name = player_name.lower()
        try:
            async for key in redis.scan_iter(match=f"{self._prefix}*", count=SCAN_BATCH):
                if await redis.sismember(key, name):
                    return True
        except RedisError as e:
            logger.warning(f"Failed to check online status for {player_name}: {e}")
        return False

    async def refresh_heartbeat(self, ttl_s: int) -> None:
        redis = self._client()
        if redis is None:
            return
        await redis.expire(self.key, ttl_s)

    async def cleanup(self) -> None:
        """Remove this server's set (shutdown)."""
        redis = self._client()
        if redis is None:
            return
        try:
            await redis.delete(self.key)
        except RedisError as e:
            logger.warning(f"Failed to clean up {self.key}: {e}")

    async def run_heartbeat(self, interval_s: float, ttl_s: int) -> None:
        while True:
            try:
                await self.refresh_heartbeat(ttl_s)
            except RedisError as e:
                logger.warning(f"Heartbeat refresh failed: {e}")
            await asyncio.sleep(interval_s)

    async def apply(self, event: ChatEvent, actor_vanished: bool) -> None:
        """Mirror a local presence or vanish event into the directory.

        Vanished players are kept out of the directory so they cannot be
        found for cross-server messages.
        """
        name = event.actor.name
        try:
            if event.kind is EventKind.PRESENCE_JOIN and not actor_vanished:
                await self.register(name)
            elif event.kind is EventKind.PRESENCE_QUIT:
                await self.unregister(name)
            elif event.kind is EventKind.VANISH_CHANGED:
                if event.vanished:
                    await self.unregister(name)
                else:
                    await self.register(name)
        except RedisError as e:
            logger.warning(f"Presence update for {name} failed: {e}")
