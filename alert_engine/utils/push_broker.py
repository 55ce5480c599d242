"""
Redis pub/sub broker for cross-process push fan-out.

Each gateway process subscribes to one channel. push() on any process
publishes {origin, room, payload}; every other process delivers the payload to
its own connections in that room. Messages a process published itself are
ignored on receipt since it already delivered them locally.

Room presence (connections per room, summed over processes) is kept in a Redis
hash so push() can report how many connections a payload reached.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from alert_engine.utils.logging_config import get_logger


logger = get_logger("websocket")


class RedisPushBroker:
    """
    PushBroker backed by Redis pub/sub.

    Usage:
        >>> broker = RedisPushBroker("redis://localhost:6379/0", "alert_engine:push", gateway.process_id)
        >>> gateway = ConnectionGateway(jwt_secret=secret, broker=broker)
        >>> await gateway.start()
    """

    def __init__(
        self,
        redis_url: str,
        channel: str,
        process_id: str,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.channel = channel
        self.process_id = process_id
        self.presence_key = f"{channel}:presence"
        self._client = client or aioredis.from_url(redis_url, decode_responses=True)
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self, handler: Callable[[str, Dict[str, Any]], Awaitable[int]]) -> None:
        """Subscribe and start delivering remote pushes to handler(room, payload)."""
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen(handler))
        logger.info("Subscribed to push channel", extra={"channel": self.channel})

    async def _listen(self, handler: Callable[[str, Dict[str, Any]], Awaitable[int]]) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                envelope = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Discarding malformed push envelope")
                continue
            if envelope.get("origin") == self.process_id:
                continue
            try:
                await handler(envelope["room"], envelope["payload"])
            except Exception as e:
                logger.error(
                    "Remote push delivery failed",
                    extra={"room": envelope.get("room"), "error": str(e)},
                )

    async def publish(self, room: str, payload: Dict[str, Any]) -> None:
        envelope = {"origin": self.process_id, "room": room, "payload": payload}
        await self._client.publish(self.channel, json.dumps(envelope, default=str))

    async def adjust_presence(self, room: str, delta: int) -> None:
        remaining = await self._client.hincrby(self.presence_key, room, delta)
        if remaining <= 0:
            await self._client.hdel(self.presence_key, room)

    async def presence(self, room: str) -> int:
        value = await self._client.hget(self.presence_key, room)
        return int(value or 0)

    async def stop(self) -> None:
        """Unsubscribe and close the Redis connection."""
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        try:
            if self._pubsub is not None:
                await self._pubsub.unsubscribe(self.channel)
                await self._pubsub.aclose()
            await self._client.aclose()
        except RedisError as e:
            logger.warning("Error closing push broker", extra={"error": str(e)})
