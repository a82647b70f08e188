"""
Redis pub/sub relay for the Progress Bridge.

With several API/worker processes, the process running a handler is rarely
the one holding the client's WebSocket. The relay publishes every envelope
to one Redis channel; each process listens and delivers to its local rooms.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


class RedisProgressRelay:
    def __init__(self, redis_url: str = "redis://localhost:6379", channel: str = "progress:events"):
        self._redis_url = redis_url
        self.channel = channel
        self._redis = None
        self._pubsub = None
        self._bridge = None
        self._task: Optional[asyncio.Task] = None

    async def start(self, bridge) -> None:
        """Connect and start delivering relayed envelopes into `bridge`."""
        import redis.asyncio as aioredis
        self._bridge = bridge
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen(), name="progress_relay")
        logger.info("progress_relay_started", channel=self.channel)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        if self._redis is not None:
            await self._redis.aclose()
        logger.info("progress_relay_stopped")

    async def publish(self, envelope: dict[str, Any]) -> None:
        await self._redis.publish(self.channel, json.dumps(envelope))

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(timeout=1.0)
                if message is None:
                    continue
                envelope = json.loads(message["data"])
                await self._bridge.deliver_local(envelope)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("progress_relay_error", error=str(e))
                await asyncio.sleep(1)
