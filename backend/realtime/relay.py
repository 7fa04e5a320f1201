"""Redis pub/sub relay so region broadcasts reach listeners on every instance."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from common.config import region_channel, region_channel_pattern
from realtime.hub import Cell, RegionHub

logger = logging.getLogger(__name__)


def parse_region_channel(channel: str) -> Cell:
    _, lat_cell, lng_cell = channel.rsplit(":", 2)
    return int(lat_cell), int(lng_cell)


class RedisRegionRelay:
    def __init__(self, redis_client: AsyncRedis, hub: RegionHub):
        self._redis = redis_client
        self._hub = hub
        self._pubsub = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.psubscribe(region_channel_pattern())
        self._task = asyncio.create_task(self._listen(), name="region-relay")
        self._hub.attach_relay(self)
        logger.info("[relay] Subscribed to %s", region_channel_pattern())

    async def stop(self) -> None:
        self._hub.detach_relay()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except RedisError as exc:
                logger.warning("[relay] Failed to clean up pubsub: %s", exc)
            self._pubsub = None

    async def publish(self, cell: Cell, payload: dict[str, Any]) -> bool:
        """False means the caller should deliver locally instead."""
        try:
            await self._redis.publish(region_channel(*cell), json.dumps(payload))
        except RedisError as exc:
            logger.warning("[relay] Publish to cell %s failed: %s", cell, exc)
            return False
        return True

    async def handle_message(self, message: dict[str, Any]) -> None:
        if message.get("type") != "pmessage":
            return
        channel = message.get("channel")
        data = message.get("data")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            cell = parse_region_channel(channel)
            payload = json.loads(data)
        except (TypeError, ValueError) as exc:
            logger.warning("[relay] Ignoring malformed message on %s: %s", channel, exc)
            return
        await self._hub.deliver_region(cell, payload)

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                await self.handle_message(message)
        except RedisError as exc:
            # Fall back to in-process delivery for the rest of this run
            self._hub.detach_relay()
            logger.error("[relay] Subscription lost: %s", exc)
