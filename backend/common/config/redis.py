"""Redis configuration and helpers."""
from __future__ import annotations

import os

from redis.asyncio import Redis as AsyncRedis

from .paths import BASE_DIR  # noqa: F401 - loads .env before reading variables

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_RELAY_ENABLED = os.getenv("REDIS_RELAY_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}
REDIS_REGION_CHANNEL_PREFIX = os.getenv("REDIS_REGION_CHANNEL_PREFIX", "potholes:region")


def region_channel(lat_cell: int, lng_cell: int) -> str:
    """Build pub/sub channel name for a region cell."""
    return f"{REDIS_REGION_CHANNEL_PREFIX}:{lat_cell}:{lng_cell}"


def region_channel_pattern() -> str:
    return f"{REDIS_REGION_CHANNEL_PREFIX}:*"


def create_async_redis_client() -> AsyncRedis:
    """Create an async Redis client for the region relay."""
    return AsyncRedis.from_url(REDIS_URL, decode_responses=True)
