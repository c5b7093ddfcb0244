"""
FLEET REWARDS :: Result Cache
=============================
Short-TTL key/value cache for per-user pending rewards.

The cache is an optimisation, never the source of truth: every entry can be
recomputed from the aggregate store plus a live fleet-power read. Backend
errors therefore degrade to a miss (get), a no-op (set/delete) or 0
(delete_by_prefix) and are only logged.
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger("fleet.cache")

REWARD_CACHE_TTL_SEC = int(os.getenv("REWARD_CACHE_TTL_SEC", "300"))
REWARDS_PREFIX       = "rewards:"
SCAN_BATCH           = 500


def reward_cache_key(chain_id: int, user_address: str) -> str:
    return f"{REWARDS_PREFIX}{int(chain_id)}:{user_address.lower()}"


class ResultCache(ABC):

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = REWARD_CACHE_TTL_SEC) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def delete_by_prefix(self, prefix: str) -> int: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------
class RedisResultCache(ResultCache):

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisResultCache":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.error(f"Cache get error for {key}: {e}")
            return None
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int = REWARD_CACHE_TTL_SEC) -> bool:
        try:
            await self.client.set(key, json.dumps(value), ex=ttl)
            return True
        except RedisError as e:
            logger.error(f"Cache set error for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.client.delete(key)
            return True
        except RedisError as e:
            logger.error(f"Cache delete error for {key}: {e}")
            return False

    async def delete_by_prefix(self, prefix: str) -> int:
        deleted = 0
        batch = []
        try:
            async for key in self.client.scan_iter(match=f"{prefix}*", count=SCAN_BATCH):
                batch.append(key)
                if len(batch) >= SCAN_BATCH:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
        except RedisError as e:
            logger.error(f"Cache clear pattern error for {prefix}*: {e}")
        return deleted

    async def close(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# In-process backend (dev / tests)
# ---------------------------------------------------------------------------
class MemoryResultCache(ResultCache):
    """Dict with TTL. Single event loop, so no locking."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if self._clock() >= expiry:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: int = REWARD_CACHE_TTL_SEC) -> bool:
        self._data[key] = (value, self._clock() + ttl)
        return True

    async def delete(self, key: str) -> bool:
        self._data.pop(key, None)
        return True

    async def delete_by_prefix(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for k in keys:
            del self._data[k]
        return len(keys)

    def __len__(self) -> int:
        return len(self._data)
