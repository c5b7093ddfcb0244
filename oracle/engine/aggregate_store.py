"""
FLEET REWARDS :: Aggregate Store
================================
Persists one ChainAggregate per chain: the last-computed total fleet power and
hourly emission budget. Written only by the recalculation job, read by the
reward calculator.

updated_at is monotonic per chain: put() refuses an aggregate that is not
newer than the stored one.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from engine.errors import AggregateStoreError

logger = logging.getLogger("fleet.aggregates")

AGGREGATE_PREFIX = "aggregate:"


@dataclass(frozen=True)
class ChainAggregate:
    chain_id:          int
    total_fleet_power: int
    hourly_emission:   Decimal
    updated_at:        float      # unix seconds

    def __post_init__(self):
        if self.total_fleet_power < 0:
            raise ValueError("total_fleet_power must be non-negative")
        if self.hourly_emission < 0:
            raise ValueError("hourly_emission must be non-negative")

    @property
    def updated_at_iso(self) -> str:
        return datetime.fromtimestamp(self.updated_at, tz=timezone.utc).isoformat()

    def age(self, now: float) -> float:
        return now - self.updated_at

    def to_dict(self) -> dict:
        return {
            "chain_id":          self.chain_id,
            "total_fleet_power": str(self.total_fleet_power),
            "hourly_emission":   str(self.hourly_emission),
            "updated_at":        repr(self.updated_at),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, str]) -> "ChainAggregate":
        return cls(
            chain_id          = int(data["chain_id"]),
            total_fleet_power = int(data["total_fleet_power"]),
            hourly_emission   = Decimal(str(data["hourly_emission"])),
            updated_at        = float(data["updated_at"]),
        )


class AggregateStore(ABC):

    @abstractmethod
    async def get(self, chain_id: int) -> Optional[ChainAggregate]: ...

    @abstractmethod
    async def put(self, aggregate: ChainAggregate) -> bool: ...


def _is_newer(current: Optional[ChainAggregate], incoming: ChainAggregate) -> bool:
    if current is None or incoming.updated_at > current.updated_at:
        return True
    logger.warning(
        f"Refusing aggregate for chain {incoming.chain_id}: updated_at "
        f"{incoming.updated_at_iso} is not newer than stored {current.updated_at_iso}"
    )
    return False


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------
class RedisAggregateStore(AggregateStore):
    """One hash per chain at aggregate:<chain_id>."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisAggregateStore":
        return cls(redis.from_url(url, decode_responses=True))

    @staticmethod
    def _key(chain_id: int) -> str:
        return f"{AGGREGATE_PREFIX}{int(chain_id)}"

    async def get(self, chain_id: int) -> Optional[ChainAggregate]:
        try:
            data = await self.client.hgetall(self._key(chain_id))
        except RedisError as e:
            raise AggregateStoreError(f"Aggregate read failed for chain {chain_id}: {e}") from e
        if not data:
            return None
        try:
            return ChainAggregate.from_mapping(data)
        except (KeyError, ValueError, ArithmeticError) as e:
            raise AggregateStoreError(
                f"Aggregate record for chain {chain_id} is corrupt: {e!r}"
            ) from e

    async def put(self, aggregate: ChainAggregate) -> bool:
        current = await self.get(aggregate.chain_id)
        if not _is_newer(current, aggregate):
            return False
        try:
            await self.client.hset(self._key(aggregate.chain_id), mapping=aggregate.to_dict())
        except RedisError as e:
            raise AggregateStoreError(
                f"Aggregate write failed for chain {aggregate.chain_id}: {e}"
            ) from e
        return True

    async def close(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# In-process backend (dev / tests)
# ---------------------------------------------------------------------------
class MemoryAggregateStore(AggregateStore):

    def __init__(self):
        self._data: Dict[int, ChainAggregate] = {}

    async def get(self, chain_id: int) -> Optional[ChainAggregate]:
        return self._data.get(int(chain_id))

    async def put(self, aggregate: ChainAggregate) -> bool:
        if not _is_newer(self._data.get(aggregate.chain_id), aggregate):
            return False
        self._data[aggregate.chain_id] = aggregate
        return True
