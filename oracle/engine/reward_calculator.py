"""
FLEET REWARDS :: Reward Calculator
==================================
Pending reward = linear pro-rata share of the chain's hourly emission budget:

    pending = fleet_power / total_fleet_power × hourly_emission

recomputed on every cache miss against the last-refreshed ChainAggregate. It
is NOT accumulated across calls: it answers "if the epoch ended now, what is
my share".

Failure policy:
  - display mode (strict=False): transient upstream failure → amount "0" with
    `error` set. Pending rewards are an estimate; the UI must not break.
  - strict mode (claim issuance): transient failures propagate. A claim must
    never be signed for a degraded amount.
  - ConfigurationError / InvalidAddressError propagate in both modes.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Callable, Optional

from engine.aggregate_store import AggregateStore
from engine.cache import REWARD_CACHE_TTL_SEC, ResultCache, reward_cache_key
from engine.chain_reader import ChainReader
from engine.chains import ChainRegistry, normalize_address
from engine.errors import TransientUpstreamError

logger = logging.getLogger("fleet.rewards")

REWARD_TOKEN_DECIMALS     = int(os.getenv("REWARD_TOKEN_DECIMALS", "18"))
RECALC_INTERVAL_SEC       = int(os.getenv("RECALC_INTERVAL_SEC", "3600"))
AGGREGATE_STALE_AFTER_SEC = int(os.getenv("AGGREGATE_STALE_AFTER_SEC", str(RECALC_INTERVAL_SEC)))

DECIMAL_PRECISION = 60


def format_amount(value: Decimal, decimals: int = REWARD_TOKEN_DECIMALS) -> str:
    """Truncate to token precision; plain notation, no trailing zeros."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        q = value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
        if q == 0:
            return "0"
        return format(q.normalize(), "f")


def pro_rata_share(
    fleet_power:       int,
    total_fleet_power: int,
    hourly_emission:   Decimal,
    decimals:          int = REWARD_TOKEN_DECIMALS,
) -> str:
    if total_fleet_power <= 0:
        return "0"
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        share = Decimal(fleet_power) / Decimal(total_fleet_power)
        return format_amount(share * hourly_emission, decimals)


@dataclass
class PendingReward:
    user_address: str
    chain_id:     int
    amount:       str
    cached:       bool          = False
    stale:        bool          = False
    error:        Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RewardCalculator:

    def __init__(
        self,
        registry:    ChainRegistry,
        reader:      ChainReader,
        store:       AggregateStore,
        cache:       ResultCache,
        cache_ttl:   int   = REWARD_CACHE_TTL_SEC,
        stale_after: float = AGGREGATE_STALE_AFTER_SEC,
        decimals:    int   = REWARD_TOKEN_DECIMALS,
        clock:       Callable[[], float] = time.time,
    ):
        self.registry    = registry
        self.reader      = reader
        self.store       = store
        self.cache       = cache
        self.cache_ttl   = cache_ttl
        self.stale_after = stale_after
        self.decimals    = decimals
        self._clock      = clock

    async def calculate_pending_rewards(self, user_address: str, chain_id: Optional[int] = None) -> str:
        return (await self.estimate(user_address, chain_id)).amount

    def _is_stale(self, updated_at: float) -> bool:
        return self._clock() - updated_at > self.stale_after

    async def estimate(
        self,
        user_address: str,
        chain_id:     Optional[int] = None,
        strict:       bool = False,
    ) -> PendingReward:
        address  = normalize_address(user_address)
        chain_id = self.registry.resolve(chain_id)
        key      = reward_cache_key(chain_id, address)

        # entries carry the aggregate's updated_at so staleness is re-derived on a hit
        cached = await self.cache.get(key)
        if isinstance(cached, dict) and "amount" in cached:
            stale = self._is_stale(float(cached.get("updated_at", 0)))
            return PendingReward(address, chain_id, str(cached["amount"]), cached=True, stale=stale)

        try:
            aggregate = await self.store.get(chain_id)
            if aggregate is None or aggregate.total_fleet_power == 0:
                return PendingReward(address, chain_id, "0")
            fleet_power = await self.reader.get_fleet_power(address, chain_id)
        except TransientUpstreamError as e:
            if strict:
                raise
            logger.error(f"[{chain_id}:{address}] Pending reward degraded to 0: {e}")
            return PendingReward(address, chain_id, "0", error=str(e))

        stale = self._is_stale(aggregate.updated_at)
        if stale:
            logger.warning(
                f"[{chain_id}] Aggregate is stale (updated {aggregate.updated_at_iso}); "
                "pending rewards are computed against an old snapshot"
            )

        amount = pro_rata_share(
            fleet_power, aggregate.total_fleet_power, aggregate.hourly_emission, self.decimals
        )
        await self.cache.set(key, {"amount": amount, "updated_at": aggregate.updated_at}, self.cache_ttl)
        logger.debug(
            f"[{chain_id}:{address}] power={fleet_power}/{aggregate.total_fleet_power} "
            f"emission={aggregate.hourly_emission} → {amount}"
        )
        return PendingReward(address, chain_id, amount, stale=stale)
