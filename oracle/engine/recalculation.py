"""
FLEET REWARDS :: Hourly Recalculation
=====================================
Refreshes every chain's ChainAggregate from the RewardClaim contract:

    hourly_emission = baseEmissionRate / 10**decimals × totalFleetPower

then clears the "rewards:" cache namespace so the next pending-reward query
recomputes against the fresh snapshot.

Invariants:
  - one chain's failure is recorded in its own result slot, never aborts the batch
  - cache invalidation happens once, after every chain's write has finished
  - overlapping triggers (scheduler + admin) share a single in-flight run
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from decimal import Decimal, localcontext
from typing import Callable, Dict, Optional

from engine.aggregate_store import AggregateStore, ChainAggregate
from engine.cache import REWARDS_PREFIX, ResultCache
from engine.chain_reader import ChainReader
from engine.chains import ChainRegistry
from engine.errors import RewardsError
from engine.reward_calculator import (
    DECIMAL_PRECISION,
    RECALC_INTERVAL_SEC,
    REWARD_TOKEN_DECIMALS,
    format_amount,
)

logger = logging.getLogger("fleet.recalc")

RECALC_ON_STARTUP = os.getenv("RECALC_ON_STARTUP", "true").lower() in ("1", "true", "yes")


def hourly_emission(base_emission_rate: int, total_fleet_power: int, decimals: int = REWARD_TOKEN_DECIMALS) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        rate = Decimal(base_emission_rate).scaleb(-decimals)
        return Decimal(format_amount(rate * Decimal(total_fleet_power), decimals))


class RecalculationJob:

    def __init__(
        self,
        registry: ChainRegistry,
        reader:   ChainReader,
        store:    AggregateStore,
        cache:    ResultCache,
        decimals: int = REWARD_TOKEN_DECIMALS,
        clock:    Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.reader   = reader
        self.store    = store
        self.cache    = cache
        self.decimals = decimals
        self._clock   = clock
        self._inflight: Optional[asyncio.Task] = None
        self.last_run_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def run(self) -> Dict[int, dict]:
        """Run now, or join the run already in progress."""
        if self.running:
            logger.info("Recalculation already in progress; awaiting the in-flight run")
        else:
            self._inflight = asyncio.ensure_future(self._run())
            self._inflight.add_done_callback(self._on_run_done)
        # shield: a cancelled caller must not cancel the shared run
        return await asyncio.shield(self._inflight)

    @staticmethod
    def _on_run_done(task: asyncio.Task) -> None:
        # retrieves the exception even when every caller has gone away
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"❌ Recalculation run failed: {exc!r}", exc_info=exc)

    # ------------------------------------------------------------------
    async def _run(self) -> Dict[int, dict]:
        chain_ids = self.registry.chain_ids()
        logger.info(f"⏰ Starting reward recalculation for chains {chain_ids}")
        started = time.perf_counter()

        outcomes = await asyncio.gather(*(self._recalculate_chain(c) for c in chain_ids))
        results = dict(zip(chain_ids, outcomes))

        cleared = await self.cache.delete_by_prefix(REWARDS_PREFIX)
        self.last_run_at = self._clock()

        failed = [c for c, r in results.items() if "error" in r]
        logger.info(
            f"✅ Recalculation completed in {time.perf_counter() - started:.2f}s: "
            f"{len(chain_ids) - len(failed)} ok, {len(failed)} failed, {cleared} cache entries cleared"
        )
        return results

    async def _recalculate_chain(self, chain_id: int) -> dict:
        try:
            total_fleet_power, rate = await asyncio.gather(
                self.reader.get_total_fleet_power(chain_id),
                self.reader.get_base_emission_rate(chain_id),
            )
            aggregate = ChainAggregate(
                chain_id          = chain_id,
                total_fleet_power = total_fleet_power,
                hourly_emission   = hourly_emission(rate, total_fleet_power, self.decimals),
                updated_at        = self._clock(),
            )
            if not await self.store.put(aggregate):
                return {"error": "Stored aggregate is newer; update skipped"}
        except (RewardsError, ValueError) as e:
            logger.error(f"❌ Error updating chain {chain_id}: {e}")
            return {"error": str(e)}

        logger.info(
            f"Chain {chain_id}: total_fleet_power={aggregate.total_fleet_power} "
            f"hourly_emission={aggregate.hourly_emission}"
        )
        return {
            "total_fleet_power": str(aggregate.total_fleet_power),
            "hourly_emission":   format_amount(aggregate.hourly_emission, self.decimals),
            "timestamp":         aggregate.updated_at_iso,
        }


class RecalculationScheduler:
    """Runs the job every `interval` seconds on the current event loop."""

    def __init__(
        self,
        job:          RecalculationJob,
        interval:     float = RECALC_INTERVAL_SEC,
        run_at_start: bool  = RECALC_ON_STARTUP,
    ):
        self.job          = job
        self.interval     = interval
        self.run_at_start = run_at_start
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(f"Recalculation scheduler started (every {self.interval:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Recalculation scheduler stopped")

    async def _loop(self) -> None:
        if not self.run_at_start:
            await asyncio.sleep(self.interval)
        while True:
            try:
                await self.job.run()
            except Exception as e:
                logger.error(f"Scheduled recalculation failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
