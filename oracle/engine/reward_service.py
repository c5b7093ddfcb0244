"""
FLEET REWARDS :: Reward Service
===============================
Composition root for the reward-accounting core. HTTP handlers talk to this
object only:

    calculate_pending_rewards(address, chain_id) -> "123.45"
    estimate_pending_rewards(address, chain_id)  -> PendingReward
    generate_claim_proof(address, chain_id)      -> ClaimProof
    verify_claim_proof(claim)                    -> VerificationResult
    calculate_all_rewards()                      -> {chain_id: {...} | {"error": ...}}
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from engine.aggregate_store import AggregateStore, MemoryAggregateStore, RedisAggregateStore
from engine.cache import REWARD_CACHE_TTL_SEC, MemoryResultCache, RedisResultCache, ResultCache
from engine.chain_reader import (
    CHAIN_READ_ATTEMPTS,
    CHAIN_READ_BACKOFF_SEC,
    CHAIN_READ_TIMEOUT_SEC,
    ChainReader,
)
from engine.chains import ChainRegistry
from engine.claim_proof import (
    CLAIM_MAX_AGE_EPOCHS,
    ClaimProof,
    ClaimProofIssuer,
    ClaimProofVerifier,
    VerificationResult,
)
from engine.claim_signer import ENCODING_HEX_TEXT, ClaimSigner
from engine.reward_calculator import (
    AGGREGATE_STALE_AFTER_SEC,
    RECALC_INTERVAL_SEC,
    REWARD_TOKEN_DECIMALS,
    PendingReward,
    RewardCalculator,
    format_amount,
)
from engine.recalculation import RECALC_ON_STARTUP, RecalculationJob, RecalculationScheduler

logger = logging.getLogger("fleet.rewards")


class RewardService:

    VERSION = "1.0.0"

    def __init__(
        self,
        registry:       ChainRegistry,
        reader:         ChainReader,
        store:          AggregateStore,
        cache:          ResultCache,
        signer:         ClaimSigner,
        cache_ttl:      int   = REWARD_CACHE_TTL_SEC,
        stale_after:    float = AGGREGATE_STALE_AFTER_SEC,
        decimals:       int   = REWARD_TOKEN_DECIMALS,
        max_age_epochs: int   = CLAIM_MAX_AGE_EPOCHS,
        interval:       float = RECALC_INTERVAL_SEC,
        run_at_start:   bool  = RECALC_ON_STARTUP,
        clock:          Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.reader   = reader
        self.store    = store
        self.cache    = cache
        self.signer   = signer
        self.decimals = decimals
        self._clock   = clock

        self.calculator = RewardCalculator(
            registry, reader, store, cache,
            cache_ttl=cache_ttl, stale_after=stale_after, decimals=decimals, clock=clock,
        )
        self.job       = RecalculationJob(registry, reader, store, cache, decimals=decimals, clock=clock)
        self.scheduler = RecalculationScheduler(self.job, interval=interval, run_at_start=run_at_start)
        self.issuer    = ClaimProofIssuer(self.calculator, signer, clock=clock)
        self.verifier  = ClaimProofVerifier(signer, max_age_epochs=max_age_epochs, clock=clock)
        self.stale_after = stale_after

        logger.info(f"RewardService v{self.VERSION} initialized for chains {registry.chain_ids()}")

    @property
    def signer_address(self) -> str:
        return self.signer.address

    # ------------------------------------------------------------------
    async def calculate_pending_rewards(self, user_address: str, chain_id: Optional[int] = None) -> str:
        return await self.calculator.calculate_pending_rewards(user_address, chain_id)

    async def estimate_pending_rewards(self, user_address: str, chain_id: Optional[int] = None) -> PendingReward:
        return await self.calculator.estimate(user_address, chain_id)

    async def generate_claim_proof(self, user_address: str, chain_id: Optional[int] = None) -> ClaimProof:
        return await self.issuer.issue(user_address, chain_id)

    def verify_claim_proof(self, claim: Union[ClaimProof, Mapping[str, Any]]) -> VerificationResult:
        return self.verifier.verify(claim)

    async def calculate_all_rewards(self) -> Dict[int, dict]:
        return await self.job.run()

    async def get_aggregate(self, chain_id: Optional[int] = None) -> Optional[dict]:
        chain_id = self.registry.resolve(chain_id)
        aggregate = await self.store.get(chain_id)
        if aggregate is None:
            return None
        return {
            "chain_id":          chain_id,
            "total_fleet_power": str(aggregate.total_fleet_power),
            "hourly_emission":   format_amount(aggregate.hourly_emission, self.decimals),
            "updated_at":        aggregate.updated_at_iso,
            "stale":             aggregate.age(self._clock()) > self.stale_after,
        }

    async def close(self) -> None:
        await self.scheduler.stop()
        for backend in (self.cache, self.store):
            close = getattr(backend, "close", None)
            if close is not None:
                await close()


# ---------------------------------------------------------------------------
# Factory Helper
# ---------------------------------------------------------------------------
def create_reward_service(environ: Optional[Mapping[str, str]] = None) -> RewardService:
    """Build the service from environment variables."""
    env = os.environ if environ is None else environ

    registry = ChainRegistry.from_env(env)
    if not registry.chain_ids():
        logger.warning("No chains configured (set CHAIN_<id>_RPC and CONTRACT_<id>_REWARD_CLAIM)")

    reader = ChainReader(
        registry,
        timeout  = float(env.get("CHAIN_READ_TIMEOUT_SEC", CHAIN_READ_TIMEOUT_SEC)),
        attempts = int(env.get("CHAIN_READ_ATTEMPTS", CHAIN_READ_ATTEMPTS)),
        backoff  = float(env.get("CHAIN_READ_BACKOFF_SEC", CHAIN_READ_BACKOFF_SEC)),
    )

    redis_url = env.get("REDIS_URL")
    if redis_url:
        cache: ResultCache    = RedisResultCache.from_url(redis_url)
        store: AggregateStore = RedisAggregateStore.from_url(redis_url)
        logger.info("Using Redis-backed result cache and aggregate store")
    else:
        cache = MemoryResultCache()
        store = MemoryAggregateStore()
        logger.warning("REDIS_URL not set: using in-memory cache and aggregate store (not shared, lost on restart)")

    signer = ClaimSigner(
        private_key_hex  = env.get("SERVER_WALLET_PRIVATE_KEY") or None,
        expected_address = env.get("CLAIM_SIGNER_ADDRESS") or None,
        encoding         = env.get("CLAIM_MESSAGE_ENCODING", ENCODING_HEX_TEXT),
    )

    interval = float(env.get("RECALC_INTERVAL_SEC", RECALC_INTERVAL_SEC))
    return RewardService(
        registry, reader, store, cache, signer,
        cache_ttl      = int(env.get("REWARD_CACHE_TTL_SEC", REWARD_CACHE_TTL_SEC)),
        stale_after    = float(env.get("AGGREGATE_STALE_AFTER_SEC", interval)),
        decimals       = int(env.get("REWARD_TOKEN_DECIMALS", REWARD_TOKEN_DECIMALS)),
        max_age_epochs = int(env.get("CLAIM_MAX_AGE_EPOCHS", CLAIM_MAX_AGE_EPOCHS)),
        interval       = interval,
        run_at_start   = str(env.get("RECALC_ON_STARTUP", RECALC_ON_STARTUP)).lower() in ("1", "true", "yes"),
    )
