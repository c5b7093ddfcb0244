"""
FLEET REWARDS :: shared test fixtures

FakeChainReader stands in for the web3 reader: per-chain fleet-power tables,
call counters and injectable failures. No network, no Redis.
"""

import sys
import os

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.aggregate_store import MemoryAggregateStore
from engine.cache import MemoryResultCache
from engine.chains import ChainConfig, ChainRegistry
from engine.claim_signer import ClaimSigner
from engine.errors import ChainReadError
from engine.reward_service import RewardService

# Well-known throwaway key (eth-account docs). Never fund it.
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

ALICE = "0x2c7536e3605d9c16a7a3d7b1898e529396a65c23"
BOB   = "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4"

T0 = 1_700_000_000.0


class Clock:
    """Controllable time source."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChainReader:

    def __init__(self):
        self.fleet_power = {}          # (chain_id, address lower) -> int
        self.totals      = {}          # chain_id -> int
        self.rates       = {}          # chain_id -> int
        self.failing     = set()       # chain ids whose reads raise
        self.calls       = {"fleet_power": 0, "total": 0, "rate": 0}
        self.gate        = None        # asyncio.Event blocking aggregate reads

    def set_chain(self, chain_id, total, rate=10**18):
        self.totals[chain_id] = total
        self.rates[chain_id]  = rate

    def set_power(self, chain_id, address, power):
        self.fleet_power[(chain_id, address.lower())] = power

    def _check(self, chain_id, method):
        if chain_id in self.failing:
            raise ChainReadError(
                f"RewardClaim.{method} on chain {chain_id} failed: connection refused",
                chain_id, "RewardClaim", method,
            )

    async def get_fleet_power(self, user_address, chain_id):
        self.calls["fleet_power"] += 1
        self._check(chain_id, "getFleetPower")
        return self.fleet_power.get((chain_id, user_address.lower()), 0)

    async def get_total_fleet_power(self, chain_id):
        self.calls["total"] += 1
        if self.gate is not None:
            await self.gate.wait()
        self._check(chain_id, "getTotalFleetPower")
        return self.totals.get(chain_id, 0)

    async def get_base_emission_rate(self, chain_id):
        self.calls["rate"] += 1
        self._check(chain_id, "baseEmissionRate")
        return self.rates.get(chain_id, 0)


def make_registry(*chain_ids, default=11124):
    configs = {
        c: ChainConfig(
            chain_id  = c,
            name      = f"Chain {c}",
            rpc_url   = f"http://rpc.invalid/{c}",
            contracts = {"RewardClaim": "0x" + "11" * 20},
        )
        for c in (chain_ids or (11124,))
    }
    return ChainRegistry(configs, default_chain_id=default)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def reader():
    return FakeChainReader()


@pytest.fixture
def registry():
    return make_registry(11124, 84532)


@pytest.fixture
def store():
    return MemoryAggregateStore()


@pytest.fixture
def cache(clock):
    return MemoryResultCache(clock=clock)


@pytest.fixture
def signer():
    return ClaimSigner(private_key_hex=TEST_PRIVATE_KEY)


@pytest.fixture
def service(registry, reader, store, cache, signer, clock):
    return RewardService(
        registry, reader, store, cache, signer,
        cache_ttl=300, stale_after=3600, interval=3600, run_at_start=False, clock=clock,
    )
