"""
FLEET REWARDS :: RewardCalculator Unit Tests

Coverage:
  - pro-rata share: linear in fleet power, "0" when total is zero
  - amount formatting: truncation to token decimals, no exponent
  - cache hit skips the chain read; cache miss populates
  - display mode degrades to "0" + error, strict mode propagates
  - stale aggregate flag
  - invalid address / unknown chain
"""

import sys
import os
from decimal import Decimal

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import ALICE, BOB
from engine.aggregate_store import ChainAggregate
from engine.cache import reward_cache_key
from engine.errors import ChainReadError, InvalidAddressError, UnknownChainError
from engine.reward_calculator import RewardCalculator, format_amount, pro_rata_share


def _aggregate(chain_id=11124, total=1000, emission="1000", updated_at=None, clock=None):
    return ChainAggregate(
        chain_id          = chain_id,
        total_fleet_power = total,
        hourly_emission   = Decimal(emission),
        updated_at        = updated_at if updated_at is not None else clock(),
    )


@pytest.fixture
def calculator(registry, reader, store, cache, clock):
    return RewardCalculator(
        registry, reader, store, cache, cache_ttl=300, stale_after=3600, clock=clock,
    )


# ── Pure math ─────────────────────────────────────────────────────────────────

class TestProRataShare:

    def test_quarter_of_emission(self):
        assert pro_rata_share(250, 1000, Decimal("1000")) == "250"

    def test_zero_total_is_zero(self):
        assert pro_rata_share(250, 0, Decimal("1000")) == "0"

    def test_linear_in_fleet_power(self):
        single = Decimal(pro_rata_share(7, 300, Decimal("12.5")))
        double = Decimal(pro_rata_share(14, 300, Decimal("12.5")))
        assert abs(double - single * 2) <= Decimal("1e-18")

    def test_truncates_to_token_decimals(self):
        # 1/3 of 1 token: 18 threes, never rounded up
        assert pro_rata_share(1, 3, Decimal("1")) == "0." + "3" * 18

    def test_format_amount_has_no_exponent(self):
        assert format_amount(Decimal("1E+3")) == "1000"
        assert format_amount(Decimal("0.000000000000000000001")) == "0"
        assert format_amount(Decimal("12.500")) == "12.5"


# ── Calculator ────────────────────────────────────────────────────────────────

class TestPendingRewards:

    @pytest.mark.asyncio
    async def test_reference_example(self, calculator, reader, store, clock):
        """Total 1000, emission 1000/h, user holds 250 → 250."""
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, ALICE, 250)

        assert await calculator.calculate_pending_rewards(ALICE, 11124) == "250"

    @pytest.mark.asyncio
    async def test_no_aggregate_returns_zero_without_chain_read(self, calculator, reader):
        reward = await calculator.estimate(ALICE, 11124)
        assert reward.amount == "0"
        assert reward.error is None
        assert reader.calls["fleet_power"] == 0

    @pytest.mark.asyncio
    async def test_zero_total_returns_zero_without_chain_read(self, calculator, reader, store, clock):
        await store.put(_aggregate(total=0, emission="0", clock=clock))
        assert await calculator.calculate_pending_rewards(ALICE, 11124) == "0"
        assert reader.calls["fleet_power"] == 0

    @pytest.mark.asyncio
    async def test_default_chain_used_when_omitted(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, ALICE, 100)
        reward = await calculator.estimate(ALICE)
        assert reward.chain_id == 11124
        assert reward.amount == "100"

    @pytest.mark.asyncio
    async def test_address_returned_in_checksum_form(self, calculator, store, clock):
        await store.put(_aggregate(clock=clock))
        reward = await calculator.estimate(ALICE.lower(), 11124)
        assert reward.user_address != ALICE.lower()
        assert reward.user_address.lower() == ALICE.lower()


class TestCaching:

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, ALICE, 250)

        first  = await calculator.estimate(ALICE, 11124)
        second = await calculator.estimate(ALICE, 11124)

        assert first.cached is False
        assert second.cached is True
        assert second.amount == first.amount == "250"
        assert reader.calls["fleet_power"] == 1

    @pytest.mark.asyncio
    async def test_cache_entry_expires_after_ttl(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, ALICE, 250)

        await calculator.estimate(ALICE, 11124)
        clock.advance(301)
        await calculator.estimate(ALICE, 11124)
        assert reader.calls["fleet_power"] == 2

    @pytest.mark.asyncio
    async def test_cache_is_per_chain(self, calculator, reader, store, clock):
        await store.put(_aggregate(11124, clock=clock))
        await store.put(_aggregate(84532, total=500, emission="10", clock=clock))
        reader.set_power(11124, ALICE, 250)
        reader.set_power(84532, ALICE, 250)

        assert await calculator.calculate_pending_rewards(ALICE, 11124) == "250"
        assert await calculator.calculate_pending_rewards(ALICE, 84532) == "5"

    @pytest.mark.asyncio
    async def test_cache_key_is_case_insensitive(self, calculator, reader, store, cache, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, ALICE, 250)
        await calculator.estimate(ALICE, 11124)
        entry = await cache.get(reward_cache_key(11124, ALICE.upper()))
        assert entry == {"amount": "250", "updated_at": clock()}


class TestFailurePolicy:

    @pytest.mark.asyncio
    async def test_display_mode_degrades_to_zero(self, calculator, reader, store, cache, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, ALICE, 250)
        reader.failing.add(11124)

        reward = await calculator.estimate(ALICE, 11124)

        assert reward.amount == "0"
        assert "connection refused" in reward.error
        # a degraded result is never cached
        assert await cache.get(reward_cache_key(11124, ALICE)) is None

    @pytest.mark.asyncio
    async def test_strict_mode_propagates(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.failing.add(11124)
        with pytest.raises(ChainReadError):
            await calculator.estimate(ALICE, 11124, strict=True)

    @pytest.mark.asyncio
    async def test_invalid_address_raises(self, calculator):
        with pytest.raises(InvalidAddressError):
            await calculator.estimate("not-an-address", 11124)

    @pytest.mark.asyncio
    async def test_unknown_chain_raises_even_in_display_mode(self, calculator):
        with pytest.raises(UnknownChainError, match="Configuration not found for chain ID: 1"):
            await calculator.estimate(BOB, 1)


class TestStaleness:

    @pytest.mark.asyncio
    async def test_fresh_aggregate_not_stale(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, BOB, 1)
        clock.advance(3599)
        assert (await calculator.estimate(BOB, 11124)).stale is False

    @pytest.mark.asyncio
    async def test_old_aggregate_flagged_but_still_answered(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, BOB, 500)
        clock.advance(7200)

        reward = await calculator.estimate(BOB, 11124)
        assert reward.stale is True
        assert reward.amount == "500"

    @pytest.mark.asyncio
    async def test_stale_flag_survives_cache_hit(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, BOB, 500)
        clock.advance(7200)

        first  = await calculator.estimate(BOB, 11124)
        second = await calculator.estimate(BOB, 11124)

        assert first.stale is True
        assert second.cached is True
        assert second.stale is True
        assert reader.calls["fleet_power"] == 1

    @pytest.mark.asyncio
    async def test_cached_entry_turns_stale_while_still_cached(self, calculator, reader, store, clock):
        await store.put(_aggregate(clock=clock))
        reader.set_power(11124, BOB, 500)
        clock.advance(3400)
        assert (await calculator.estimate(BOB, 11124)).stale is False

        clock.advance(250)    # inside the 300s TTL, aggregate now 3650s old
        reward = await calculator.estimate(BOB, 11124)
        assert reward.cached is True
        assert reward.stale is True
