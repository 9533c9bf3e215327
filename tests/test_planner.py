"""
Test distribution planning, eligibility and rollover bookkeeping.
"""

import random
from decimal import Decimal
from types import SimpleNamespace

import base58
import pytest

from miko_keeper.core.config import NATIVE_SOL_MINT
from miko_keeper.core.exceptions import PlanInvariantError, PriceUnavailableError
from miko_keeper.services.blockchain.pool_detector import RAYDIUM_LAYOUTS, PoolDetector
from miko_keeper.services.distribution.exclusions import ExclusionManager
from miko_keeper.services.distribution.planner import DistributionPlanner, allocate, validate_plan
from miko_keeper.services.distribution.types import (
    DistributionPlan,
    DistributionResult,
    FailedRecipient,
    PlanRecipient,
    PriceSource,
)
from miko_keeper.services.interfaces import HolderBalance

from .fakes import HOLDING, KEEPER


REWARD = NATIVE_SOL_MINT


class FakeProgramAccounts:
    """RPC stand-in answering getProgramAccounts from a fixed table."""

    def __init__(self, accounts):
        self.accounts = accounts

    async def get_program_accounts(self, program_id, encoding=None, filters=None):
        return SimpleNamespace(value=[
            SimpleNamespace(pubkey=pubkey, account=SimpleNamespace(data=data))
            for pubkey, data in self.accounts.get(str(program_id), [])
        ])


def shares_by_address(plan):
    return {r.address: r.amount for r in plan.recipients}


def test_allocate_even_split_with_remainder():
    assert allocate(1000, [1, 1, 1]) == ([333, 333, 333], 1)


@pytest.mark.parametrize("seed", range(5))
def test_allocate_conserves_total(seed):
    rng = random.Random(seed)
    balances = [rng.randint(1, 10 ** 12) for _ in range(rng.randint(1, 200))]
    total = rng.randint(0, 10 ** 15)

    shares, remainder = allocate(total, balances)

    assert sum(shares) + remainder == total
    assert 0 <= remainder < len(balances)


@pytest.mark.asyncio
async def test_two_holders_no_remainder(planner, holders, exclusion_source):
    holders.holders = [HolderBalance("h1", 600), HolderBalance("h2", 300), HolderBalance("h3", 100)]
    exclusion_source.addresses = {"h3"}

    plan = await planner.plan(900, REWARD)

    assert shares_by_address(plan) == {"h1": 600, "h2": 300}
    assert plan.rollover_amount == 0
    assert plan.price_source == PriceSource.PRIMARY


@pytest.mark.asyncio
async def test_equal_balances_leave_remainder(planner, holders):
    holders.holders = [HolderBalance("h1", 100), HolderBalance("h2", 100), HolderBalance("h3", 100)]

    plan = await planner.plan(1000, REWARD)

    assert sorted(shares_by_address(plan).values()) == [333, 333, 333]
    assert plan.rollover_amount == 1


@pytest.mark.asyncio
async def test_threshold_is_inclusive(planner, holders):
    holders.holders = [HolderBalance("at", 100), HolderBalance("below", 99)]

    plan = await planner.plan(50, REWARD)

    assert shares_by_address(plan) == {"at": 50}


@pytest.mark.asyncio
async def test_excluded_addresses_never_receive(planner, holders, exclusion_source):
    exclusion_source.addresses = {"pool"}
    holders.holders = [
        HolderBalance("pool", 10 ** 9),
        HolderBalance(KEEPER, 10 ** 6),
        HolderBalance(HOLDING, 10 ** 6),
        HolderBalance("h1", 500),
    ]

    plan = await planner.plan(1000, REWARD)

    assert shares_by_address(plan) == {"h1": 1000}


@pytest.mark.asyncio
async def test_no_eligible_holders_rolls_over_and_folds_next_cycle(planner, holders, store):
    holders.holders = [HolderBalance("small", 5)]
    await store.add_pending_proceeds(REWARD, 500)

    first = await planner.plan(500, REWARD)

    assert first.no_eligible_holders is True
    assert first.recipients == []
    assert first.rollover_amount == 500
    assert (await store.get_rollover(REWARD)).amount == 500
    assert await store.get_pending_proceeds(REWARD) == 0

    holders.holders = [HolderBalance("h1", 1000)]
    second = await planner.plan(200, REWARD)

    assert second.total_amount == 700
    assert second.rollover_folded == 500
    assert shares_by_address(second) == {"h1": 700}


@pytest.mark.asyncio
async def test_rollover_in_other_asset_is_not_merged(planner, holders, store):
    await store.settle("OldReward111", rollover_amount=42, consumed_proceeds=0)
    holders.holders = [HolderBalance("h1", 1000)]

    plan = await planner.plan(100, REWARD)

    assert plan.total_amount == 100
    assert plan.stale_rollover_assets == ["OldReward111"]
    assert (await store.get_rollover("OldReward111")).amount == 42


@pytest.mark.asyncio
async def test_fallback_price_is_tagged(planner, holders, oracle):
    holders.price = None
    oracle.price = Decimal("150")
    # fallback estimate: 150 * 0.001 = 0.15 USD per unit
    holders.holders = [HolderBalance("whale", 1000), HolderBalance("minnow", 600)]

    plan = await planner.plan(100, REWARD)

    assert plan.price_source == PriceSource.FALLBACK
    assert plan.price_usd == Decimal("0.15")
    assert shares_by_address(plan) == {"whale": 100}


@pytest.mark.asyncio
async def test_no_price_fails_plan_without_writes(planner, holders, oracle, store):
    holders.fail_price = True
    oracle.price = None
    holders.holders = [HolderBalance("h1", 1000)]

    with pytest.raises(PriceUnavailableError):
        await planner.plan(100, REWARD)

    assert (await store.list_rollovers()) == []


@pytest.mark.asyncio
async def test_malformed_and_duplicate_rows_skipped(planner, holders):
    holders.holders = [
        HolderBalance("h1", 400),
        HolderBalance("h1", 400),
        HolderBalance("", 1000),
        HolderBalance("neg", -5),
        HolderBalance("h2", 100),
    ]

    plan = await planner.plan(500, REWARD)

    assert shares_by_address(plan) == {"h1": 400, "h2": 100}


@pytest.mark.asyncio
async def test_nothing_to_distribute(planner, holders):
    holders.holders = [HolderBalance("h1", 1000)]

    plan = await planner.plan(0, REWARD)

    assert plan.total_amount == 0
    assert plan.recipients == []
    assert plan.no_eligible_holders is False


def test_validate_plan_rejects_broken_conservation():
    plan = DistributionPlan(
        total_amount=100,
        reward_asset_id=REWARD,
        recipients=[PlanRecipient("h1", 60, 1, Decimal(1)), PlanRecipient("h2", 50, 1, Decimal(1))],
        rollover_amount=0,
    )
    with pytest.raises(PlanInvariantError):
        validate_plan(plan)


def test_validate_plan_rejects_negative_share():
    plan = DistributionPlan(
        total_amount=100,
        reward_asset_id=REWARD,
        recipients=[PlanRecipient("h1", 110, 1, Decimal(1)), PlanRecipient("h2", -10, 1, Decimal(1))],
        rollover_amount=0,
    )
    with pytest.raises(PlanInvariantError):
        validate_plan(plan)


@pytest.mark.asyncio
async def test_settle_after_partial_failure_records_failed_recipients(planner, holders, store):
    holders.holders = [HolderBalance("h1", 100), HolderBalance("h2", 100), HolderBalance("h3", 100)]
    await store.add_pending_proceeds(REWARD, 1000)
    plan = await planner.plan(1000, REWARD)
    result = DistributionResult(
        success=False,
        distributed=666,
        recipients=2,
        failed=1,
        failed_recipients=[FailedRecipient(plan.recipients[2].address, 333, "transfer rejected")],
    )

    rollover = await planner.settle(plan, result, cycle_id=None)

    assert rollover.amount == 1
    assert await store.get_pending_proceeds(REWARD) == 0
    failed = await store.list_failed_transfers()
    assert [(f["recipient"], f["amount"]) for f in failed] == [(plan.recipients[2].address, 333)]


@pytest.mark.asyncio
async def test_settle_after_total_failure_carries_everything(planner, holders, store):
    holders.holders = [HolderBalance("h1", 100), HolderBalance("h2", 300)]
    await store.add_pending_proceeds(REWARD, 1000)
    plan = await planner.plan(1000, REWARD)
    result = DistributionResult(
        success=False,
        failed=2,
        failed_recipients=[FailedRecipient(r.address, r.amount, "down") for r in plan.recipients],
    )

    rollover = await planner.settle(plan, result)

    assert rollover.amount == 1000
    assert await store.get_pending_proceeds(REWARD) == 0
    assert await store.list_failed_transfers() == []


@pytest.mark.asyncio
async def test_settle_rejects_mismatched_accounting(planner, holders, store):
    holders.holders = [HolderBalance("h1", 100)]
    plan = await planner.plan(1000, REWARD)

    with pytest.raises(PlanInvariantError):
        await planner.settle(plan, DistributionResult(success=True, distributed=900, recipients=1))


@pytest.mark.asyncio
async def test_holder_owned_by_detected_pool_authority_gets_no_share(holders, oracle, store):
    cpmm = RAYDIUM_LAYOUTS[0]
    mint = base58.b58encode(bytes(range(32))).decode()
    pool_data = bytearray(cpmm.data_size)
    pool_data[cpmm.mint_b_offset:cpmm.mint_b_offset + 32] = bytes(range(32))
    detector = PoolDetector(FakeProgramAccounts({cpmm.program_id: [("Pool111", bytes(pool_data))]}))
    planner = DistributionPlanner(
        holders, oracle, ExclusionManager(sources=[detector]), store, mint,
        token_decimals=0, max_retries=1, retry_delay=0,
    )
    holders.holders = [HolderBalance(cpmm.vault_authority, 9_000), HolderBalance("h1", 600)]

    plan = await planner.plan(1000, REWARD)

    assert shares_by_address(plan) == {"h1": 1000}


@pytest.mark.asyncio
async def test_program_owned_holder_gets_no_share(holders, oracle, store):
    lookups = []

    async def executable(addresses):
        lookups.append(list(addresses))
        return {"ProgramOwner1"} & set(addresses)

    planner = DistributionPlanner(
        holders, oracle, ExclusionManager(program_lookup=executable), store, "MikoMint",
        token_decimals=0, max_retries=1, retry_delay=0,
    )
    holders.holders = [HolderBalance("ProgramOwner1", 5_000), HolderBalance("h1", 600), HolderBalance("h2", 400)]

    plan = await planner.plan(1000, REWARD)
    assert shares_by_address(plan) == {"h1": 600, "h2": 400}

    again = await planner.plan(1000, REWARD)
    assert shares_by_address(again) == {"h1": 600, "h2": 400}
    assert len(lookups) == 1
