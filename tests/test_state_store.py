"""
Test persisted keeper state.
"""

import pytest

from miko_keeper.core.config import NATIVE_SOL_MINT
from miko_keeper.core.exceptions import DatabaseError
from miko_keeper.models import CycleOutcome
from miko_keeper.services.distribution.types import FailedRecipient, PendingSwap
from miko_keeper.services.fees.types import FeeSchedule
from miko_keeper.services.state_store import SqlStateStore


REWARD = NATIVE_SOL_MINT


@pytest.mark.asyncio
async def test_defaults_on_empty_database(store):
    schedule = await store.load_fee_schedule()
    assert schedule.finalized is False
    assert schedule.current_rate_bps == 3000
    assert (await store.get_rollover(REWARD)).amount == 0
    assert await store.get_pending_proceeds(REWARD) == 0
    assert await store.last_cycle() is None


@pytest.mark.asyncio
async def test_state_survives_restart(database, store):
    await store.save_fee_schedule(FeeSchedule(launch_timestamp=123, current_rate_bps=500, finalized=True))
    await store.settle(REWARD, rollover_amount=77, consumed_proceeds=0)

    reopened = SqlStateStore(database)
    schedule = await reopened.load_fee_schedule()
    assert schedule.finalized is True
    assert schedule.launch_timestamp == 123
    rollover = await reopened.get_rollover(REWARD)
    assert rollover.amount == 77
    assert rollover.last_updated is not None


@pytest.mark.asyncio
async def test_pending_proceeds_accumulate_and_settle(store):
    assert await store.add_pending_proceeds(REWARD, 300) == 300
    assert await store.add_pending_proceeds(REWARD, 200) == 500

    await store.settle(REWARD, rollover_amount=2, consumed_proceeds=450)

    assert await store.get_pending_proceeds(REWARD) == 50
    assert (await store.get_rollover(REWARD)).amount == 2


@pytest.mark.asyncio
async def test_negative_values_rejected(store):
    with pytest.raises(DatabaseError):
        await store.add_pending_proceeds(REWARD, -1)
    with pytest.raises(DatabaseError):
        await store.settle(REWARD, rollover_amount=-1, consumed_proceeds=0)


@pytest.mark.asyncio
async def test_rollovers_kept_per_asset(store):
    await store.settle(REWARD, rollover_amount=5, consumed_proceeds=0)
    await store.settle("UsdcMint1111", rollover_amount=9, consumed_proceeds=0)

    rollovers = {r.reward_asset_id: r.amount for r in await store.list_rollovers()}

    assert rollovers == {REWARD: 5, "UsdcMint1111": 9}


@pytest.mark.asyncio
async def test_cycle_history(store):
    cycle_id = await store.start_cycle(REWARD)
    await store.finish_cycle(cycle_id, CycleOutcome.COMPLETED, "execute", distributed=900, recipients=2)

    last = await store.last_cycle()

    assert last["id"] == cycle_id
    assert last["outcome"] == "completed"
    assert last["stage"] == "execute"
    assert last["distributed"] == 900
    assert last["recipients"] == 2
    assert last["completed_at"] is not None


@pytest.mark.asyncio
async def test_failed_transfer_reconciliation(store):
    cycle_id = await store.start_cycle(REWARD)
    await store.settle(
        REWARD,
        rollover_amount=0,
        consumed_proceeds=0,
        cycle_id=cycle_id,
        failed_recipients=[FailedRecipient("h1", 10, "rejected"), FailedRecipient("h2", 20, "rejected")],
    )

    records = await store.list_failed_transfers()
    assert [(r["recipient"], r["amount"], r["cycle_id"]) for r in records] == [("h1", 10, cycle_id), ("h2", 20, cycle_id)]
    assert await store.count_unresolved_failed_transfers() == 2

    assert await store.resolve_failed_transfer(records[0]["id"], "manual-sig") is True
    assert await store.resolve_failed_transfer(records[0]["id"]) is False
    assert await store.resolve_failed_transfer(9999) is False

    assert await store.count_unresolved_failed_transfers() == 1
    everything = await store.list_failed_transfers(unresolved_only=False)
    assert everything[0]["resolution_tx"] == "manual-sig"


@pytest.mark.asyncio
async def test_outstanding_swap_completed_atomically(store):
    await store.add_pending_proceeds(REWARD, 100)
    await store.begin_swap(PendingSwap(REWARD, input_amount=1500, reward_balance_before=9_000))

    marker = await store.get_pending_swap(REWARD)
    assert marker.input_amount == 1500
    assert marker.reward_balance_before == 9_000

    with pytest.raises(DatabaseError):
        await store.begin_swap(PendingSwap(REWARD, input_amount=1, reward_balance_before=0))

    assert await store.complete_swap(REWARD, 400) == 500
    assert await store.get_pending_swap(REWARD) is None
    assert await store.get_pending_proceeds(REWARD) == 500
