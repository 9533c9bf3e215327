"""
Test the fee schedule engine.
"""

import asyncio

import pytest

from miko_keeper.services.fees.fee_schedule import FeeScheduleEngine, current_rate, seconds_until_next_update
from miko_keeper.services.fees.types import FeeCheckAction, FeeSchedule

from .fakes import FakeLedger, TOKEN_MINT


LAUNCH = 1_700_000_000


def make_engine(ledger, store):
    return FeeScheduleEngine(ledger, store, TOKEN_MINT, call_timeout=5, max_retries=1, retry_delay=0)


@pytest.mark.parametrize("elapsed,expected", [
    (0, (3000, False)),
    (299, (3000, False)),
    (300, (1500, False)),
    (599, (1500, False)),
    (600, (500, True)),
    (86_400, (500, True)),
])
def test_current_rate_boundaries(elapsed, expected):
    assert current_rate(LAUNCH + elapsed, LAUNCH) == expected


def test_current_rate_before_launch_observed():
    assert current_rate(LAUNCH, None) == (3000, False)


def test_seconds_until_next_update():
    assert seconds_until_next_update(LAUNCH + 100, LAUNCH) == 200
    assert seconds_until_next_update(LAUNCH + 400, LAUNCH) == 200
    assert seconds_until_next_update(LAUNCH + 700, LAUNCH) == 0
    assert seconds_until_next_update(LAUNCH, None) is None


@pytest.mark.asyncio
async def test_no_update_inside_first_window(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 100)

    assert result.action == FeeCheckAction.NO_CHANGE
    assert ledger.fee_updates == []


@pytest.mark.asyncio
async def test_launch_timestamp_discovered_and_persisted(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    await engine.check_and_apply(now=LAUNCH + 10)

    schedule = await store.load_fee_schedule()
    assert schedule.launch_timestamp == LAUNCH


@pytest.mark.asyncio
async def test_reduction_to_intermediate_rate(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 301)

    assert result.action == FeeCheckAction.UPDATED
    assert ledger.fee_updates == [(1500, False)]
    schedule = await store.load_fee_schedule()
    assert schedule.current_rate_bps == 1500
    assert schedule.finalized is False


@pytest.mark.asyncio
async def test_finalize_then_never_update_again(store):
    ledger = FakeLedger(fee_rate_bps=1500, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 601)
    assert result.action == FeeCheckAction.FINALIZED
    assert ledger.fee_updates == [(500, True)]

    for offset in (700, 10_000, 1_000_000):
        again = await engine.check_and_apply(now=LAUNCH + offset)
        assert again.action == FeeCheckAction.NO_CHANGE
    assert len(ledger.fee_updates) == 1

    schedule = await store.load_fee_schedule()
    assert schedule.finalized is True
    assert schedule.current_rate_bps == 500


@pytest.mark.asyncio
async def test_late_start_jumps_straight_to_final(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 3600)

    assert result.action == FeeCheckAction.FINALIZED
    assert ledger.fee_updates == [(500, True)]


@pytest.mark.asyncio
async def test_final_rate_observed_on_ledger(store):
    ledger = FakeLedger(fee_rate_bps=500, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 601)

    assert result.action == FeeCheckAction.OBSERVED_FINAL
    assert ledger.fee_updates == []
    assert (await store.load_fee_schedule()).finalized is True


@pytest.mark.asyncio
async def test_never_raises_rate(store):
    ledger = FakeLedger(fee_rate_bps=1500, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 10)

    assert result.action == FeeCheckAction.NO_CHANGE
    assert ledger.fee_updates == []


@pytest.mark.asyncio
async def test_rejected_update_leaves_state_unchanged(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    ledger.reject_fee_update = True
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 301)

    assert result.action == FeeCheckAction.UPDATE_FAILED
    schedule = await store.load_fee_schedule()
    assert schedule.current_rate_bps == 3000
    assert schedule.finalized is False


@pytest.mark.asyncio
async def test_unreadable_ledger_rate_skips_check(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    ledger.fail_rate_read = True
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 301)

    assert result.action == FeeCheckAction.SKIPPED
    assert ledger.fee_updates == []


@pytest.mark.asyncio
async def test_finalized_schedule_survives_restart(store):
    await store.save_fee_schedule(FeeSchedule(launch_timestamp=LAUNCH, current_rate_bps=500, finalized=True))
    ledger = FakeLedger(fee_rate_bps=500, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply(now=LAUNCH + 10)

    assert result.action == FeeCheckAction.NO_CHANGE
    assert ledger.fee_updates == []
    status = await engine.get_status(now=LAUNCH + 10)
    assert status["fee_finalized"] is True
    assert status["time_until_next_update"] is None


@pytest.mark.asyncio
async def test_chain_time_used_when_available(store):
    ledger = FakeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    ledger.chain_time = LAUNCH + 305
    engine = make_engine(ledger, store)

    result = await engine.check_and_apply()

    assert result.action == FeeCheckAction.UPDATED
    assert ledger.fee_updates == [(1500, False)]


class SlowFeeLedger(FakeLedger):
    """Fee updates take a while to confirm; tracks how many overlap."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def apply_fee_rate_update(self, token_id, new_rate_bps, finalize):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.05)
            return await super().apply_fee_rate_update(token_id, new_rate_bps, finalize)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_concurrent_checks_issue_one_update(store):
    ledger = SlowFeeLedger(fee_rate_bps=3000, launch_timestamp=LAUNCH)
    engine = make_engine(ledger, store)

    results = await asyncio.gather(
        engine.check_and_apply(now=LAUNCH + 300),
        engine.check_and_apply(now=LAUNCH + 300),
    )

    assert ledger.fee_updates == [(1500, False)]
    assert ledger.max_in_flight == 1
    assert sorted(result.action.value for result in results) == ["no_change", "updated"]
