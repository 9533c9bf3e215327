"""
Test the harvest coordinator.
"""

import pytest

from miko_keeper.core.exceptions import HarvestError
from miko_keeper.services.fees.harvest import HarvestCoordinator, chunked

from .fakes import FakeLedger, HOLDING, TOKEN_MINT


def make_coordinator(ledger, threshold=1000, batch_size=20):
    return HarvestCoordinator(
        ledger, TOKEN_MINT, threshold, batch_size=batch_size, max_retries=1, retry_delay=0
    )


def test_chunked():
    assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
    assert chunked([], 20) == []


@pytest.mark.asyncio
async def test_should_harvest_from_accumulated_fees():
    ledger = FakeLedger()
    ledger.withheld = {"a1": 400, "a2": 300}
    ledger.mint_withheld = 300
    coordinator = make_coordinator(ledger, threshold=1000)

    assert await coordinator.should_harvest() is True
    assert coordinator.last_accumulated == 1000


@pytest.mark.asyncio
async def test_should_harvest_below_threshold():
    ledger = FakeLedger()
    ledger.withheld = {"a1": 400}
    coordinator = make_coordinator(ledger, threshold=1000)

    assert await coordinator.should_harvest() is False


@pytest.mark.asyncio
async def test_should_harvest_from_stranded_holding_balance():
    ledger = FakeLedger()
    ledger.balances[HOLDING] = 5000
    coordinator = make_coordinator(ledger, threshold=1000)

    assert await coordinator.should_harvest() is True


@pytest.mark.asyncio
async def test_harvest_batches_respect_size_limit():
    ledger = FakeLedger()
    ledger.withheld = {f"acct{i}": 10 for i in range(45)}
    coordinator = make_coordinator(ledger, batch_size=20)

    result = await coordinator.harvest_cycle()

    assert [len(call) for call in ledger.harvest_calls] == [20, 20, 5]
    assert result.accounts_processed == 45
    assert result.amount_withdrawn_to_holding == 450
    assert result.holding_balance == 450


@pytest.mark.asyncio
async def test_failed_batch_is_partial_not_fatal():
    ledger = FakeLedger()
    ledger.withheld = {f"acct{i}": 10 for i in range(30)}
    ledger.fail_harvest_batches = {1}
    coordinator = make_coordinator(ledger, batch_size=20)

    result = await coordinator.harvest_cycle()

    assert result.batches_attempted == 2
    assert result.batches_failed == 1
    failed_accounts = set(ledger.harvest_calls[1])
    assert result.partial_failures == failed_accounts
    assert result.amount_withdrawn_to_holding == 300 - 10 * len(failed_accounts)
    # the failed accounts still carry their fee for the next cycle
    assert set(ledger.withheld) == failed_accounts


@pytest.mark.asyncio
async def test_withdrawn_amount_is_holding_delta():
    ledger = FakeLedger()
    ledger.balances[HOLDING] = 70
    ledger.mint_withheld = 500
    ledger.withdraw_report_offset = 25
    coordinator = make_coordinator(ledger)

    result = await coordinator.harvest_cycle()

    assert result.amount_withdrawn_to_holding == 500
    assert result.holding_balance == 570


@pytest.mark.asyncio
async def test_withdraw_failure_raises_harvest_error():
    ledger = FakeLedger()
    ledger.withheld = {"a1": 100}
    ledger.fail_withdraw = True
    coordinator = make_coordinator(ledger)

    with pytest.raises(HarvestError):
        await coordinator.harvest_cycle()


@pytest.mark.asyncio
async def test_enumeration_failure_raises_harvest_error():
    ledger = FakeLedger()
    ledger.fail_list = True
    coordinator = make_coordinator(ledger)

    with pytest.raises(HarvestError):
        await coordinator.harvest_cycle()
