"""
Harvest coordinator: sweep withheld fees into the mint, then withdraw the
mint's withheld balance into the holding account.
"""

import asyncio
from typing import Dict, List, Optional, Sequence

import structlog

from miko_keeper.core.exceptions import HarvestError
from miko_keeper.services.interfaces import LedgerAccessor, WithheldAccount, BatchOutcome
from miko_keeper.services.retry import call_with_retry
from .types import HarvestBatchResult


logger = structlog.get_logger(__name__)


def chunked(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class HarvestCoordinator:
    """
    Best-effort harvest sweep plus an authoritative withdraw.

    Failed batches are left for the next cycle; the amount handed downstream
    is always the holding account's balance delta.
    """

    def __init__(
        self,
        ledger: LedgerAccessor,
        token_mint: str,
        threshold: int,
        batch_size: int = 20,
        max_concurrent_batches: int = 4,
        call_timeout: float = 30,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.ledger = ledger
        self.token_mint = token_mint
        self.threshold = threshold
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.call_timeout = call_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.last_accumulated: Optional[int] = None
        self.last_holding_balance: Optional[int] = None
        self.logger = logger.bind(service="harvest_coordinator")

    async def _call(self, func, *args, operation: str):
        return await call_with_retry(
            func,
            *args,
            attempts=self.max_retries,
            timeout=self.call_timeout,
            delay=self.retry_delay,
            operation=operation,
        )

    async def holding_balance(self) -> int:
        balance = await self._call(self.ledger.get_balance, self.ledger.holding_account, operation="get_holding_balance")
        self.last_holding_balance = balance
        return balance

    async def accumulated_fees(self) -> int:
        """Withheld fees across all token accounts plus the mint's own withheld balance."""
        accounts = await self._call(
            self.ledger.list_accounts_with_withheld_fee, self.token_mint, operation="list_withheld_accounts"
        )
        mint_withheld = await self._call(self.ledger.read_mint_withheld, self.token_mint, operation="read_mint_withheld")
        total = sum(account.amount for account in accounts) + mint_withheld
        self.last_accumulated = total
        return total

    async def should_harvest(self) -> bool:
        holding = await self.holding_balance()
        if holding >= self.threshold:
            self.logger.info(
                "Holding account already above threshold",
                holding_balance=holding,
                threshold=self.threshold,
            )
            return True

        accumulated = await self.accumulated_fees()
        ready = accumulated >= self.threshold
        self.logger.info(
            "Harvest readiness checked",
            accumulated=accumulated,
            holding_balance=holding,
            threshold=self.threshold,
            ready=ready,
        )
        return ready

    async def _harvest_batch(
        self,
        index: int,
        batch: Sequence[WithheldAccount],
        semaphore: asyncio.Semaphore,
    ) -> BatchOutcome:
        account_ids = [account.account for account in batch]
        async with semaphore:
            try:
                outcome = await self._call(
                    self.ledger.harvest_batch, self.token_mint, account_ids, operation="harvest_batch"
                )
            except Exception as e:
                outcome = BatchOutcome(success=False, error=str(e) or type(e).__name__)

        if outcome.success:
            self.logger.info("Harvest batch confirmed", batch=index, accounts=len(batch), tx_id=outcome.tx_id)
        else:
            self.logger.warning("Harvest batch failed", batch=index, accounts=account_ids, error=outcome.error)
        return outcome

    async def harvest_cycle(self) -> HarvestBatchResult:
        """
        Run one harvest pass.

        Raises:
            HarvestError: account enumeration, a balance read or the
                withdraw failed after retries
        """
        result = HarvestBatchResult()

        try:
            accounts = await self._call(
                self.ledger.list_accounts_with_withheld_fee, self.token_mint, operation="list_withheld_accounts"
            )
        except Exception as e:
            raise HarvestError(f"Failed to enumerate withheld accounts: {e}")

        accounts = [account for account in accounts if account.amount > 0]
        batches = chunked(accounts, self.batch_size)
        self.logger.info("Harvest started", accounts=len(accounts), batches=len(batches))

        if batches:
            semaphore = asyncio.Semaphore(self.max_concurrent_batches)
            outcomes = await asyncio.gather(*[
                self._harvest_batch(index, batch, semaphore) for index, batch in enumerate(batches)
            ])
            for batch, outcome in zip(batches, outcomes):
                result.batches_attempted += 1
                if outcome.success:
                    result.accounts_processed += len(batch)
                    result.amount_harvested_to_mint += sum(account.amount for account in batch)
                else:
                    result.batches_failed += 1
                    result.partial_failures.update(account.account for account in batch)

        try:
            before = await self.holding_balance()
        except Exception as e:
            raise HarvestError(f"Failed to read holding balance before withdraw: {e}")

        try:
            reported = await self._call(
                self.ledger.withdraw_mint_withheld, self.token_mint, operation="withdraw_mint_withheld"
            )
        except Exception as e:
            raise HarvestError(f"Withdraw from mint failed: {e}", details={"holding_balance": before})

        try:
            after = await self.holding_balance()
        except Exception as e:
            raise HarvestError(f"Failed to read holding balance after withdraw: {e}")

        result.holding_balance = after
        result.amount_withdrawn_to_holding = max(0, after - before)

        if reported != result.amount_withdrawn_to_holding:
            self.logger.warning(
                "Withdraw report differs from holding delta",
                reported=reported,
                delta=result.amount_withdrawn_to_holding,
            )

        self.logger.info(
            "Harvest completed",
            accounts_processed=result.accounts_processed,
            harvested_to_mint=result.amount_harvested_to_mint,
            withdrawn_to_holding=result.amount_withdrawn_to_holding,
            holding_balance=result.holding_balance,
            failed_batches=result.batches_failed,
        )
        return result

    def status(self) -> Dict[str, Optional[int]]:
        return {
            "accumulated_fees": self.last_accumulated,
            "holding_balance": self.last_holding_balance,
            "threshold": self.threshold,
        }
