"""
Distribution executor: submits a plan's transfers in batches.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Sequence

import structlog

from miko_keeper.services.interfaces import LedgerAccessor, Transfer, BatchOutcome
from miko_keeper.services.retry import call_with_retry
from .types import DistributionPlan, DistributionResult, FailedRecipient, PlanRecipient


logger = structlog.get_logger(__name__)


class DistributionExecutor:
    """
    Executes transfers batch by batch.

    A failed batch is reported with its recipients and amounts and never
    aborts the remaining batches. Transfers are submitted once; they are not
    retried here because a timed-out submission may still land.
    """

    def __init__(
        self,
        ledger: LedgerAccessor,
        batch_size: int = 10,
        max_concurrent_batches: int = 4,
        call_timeout: float = 30,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.ledger = ledger
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.call_timeout = call_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = logger.bind(service="distribution_executor")

    async def _build_transfers(self, batch: Sequence[PlanRecipient], asset: str) -> List[Transfer]:
        transfers = []
        for recipient in batch:
            destination = await call_with_retry(
                self.ledger.ensure_account,
                recipient.address,
                asset,
                attempts=self.max_retries,
                timeout=self.call_timeout,
                delay=self.retry_delay,
                operation="ensure_account",
            )
            transfers.append(Transfer(
                recipient=recipient.address,
                destination=destination,
                asset=asset,
                amount=recipient.amount,
            ))
        return transfers

    async def _run_batch(
        self,
        index: int,
        batch: Sequence[PlanRecipient],
        asset: str,
        semaphore: asyncio.Semaphore,
    ) -> BatchOutcome:
        async with semaphore:
            try:
                transfers = await self._build_transfers(batch, asset)
                outcome = await self.ledger.transfer_batch(transfers)
            except Exception as e:
                outcome = BatchOutcome(success=False, error=str(e) or type(e).__name__)

        if outcome.success:
            self.logger.info(
                "Distribution batch confirmed",
                batch=index,
                recipients=len(batch),
                amount=sum(r.amount for r in batch),
                tx_id=outcome.tx_id,
            )
        else:
            self.logger.error(
                "Distribution batch failed",
                batch=index,
                reward_asset=asset,
                recipients=[(r.address, r.amount) for r in batch],
                error=outcome.error,
            )
        return outcome

    async def execute(self, plan: DistributionPlan) -> DistributionResult:
        if plan.no_eligible_holders:
            self.logger.info("No eligible holders, nothing to execute", rollover=plan.rollover_amount)
            return DistributionResult(success=True, rollover=plan.rollover_amount)

        if not plan.recipients:
            return DistributionResult(success=True, rollover=plan.rollover_amount)

        batches = [
            plan.recipients[i:i + self.batch_size]
            for i in range(0, len(plan.recipients), self.batch_size)
        ]
        self.logger.info(
            "Executing distribution",
            recipients=len(plan.recipients),
            batches=len(batches),
            amount=plan.planned_amount,
            reward_asset=plan.reward_asset_id,
        )

        semaphore = asyncio.Semaphore(self.max_concurrent_batches)
        outcomes: List[BatchOutcome] = await asyncio.gather(*[
            self._run_batch(index, batch, plan.reward_asset_id, semaphore)
            for index, batch in enumerate(batches)
        ])

        result = DistributionResult(success=True)
        for batch, outcome in zip(batches, outcomes):
            if outcome.success:
                result.distributed += sum(r.amount for r in batch)
                result.recipients += len(batch)
                if outcome.tx_id:
                    result.tx_ids.append(outcome.tx_id)
            else:
                result.failed += len(batch)
                result.failed_recipients.extend(
                    FailedRecipient(address=r.address, amount=r.amount, error=outcome.error)
                    for r in batch
                )

        result.success = result.failed == 0
        result.rollover = plan.rollover_amount if result.distributed > 0 else plan.total_amount

        self.logger.info(
            "Distribution executed",
            distributed=result.distributed,
            recipients=result.recipients,
            failed=result.failed,
            rollover=result.rollover,
            tx_count=len(result.tx_ids),
        )
        return result

    async def retry_failed(self, record: Dict[str, Any]) -> BatchOutcome:
        """Resend one recorded failed transfer as a single-recipient batch."""
        recipient = PlanRecipient(
            address=record["recipient"], amount=int(record["amount"]), source_balance=0, value_usd=Decimal(0)
        )
        outcome = await self._run_batch(0, [recipient], record["reward_asset"], asyncio.Semaphore(1))
        self.logger.info(
            "Failed transfer retried",
            transfer_id=record.get("id"),
            recipient=recipient.address,
            success=outcome.success,
            tx_id=outcome.tx_id,
        )
        return outcome
