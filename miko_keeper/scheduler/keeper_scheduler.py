"""
Keeper cycle driver.

One tick: fee check (always), harvest readiness, then, when ready, the
harvest -> swap -> plan -> execute chain. Every stage is isolated: a failure
ends the chain for this tick and the next tick starts over from the fee
check. Funds left in the holding account or recorded as pending swap
proceeds are picked up again by the readiness check. A swap whose outcome
is still unknown is reconciled before anything else runs.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, TypeVar

import structlog

from miko_keeper.core.config import KeeperSettings, NATIVE_SOL_MINT
from miko_keeper.core.exceptions import PlanInvariantError, StageTimeoutError, SwapError
from miko_keeper.models import CycleOutcome
from miko_keeper.services.distribution.executor import DistributionExecutor
from miko_keeper.services.distribution.planner import DistributionPlanner
from miko_keeper.services.distribution.types import PendingSwap
from miko_keeper.services.fees.fee_schedule import FeeScheduleEngine
from miko_keeper.services.fees.harvest import HarvestCoordinator
from miko_keeper.services.fees.types import FeeCheckResult
from miko_keeper.services.interfaces import LedgerAccessor, SwapQuote, SwapResult, SwapVenue
from miko_keeper.services.retry import call_with_retry
from miko_keeper.services.state_store import StateStore


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class DriverStatus(Enum):
    """Status of the cycle driver."""
    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class CycleStage(Enum):
    FEE_CHECK = "fee_check"
    READINESS = "readiness"
    HARVEST = "harvest"
    SWAP = "swap"
    PLAN = "plan"
    EXECUTE = "execute"


@dataclass
class DriverStats:
    """Statistics for driver operations."""
    uptime_start: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    total_ticks: int = 0
    chains_started: int = 0
    chains_completed: int = 0
    chains_failed: int = 0
    fee_checks_failed: int = 0
    last_fee_check: Optional[FeeCheckResult] = None


@dataclass
class CycleReport:
    """Outcome of one harvest chain run."""
    cycle_id: Optional[int] = None
    outcome: CycleOutcome = CycleOutcome.RUNNING
    stage: Optional[CycleStage] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    amount_withdrawn: int = 0
    swap_output: int = 0
    distributed: int = 0
    rollover: int = 0
    recipients: int = 0
    failed_recipients: int = 0
    price_source: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "outcome": self.outcome.value,
            "stage": self.stage.value if self.stage else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "amount_withdrawn": self.amount_withdrawn,
            "swap_output": self.swap_output,
            "distributed": self.distributed,
            "rollover": self.rollover,
            "recipients": self.recipients,
            "failed_recipients": self.failed_recipients,
            "price_source": self.price_source,
            "error": self.error,
        }


class KeeperCycleDriver:
    """Single sequential polling loop over the keeper's stages."""

    def __init__(
        self,
        settings: KeeperSettings,
        ledger: LedgerAccessor,
        store: StateStore,
        fee_engine: FeeScheduleEngine,
        harvester: HarvestCoordinator,
        swap_venue: SwapVenue,
        planner: DistributionPlanner,
        executor: DistributionExecutor,
    ):
        self.settings = settings
        self.ledger = ledger
        self.store = store
        self.fee_engine = fee_engine
        self.harvester = harvester
        self.swap_venue = swap_venue
        self.planner = planner
        self.executor = executor

        self.reward_asset = settings.reward_asset
        self.status = DriverStatus.STOPPED
        self.stats = DriverStats(uptime_start=datetime.now(timezone.utc))
        self.current_stage: Optional[CycleStage] = None
        self.last_cycle: Optional[CycleReport] = None
        self.ready_to_harvest: Optional[bool] = None
        self.distribution_halted = False
        self.halt_reason: Optional[str] = None

        self._should_stop = False
        self._tick_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="keeper_cycle_driver")

    # Lifecycle

    async def start(self) -> None:
        if self.status != DriverStatus.STOPPED:
            self.logger.warning("Driver already running", current_status=self.status.value)
            return

        self._should_stop = False
        self.status = DriverStatus.IDLE
        self._loop_task = asyncio.create_task(self._loop())
        self.logger.info(
            "Keeper cycle driver started",
            polling_interval=self.settings.polling_interval_seconds,
            reward_asset=self.reward_asset,
        )

    async def stop(self) -> None:
        if self.status == DriverStatus.STOPPED:
            return

        self.logger.info("Stopping keeper cycle driver")
        self._should_stop = True

        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass

        self.status = DriverStatus.STOPPED
        self.logger.info("Keeper cycle driver stopped")

    async def wait(self) -> None:
        if self._loop_task:
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return self.status not in (DriverStatus.STOPPED, DriverStatus.ERROR) and not self._should_stop

    async def _loop(self) -> None:
        self.logger.info("Driver loop started")
        while not self._should_stop:
            try:
                await self.tick()
            except asyncio.CancelledError:
                self.logger.info("Driver loop cancelled")
                break
            except Exception as e:
                self.logger.error("Unexpected error in tick", error=str(e))

            await asyncio.sleep(self.settings.polling_interval_seconds)
        self.logger.info("Driver loop stopped")

    # Tick

    async def tick(self) -> Optional[CycleReport]:
        """Run one tick; returns the chain report when the chain ran."""
        async with self._tick_lock:
            self.stats.total_ticks += 1
            self.stats.last_tick_at = datetime.now(timezone.utc)
            self.status = DriverStatus.RUNNING
            try:
                await self._fee_check()
                await self._check_keeper_balance()

                if not await self._reconcile_pending_swap():
                    return None

                self.ready_to_harvest = await self._readiness()
                if not self.ready_to_harvest:
                    return None
                return await self.run_chain()
            finally:
                self.current_stage = None
                self.status = DriverStatus.IDLE

    async def _run_stage(self, stage: CycleStage, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        self.current_stage = stage
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise StageTimeoutError(stage.value, timeout)

    async def _fee_check(self) -> None:
        try:
            result = await self._run_stage(
                CycleStage.FEE_CHECK,
                self.fee_engine.check_and_apply(),
                self.settings.stage_timeout_seconds,
            )
            self.stats.last_fee_check = result
        except Exception as e:
            self.stats.fee_checks_failed += 1
            self.logger.error("Stage failed", stage=CycleStage.FEE_CHECK.value, error=str(e) or type(e).__name__)

    async def _check_keeper_balance(self) -> None:
        try:
            balance = await asyncio.wait_for(
                self.ledger.get_asset_balance(self.ledger.keeper_address, NATIVE_SOL_MINT),
                timeout=self.settings.call_timeout_seconds,
            )
        except Exception as e:
            self.logger.warning("Keeper balance check failed", error=str(e) or type(e).__name__)
            return

        if balance < self.settings.keeper_min_sol_balance:
            self.logger.warning(
                "Keeper SOL balance low",
                balance_lamports=balance,
                minimum_lamports=self.settings.keeper_min_sol_balance,
            )

    async def _readiness(self) -> bool:
        self.current_stage = CycleStage.READINESS
        try:
            pending = await self.store.get_pending_proceeds(self.reward_asset)
        except Exception as e:
            self.logger.error("Failed to read pending proceeds", error=str(e))
            pending = 0

        if pending > 0 and not self.distribution_halted:
            self.logger.info("Pending swap proceeds awaiting distribution", pending=pending)
            return True

        try:
            return await self._run_stage(
                CycleStage.READINESS,
                self.harvester.should_harvest(),
                self.settings.stage_timeout_seconds,
            )
        except Exception as e:
            self.logger.error("Stage failed", stage=CycleStage.READINESS.value, error=str(e) or type(e).__name__)
            return False

    # Chain

    def _retry_kwargs(self) -> Dict[str, Any]:
        return dict(
            attempts=self.settings.max_retries,
            timeout=self.settings.call_timeout_seconds,
            delay=self.settings.retry_delay_seconds,
        )

    async def _reward_balance(self) -> int:
        return await call_with_retry(
            self.ledger.get_asset_balance,
            self.ledger.keeper_address,
            self.reward_asset,
            operation="reward_balance",
            **self._retry_kwargs(),
        )

    async def _reconcile_pending_swap(self) -> bool:
        """
        Account for a swap left outstanding by an earlier tick.

        Returns False while its outcome is still unknown; the chain must not
        run then, since any movement of the reward balance would be
        misattributed.
        """
        try:
            marker = await self.store.get_pending_swap(self.reward_asset)
            if marker is None:
                return True

            delta = max(0, await self._reward_balance() - marker.reward_balance_before)
            if delta > 0:
                await self.store.complete_swap(self.reward_asset, delta)
                self.logger.warning(
                    "Recovered proceeds of an outstanding swap",
                    input_amount=marker.input_amount,
                    proceeds=delta,
                )
                return True

            holding = await call_with_retry(
                self.ledger.get_balance,
                self.ledger.holding_account,
                operation="holding_balance",
                **self._retry_kwargs(),
            )
            if holding >= marker.input_amount:
                await self.store.complete_swap(self.reward_asset, 0)
                self.logger.info("Outstanding swap never executed, cleared", input_amount=marker.input_amount)
                return True

            age = (datetime.now(timezone.utc) - marker.started_at).total_seconds()
            if age >= self.settings.pending_swap_max_age_seconds:
                await self.store.complete_swap(self.reward_asset, 0)
                self.logger.error(
                    "Swap outcome unresolved, needs manual reconciliation",
                    input_amount=marker.input_amount,
                    reward_balance_before=marker.reward_balance_before,
                    started_at=marker.started_at.isoformat(),
                )
                return True

            self.logger.warning("Swap outcome still unresolved, chain deferred", age_seconds=int(age))
            return False

        except Exception as e:
            self.logger.error("Failed to reconcile outstanding swap", error=str(e) or type(e).__name__)
            return False

    async def _quote_swap(self, amount: int) -> SwapQuote:
        """
        Raises:
            SwapError: price impact above the configured limit
        """
        quote = await call_with_retry(
            self.swap_venue.quote, self.settings.token_mint, self.reward_asset, amount,
            operation="swap_quote", **self._retry_kwargs()
        )
        if quote.price_impact_pct > self.settings.max_price_impact_pct:
            raise SwapError(
                "Price impact above limit",
                {"price_impact_pct": quote.price_impact_pct, "max_price_impact_pct": self.settings.max_price_impact_pct},
            )
        return quote

    async def _execute_swap(self, quote: SwapQuote) -> int:
        """
        Send the swap and record its proceeds as pending.

        The swap is marked outstanding before it is sent. When neither the
        venue nor the reward balance confirms it, the marker stays and the
        next tick reconciles it.

        Raises:
            SwapError: the swap did not deliver anything yet
        """
        before = await self._reward_balance()
        await self.store.begin_swap(PendingSwap(
            reward_asset_id=self.reward_asset,
            input_amount=quote.input_amount,
            reward_balance_before=before,
        ))

        try:
            result = await self.swap_venue.execute(quote)
        except Exception as e:
            result = SwapResult(success=False, error=str(e) or type(e).__name__)

        delta = max(0, await self._reward_balance() - before)

        if result.success:
            proceeds = min(result.output_amount, delta)
        elif delta > 0:
            self.logger.warning("Swap reported failure but reward balance increased", delta=delta, error=result.error)
            proceeds = delta
        else:
            raise SwapError(
                f"Swap failed: {result.error}",
                {"input_amount": quote.input_amount, "tx_id": result.tx_id},
            )

        await self.store.complete_swap(self.reward_asset, proceeds)
        if proceeds == 0:
            self.logger.warning("Swap produced no measurable proceeds", reported=result.output_amount, delta=delta)

        self.logger.info(
            "Swap stage completed",
            input_amount=quote.input_amount,
            quoted_output=quote.output_amount,
            proceeds=proceeds,
            tx_id=result.tx_id,
        )
        return proceeds

    async def run_chain(self) -> CycleReport:
        """Run harvest -> swap -> plan -> execute once."""
        report = CycleReport()
        self.stats.chains_started += 1
        try:
            report.cycle_id = await self.store.start_cycle(self.reward_asset)
        except Exception as e:
            self.logger.error("Failed to record cycle start", error=str(e))

        stage_timeout = self.settings.stage_timeout_seconds
        try:
            report.stage = CycleStage.HARVEST
            harvest = await self._run_stage(CycleStage.HARVEST, self.harvester.harvest_cycle(), stage_timeout)
            report.amount_withdrawn = harvest.amount_withdrawn_to_holding

            report.stage = CycleStage.SWAP
            if harvest.holding_balance >= self.settings.harvest_threshold:
                quote = await self._run_stage(
                    CycleStage.SWAP, self._quote_swap(harvest.holding_balance), stage_timeout
                )
                # no stage timeout: a sent swap is always awaited and accounted
                report.swap_output = await self._run_stage(CycleStage.SWAP, self._execute_swap(quote))
            elif harvest.holding_balance > 0:
                self.logger.info(
                    "Holding balance below threshold, swap deferred",
                    holding_balance=harvest.holding_balance,
                    threshold=self.settings.harvest_threshold,
                )

            if self.distribution_halted:
                report.stage = CycleStage.PLAN
                report.outcome = CycleOutcome.FAILED
                report.error = f"distribution halted: {self.halt_reason}"
                self.logger.warning("Distribution halted, skipping plan and execute", reason=self.halt_reason)
                return report

            report.stage = CycleStage.PLAN
            available = await self.store.get_pending_proceeds(self.reward_asset)
            plan = await self._run_stage(
                CycleStage.PLAN, self.planner.plan(available, self.reward_asset), stage_timeout
            )
            report.price_source = plan.price_source.value if plan.price_source else None
            report.rollover = plan.rollover_amount

            if plan.total_amount == 0:
                report.outcome = CycleOutcome.NOTHING_TO_DISTRIBUTE
                return report

            if plan.no_eligible_holders:
                report.outcome = CycleOutcome.NO_ELIGIBLE_HOLDERS
                return report

            # no stage timeout: submitted batches are always awaited to confirmation
            report.stage = CycleStage.EXECUTE
            result = await self._run_stage(CycleStage.EXECUTE, self.executor.execute(plan))
            rollover = await self.planner.settle(plan, result, report.cycle_id)

            report.distributed = result.distributed
            report.recipients = result.recipients
            report.failed_recipients = result.failed
            report.rollover = rollover.amount

            if result.failed == 0:
                report.outcome = CycleOutcome.COMPLETED
            elif result.distributed > 0:
                report.outcome = CycleOutcome.PARTIAL
                self.logger.warning(
                    "Distribution partially failed, recipients recorded for manual reconciliation",
                    failed_recipients=result.failed,
                    failed_amount=result.failed_amount,
                )
            else:
                report.outcome = CycleOutcome.FAILED
                report.error = "all distribution batches failed"
            return report

        except PlanInvariantError as e:
            self.distribution_halted = True
            self.halt_reason = e.message
            report.outcome = CycleOutcome.INVARIANT_VIOLATION
            report.error = e.message
            self.logger.critical(
                "Distribution plan invariant violated, distribution halted",
                stage=report.stage.value if report.stage else None,
                error=e.message,
                details=e.details,
            )
            return report

        except Exception as e:
            report.outcome = CycleOutcome.FAILED
            report.error = str(e) or type(e).__name__
            self.logger.error(
                "Stage failed",
                stage=report.stage.value if report.stage else None,
                error=report.error,
            )
            return report

        finally:
            await self._finish(report)

    async def _finish(self, report: CycleReport) -> None:
        report.completed_at = datetime.now(timezone.utc)
        self.last_cycle = report

        if report.outcome in (CycleOutcome.FAILED, CycleOutcome.INVARIANT_VIOLATION):
            self.stats.chains_failed += 1
        else:
            self.stats.chains_completed += 1

        self.logger.info("Cycle finished", **report.to_dict())

        if report.cycle_id is None:
            return
        try:
            await self.store.finish_cycle(
                report.cycle_id,
                report.outcome,
                report.stage.value if report.stage else None,
                amount_withdrawn=report.amount_withdrawn,
                swap_output=report.swap_output,
                distributed=report.distributed,
                rollover=report.rollover,
                recipients=report.recipients,
                failed_recipients=report.failed_recipients,
                price_source=report.price_source,
                error_message=report.error,
            )
        except Exception as e:
            self.logger.error("Failed to record cycle result", cycle_id=report.cycle_id, error=str(e))

    # Status

    async def get_status(self) -> Dict[str, Any]:
        fee_status = await self.fee_engine.get_status()
        rollovers = await self.store.list_rollovers()
        pending = await self.store.get_pending_proceeds(self.reward_asset)
        pending_swap = await self.store.get_pending_swap(self.reward_asset)
        unresolved = await self.store.count_unresolved_failed_transfers()

        last_cycle = self.last_cycle.to_dict() if self.last_cycle else await self._stored_last_cycle()

        return {
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "reward_asset": self.reward_asset,
            "accumulated_fees": self.harvester.last_accumulated,
            "holding_balance": self.harvester.last_holding_balance,
            "harvest_threshold": self.harvester.threshold,
            "ready_to_harvest": self.ready_to_harvest,
            "rollover_state": [
                {
                    "reward_asset_id": state.reward_asset_id,
                    "amount": state.amount,
                    "last_updated": state.last_updated,
                    "stale": state.reward_asset_id != self.reward_asset,
                }
                for state in rollovers
            ],
            "pending_proceeds": pending,
            "pending_swap": pending_swap.to_dict() if pending_swap else None,
            "distribution_halted": self.distribution_halted,
            "halt_reason": self.halt_reason,
            "unresolved_failed_transfers": unresolved,
            "last_cycle": last_cycle,
            **fee_status,
        }

    async def _stored_last_cycle(self) -> Optional[Dict[str, Any]]:
        stored = await self.store.last_cycle()
        if stored is None:
            return None
        return {
            "cycle_id": stored["id"],
            "outcome": stored["outcome"],
            "stage": stored["stage"],
            "started_at": stored["started_at"],
            "completed_at": stored["completed_at"],
            "amount_withdrawn": stored["amount_withdrawn"],
            "swap_output": stored["swap_output"],
            "distributed": stored["distributed"],
            "rollover": stored["rollover"],
            "recipients": stored["recipients"],
            "failed_recipients": stored["failed_recipients"],
            "price_source": stored["price_source"],
            "error": stored["error_message"],
        }

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.status != DriverStatus.ERROR else "unhealthy",
            "running": self.running,
            "last_tick_at": self.stats.last_tick_at,
        }
