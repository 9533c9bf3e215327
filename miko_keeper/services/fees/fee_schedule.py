"""
Fee schedule engine.

The transfer fee decays from 30% to 15% five minutes after launch and to a
final 5% after ten minutes, at which point the fee is locked for good.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Tuple

import structlog

from miko_keeper.services.interfaces import LedgerAccessor
from miko_keeper.services.retry import call_with_retry
from miko_keeper.services.state_store import StateStore
from .types import (
    FeeSchedule,
    FeeCheckAction,
    FeeCheckResult,
    RATE_LAUNCH_BPS,
    RATE_INTERMEDIATE_BPS,
    RATE_FINAL_BPS,
    FIRST_REDUCTION_SECONDS,
    FINAL_REDUCTION_SECONDS,
)


logger = structlog.get_logger(__name__)


def current_rate(now: int, launch_timestamp: Optional[int]) -> Tuple[int, bool]:
    """
    Fee rate (bps) and finality for a point in time.

    Before launch is observed the highest rate applies.
    """
    if launch_timestamp is None:
        return RATE_LAUNCH_BPS, False

    elapsed = now - launch_timestamp
    if elapsed < FIRST_REDUCTION_SECONDS:
        return RATE_LAUNCH_BPS, False
    if elapsed < FINAL_REDUCTION_SECONDS:
        return RATE_INTERMEDIATE_BPS, False
    return RATE_FINAL_BPS, True


def seconds_until_next_update(now: int, launch_timestamp: Optional[int]) -> Optional[int]:
    if launch_timestamp is None:
        return None
    elapsed = now - launch_timestamp
    if elapsed < FIRST_REDUCTION_SECONDS:
        return FIRST_REDUCTION_SECONDS - elapsed
    if elapsed < FINAL_REDUCTION_SECONDS:
        return FINAL_REDUCTION_SECONDS - elapsed
    return 0


class FeeScheduleEngine:
    """
    Drives the on-ledger fee rate along the schedule.

    The on-ledger rate is read on every check; the persisted schedule only
    remembers the launch time and whether the rate has been finalized.
    """

    def __init__(
        self,
        ledger: LedgerAccessor,
        store: StateStore,
        token_mint: str,
        call_timeout: float = 30,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.ledger = ledger
        self.store = store
        self.token_mint = token_mint
        self.call_timeout = call_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.schedule: Optional[FeeSchedule] = None
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="fee_schedule_engine")

    async def load(self) -> FeeSchedule:
        if self.schedule is None:
            self.schedule = await self.store.load_fee_schedule()
            self.logger.info("Fee schedule loaded", **self.schedule.to_dict())
        return self.schedule

    async def _resolve_now(self) -> int:
        try:
            chain_time = await asyncio.wait_for(self.ledger.read_chain_time(), timeout=self.call_timeout)
        except Exception as e:
            self.logger.debug("Chain time unavailable, using system clock", error=str(e))
            chain_time = None
        return int(chain_time) if chain_time is not None else int(time.time())

    async def _discover_launch(self, schedule: FeeSchedule) -> None:
        try:
            launch_timestamp = await call_with_retry(
                self.ledger.read_launch_timestamp,
                self.token_mint,
                attempts=self.max_retries,
                timeout=self.call_timeout,
                delay=self.retry_delay,
                operation="read_launch_timestamp",
            )
        except Exception as e:
            self.logger.warning("Failed to read launch timestamp", error=str(e))
            return

        if launch_timestamp:
            schedule.launch_timestamp = int(launch_timestamp)
            await self.store.save_fee_schedule(schedule)
            self.logger.info("Launch observed", launch_timestamp=schedule.launch_timestamp)

    async def check_and_apply(self, now: Optional[int] = None) -> FeeCheckResult:
        """
        Bring the on-ledger rate in line with the schedule.

        Issues at most one update per call and only ever lowers the rate.
        Calls are serialized; a finalized schedule makes this a no-op.
        """
        async with self._lock:
            schedule = await self.load()
            if schedule.finalized:
                return FeeCheckResult(FeeCheckAction.NO_CHANGE, target_rate_bps=RATE_FINAL_BPS)

            if schedule.launch_timestamp is None:
                await self._discover_launch(schedule)

            if now is None:
                now = await self._resolve_now()

            target_rate, final = current_rate(now, schedule.launch_timestamp)

            try:
                ledger_rate = await call_with_retry(
                    self.ledger.read_current_fee_rate,
                    self.token_mint,
                    attempts=self.max_retries,
                    timeout=self.call_timeout,
                    delay=self.retry_delay,
                    operation="read_current_fee_rate",
                )
            except Exception as e:
                self.logger.warning("Fee check skipped, ledger rate unreadable", error=str(e))
                return FeeCheckResult(FeeCheckAction.SKIPPED, target_rate_bps=target_rate, error=str(e))

            if ledger_rate == target_rate:
                if final:
                    schedule.current_rate_bps = ledger_rate
                    schedule.finalized = True
                    await self.store.save_fee_schedule(schedule)
                    self.logger.info("Final fee rate observed on ledger", rate_bps=ledger_rate)
                    return FeeCheckResult(FeeCheckAction.OBSERVED_FINAL, target_rate, ledger_rate)
                if schedule.current_rate_bps != ledger_rate:
                    schedule.current_rate_bps = ledger_rate
                    await self.store.save_fee_schedule(schedule)
                return FeeCheckResult(FeeCheckAction.NO_CHANGE, target_rate, ledger_rate)

            if target_rate > ledger_rate:
                self.logger.warning(
                    "Ledger rate already below schedule, not raising",
                    ledger_rate_bps=ledger_rate,
                    target_rate_bps=target_rate,
                )
                return FeeCheckResult(FeeCheckAction.NO_CHANGE, target_rate, ledger_rate)

            self.logger.info(
                "Applying fee rate update",
                from_bps=ledger_rate,
                to_bps=target_rate,
                finalize=final,
            )
            try:
                outcome = await asyncio.wait_for(
                    self.ledger.apply_fee_rate_update(self.token_mint, target_rate, final),
                    timeout=self.call_timeout,
                )
            except Exception as e:
                self.logger.error("Fee rate update failed", to_bps=target_rate, error=str(e) or type(e).__name__)
                return FeeCheckResult(FeeCheckAction.UPDATE_FAILED, target_rate, ledger_rate, error=str(e))

            if not outcome.success:
                self.logger.error("Fee rate update rejected", to_bps=target_rate, error=outcome.error)
                return FeeCheckResult(FeeCheckAction.UPDATE_FAILED, target_rate, ledger_rate, error=outcome.error)

            schedule.current_rate_bps = target_rate
            schedule.finalized = final and target_rate == RATE_FINAL_BPS
            await self.store.save_fee_schedule(schedule)

            action = FeeCheckAction.FINALIZED if schedule.finalized else FeeCheckAction.UPDATED
            self.logger.info("Fee rate updated", rate_bps=target_rate, finalized=schedule.finalized, tx_id=outcome.tx_id)
            return FeeCheckResult(action, target_rate, ledger_rate, tx_id=outcome.tx_id)

    async def get_status(self, now: Optional[int] = None) -> Dict[str, Any]:
        schedule = await self.load()
        if now is None:
            now = int(time.time())
        return {
            "current_fee_rate_bps": schedule.current_rate_bps,
            "fee_finalized": schedule.finalized,
            "launch_timestamp": schedule.launch_timestamp,
            "time_until_next_update": None if schedule.finalized
            else seconds_until_next_update(now, schedule.launch_timestamp),
        }
