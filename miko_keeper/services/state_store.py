"""
Durable keeper state: fee schedule, per-asset rollover, pending swap
proceeds, cycle history and failed transfers.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from miko_keeper.core.database import Database
from miko_keeper.core.exceptions import DatabaseError
from miko_keeper.models import KeeperStateEntry, CycleRun, CycleOutcome, FailedTransfer
from miko_keeper.services.distribution.types import RolloverState, FailedRecipient, PendingSwap
from miko_keeper.services.fees.types import FeeSchedule


logger = structlog.get_logger(__name__)

FEE_SCHEDULE_KEY = "fee_schedule"
ROLLOVER_PREFIX = "rollover:"
PENDING_PROCEEDS_PREFIX = "pending_proceeds:"
PENDING_SWAP_PREFIX = "pending_swap:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateStore(ABC):
    """Storage surface for everything the keeper must remember across restarts."""

    @abstractmethod
    async def load_fee_schedule(self) -> FeeSchedule:
        pass

    @abstractmethod
    async def save_fee_schedule(self, schedule: FeeSchedule) -> None:
        pass

    @abstractmethod
    async def get_rollover(self, reward_asset_id: str) -> RolloverState:
        pass

    @abstractmethod
    async def list_rollovers(self) -> List[RolloverState]:
        pass

    @abstractmethod
    async def get_pending_proceeds(self, reward_asset_id: str) -> int:
        pass

    @abstractmethod
    async def add_pending_proceeds(self, reward_asset_id: str, amount: int) -> int:
        """Add swap output to the pending balance; returns the new balance."""

    @abstractmethod
    async def get_pending_swap(self, reward_asset_id: str) -> Optional[PendingSwap]:
        pass

    @abstractmethod
    async def begin_swap(self, swap: PendingSwap) -> None:
        """Record a swap about to be sent."""

    @abstractmethod
    async def complete_swap(self, reward_asset_id: str, proceeds: int) -> int:
        """
        Atomically add ``proceeds`` to pending proceeds and clear the
        outstanding swap; returns the new pending balance.
        """

    @abstractmethod
    async def settle(
        self,
        reward_asset_id: str,
        rollover_amount: int,
        consumed_proceeds: int,
        cycle_id: Optional[int] = None,
        failed_recipients: Sequence[FailedRecipient] = (),
    ) -> RolloverState:
        """
        Atomically set the asset's rollover, consume pending proceeds and
        record failed recipients.
        """

    @abstractmethod
    async def start_cycle(self, reward_asset_id: str) -> int:
        pass

    @abstractmethod
    async def finish_cycle(self, cycle_id: int, outcome: CycleOutcome, stage: Optional[str], **fields: Any) -> None:
        pass

    @abstractmethod
    async def last_cycle(self) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_failed_transfers(self, unresolved_only: bool = True) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count_unresolved_failed_transfers(self) -> int:
        pass

    @abstractmethod
    async def resolve_failed_transfer(self, transfer_id: int, resolution_tx: Optional[str] = None) -> bool:
        pass


class SqlStateStore(StateStore):
    """StateStore over the keeper_state, cycle_runs and failed_transfers tables."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="state_store")

    # Key/value helpers

    async def _get_value(self, session: AsyncSession, key: str) -> Optional[dict]:
        entry = await session.get(KeeperStateEntry, key)
        return entry.value if entry is not None else None

    async def _put_value(self, session: AsyncSession, key: str, value: dict) -> None:
        entry = await session.get(KeeperStateEntry, key)
        if entry is None:
            session.add(KeeperStateEntry(key=key, value=value))
        else:
            entry.value = value
            entry.updated_at = datetime.utcnow()

    # Fee schedule

    async def load_fee_schedule(self) -> FeeSchedule:
        async with self.database.session() as session:
            value = await self._get_value(session, FEE_SCHEDULE_KEY)
        return FeeSchedule.from_dict(value) if value else FeeSchedule()

    async def save_fee_schedule(self, schedule: FeeSchedule) -> None:
        async with self.database.session() as session:
            await self._put_value(session, FEE_SCHEDULE_KEY, schedule.to_dict())
        self.logger.debug("Fee schedule saved", **schedule.to_dict())

    # Rollover and pending proceeds

    async def get_rollover(self, reward_asset_id: str) -> RolloverState:
        async with self.database.session() as session:
            value = await self._get_value(session, ROLLOVER_PREFIX + reward_asset_id)
        if not value:
            return RolloverState.empty(reward_asset_id)
        return RolloverState.from_dict(value)

    async def list_rollovers(self) -> List[RolloverState]:
        async with self.database.session() as session:
            result = await session.execute(
                select(KeeperStateEntry)
                .where(KeeperStateEntry.key.like(ROLLOVER_PREFIX + "%"))
                .order_by(KeeperStateEntry.key)
            )
            entries = result.scalars().all()
        return [RolloverState.from_dict(entry.value) for entry in entries]

    async def get_pending_proceeds(self, reward_asset_id: str) -> int:
        async with self.database.session() as session:
            value = await self._get_value(session, PENDING_PROCEEDS_PREFIX + reward_asset_id)
        return int(value["amount"]) if value else 0

    async def add_pending_proceeds(self, reward_asset_id: str, amount: int) -> int:
        if amount < 0:
            raise DatabaseError("Pending proceeds cannot be negative", details={"amount": amount})

        key = PENDING_PROCEEDS_PREFIX + reward_asset_id
        async with self.database.session() as session:
            value = await self._get_value(session, key)
            total = (int(value["amount"]) if value else 0) + amount
            await self._put_value(session, key, {"amount": total, "updated_at": _utcnow().isoformat()})

        self.logger.info("Pending proceeds recorded", reward_asset=reward_asset_id, added=amount, pending=total)
        return total

    async def get_pending_swap(self, reward_asset_id: str) -> Optional[PendingSwap]:
        async with self.database.session() as session:
            value = await self._get_value(session, PENDING_SWAP_PREFIX + reward_asset_id)
        return PendingSwap.from_dict(value) if value else None

    async def begin_swap(self, swap: PendingSwap) -> None:
        key = PENDING_SWAP_PREFIX + swap.reward_asset_id
        async with self.database.session() as session:
            if await self._get_value(session, key):
                raise DatabaseError("A swap is already outstanding", details={"reward_asset": swap.reward_asset_id})
            await self._put_value(session, key, swap.to_dict())
        self.logger.debug("Swap marked outstanding", **swap.to_dict())

    async def complete_swap(self, reward_asset_id: str, proceeds: int) -> int:
        if proceeds < 0:
            raise DatabaseError("Swap proceeds cannot be negative", details={"proceeds": proceeds})

        pending_key = PENDING_PROCEEDS_PREFIX + reward_asset_id
        async with self.database.session() as session:
            value = await self._get_value(session, pending_key)
            total = (int(value["amount"]) if value else 0) + proceeds
            await self._put_value(session, pending_key, {"amount": total, "updated_at": _utcnow().isoformat()})

            marker = await session.get(KeeperStateEntry, PENDING_SWAP_PREFIX + reward_asset_id)
            if marker is not None:
                await session.delete(marker)

        self.logger.info("Swap accounted", reward_asset=reward_asset_id, proceeds=proceeds, pending=total)
        return total

    async def settle(
        self,
        reward_asset_id: str,
        rollover_amount: int,
        consumed_proceeds: int,
        cycle_id: Optional[int] = None,
        failed_recipients: Sequence[FailedRecipient] = (),
    ) -> RolloverState:
        if rollover_amount < 0:
            raise DatabaseError("Rollover cannot be negative", details={"rollover": rollover_amount})

        rollover = RolloverState(
            reward_asset_id=reward_asset_id,
            amount=rollover_amount,
            last_updated=_utcnow(),
        )
        pending_key = PENDING_PROCEEDS_PREFIX + reward_asset_id

        async with self.database.session() as session:
            pending_value = await self._get_value(session, pending_key)
            pending = int(pending_value["amount"]) if pending_value else 0
            remaining = max(0, pending - consumed_proceeds)

            await self._put_value(session, ROLLOVER_PREFIX + reward_asset_id, rollover.to_dict())
            await self._put_value(session, pending_key, {"amount": remaining, "updated_at": _utcnow().isoformat()})

            for recipient in failed_recipients:
                session.add(FailedTransfer(
                    cycle_id=cycle_id,
                    reward_asset=reward_asset_id,
                    recipient=recipient.address,
                    amount=recipient.amount,
                    error_message=recipient.error,
                ))

        self.logger.info(
            "Distribution settled",
            reward_asset=reward_asset_id,
            rollover=rollover_amount,
            consumed_proceeds=consumed_proceeds,
            pending_remaining=remaining,
            failed_recipients=len(failed_recipients),
        )
        return rollover

    # Cycle history

    async def start_cycle(self, reward_asset_id: str) -> int:
        async with self.database.session() as session:
            run = CycleRun(reward_asset=reward_asset_id, outcome=CycleOutcome.RUNNING.value)
            session.add(run)
            await session.flush()
            return run.id

    async def finish_cycle(self, cycle_id: int, outcome: CycleOutcome, stage: Optional[str], **fields: Any) -> None:
        async with self.database.session() as session:
            run = await session.get(CycleRun, cycle_id)
            if run is None:
                self.logger.warning("Cycle run not found", cycle_id=cycle_id)
                return
            run.outcome = outcome.value
            run.stage = stage
            run.completed_at = datetime.utcnow()
            for name, value in fields.items():
                if value is not None and hasattr(run, name):
                    setattr(run, name, value)

    async def last_cycle(self) -> Optional[Dict[str, Any]]:
        async with self.database.session() as session:
            result = await session.execute(select(CycleRun).order_by(desc(CycleRun.id)).limit(1))
            run = result.scalar_one_or_none()
        if run is None:
            return None
        return {
            "id": run.id,
            "outcome": run.outcome,
            "stage": run.stage,
            "started_at": run.started_at,
            "completed_at": run.completed_at,
            "amount_withdrawn": int(run.amount_withdrawn or 0),
            "swap_output": int(run.swap_output or 0),
            "distributed": int(run.distributed or 0),
            "rollover": int(run.rollover or 0),
            "recipients": run.recipients or 0,
            "failed_recipients": run.failed_recipients or 0,
            "reward_asset": run.reward_asset,
            "price_source": run.price_source,
            "error_message": run.error_message,
        }

    # Failed transfers

    async def list_failed_transfers(self, unresolved_only: bool = True) -> List[Dict[str, Any]]:
        query = select(FailedTransfer).order_by(FailedTransfer.id)
        if unresolved_only:
            query = query.where(FailedTransfer.resolved == False)  # noqa: E712

        async with self.database.session() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        return [
            {
                "id": row.id,
                "cycle_id": row.cycle_id,
                "reward_asset": row.reward_asset,
                "recipient": row.recipient,
                "amount": int(row.amount),
                "error_message": row.error_message,
                "resolved": row.resolved,
                "resolved_at": row.resolved_at,
                "resolution_tx": row.resolution_tx,
                "created_at": row.created_at,
            }
            for row in rows
        ]

    async def count_unresolved_failed_transfers(self) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                select(func.count(FailedTransfer.id)).where(FailedTransfer.resolved == False)  # noqa: E712
            )
            return int(result.scalar() or 0)

    async def resolve_failed_transfer(self, transfer_id: int, resolution_tx: Optional[str] = None) -> bool:
        async with self.database.session() as session:
            row = await session.get(FailedTransfer, transfer_id)
            if row is None or row.resolved:
                return False
            row.resolved = True
            row.resolved_at = datetime.utcnow()
            row.resolution_tx = resolution_tx

        self.logger.info("Failed transfer resolved", transfer_id=transfer_id, resolution_tx=resolution_tx)
        return True
