"""
Persisted keeper state: key/value entries, cycle run history and
failed-transfer reconciliation records.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, Numeric, Index

from .base import Base, TimestampMixin


class CycleOutcome(str, Enum):
    """Outcome of a tick that ran the harvest chain."""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    NO_ELIGIBLE_HOLDERS = "no_eligible_holders"
    NOTHING_TO_DISTRIBUTE = "nothing_to_distribute"
    FAILED = "failed"
    INVARIANT_VIOLATION = "invariant_violation"


class KeeperStateEntry(Base):
    """
    One durable key/value entry.

    Keys in use: ``fee_schedule``, ``rollover:<asset>``, ``pending_proceeds:<asset>``.
    """
    __tablename__ = "keeper_state"

    key = Column(String(128), primary_key=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<KeeperStateEntry(key={self.key})>"


class CycleRun(Base, TimestampMixin):
    """Tracks each harvest chain run so operators can diagnose stuck cycles."""
    __tablename__ = "cycle_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    outcome = Column(String(32), nullable=False, default=CycleOutcome.RUNNING.value)
    stage = Column(String(32), nullable=True, comment="Last stage reached")

    amount_withdrawn = Column(Numeric(20, 0), nullable=False, default=0)
    swap_output = Column(Numeric(20, 0), nullable=False, default=0)
    distributed = Column(Numeric(20, 0), nullable=False, default=0)
    rollover = Column(Numeric(20, 0), nullable=False, default=0)
    recipients = Column(Integer, nullable=False, default=0)
    failed_recipients = Column(Integer, nullable=False, default=0)
    reward_asset = Column(String(64), nullable=True)
    price_source = Column(String(16), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_cycle_runs_started_at", "started_at"),
    )

    def __repr__(self):
        return f"<CycleRun(id={self.id}, outcome={self.outcome}, stage={self.stage})>"

    @property
    def is_complete(self) -> bool:
        return self.outcome != CycleOutcome.RUNNING.value


class FailedTransfer(Base, TimestampMixin):
    """A recipient whose distribution batch failed; settled manually."""
    __tablename__ = "failed_transfers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(Integer, nullable=True)
    reward_asset = Column(String(64), nullable=False)
    recipient = Column(String(64), nullable=False)
    amount = Column(Numeric(20, 0), nullable=False)
    error_message = Column(Text, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolution_tx = Column(String(128), nullable=True)

    __table_args__ = (
        Index("idx_failed_transfers_unresolved", "resolved", "reward_asset"),
    )

    def __repr__(self):
        return f"<FailedTransfer(id={self.id}, recipient={self.recipient}, amount={self.amount})>"
