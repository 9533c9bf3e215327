"""
Types for distribution planning and execution.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class PriceSource(Enum):
    """Where the holder valuation price came from."""
    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass
class RolloverState:
    """Undistributed remainder carried forward for one reward asset."""
    reward_asset_id: str
    amount: int = 0
    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "reward_asset_id": self.reward_asset_id,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RolloverState":
        last_updated = data.get("last_updated")
        return cls(
            reward_asset_id=data["reward_asset_id"],
            amount=int(data.get("amount", 0)),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )

    @classmethod
    def empty(cls, reward_asset_id: str) -> "RolloverState":
        return cls(reward_asset_id=reward_asset_id, amount=0, last_updated=None)


@dataclass
class PendingSwap:
    """
    A swap whose outcome is not yet accounted for.

    Written before the swap transaction is sent and cleared in the same
    transaction that records its proceeds.
    """
    reward_asset_id: str
    input_amount: int
    reward_balance_before: int
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "reward_asset_id": self.reward_asset_id,
            "input_amount": self.input_amount,
            "reward_balance_before": self.reward_balance_before,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingSwap":
        return cls(
            reward_asset_id=data["reward_asset_id"],
            input_amount=int(data["input_amount"]),
            reward_balance_before=int(data["reward_balance_before"]),
            started_at=datetime.fromisoformat(data["started_at"]),
        )


@dataclass(frozen=True)
class PlanRecipient:
    address: str
    amount: int
    source_balance: int
    value_usd: Decimal


@dataclass
class DistributionPlan:
    """
    Proportional allocation of ``total_amount`` over eligible holders.

    ``sum(r.amount for r in recipients) + rollover_amount == total_amount``
    always holds for a plan returned by the planner.
    """
    total_amount: int
    reward_asset_id: str
    recipients: List[PlanRecipient] = field(default_factory=list)
    rollover_amount: int = 0
    no_eligible_holders: bool = False
    available_amount: int = 0
    rollover_folded: int = 0
    zero_share_count: int = 0
    price_usd: Optional[Decimal] = None
    price_source: Optional[PriceSource] = None
    stale_rollover_assets: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def planned_amount(self) -> int:
        return sum(r.amount for r in self.recipients)


@dataclass(frozen=True)
class FailedRecipient:
    address: str
    amount: int
    error: Optional[str] = None


@dataclass
class DistributionResult:
    success: bool
    distributed: int = 0
    recipients: int = 0
    failed: int = 0
    rollover: int = 0
    tx_ids: List[str] = field(default_factory=list)
    failed_recipients: List[FailedRecipient] = field(default_factory=list)

    @property
    def failed_amount(self) -> int:
        return sum(r.amount for r in self.failed_recipients)
