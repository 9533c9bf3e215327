"""
Types for fee schedule and harvest processing.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set


RATE_LAUNCH_BPS = 3000
RATE_INTERMEDIATE_BPS = 1500
RATE_FINAL_BPS = 500

FIRST_REDUCTION_SECONDS = 300
FINAL_REDUCTION_SECONDS = 600


@dataclass
class FeeSchedule:
    """Persisted fee schedule state."""
    launch_timestamp: Optional[int] = None
    current_rate_bps: int = RATE_LAUNCH_BPS
    finalized: bool = False

    def to_dict(self) -> dict:
        return {
            "launch_timestamp": self.launch_timestamp,
            "current_rate_bps": self.current_rate_bps,
            "finalized": self.finalized,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeeSchedule":
        return cls(
            launch_timestamp=data.get("launch_timestamp"),
            current_rate_bps=int(data.get("current_rate_bps", RATE_LAUNCH_BPS)),
            finalized=bool(data.get("finalized", False)),
        )


class FeeCheckAction(Enum):
    """What a fee check did this tick."""
    SKIPPED = "skipped"
    NO_CHANGE = "no_change"
    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"
    OBSERVED_FINAL = "observed_final"
    FINALIZED = "finalized"


@dataclass
class FeeCheckResult:
    action: FeeCheckAction
    target_rate_bps: Optional[int] = None
    ledger_rate_bps: Optional[int] = None
    tx_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class HarvestBatchResult:
    """
    Outcome of one harvest pass.

    ``amount_withdrawn_to_holding`` is the holding account balance delta
    across the withdraw and is the only figure trusted downstream.
    """
    accounts_processed: int = 0
    amount_harvested_to_mint: int = 0
    amount_withdrawn_to_holding: int = 0
    holding_balance: int = 0
    batches_attempted: int = 0
    batches_failed: int = 0
    partial_failures: Set[str] = field(default_factory=set)
