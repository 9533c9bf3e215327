"""
Pydantic schemas for the keeper status API.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    running: bool = False
    last_tick_at: Optional[datetime] = None
    database: Optional[str] = None


class RolloverEntry(BaseModel):
    reward_asset_id: str
    amount: int = Field(ge=0)
    last_updated: Optional[datetime] = None
    stale: bool = False


class PendingSwapEntry(BaseModel):
    """Swap sent but not yet accounted for."""
    reward_asset_id: str
    input_amount: int
    reward_balance_before: int
    started_at: datetime


class CycleSummary(BaseModel):
    """Last harvest chain run."""
    cycle_id: Optional[int] = None
    outcome: str
    stage: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    amount_withdrawn: int = 0
    swap_output: int = 0
    distributed: int = 0
    rollover: int = 0
    recipients: int = 0
    failed_recipients: int = 0
    price_source: Optional[str] = None
    error: Optional[str] = None


class KeeperStatusResponse(BaseModel):
    """Keeper status and telemetry."""
    status: str
    current_stage: Optional[str] = None
    reward_asset: str
    accumulated_fees: Optional[int] = None
    holding_balance: Optional[int] = None
    harvest_threshold: int
    ready_to_harvest: Optional[bool] = None
    rollover_state: List[RolloverEntry] = []
    pending_proceeds: int = 0
    pending_swap: Optional[PendingSwapEntry] = None
    current_fee_rate_bps: int
    fee_finalized: bool
    launch_timestamp: Optional[int] = None
    time_until_next_update: Optional[int] = None
    distribution_halted: bool = False
    halt_reason: Optional[str] = None
    unresolved_failed_transfers: int = 0
    last_cycle: Optional[CycleSummary] = None
