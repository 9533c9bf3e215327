"""
Reward distribution: exclusion-aware proportional planning and batched execution.
"""

from .types import (
    PriceSource,
    RolloverState,
    PlanRecipient,
    DistributionPlan,
    FailedRecipient,
    DistributionResult,
)

__all__ = [
    "PriceSource",
    "RolloverState",
    "PlanRecipient",
    "DistributionPlan",
    "FailedRecipient",
    "DistributionResult",
]
