"""
Fee lifecycle: fee schedule engine and harvest coordinator.
"""

from .types import FeeSchedule, FeeCheckAction, FeeCheckResult, HarvestBatchResult

__all__ = ["FeeSchedule", "FeeCheckAction", "FeeCheckResult", "HarvestBatchResult"]
