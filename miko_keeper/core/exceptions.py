"""
Custom exception classes for the keeper.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class KeeperException(Exception):
    """Base exception class for the MIKO keeper."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(KeeperException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(KeeperException):
    """Raised when persisted keeper state cannot be read or written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class LedgerError(KeeperException):
    """Raised when a ledger read or write fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LEDGER_ERROR", details)


class TransactionFailedError(LedgerError):
    """Raised when a submitted transaction is rejected or not confirmed."""

    def __init__(self, signature: str, error: str):
        super().__init__(
            f"Transaction {signature or '<unsent>'} failed: {error}",
            {"signature": signature, "error": error}
        )


class ExternalServiceError(KeeperException):
    """Raised when an external HTTP service error occurs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", details)


class PriceUnavailableError(ExternalServiceError):
    """Raised when neither the primary nor the fallback price is available."""

    def __init__(self, token: str):
        super().__init__(
            f"No price available for {token}",
            {"token": token}
        )


class SwapError(ExternalServiceError):
    """Raised when a swap cannot be quoted or executed."""


class StageTimeoutError(KeeperException):
    """Raised when a cycle stage exceeds its time budget."""

    def __init__(self, stage: str, timeout: float):
        super().__init__(
            f"Stage {stage} timed out after {timeout}s",
            {"stage": stage, "timeout": timeout}
        )
        self.code = "STAGE_TIMEOUT"


class HarvestError(KeeperException):
    """Raised when the harvest stage cannot complete."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "HARVEST_ERROR", details)


class DistributionError(KeeperException):
    """Raised when a distribution cannot be planned or executed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DISTRIBUTION_ERROR", details)


class PlanInvariantError(DistributionError):
    """Raised when a computed plan would not conserve the distributable total."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Distribution plan invariant violated: {reason}", details)
        self.code = "PLAN_INVARIANT_VIOLATION"
