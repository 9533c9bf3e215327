"""
Database models for the MIKO keeper.

Durable state the keeper needs across restarts: fee schedule, rollover and
pending swap proceeds (key/value), cycle history and failed transfers.
"""

from .base import Base, TimestampMixin
from .keeper_state import KeeperStateEntry, CycleRun, CycleOutcome, FailedTransfer

__all__ = [
    "Base",
    "TimestampMixin",
    "KeeperStateEntry",
    "CycleRun",
    "CycleOutcome",
    "FailedTransfer",
]
