"""Database models."""

from signal_outcomes.models.cycle_log import CycleLog
from signal_outcomes.models.ledger_document import LedgerDocument

__all__ = [
    "CycleLog",
    "LedgerDocument",
]
