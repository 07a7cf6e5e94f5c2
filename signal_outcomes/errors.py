"""Error taxonomy for the outcome resolution cycle.

Cycle-level errors (price, ledger, timeout) abort the whole cycle before
anything is saved. ``MalformedCall`` is per-call and never aborts a cycle.
"""


class OutcomeError(Exception):
    """Base class for outcome engine errors."""


class PriceUnavailable(OutcomeError):
    """Every configured price or candle source failed."""


class LedgerReadFailure(OutcomeError):
    """The ledger store is unreachable or its document is malformed."""


class LedgerWriteFailure(OutcomeError):
    """The ledger store rejected a write for a reason other than a version mismatch."""


class LedgerConflict(OutcomeError):
    """The stored version token no longer matches the one the caller loaded."""


class MalformedCall(OutcomeError):
    """A call lacks the fields its resolution policy needs."""

    def __init__(self, call_id: str, reason: str):
        super().__init__(f"Call {call_id}: {reason}")
        self.call_id = call_id
        self.reason = reason


class CycleTimeout(OutcomeError):
    """The cycle ran past its wall-clock timeout."""


class DuplicateCall(OutcomeError):
    """A call with the same id is already in the ledger."""
