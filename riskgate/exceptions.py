"""
Custom exception hierarchy for the risk gate.

Hierarchy:

    TradingSystemError (base)
    ├── OperationalError         : transient/retryable (store, venue, timeouts)
    │   ├── TransientIOError     : store or venue unreachable / timed out
    │   └── ProtectionIncompleteError: a protective leg could not be placed/persisted
    ├── DataError                : bad input, skip this item
    │   ├── ValidationError      : missing price/quantity, nothing to replace
    │   └── IntegrityViolation   : duplicate order_id write attempt
    └── InvariantError           : ledger invariant broken, stop and inspect

Rules:
    - Cooldown / penalty reads: catch everything, log, fail open.
    - Ledger writes: OperationalError propagates to the entry/adjustment flow.
    - IntegrityViolation: rejected at the write boundary, recorded as an
      inconsistent state, never raised out of the ledger.
    - Reconcile / repair batches: per-item failures are logged and skipped.
"""
from typing import Dict, Optional


class TradingSystemError(Exception):
    """Base exception for all risk gate errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradingSystemError):
    """Transient/retryable error: database, venue API, network, timeouts."""
    pass


class TransientIOError(OperationalError):
    """Store or venue unreachable or timed out.

    Treatment: readers fail open; ledger writers propagate to the caller.
    """
    pass


class ProtectionIncompleteError(OperationalError):
    """One or both protective legs failed at the venue or in the store.

    Raised only after both legs were attempted, so whatever did succeed is
    already persisted. ``result`` holds the partial pair and ``failures`` maps
    leg type to the exception that stopped it.
    """

    def __init__(self, message: str, result=None, failures: Optional[Dict[str, Exception]] = None):
        super().__init__(message)
        self.result = result
        self.failures = failures or {}


# ============ DATA (bad input, skip item) ============

class DataError(TradingSystemError):
    """Bad data: missing fields, malformed rows, unknown references."""
    pass


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class IntegrityViolation(DataError):
    """A write would break the one-row-per-order_id invariant."""

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id


# ============ INVARIANT (safety violation, halt) ============

class InvariantError(TradingSystemError):
    """Safety invariant violation (e.g. two active stops for one position).

    This should never be caught and silently continued.
    """
    pass
