"""
Domain protocols (interfaces) for dependency inversion.

Every component receives its store or collaborator through the constructor,
so production code binds the SQL repositories in ``riskgate.storage`` and
tests bind the in-memory doubles in ``tests/helpers``.
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from riskgate.domain.models import (
    ClosedPositionEvent,
    ConditionalOrder,
    ConditionalOrderRequest,
    InconsistentState,
    MarketStateSnapshot,
    StoredRow,
)

# venue order id -> raw order dict with at least a "status" key
VenueOrderLookup = Callable[[str], Awaitable[Dict[str, Any]]]


@runtime_checkable
class DuplicateRepairable(Protocol):
    """
    Primitives the duplicate-repair pass needs from a table keyed by a
    venue order id that should be unique.
    """

    async def find_duplicate_keys(self) -> List[str]: ...

    async def list_duplicate_rows(self, key: str) -> List[StoredRow]: ...

    async def delete_rows(self, row_ids: Sequence[int]) -> int: ...


@runtime_checkable
class ClosedEventStore(DuplicateRepairable, Protocol):
    """Read access to closed-position events (plus repair primitives)."""

    async def query_closed_events(self, symbol: str, since: datetime) -> List[ClosedPositionEvent]:
        """Events for ``symbol`` with ``closed_at > since``, most recent first."""
        ...


@runtime_checkable
class ConditionalOrderStore(DuplicateRepairable, Protocol):
    """Persistence of protective legs."""

    async def get(self, order_id: str) -> Optional[ConditionalOrder]: ...

    async def insert(self, order: ConditionalOrder) -> None:
        """Insert one row. Raises IntegrityViolation if ``order_id`` exists."""
        ...

    async def list_active(self, symbol: str) -> List[ConditionalOrder]: ...

    async def list_for_position(self, position_order_id: str) -> List[ConditionalOrder]: ...

    async def cancel_active(self, symbol: str, at: datetime) -> List[ConditionalOrder]:
        """Mark every active row for ``symbol`` cancelled in one transaction."""
        ...

    async def set_position_order_id(self, order_id: str, position_order_id: str) -> bool: ...

    async def mark_triggered(self, order_id: str, at: datetime) -> bool: ...


@runtime_checkable
class InconsistencyRecorder(Protocol):
    """Sink for non-fatal integrity problems."""

    async def record(self, state: InconsistentState) -> None: ...

    async def list_unresolved(self, limit: int = 50) -> List[InconsistentState]: ...


@runtime_checkable
class VenueClient(Protocol):
    """The exchange collaborator, as far as protective legs are concerned."""

    async def place_conditional_order(self, request: ConditionalOrderRequest) -> str: ...

    async def lookup_order(self, order_id: str) -> Dict[str, Any]: ...

    async def cancel_order(self, order_id: str, symbol: str) -> None: ...


@runtime_checkable
class MarketStateProvider(Protocol):
    """The market-state analyzer collaborator."""

    async def get_market_state(self, symbol: str) -> MarketStateSnapshot: ...


class NullInconsistencyRecorder:
    """Recorder for use in tests or when persistence is unavailable."""

    async def record(self, state: InconsistentState) -> None:
        pass

    async def list_unresolved(self, limit: int = 50) -> List[InconsistentState]:
        return []
