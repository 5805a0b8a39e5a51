"""
Persistence for closed-position events, protective legs and inconsistency
records.

Provides repository classes that implement the protocols in
``riskgate.domain.protocols``. Sessions are synchronous SQLAlchemy; every
public coroutine offloads its work with ``asyncio.to_thread`` so the event
loop never blocks on the database.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, List, Optional, Sequence

from sqlalchemy import Boolean, Column, Index, Integer, Numeric, String, func
from sqlalchemy.exc import DBAPIError, IntegrityError, TimeoutError as PoolTimeoutError

from riskgate.domain.models import (
    ClosedPositionEvent,
    ConditionalOrder,
    ConditionalOrderStatus,
    InconsistentState,
    LegType,
    Side,
    StoredRow,
)
from riskgate.exceptions import IntegrityViolation, TransientIOError
from riskgate.monitoring.logger import get_logger
from riskgate.storage.db import Base, Database
from riskgate.utils.time_utils import ensure_utc, parse_utc, to_utc_iso

logger = get_logger(__name__)

# Sorts after every parseable timestamp, so unreadable rows are never "the earliest"
_UNPARSEABLE = datetime.max.replace(tzinfo=timezone.utc)

# Covers the widest UTC offset (+-14h) and the space-separated SQLite form
_LEGACY_TEXT_MARGIN = timedelta(days=1)


# ORM Models
class ClosedPositionEventModel(Base):
    """ORM model for closed-position events (written by the position-close flow)."""
    __tablename__ = "position_close_events"
    __table_args__ = (
        Index("idx_close_events_symbol_time", "symbol", "created_at"),
        Index("idx_close_events_trigger_order", "trigger_order_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=True)
    pnl = Column(Numeric(precision=20, scale=8), nullable=False)
    pnl_percent = Column(Numeric(precision=12, scale=4), nullable=False)
    close_reason = Column(String, nullable=False)
    trigger_order_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # canonical UTC ISO text


class ConditionalOrderModel(Base):
    """ORM model for protective legs (one row per venue order id)."""
    __tablename__ = "price_orders"
    __table_args__ = (
        Index("idx_price_orders_order_id", "order_id"),
        Index("idx_price_orders_symbol_status", "symbol", "status"),
        Index("idx_price_orders_position", "position_order_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False)
    position_order_id = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    leg_type = Column("type", String, nullable=False)
    trigger_price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=True)


class InconsistentStateModel(Base):
    """ORM model for recorded integrity problems awaiting inspection."""
    __tablename__ = "inconsistent_states"
    __table_args__ = (
        Index("idx_inconsistent_resolved", "resolved", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    error_message = Column(String, nullable=False)
    details = Column(String, nullable=True)  # JSON string
    created_at = Column(String, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)


# Row conversion
def _parse_row_time(value: Optional[str]) -> datetime:
    try:
        return parse_utc(value)
    except ValueError:
        return _UNPARSEABLE


def _event_from_row(row: ClosedPositionEventModel) -> Optional[ClosedPositionEvent]:
    try:
        closed_at = parse_utc(row.created_at)
    except ValueError:
        logger.warning("Skipping close event with unreadable timestamp", row_id=row.id, created_at=row.created_at)
        return None
    return ClosedPositionEvent(
        symbol=row.symbol,
        pnl=float(row.pnl),
        pnl_percent=float(row.pnl_percent),
        close_reason=row.close_reason,
        closed_at=closed_at,
        side=row.side,
        trigger_order_id=row.trigger_order_id,
    )


def _order_from_row(row: ConditionalOrderModel) -> ConditionalOrder:
    return ConditionalOrder(
        order_id=row.order_id,
        symbol=row.symbol,
        side=Side(row.side),
        leg_type=LegType(row.leg_type),
        trigger_price=Decimal(str(row.trigger_price)),
        quantity=Decimal(str(row.quantity)),
        status=ConditionalOrderStatus(row.status),
        created_at=parse_utc(row.created_at),
        position_order_id=row.position_order_id,
        updated_at=parse_utc(row.updated_at) if row.updated_at else None,
    )


def _stored_rows(rows) -> List[StoredRow]:
    out = [StoredRow(row_id=row_id, created_at=_parse_row_time(created_at)) for row_id, created_at in rows]
    return sorted(out, key=lambda r: (r.created_at, r.row_id))


class _SqlRepository:
    """Shared plumbing: thread offloading and error translation."""

    def __init__(self, db: Database):
        self.db = db

    async def _run(self, fn: Callable[..., Any], *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except IntegrityError as e:
            # A unique index caught a concurrent writer the pre-insert check missed
            raise IntegrityViolation(f"{fn.__name__}: {e.orig}") from e
        except (DBAPIError, PoolTimeoutError, OSError) as e:
            raise TransientIOError(f"{fn.__name__} failed: {e}") from e


class SqlClosedEventStore(_SqlRepository):
    """Closed-position events backed by ``position_close_events``."""

    async def query_closed_events(self, symbol: str, since: datetime) -> List[ClosedPositionEvent]:
        return await self._run(self._query_closed_events, symbol, since)

    def _query_closed_events(self, symbol: str, since: datetime) -> List[ClosedPositionEvent]:
        # Legacy rows ("YYYY-MM-DD HH:MM:SS", local offsets) sort below canonical
        # text for the same instant; widen the text bound and filter on parsed time.
        lower_bound = to_utc_iso(since - _LEGACY_TEXT_MARGIN)
        with self.db.get_session() as session:
            rows = (
                session.query(ClosedPositionEventModel)
                .filter(
                    ClosedPositionEventModel.symbol == symbol,
                    ClosedPositionEventModel.created_at > lower_bound,
                )
                .order_by(ClosedPositionEventModel.id.desc())
                .all()
            )
            events = [_event_from_row(r) for r in rows]
        since = ensure_utc(since)
        events = [e for e in events if e is not None and e.closed_at > since]
        # Stable sort keeps newest row id first on equal timestamps
        return sorted(events, key=lambda e: e.closed_at, reverse=True)

    async def append(self, event: ClosedPositionEvent) -> None:
        """
        Record a closed position.

        Raises:
            IntegrityViolation: If ``trigger_order_id`` was already recorded
        """
        await self._run(self._append, event)

    def _append(self, event: ClosedPositionEvent) -> None:
        with self.db.get_session() as session:
            if event.trigger_order_id:
                exists = (
                    session.query(ClosedPositionEventModel.id)
                    .filter(ClosedPositionEventModel.trigger_order_id == event.trigger_order_id)
                    .first()
                )
                if exists:
                    raise IntegrityViolation(
                        f"close event for trigger order {event.trigger_order_id} already recorded",
                        order_id=event.trigger_order_id,
                    )
            session.add(
                ClosedPositionEventModel(
                    symbol=event.symbol,
                    side=event.side,
                    pnl=Decimal(str(event.pnl)),
                    pnl_percent=Decimal(str(event.pnl_percent)),
                    close_reason=str(getattr(event.close_reason, "value", event.close_reason)),
                    trigger_order_id=event.trigger_order_id,
                    created_at=to_utc_iso(event.closed_at),
                )
            )

    async def find_duplicate_keys(self) -> List[str]:
        return await self._run(self._find_duplicate_keys)

    def _find_duplicate_keys(self) -> List[str]:
        col = ClosedPositionEventModel.trigger_order_id
        with self.db.get_session() as session:
            rows = (
                session.query(col)
                .filter(col.isnot(None), col != "")
                .group_by(col)
                .having(func.count(ClosedPositionEventModel.id) > 1)
                .all()
            )
        return [r[0] for r in rows]

    async def list_duplicate_rows(self, key: str) -> List[StoredRow]:
        return await self._run(self._list_duplicate_rows, key)

    def _list_duplicate_rows(self, key: str) -> List[StoredRow]:
        with self.db.get_session() as session:
            rows = (
                session.query(ClosedPositionEventModel.id, ClosedPositionEventModel.created_at)
                .filter(ClosedPositionEventModel.trigger_order_id == key)
                .all()
            )
        return _stored_rows(rows)

    async def delete_rows(self, row_ids: Sequence[int]) -> int:
        if not row_ids:
            return 0
        return await self._run(self._delete_rows, list(row_ids))

    def _delete_rows(self, row_ids: List[int]) -> int:
        with self.db.get_session() as session:
            return (
                session.query(ClosedPositionEventModel)
                .filter(ClosedPositionEventModel.id.in_(row_ids))
                .delete(synchronize_session=False)
            )


class SqlConditionalOrderStore(_SqlRepository):
    """Protective legs backed by ``price_orders``."""

    async def get(self, order_id: str) -> Optional[ConditionalOrder]:
        return await self._run(self._get, order_id)

    def _get(self, order_id: str) -> Optional[ConditionalOrder]:
        with self.db.get_session() as session:
            row = (
                session.query(ConditionalOrderModel)
                .filter(ConditionalOrderModel.order_id == order_id)
                .order_by(ConditionalOrderModel.id.asc())
                .first()
            )
            return _order_from_row(row) if row else None

    async def insert(self, order: ConditionalOrder) -> None:
        await self._run(self._insert, order)

    def _insert(self, order: ConditionalOrder) -> None:
        with self.db.get_session() as session:
            exists = (
                session.query(ConditionalOrderModel.id)
                .filter(ConditionalOrderModel.order_id == order.order_id)
                .first()
            )
            if exists:
                raise IntegrityViolation(
                    f"conditional order {order.order_id} already recorded",
                    order_id=order.order_id,
                )
            session.add(
                ConditionalOrderModel(
                    order_id=order.order_id,
                    position_order_id=order.position_order_id,
                    symbol=order.symbol,
                    side=order.side.value,
                    leg_type=order.leg_type.value,
                    trigger_price=order.trigger_price,
                    quantity=order.quantity,
                    status=order.status.value,
                    created_at=to_utc_iso(order.created_at),
                    updated_at=to_utc_iso(order.updated_at) if order.updated_at else None,
                )
            )

    async def list_active(self, symbol: str) -> List[ConditionalOrder]:
        return await self._run(self._list_active, symbol)

    def _list_active(self, symbol: str) -> List[ConditionalOrder]:
        with self.db.get_session() as session:
            rows = (
                session.query(ConditionalOrderModel)
                .filter(
                    ConditionalOrderModel.symbol == symbol,
                    ConditionalOrderModel.status == ConditionalOrderStatus.ACTIVE.value,
                )
                .order_by(ConditionalOrderModel.created_at.asc(), ConditionalOrderModel.id.asc())
                .all()
            )
            return [_order_from_row(r) for r in rows]

    async def list_for_position(self, position_order_id: str) -> List[ConditionalOrder]:
        return await self._run(self._list_for_position, position_order_id)

    def _list_for_position(self, position_order_id: str) -> List[ConditionalOrder]:
        with self.db.get_session() as session:
            rows = (
                session.query(ConditionalOrderModel)
                .filter(ConditionalOrderModel.position_order_id == position_order_id)
                .order_by(ConditionalOrderModel.created_at.asc(), ConditionalOrderModel.id.asc())
                .all()
            )
            return [_order_from_row(r) for r in rows]

    async def cancel_active(self, symbol: str, at: datetime) -> List[ConditionalOrder]:
        return await self._run(self._cancel_active, symbol, at)

    def _cancel_active(self, symbol: str, at: datetime) -> List[ConditionalOrder]:
        stamp = to_utc_iso(at)
        with self.db.get_session() as session:
            rows = (
                session.query(ConditionalOrderModel)
                .filter(
                    ConditionalOrderModel.symbol == symbol,
                    ConditionalOrderModel.status == ConditionalOrderStatus.ACTIVE.value,
                )
                .with_for_update()
                .all()
            )
            for row in rows:
                row.status = ConditionalOrderStatus.CANCELLED.value
                row.updated_at = stamp
            session.flush()
            return [_order_from_row(r) for r in rows]

    async def set_position_order_id(self, order_id: str, position_order_id: str) -> bool:
        return await self._run(self._set_position_order_id, order_id, position_order_id)

    def _set_position_order_id(self, order_id: str, position_order_id: str) -> bool:
        with self.db.get_session() as session:
            count = (
                session.query(ConditionalOrderModel)
                .filter(
                    ConditionalOrderModel.order_id == order_id,
                    ConditionalOrderModel.position_order_id.is_(None),
                )
                .update({ConditionalOrderModel.position_order_id: position_order_id}, synchronize_session=False)
            )
            return count > 0

    async def mark_triggered(self, order_id: str, at: datetime) -> bool:
        return await self._run(self._mark_triggered, order_id, at)

    def _mark_triggered(self, order_id: str, at: datetime) -> bool:
        with self.db.get_session() as session:
            count = (
                session.query(ConditionalOrderModel)
                .filter(
                    ConditionalOrderModel.order_id == order_id,
                    ConditionalOrderModel.status == ConditionalOrderStatus.ACTIVE.value,
                )
                .update(
                    {
                        ConditionalOrderModel.status: ConditionalOrderStatus.TRIGGERED.value,
                        ConditionalOrderModel.updated_at: to_utc_iso(at),
                    },
                    synchronize_session=False,
                )
            )
            return count > 0

    async def find_duplicate_keys(self) -> List[str]:
        return await self._run(self._find_duplicate_keys)

    def _find_duplicate_keys(self) -> List[str]:
        with self.db.get_session() as session:
            rows = (
                session.query(ConditionalOrderModel.order_id)
                .group_by(ConditionalOrderModel.order_id)
                .having(func.count(ConditionalOrderModel.id) > 1)
                .all()
            )
        return [r[0] for r in rows]

    async def list_duplicate_rows(self, key: str) -> List[StoredRow]:
        return await self._run(self._list_duplicate_rows, key)

    def _list_duplicate_rows(self, key: str) -> List[StoredRow]:
        with self.db.get_session() as session:
            rows = (
                session.query(ConditionalOrderModel.id, ConditionalOrderModel.created_at)
                .filter(ConditionalOrderModel.order_id == key)
                .all()
            )
        return _stored_rows(rows)

    async def delete_rows(self, row_ids: Sequence[int]) -> int:
        if not row_ids:
            return 0
        return await self._run(self._delete_rows, list(row_ids))

    def _delete_rows(self, row_ids: List[int]) -> int:
        with self.db.get_session() as session:
            return (
                session.query(ConditionalOrderModel)
                .filter(ConditionalOrderModel.id.in_(row_ids))
                .delete(synchronize_session=False)
            )


class SqlInconsistencyRecorder(_SqlRepository):
    """Integrity problems backed by ``inconsistent_states``."""

    async def record(self, state: InconsistentState) -> None:
        await self._run(self._record, state)

    def _record(self, state: InconsistentState) -> None:
        try:
            details_json = json.dumps(state.details, default=str)
        except (TypeError, ValueError) as e:
            details_json = json.dumps({"error": str(e)})

        with self.db.get_session() as session:
            session.add(
                InconsistentStateModel(
                    operation=state.operation,
                    symbol=state.symbol,
                    order_id=state.order_id,
                    error_message=state.error_message,
                    details=details_json,
                    created_at=to_utc_iso(state.created_at),
                    resolved=state.resolved,
                )
            )

    async def list_unresolved(self, limit: int = 50) -> List[InconsistentState]:
        return await self._run(self._list_unresolved, limit)

    def _list_unresolved(self, limit: int) -> List[InconsistentState]:
        with self.db.get_session() as session:
            rows = (
                session.query(InconsistentStateModel)
                .filter(InconsistentStateModel.resolved.is_(False))
                .order_by(InconsistentStateModel.created_at.desc(), InconsistentStateModel.id.desc())
                .limit(limit)
                .all()
            )
            return [
                InconsistentState(
                    operation=r.operation,
                    symbol=r.symbol,
                    order_id=r.order_id,
                    error_message=r.error_message,
                    created_at=_parse_row_time(r.created_at),
                    resolved=bool(r.resolved),
                    details=json.loads(r.details) if r.details else {},
                )
                for r in rows
            ]
