"""
Tests for the SQL repositories against an in-memory SQLite database.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from riskgate.domain.models import (
    ClosedPositionEvent,
    ConditionalOrder,
    ConditionalOrderStatus,
    InconsistentState,
    LegType,
    Side,
)
from riskgate.domain.protocols import ClosedEventStore, ConditionalOrderStore, InconsistencyRecorder
from riskgate.exceptions import IntegrityViolation
from riskgate.risk.symbol_cooldown import CooldownGate
from riskgate.storage.repository import (
    ClosedPositionEventModel,
    ConditionalOrderModel,
    SqlClosedEventStore,
    SqlConditionalOrderStore,
    SqlInconsistencyRecorder,
)


def _order(now, order_id, leg_type=LegType.STOP_LOSS, position_order_id="entry-1", minutes_ago=0, symbol="AVAX"):
    return ConditionalOrder(
        order_id=order_id,
        symbol=symbol,
        side=Side.LONG,
        leg_type=leg_type,
        trigger_price=Decimal("95.5"),
        quantity=Decimal("2"),
        status=ConditionalOrderStatus.ACTIVE,
        created_at=now - timedelta(minutes=minutes_ago),
        position_order_id=position_order_id,
    )


def _event(now, hours_ago, pnl=-10.0, trigger=None, symbol="AVAX"):
    return ClosedPositionEvent(
        symbol=symbol,
        pnl=pnl,
        pnl_percent=-5.0,
        close_reason="stop_loss",
        closed_at=now - timedelta(hours=hours_ago),
        side="long",
        trigger_order_id=trigger,
    )


def _add_raw_event(db, symbol, created_at, pnl="-10", pnl_percent="-5"):
    with db.get_session() as session:
        session.add(
            ClosedPositionEventModel(
                symbol=symbol, side="long", pnl=Decimal(pnl), pnl_percent=Decimal(pnl_percent),
                close_reason="stop_loss", created_at=created_at,
            )
        )


def test_repositories_satisfy_protocols(sqlite_db):
    assert isinstance(SqlClosedEventStore(sqlite_db), ClosedEventStore)
    assert isinstance(SqlConditionalOrderStore(sqlite_db), ConditionalOrderStore)
    assert isinstance(SqlInconsistencyRecorder(sqlite_db), InconsistencyRecorder)


class TestSqlClosedEventStore:

    @pytest.mark.asyncio
    async def test_query_window_is_strict_and_newest_first(self, sqlite_db, now):
        store = SqlClosedEventStore(sqlite_db)
        await store.append(_event(now, 24))
        await store.append(_event(now, 5))
        await store.append(_event(now, 1))
        await store.append(_event(now, 2, symbol="SOL"))

        events = await store.query_closed_events("AVAX", now - timedelta(hours=24))

        assert [e.closed_at for e in events] == [now - timedelta(hours=1), now - timedelta(hours=5)]
        assert events[0].pnl == pytest.approx(-10.0)

    @pytest.mark.asyncio
    async def test_duplicate_trigger_order_rejected(self, sqlite_db, now):
        store = SqlClosedEventStore(sqlite_db)
        await store.append(_event(now, 1, trigger="sl-1"))

        with pytest.raises(IntegrityViolation):
            await store.append(_event(now, 1, trigger="sl-1"))

    @pytest.mark.asyncio
    async def test_repair_primitives(self, sqlite_db, now):
        store = SqlClosedEventStore(sqlite_db)
        # Legacy duplicates written before the uniqueness check existed
        with sqlite_db.get_session() as session:
            for created_at in ("2025-11-21T10:00:00.000Z", "2025-11-21T09:00:00.000Z"):
                session.add(
                    ClosedPositionEventModel(
                        symbol="AVAX", pnl=Decimal("-1"), pnl_percent=Decimal("-1"),
                        close_reason="stop_loss", trigger_order_id="sl-9", created_at=created_at,
                    )
                )

        assert await store.find_duplicate_keys() == ["sl-9"]
        rows = await store.list_duplicate_rows("sl-9")
        assert [r.row_id for r in rows] == [2, 1]
        assert await store.delete_rows([rows[1].row_id]) == 1
        assert await store.find_duplicate_keys() == []

    @pytest.mark.asyncio
    async def test_legacy_timestamps_inside_window_are_returned(self, sqlite_db, now):
        store = SqlClosedEventStore(sqlite_db)
        _add_raw_event(sqlite_db, "BTC", "2025-11-20 20:00:00")
        _add_raw_event(sqlite_db, "BTC", "2025-11-21T04:00:00+08:00")
        _add_raw_event(sqlite_db, "BTC", "2025-11-20 11:00:00")

        events = await store.query_closed_events("BTC", now - timedelta(hours=24))

        assert [e.closed_at for e in events] == [
            datetime(2025, 11, 20, 20, 0, tzinfo=timezone.utc),
            datetime(2025, 11, 20, 20, 0, tzinfo=timezone.utc),
        ]

    @pytest.mark.asyncio
    async def test_cooldown_sees_legacy_rows(self, sqlite_db, now):
        _add_raw_event(sqlite_db, "BTC", "2025-11-20 20:00:00")
        _add_raw_event(sqlite_db, "BTC", "2025-11-20 22:00:00")
        gate = CooldownGate(SqlClosedEventStore(sqlite_db), clock=lambda: now)

        status = await gate.evaluate_cooldown("BTC/USDT:USDT", now)

        assert status.in_cooldown is True
        assert status.rule == "repeated_losses"
        assert status.cooldown_until == datetime(2025, 11, 21, 22, 0, tzinfo=timezone.utc)


class TestSqlConditionalOrderStore:

    @pytest.mark.asyncio
    async def test_insert_and_get_round_trip(self, sqlite_db, now):
        store = SqlConditionalOrderStore(sqlite_db)
        await store.insert(_order(now, "ord-1"))

        got = await store.get("ord-1")

        assert got.trigger_price == Decimal("95.5")
        assert got.leg_type == LegType.STOP_LOSS
        assert got.created_at == now
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_order_id_rejected(self, sqlite_db, now):
        store = SqlConditionalOrderStore(sqlite_db)
        await store.insert(_order(now, "ord-1"))

        with pytest.raises(IntegrityViolation):
            await store.insert(_order(now, "ord-1"))

    @pytest.mark.asyncio
    async def test_cancel_active_is_scoped_to_symbol(self, sqlite_db, now):
        store = SqlConditionalOrderStore(sqlite_db)
        await store.insert(_order(now, "sl-1", minutes_ago=5))
        await store.insert(_order(now, "tp-1", LegType.TAKE_PROFIT, minutes_ago=5))
        await store.insert(_order(now, "sl-2", symbol="SOL"))

        cancelled = await store.cancel_active("AVAX", now)

        assert sorted(o.order_id for o in cancelled) == ["sl-1", "tp-1"]
        assert all(o.status == ConditionalOrderStatus.CANCELLED and o.updated_at == now for o in cancelled)
        assert await store.list_active("AVAX") == []
        assert [o.order_id for o in await store.list_active("SOL")] == ["sl-2"]

    @pytest.mark.asyncio
    async def test_backfill_only_when_missing(self, sqlite_db, now):
        store = SqlConditionalOrderStore(sqlite_db)
        await store.insert(_order(now, "legacy", position_order_id=None))
        await store.insert(_order(now, "linked", position_order_id="entry-1"))

        assert await store.set_position_order_id("legacy", "entry-2") is True
        assert await store.set_position_order_id("linked", "entry-2") is False
        assert [o.order_id for o in await store.list_for_position("entry-2")] == ["legacy"]

    @pytest.mark.asyncio
    async def test_mark_triggered_only_active(self, sqlite_db, now):
        store = SqlConditionalOrderStore(sqlite_db)
        await store.insert(_order(now, "sl-1"))

        assert await store.mark_triggered("sl-1", now) is True
        assert await store.mark_triggered("sl-1", now) is False
        assert (await store.get("sl-1")).status == ConditionalOrderStatus.TRIGGERED

    @pytest.mark.asyncio
    async def test_duplicate_rows_sorted_oldest_first(self, sqlite_db, now):
        store = SqlConditionalOrderStore(sqlite_db)
        with sqlite_db.get_session() as session:
            for created_at in ("2025-11-21T10:00:00.000Z", "2025-11-21 09:00:00", "garbage"):
                session.add(
                    ConditionalOrderModel(
                        order_id="dup", symbol="AVAX", side="long", leg_type="stop_loss",
                        trigger_price=Decimal("1"), quantity=Decimal("1"), status="cancelled",
                        created_at=created_at,
                    )
                )

        rows = await store.list_duplicate_rows("dup")

        # Unparseable timestamps sort last so they are never the survivor
        assert [r.row_id for r in rows] == [2, 1, 3]


class TestSqlInconsistencyRecorder:

    @pytest.mark.asyncio
    async def test_record_and_list(self, sqlite_db, now):
        recorder = SqlInconsistencyRecorder(sqlite_db)
        await recorder.record(
            InconsistentState(
                operation="create_protective_leg",
                symbol="AVAX",
                error_message="unpaired leg",
                created_at=now,
                details={"position_order_id": "entry-1"},
            )
        )

        states = await recorder.list_unresolved()

        assert len(states) == 1
        assert states[0].details == {"position_order_id": "entry-1"}
        assert states[0].created_at == now
        assert states[0].resolved is False
