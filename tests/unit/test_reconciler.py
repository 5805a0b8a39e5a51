"""
Tests for batch reconciliation of protective legs.
"""
import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from riskgate.config.config import Config, ReconciliationConfig
from riskgate.domain.models import Position, ReconcileSummary, Side
from riskgate.reconciliation.reconciler import ProtectiveOrderReconciler


def _position(symbol, n):
    return Position(
        symbol=symbol,
        side=Side.LONG,
        quantity=Decimal("1"),
        entry_order_id=f"entry-{n}",
        stop_loss=Decimal("10"),
        profit_target=Decimal("20"),
        sl_order_id=f"sl-{n}",
        tp_order_id=f"tp-{n}",
    )


class TestReconcileAll:

    @pytest.mark.asyncio
    async def test_counts_across_positions(self, ledger, venue):
        venue.orders = {
            "sl-1": {"status": "open"},
            "tp-1": {"status": "open"},
            "sl-2": {"status": "finished"},
        }
        reconciler = ProtectiveOrderReconciler(ledger, Config())

        summary = await reconciler.reconcile_all([_position("AVAX", 1), _position("SOL", 2)])

        assert summary["positions"] == 2
        assert summary["inserted"] == 3
        assert summary["failed"] == 1
        assert summary["positions_failed"] == 0

    @pytest.mark.asyncio
    async def test_one_position_failing_does_not_stop_others(self):
        ledger = AsyncMock()
        ledger.reconcile.side_effect = [RuntimeError("boom"), ReconcileSummary(inserted=2)]
        reconciler = ProtectiveOrderReconciler(ledger, Config())

        summary = await reconciler.reconcile_all([_position("AVAX", 1), _position("SOL", 2)])

        assert summary["positions_failed"] == 1
        assert summary["inserted"] == 2
        assert ledger.reconcile.await_count == 2

    @pytest.mark.asyncio
    async def test_disabled(self):
        ledger = AsyncMock()
        config = SimpleNamespace(reconciliation=ReconciliationConfig(reconcile_enabled=False))
        reconciler = ProtectiveOrderReconciler(ledger, config)

        summary = await reconciler.reconcile_all([_position("AVAX", 1)])

        assert summary["inserted"] == 0
        ledger.reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_passes_injected_lookup(self):
        ledger = AsyncMock()
        ledger.reconcile.return_value = ReconcileSummary()
        lookup = AsyncMock(return_value={"status": "open"})
        reconciler = ProtectiveOrderReconciler(ledger, Config(), venue_order_lookup=lookup)

        await reconciler.reconcile_all([_position("AVAX", 1)])

        ledger.reconcile.assert_awaited_once()
        assert ledger.reconcile.await_args.args[1] is lookup


class TestRunPeriodic:

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        ledger = AsyncMock()
        ledger.reconcile.return_value = ReconcileSummary(unchanged=2)
        reconciler = ProtectiveOrderReconciler(ledger, Config())
        reconciler.interval_seconds = 0.01
        stop = asyncio.Event()
        calls = []

        async def positions():
            calls.append(1)
            if len(calls) >= 3:
                stop.set()
            return [_position("AVAX", 1)]

        await asyncio.wait_for(reconciler.run_periodic(positions, stop), timeout=2)

        assert len(calls) == 3
        assert ledger.reconcile.await_count == 3
