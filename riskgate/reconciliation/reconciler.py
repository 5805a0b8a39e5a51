"""
Reconciliation of protective legs for all open positions.

Ensures the ledger matches what the venue reports for every position's
stop-loss / take-profit ids:
- Leg id the ledger has never seen -> looked up at the venue and inserted.
- Legacy row without a position_order_id -> backfilled from the entry order.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from riskgate.domain.models import Position, ReconcileSummary
from riskgate.domain.protocols import VenueOrderLookup
from riskgate.execution.conditional_orders import ConditionalOrderLedger
from riskgate.monitoring.logger import get_logger

logger = get_logger(__name__)

PositionsFn = Callable[[], Awaitable[Iterable[Position]]]


class ProtectiveOrderReconciler:
    """
    Batch reconciliation over open positions. Logs RECONCILE_SUMMARY with
    counts; one position failing never stops the others.
    """

    def __init__(
        self,
        ledger: ConditionalOrderLedger,
        config: Any = None,
        *,
        venue_order_lookup: Optional[VenueOrderLookup] = None,
    ):
        self.ledger = ledger
        self.config = config
        self.venue_order_lookup = venue_order_lookup

        recon_cfg = getattr(config, "reconciliation", None)
        self.reconcile_enabled = getattr(recon_cfg, "reconcile_enabled", True)
        self.interval_seconds = getattr(recon_cfg, "periodic_interval_seconds", 300)

    async def reconcile_all(self, positions: Iterable[Position]) -> Dict[str, int]:
        """
        Reconcile every position. Returns summary counts.
        """
        summary = ReconcileSummary()
        positions = list(positions)

        if not self.reconcile_enabled:
            logger.info("RECONCILE_SUMMARY", reconcile_disabled=True, positions=len(positions))
            return _as_dict(summary, positions=0, positions_failed=0)

        logger.info("RECONCILE_START", positions=len(positions))
        positions_failed = 0

        for position in positions:
            try:
                result = await self.ledger.reconcile(position, self.venue_order_lookup)
                summary.merge(result)
            except Exception as e:
                positions_failed += 1
                logger.error(
                    "Reconcile failed for position",
                    symbol=position.symbol,
                    entry_order_id=position.entry_order_id,
                    error=str(e),
                )

        logger.info(
            "RECONCILE_SUMMARY",
            positions=len(positions),
            positions_failed=positions_failed,
            inserted=summary.inserted,
            backfilled=summary.backfilled,
            unchanged=summary.unchanged,
            failed=summary.failed,
        )
        logger.info("RECONCILE_END")
        return _as_dict(summary, positions=len(positions), positions_failed=positions_failed)

    async def run_periodic(self, positions_fn: PositionsFn, stop_event: asyncio.Event) -> None:
        """
        Reconcile at start-up and then every ``periodic_interval_seconds``
        until ``stop_event`` is set.
        """
        while not stop_event.is_set():
            try:
                await self.reconcile_all(await positions_fn())
            except Exception as e:
                logger.error("Periodic reconciliation failed", error=str(e))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass


def _as_dict(summary: ReconcileSummary, **extra: int) -> Dict[str, int]:
    return {
        "inserted": summary.inserted,
        "backfilled": summary.backfilled,
        "unchanged": summary.unchanged,
        "failed": summary.failed,
        **extra,
    }
