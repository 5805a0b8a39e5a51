"""
Historical-loss penalty for opportunity scoring.

Turns recent loss history for a symbol into a non-negative score penalty.
The scoring step that combines it with other signals lives elsewhere.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from riskgate.domain.models import CloseReason, LossStats
from riskgate.domain.protocols import ClosedEventStore
from riskgate.monitoring.logger import get_logger
from riskgate.utils.symbols import normalize_to_base
from riskgate.utils.time_utils import ensure_utc, utc_now

logger = get_logger(__name__)

# Penalty points
BASE_LOSS_PENALTY = 20
REPEATED_LOSS_PENALTY = 20
REVERSAL_LOSS_PENALTY = 15

# (min average loss %, points), highest first; only one tier applies
AVG_LOSS_TIERS = ((20.0, 15), (15.0, 10), (10.0, 5))

REPEATED_LOSS_COUNT_48H = 2


def calculate_penalty(stats: LossStats) -> int:
    """
    Penalty points for the given loss statistics. Pure; no upper cap.

    +20 for any loss in 24h, plus one average-loss tier (+15/+10/+5 at
    20/15/10%); +20 for two or more losses in 48h; +15 for a trend-reversal
    loss in 24h.
    """
    penalty = 0

    if stats.losses_24h > 0:
        penalty += BASE_LOSS_PENALTY
        for min_avg, points in AVG_LOSS_TIERS:
            if stats.avg_loss_percent_24h >= min_avg:
                penalty += points
                break

    if stats.losses_48h >= REPEATED_LOSS_COUNT_48H:
        penalty += REPEATED_LOSS_PENALTY

    if stats.has_reversal_loss:
        penalty += REVERSAL_LOSS_PENALTY

    return penalty


class LossPenaltyScorer:
    """Loss statistics over trailing 24h/48h windows, and the derived penalty."""

    def __init__(self, store: ClosedEventStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def get_loss_stats(self, symbol: str, now: Optional[datetime] = None) -> LossStats:
        """
        Aggregate losses for ``symbol``.

        The 24h and 48h windows are independent (``closed_at > now - N``).
        Totals are signed (negative) P&L sums; the average is over absolute
        loss percentages. Returns all-zero stats if the store cannot be read.
        """
        base = normalize_to_base(symbol)
        now = ensure_utc(now) if now else self.clock()
        since_24h = now - timedelta(hours=24)
        since_48h = now - timedelta(hours=48)

        try:
            events = await self.store.query_closed_events(base, since_48h)
        except Exception as e:
            logger.error("Failed to load loss stats, using zero penalty", symbol=base, error=str(e))
            return LossStats()

        losses_48h = [e for e in events if e.is_loss and e.closed_at > since_48h]
        losses_24h = [e for e in losses_48h if e.closed_at > since_24h]

        avg_24h = (
            sum(e.loss_percent for e in losses_24h) / len(losses_24h)
            if losses_24h
            else 0.0
        )

        return LossStats(
            losses_24h=len(losses_24h),
            losses_48h=len(losses_48h),
            total_loss_24h=sum(e.pnl for e in losses_24h),
            total_loss_48h=sum(e.pnl for e in losses_48h),
            avg_loss_percent_24h=avg_24h,
            has_reversal_loss=any(e.close_reason == CloseReason.TREND_REVERSAL.value for e in losses_24h),
        )

    def calculate_penalty(self, stats: LossStats) -> int:
        return calculate_penalty(stats)

    async def penalty_for(self, symbol: str, now: Optional[datetime] = None) -> Tuple[LossStats, int]:
        """Stats and penalty for one symbol."""
        stats = await self.get_loss_stats(symbol, now)
        penalty = calculate_penalty(stats)
        if penalty:
            logger.info(
                "LOSS_PENALTY",
                symbol=normalize_to_base(symbol),
                penalty=penalty,
                losses_24h=stats.losses_24h,
                losses_48h=stats.losses_48h,
                avg_loss_percent_24h=round(stats.avg_loss_percent_24h, 2),
            )
        return stats, penalty
