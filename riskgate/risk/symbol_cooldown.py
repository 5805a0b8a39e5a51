"""
Symbol-level loss cooldown.

Blocks new entries in a symbol that recently produced losses. Rules are
checked in a fixed order and the first rule whose window is still open wins:

  1. most recent loss >= 15%          -> 12h after that loss
  2. >= 2 losses inside the lookback  -> 24h after the most recent loss
  3. >= 3 losses inside the lookback  -> 48h after the most recent loss
  4. a loss closed on trend reversal  -> 6h after that loss

An earlier rule whose window has already closed does not stop a later one
from firing, but an earlier rule that is still open masks a later, longer
one. Thresholds and hours come from ``CooldownConfig``.
"""
import asyncio
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from riskgate.config.config import CooldownConfig
from riskgate.domain.models import CloseReason, ClosedPositionEvent, CooldownStatus
from riskgate.domain.protocols import ClosedEventStore
from riskgate.monitoring.logger import get_logger
from riskgate.utils.symbols import normalize_to_base
from riskgate.utils.time_utils import ensure_utc, utc_now

logger = get_logger(__name__)


def round_up_hours(hours: float) -> float:
    """Round up to one decimal place (9.91h -> 10.0h)."""
    # round() first so 10.0000000001 from float arithmetic stays 10.0
    return math.ceil(round(hours * 10, 6)) / 10


class CooldownGate:
    """
    Answers "may we open a new position in this symbol right now?".

    Reads the closed-event store only. Any store failure is logged and the
    gate fails open, so an unreachable store never halts trading.
    """

    def __init__(
        self,
        store: ClosedEventStore,
        config: Optional[CooldownConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or CooldownConfig()
        self.clock = clock

    async def evaluate_cooldown(self, symbol: str, now: Optional[datetime] = None) -> CooldownStatus:
        """
        Evaluate the cooldown rules for one symbol.

        Args:
            symbol: Any symbol format (normalized to the base asset)
            now: Evaluation time, defaults to the injected clock

        Returns:
            CooldownStatus; ``in_cooldown=False`` on any read failure
        """
        base = normalize_to_base(symbol)
        now = ensure_utc(now) if now else self.clock()
        since = now - timedelta(hours=self.config.lookback_hours)

        try:
            events = await self.store.query_closed_events(base, since)
        except Exception as e:
            logger.error("Cooldown check failed, allowing entry", symbol=base, error=str(e))
            return CooldownStatus(in_cooldown=False)

        losses = sorted(
            (e for e in events if e.is_loss and e.closed_at > since),
            key=lambda e: e.closed_at,
            reverse=True,
        )
        if not losses:
            return CooldownStatus(in_cooldown=False)

        status = self._first_open_rule(losses, now)
        if status.in_cooldown:
            logger.warning(
                "COOLDOWN_ACTIVE",
                symbol=base,
                rule=status.rule,
                reason=status.reason,
                cooldown_until=status.cooldown_until.isoformat(),
                remaining_hours=status.remaining_hours,
                losses=len(losses),
            )
        return status

    async def evaluate_many(
        self, symbols: Iterable[str], now: Optional[datetime] = None
    ) -> Dict[str, CooldownStatus]:
        """Evaluate several symbols concurrently, keyed by base asset."""
        now = ensure_utc(now) if now else self.clock()
        bases = list(dict.fromkeys(normalize_to_base(s) for s in symbols))
        results = await asyncio.gather(*(self.evaluate_cooldown(b, now) for b in bases))
        return dict(zip(bases, results))

    def _first_open_rule(self, losses: List[ClosedPositionEvent], now: datetime) -> CooldownStatus:
        cfg = self.config
        latest = losses[0]

        if latest.loss_percent >= cfg.severe_loss_pct:
            status = _window(
                "severe_loss",
                f"Single loss of {latest.loss_percent:.1f}% exceeds the {cfg.severe_loss_pct:g}% threshold",
                latest.closed_at,
                cfg.severe_loss_cooldown_hours,
                now,
            )
            if status:
                return status

        if len(losses) >= cfg.repeated_loss_count:
            status = _window(
                "repeated_losses",
                f"{len(losses)} losses in the last {cfg.lookback_hours:g}h",
                latest.closed_at,
                cfg.repeated_loss_cooldown_hours,
                now,
            )
            if status:
                return status

        if len(losses) >= cfg.frequent_loss_count:
            status = _window(
                "frequent_losses",
                f"{len(losses)} losses in the last {cfg.lookback_hours:g}h, extended cooldown",
                latest.closed_at,
                cfg.frequent_loss_cooldown_hours,
                now,
            )
            if status:
                return status

        reversal = next((e for e in losses if e.close_reason == CloseReason.TREND_REVERSAL.value), None)
        if reversal is not None:
            status = _window(
                "trend_reversal",
                "Loss closed on trend reversal, waiting for the market to settle",
                reversal.closed_at,
                cfg.reversal_cooldown_hours,
                now,
            )
            if status:
                return status

        return CooldownStatus(in_cooldown=False)


def _window(rule: str, reason: str, closed_at: datetime, hours: float, now: datetime) -> Optional[CooldownStatus]:
    until = closed_at + timedelta(hours=hours)
    if now >= until:
        return None
    remaining = (until - now).total_seconds() / 3600
    return CooldownStatus(
        in_cooldown=True,
        reason=reason,
        cooldown_until=until,
        remaining_hours=round_up_hours(remaining),
        rule=rule,
    )
