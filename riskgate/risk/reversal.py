"""
Trend-reversal classification for open positions.

Two views of the same question, "has the market turned against the reason
we entered?":

  - has_reversed: binary, from the entry and current market-state labels
  - ReversalPolicy: tiers over a 0-100 reversal score (thresholds from
    ``ReversalConfig``) mapped to an exit action
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from riskgate.config.config import ReversalConfig
from riskgate.domain.models import MarketStateSnapshot, Position, Side
from riskgate.domain.protocols import MarketStateProvider
from riskgate.monitoring.logger import get_logger
from riskgate.utils.symbols import normalize_to_base

logger = get_logger(__name__)

UPTREND_PREFIX = "uptrend"
DOWNTREND_PREFIX = "downtrend"


class ReversalTier(str, Enum):
    IMMEDIATE_EXIT = "immediate_exit"
    ADVISORY_EXIT = "advisory_exit"
    EARLY_WARNING = "early_warning"
    NONE = "none"


class ExitAction(str, Enum):
    CLOSE = "close"
    HOLD = "hold"
    FREEZE_TRAILING = "freeze_trailing"
    NONE = "none"


def _side_value(side: Union[Side, str]) -> str:
    return side.value if isinstance(side, Side) else str(side).lower()


def _state_label(state: Union[MarketStateSnapshot, str, None]) -> str:
    if isinstance(state, MarketStateSnapshot):
        return state.state or ""
    return state or ""


def has_reversed(
    position_side: Union[Side, str],
    entry_state: Union[MarketStateSnapshot, str, None],
    current_state: Union[MarketStateSnapshot, str, None],
) -> bool:
    """
    True iff a long entered in an uptrend now sees a downtrend, or a short
    entered in a downtrend now sees an uptrend. Unknown entry state -> False.
    """
    entry = _state_label(entry_state)
    current = _state_label(current_state)
    if not entry or not current:
        return False

    side = _side_value(position_side)
    if side == Side.LONG.value:
        return entry.startswith(UPTREND_PREFIX) and current.startswith(DOWNTREND_PREFIX)
    if side == Side.SHORT.value:
        return entry.startswith(DOWNTREND_PREFIX) and current.startswith(UPTREND_PREFIX)
    return False


def trend_alignment(position_side: Union[Side, str], state: Union[MarketStateSnapshot, str, None]) -> str:
    """``aligned``, ``opposed`` or ``neutral`` for a side against a state label."""
    label = _state_label(state)
    up = label.startswith(UPTREND_PREFIX)
    down = label.startswith(DOWNTREND_PREFIX)
    if not (up or down):
        return "neutral"

    side = _side_value(position_side)
    if (side == Side.LONG.value and up) or (side == Side.SHORT.value and down):
        return "aligned"
    return "opposed"


class ReversalPolicy:
    """Score tiers and the exit action each tier implies."""

    def __init__(self, config: Optional[ReversalConfig] = None):
        self.config = config or ReversalConfig()

    def classify(self, reversal_score: float) -> ReversalTier:
        cfg = self.config
        if reversal_score >= cfg.high_threshold:
            return ReversalTier.IMMEDIATE_EXIT
        if reversal_score >= cfg.medium_threshold:
            return ReversalTier.ADVISORY_EXIT
        if reversal_score >= cfg.low_threshold:
            return ReversalTier.EARLY_WARNING
        return ReversalTier.NONE

    def decide(self, reversal_score: float, pnl_percent: float) -> ExitAction:
        """
        Exit action for a score and the position's current P&L percent.

        Advisory tier closes winners and small losers (loss below
        ``advisory_max_loss_pct``) and holds anything deeper, leaving it to
        the stop.
        """
        tier = self.classify(reversal_score)
        if tier == ReversalTier.IMMEDIATE_EXIT:
            return ExitAction.CLOSE
        if tier == ReversalTier.ADVISORY_EXIT:
            if pnl_percent > -self.config.advisory_max_loss_pct:
                return ExitAction.CLOSE
            return ExitAction.HOLD
        if tier == ReversalTier.EARLY_WARNING:
            return ExitAction.FREEZE_TRAILING
        return ExitAction.NONE


@dataclass
class ReversalAssessment:
    """Combined reversal view for one position."""
    symbol: str
    reversed: bool
    tier: ReversalTier
    action: ExitAction
    reversal_score: float
    pnl_percent: float
    entry_state: Optional[str] = None
    current_state: Optional[str] = None
    alignment: str = "neutral"

    @property
    def should_close(self) -> bool:
        return self.action == ExitAction.CLOSE


class ReversalClassifier:
    """
    Per-position reversal assessment.

    The current market state comes from the injected provider. If it cannot
    be fetched the position is reported as not reversed, but the score tier
    and its exit action still apply.
    """

    def __init__(self, market_state_provider: MarketStateProvider, config: Optional[ReversalConfig] = None):
        self.provider = market_state_provider
        self.policy = ReversalPolicy(config)

    def has_reversed(self, position_side, entry_state, current_state) -> bool:
        return has_reversed(position_side, entry_state, current_state)

    def classify(self, reversal_score: float) -> ReversalTier:
        return self.policy.classify(reversal_score)

    async def assess(self, position: Position, reversal_score: float, pnl_percent: float) -> ReversalAssessment:
        base = normalize_to_base(position.symbol)
        entry_label = _state_label(position.entry_market_state) or None

        try:
            current = await self.provider.get_market_state(base)
        except Exception as e:
            logger.warning("Market state unavailable, tiering on score only", symbol=base, error=str(e))
            current = None

        current_label = _state_label(current) or None
        tier = self.policy.classify(reversal_score)
        action = self.policy.decide(reversal_score, pnl_percent)
        assessment = ReversalAssessment(
            symbol=base,
            reversed=has_reversed(position.side, entry_label, current_label),
            tier=tier,
            action=action,
            reversal_score=reversal_score,
            pnl_percent=pnl_percent,
            entry_state=entry_label,
            current_state=current_label,
            alignment=trend_alignment(position.side, current_label),
        )

        if assessment.reversed or tier != ReversalTier.NONE:
            logger.info(
                "REVERSAL_ASSESSED",
                symbol=base,
                side=_side_value(position.side),
                reversed=assessment.reversed,
                tier=tier.value,
                action=action.value,
                reversal_score=reversal_score,
                pnl_percent=pnl_percent,
                entry_state=entry_label,
                current_state=current_label,
            )
        return assessment
