"""
Domain models for the risk gate.

These are the core business objects shared by the gate, the scorer, the
reversal classifier and the protective-order ledger.
All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"


class LegType(str, Enum):
    """Protective leg type."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class ConditionalOrderStatus(str, Enum):
    """Lifecycle of a protective leg. TRIGGERED and CANCELLED are terminal."""
    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"


class CloseReason(str, Enum):
    """Known close reasons. Stores may hold other raw strings too."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TREND_REVERSAL = "trend_reversal"
    MANUAL = "manual"
    PEAK_DRAWDOWN = "peak_drawdown"
    TIME_LIMIT = "time_limit"
    PARTIAL_CLOSE = "partial_close"


@dataclass(frozen=True)
class ClosedPositionEvent:
    """
    A closed position as recorded by the close-event store.

    Append-only. ``pnl`` is in quote currency, ``pnl_percent`` is signed.
    """
    symbol: str
    pnl: float
    pnl_percent: float
    close_reason: str
    closed_at: datetime
    side: Optional[str] = None
    trigger_order_id: Optional[str] = None

    def __post_init__(self):
        if self.closed_at.tzinfo is None:
            raise ValueError("ClosedPositionEvent closed_at must be timezone-aware (UTC)")

    @property
    def is_loss(self) -> bool:
        return self.pnl < 0

    @property
    def loss_percent(self) -> float:
        """Absolute size of the move in percent."""
        return abs(self.pnl_percent)


@dataclass
class ConditionalOrder:
    """
    A protective leg (stop-loss or take-profit) resting at the venue.

    ``position_order_id`` is the entry order this leg protects; it is None
    only for legacy rows written before the column existed.
    """
    order_id: str
    symbol: str
    side: Side
    leg_type: LegType
    trigger_price: Decimal
    quantity: Decimal
    status: ConditionalOrderStatus
    created_at: datetime
    position_order_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConditionalOrderStatus.ACTIVE


@dataclass(frozen=True)
class ConditionalOrderRequest:
    """What the ledger asks the venue to place for one leg."""
    symbol: str
    side: Side
    leg_type: LegType
    trigger_price: Decimal
    quantity: Decimal
    position_order_id: Optional[str] = None

    @property
    def close_side(self) -> str:
        """Order side that reduces the position (protective legs are reduce-only)."""
        return "sell" if self.side == Side.LONG else "buy"


@dataclass(frozen=True)
class MarketStateSnapshot:
    """
    Market context produced by the external analyzer.

    ``state`` carries a directional prefix (``uptrend_*`` / ``downtrend_*``)
    or a neutral/range label.
    """
    state: str
    trend_strength: str = ""
    momentum_state: str = ""
    confidence: float = 0.0
    timeframe_alignment: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketStateSnapshot":
        """Build from analyzer output (camelCase or snake_case keys)."""
        alignment = data.get("timeframeAlignment", data.get("timeframe_alignment", 0.0))
        if isinstance(alignment, dict):
            alignment = alignment.get("alignmentScore", alignment.get("alignment_score", 0.0))
        return cls(
            state=str(data.get("state") or ""),
            trend_strength=str(data.get("trendStrength") or data.get("trend_strength") or ""),
            momentum_state=str(data.get("momentumState") or data.get("momentum_state") or ""),
            confidence=float(data.get("confidence") or 0.0),
            timeframe_alignment=float(alignment or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Position:
    """
    Open position as seen by the entry/monitoring flows (referenced, not owned).
    """
    symbol: str
    side: Side
    quantity: Decimal
    entry_order_id: Optional[str] = None
    stop_loss: Optional[Decimal] = None
    profit_target: Optional[Decimal] = None
    sl_order_id: Optional[str] = None
    tp_order_id: Optional[str] = None
    entry_market_state: Optional[MarketStateSnapshot] = None


@dataclass
class CooldownStatus:
    """Answer of the cooldown gate for one symbol."""
    in_cooldown: bool
    reason: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    remaining_hours: Optional[float] = None
    rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_cooldown": self.in_cooldown,
            "reason": self.reason,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "remaining_hours": self.remaining_hours,
            "rule": self.rule,
        }


@dataclass
class LossStats:
    """Loss aggregates over the trailing 24h and 48h windows."""
    losses_24h: int = 0
    losses_48h: int = 0
    total_loss_24h: float = 0.0
    total_loss_48h: float = 0.0
    avg_loss_percent_24h: float = 0.0
    has_reversal_loss: bool = False


@dataclass
class ProtectivePair:
    """Venue order ids of a stop-loss / take-profit pair (either may be missing)."""
    sl_order_id: Optional[str] = None
    tp_order_id: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.sl_order_id is not None and self.tp_order_id is not None


@dataclass
class ReconcileSummary:
    """Counts from reconciling one or more positions against the venue."""
    inserted: int = 0
    backfilled: int = 0
    unchanged: int = 0
    failed: int = 0

    def merge(self, other: "ReconcileSummary") -> None:
        self.inserted += other.inserted
        self.backfilled += other.backfilled
        self.unchanged += other.unchanged
        self.failed += other.failed


@dataclass
class RepairResult:
    """Outcome of a duplicate-repair pass."""
    order_rows_deleted: int = 0
    close_event_rows_deleted: int = 0
    groups_failed: int = 0

    @property
    def deleted_count(self) -> int:
        return self.order_rows_deleted + self.close_event_rows_deleted


@dataclass(frozen=True)
class StoredRow:
    """Row identity used by duplicate repair (surrogate id + parsed creation time)."""
    row_id: int
    created_at: datetime


@dataclass
class InconsistentState:
    """Non-fatal integrity problem recorded for later inspection."""
    operation: str
    symbol: str
    error_message: str
    created_at: datetime
    order_id: Optional[str] = None
    resolved: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
