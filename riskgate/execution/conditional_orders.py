"""
Protective-order ledger.

Keeps the mapping between an entry order (``position_order_id``) and the
stop-loss / take-profit legs resting at the venue, through:

- creation of the pair right after entry
- replacement when a stop or target is moved
- reconciliation against venue-reported order state
- repair of duplicate rows left by older writers

Invariant: per position_order_id, at most one ACTIVE leg per leg type, and
every replacement leg carries the position_order_id of the pair it replaces.
"""
import asyncio
from collections import defaultdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional, Tuple, Union

from riskgate.config.config import LedgerConfig
from riskgate.domain.models import (
    ConditionalOrder,
    ConditionalOrderRequest,
    ConditionalOrderStatus,
    InconsistentState,
    LegType,
    Position,
    ProtectivePair,
    ReconcileSummary,
    RepairResult,
    Side,
)
from riskgate.domain.protocols import (
    ClosedEventStore,
    ConditionalOrderStore,
    DuplicateRepairable,
    InconsistencyRecorder,
    NullInconsistencyRecorder,
    VenueClient,
    VenueOrderLookup,
)
from riskgate.exceptions import (
    IntegrityViolation,
    InvariantError,
    ProtectionIncompleteError,
    ValidationError,
)
from riskgate.monitoring.logger import get_logger
from riskgate.utils.retry import retry_on_transient_errors
from riskgate.utils.symbols import normalize_to_base
from riskgate.utils.time_utils import utc_now

logger = get_logger(__name__)

PriceLike = Union[Decimal, float, int, str, None]


def map_venue_status(status: Optional[str]) -> ConditionalOrderStatus:
    """Venue order status -> leg status: open=active, finished=triggered, anything else cancelled."""
    value = (status or "").strip().lower()
    if value == "open":
        return ConditionalOrderStatus.ACTIVE
    if value == "finished":
        return ConditionalOrderStatus.TRIGGERED
    return ConditionalOrderStatus.CANCELLED


def _to_decimal(value: PriceLike) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _as_side(side: Union[Side, str]) -> Side:
    return side if isinstance(side, Side) else Side(str(side).strip().lower())


def _validate_positive(name: str, value: PriceLike) -> Decimal:
    dec = _to_decimal(value)
    if dec is None or not dec.is_finite() or dec <= 0:
        raise ValidationError(f"{name} must be a positive number (got {value!r})")
    return dec


class ConditionalOrderLedger:
    """
    Owns every write to the protective-leg table.

    Mutations on one symbol are serialized by a per-symbol asyncio.Lock;
    different symbols proceed independently.
    """

    def __init__(
        self,
        order_store: ConditionalOrderStore,
        venue: VenueClient,
        *,
        close_event_store: Optional[ClosedEventStore] = None,
        recorder: Optional[InconsistencyRecorder] = None,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.order_store = order_store
        self.venue = venue
        self.close_event_store = close_event_store
        self.recorder = recorder or NullInconsistencyRecorder()
        self.config = config or LedgerConfig()
        self.clock = clock

        self._symbol_locks = defaultdict(asyncio.Lock)

        self._venue_retry = retry_on_transient_errors(
            max_retries=self.config.venue_max_retries,
            base_delay=self.config.venue_retry_base_delay,
            max_backoff=self.config.venue_retry_max_backoff,
        )

    # ------------------------------------------------------------------
    # Creation / replacement
    # ------------------------------------------------------------------

    async def create_protective_pair(
        self,
        position_order_id: str,
        symbol: str,
        side: Union[Side, str],
        stop_price: PriceLike,
        target_price: PriceLike,
        quantity: PriceLike,
    ) -> ProtectivePair:
        """
        Place and persist the stop-loss / take-profit pair for a new position.

        Legs are independent. An invalid leg (missing or non-positive price)
        is recorded as an unpaired leg and skipped. A leg type that already
        has an active row for this position is kept as-is, so the call can be
        repeated after a partial failure.

        Raises:
            ValidationError: position_order_id is missing
            InvariantError: the position already has two active legs of a type
            ProtectionIncompleteError: a leg failed at the venue or in the
                store; raised after both legs were attempted
        """
        if not position_order_id:
            raise ValidationError("create_protective_pair requires the entry order id")

        base = normalize_to_base(symbol)
        side = _as_side(side)

        async with self._symbol_locks[base]:
            existing = await self._active_by_type(position_order_id)
            pair, failures = await self._place_legs(
                base,
                side,
                position_order_id,
                [(LegType.STOP_LOSS, stop_price), (LegType.TAKE_PROFIT, target_price)],
                quantity,
                existing=existing,
            )

        logger.info(
            "LEDGER_CREATE",
            symbol=base,
            position_order_id=position_order_id,
            sl_order_id=pair.sl_order_id,
            tp_order_id=pair.tp_order_id,
            failed_legs=list(failures),
        )
        if failures:
            raise ProtectionIncompleteError(
                f"Protective pair for {base} incomplete: {', '.join(failures)} failed",
                result=pair,
                failures=failures,
            )
        return pair

    async def replace_protective_pair(
        self,
        symbol: str,
        new_stop_price: PriceLike = None,
        new_target_price: PriceLike = None,
    ) -> ProtectivePair:
        """
        Move the stop and/or target of the position protected on ``symbol``.

        All active legs are cancelled in one transaction, then re-placed: a
        leg with a new price uses it, the other keeps its previous trigger
        price. Both carry the position_order_id recovered from the retired
        legs, so the link to the entry order survives any number of moves.

        Raises:
            ValidationError: no active legs to replace, or a non-positive price
            ProtectionIncompleteError: a new leg failed (the old ones are
                already cancelled)
        """
        base = normalize_to_base(symbol)
        if new_stop_price is not None:
            _validate_positive("new_stop_price", new_stop_price)
        if new_target_price is not None:
            _validate_positive("new_target_price", new_target_price)

        async with self._symbol_locks[base]:
            active = await self.order_store.list_active(base)
            if not active:
                raise ValidationError(f"No active protective legs for {base}, nothing to replace")

            position_order_id = next((o.position_order_id for o in active if o.position_order_id), None)
            if position_order_id is None:
                await self._record(
                    "replace_protective_pair",
                    base,
                    "Active legs carry no position_order_id; replacement legs stay unlinked",
                )

            previous: Dict[LegType, ConditionalOrder] = {}
            for order in active:
                if order.leg_type in previous:
                    await self._record(
                        "replace_protective_pair",
                        base,
                        f"More than one active {order.leg_type.value} leg",
                        order_id=order.order_id,
                        kept_order_id=previous[order.leg_type].order_id,
                    )
                # Most recent wins; list_active is oldest first
                previous[order.leg_type] = order

            template = previous.get(LegType.STOP_LOSS) or active[0]
            side = template.side
            quantity = template.quantity

            retired = await self.order_store.cancel_active(base, self.clock())
            logger.info(
                "LEDGER_REPLACE",
                symbol=base,
                position_order_id=position_order_id,
                retired=[o.order_id for o in retired],
                new_stop_price=str(new_stop_price) if new_stop_price is not None else None,
                new_target_price=str(new_target_price) if new_target_price is not None else None,
            )
            if self.config.cancel_replaced_at_venue:
                await self._cancel_at_venue(base, retired)

            legs: List[Tuple[LegType, PriceLike]] = []
            for leg_type, new_price in (
                (LegType.STOP_LOSS, new_stop_price),
                (LegType.TAKE_PROFIT, new_target_price),
            ):
                price = new_price if new_price is not None else (
                    previous[leg_type].trigger_price if leg_type in previous else None
                )
                if price is None:
                    logger.debug("No previous or new price for leg, not placing", symbol=base, leg=leg_type.value)
                    continue
                legs.append((leg_type, price))

            pair, failures = await self._place_legs(base, side, position_order_id, legs, quantity)

        if failures:
            raise ProtectionIncompleteError(
                f"Replacement pair for {base} incomplete: {', '.join(failures)} failed",
                result=pair,
                failures=failures,
            )
        return pair

    async def _active_by_type(self, position_order_id: str) -> Dict[LegType, ConditionalOrder]:
        by_type: Dict[LegType, List[ConditionalOrder]] = defaultdict(list)
        for order in await self.order_store.list_for_position(position_order_id):
            if order.is_active:
                by_type[order.leg_type].append(order)

        for leg_type, rows in by_type.items():
            if len(rows) > 1:
                raise InvariantError(
                    f"position {position_order_id} has {len(rows)} active {leg_type.value} legs: "
                    f"{[o.order_id for o in rows]}"
                )
        return {leg_type: rows[0] for leg_type, rows in by_type.items()}

    async def _place_legs(
        self,
        symbol: str,
        side: Side,
        position_order_id: Optional[str],
        legs: List[Tuple[LegType, PriceLike]],
        quantity: PriceLike,
        existing: Optional[Dict[LegType, ConditionalOrder]] = None,
    ) -> Tuple[ProtectivePair, Dict[str, Exception]]:
        pair = ProtectivePair()
        failures: Dict[str, Exception] = {}
        existing = existing or {}

        for leg_type, price in legs:
            if leg_type in existing:
                order_id = existing[leg_type].order_id
                logger.warning(
                    "Leg already active for position, keeping it",
                    symbol=symbol,
                    leg=leg_type.value,
                    order_id=order_id,
                    position_order_id=position_order_id,
                )
            else:
                try:
                    order_id = await self._place_leg(symbol, side, leg_type, price, quantity, position_order_id)
                except ValidationError as e:
                    logger.warning("Protective leg rejected", symbol=symbol, leg=leg_type.value, error=str(e))
                    await self._record(
                        "create_protective_leg",
                        symbol,
                        f"unpaired leg: {leg_type.value} not placed ({e})",
                        position_order_id=position_order_id,
                    )
                    continue
                except Exception as e:
                    logger.error(
                        "Protective leg failed",
                        symbol=symbol,
                        leg=leg_type.value,
                        position_order_id=position_order_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    failures[leg_type.value] = e
                    continue

            if leg_type == LegType.STOP_LOSS:
                pair.sl_order_id = order_id
            else:
                pair.tp_order_id = order_id

        return pair, failures

    async def _place_leg(
        self,
        symbol: str,
        side: Side,
        leg_type: LegType,
        price: PriceLike,
        quantity: PriceLike,
        position_order_id: Optional[str],
    ) -> str:
        trigger_price = _validate_positive(f"{leg_type.value} price", price)
        qty = _validate_positive("quantity", quantity)

        request = ConditionalOrderRequest(
            symbol=symbol,
            side=side,
            leg_type=leg_type,
            trigger_price=trigger_price,
            quantity=qty,
            position_order_id=position_order_id,
        )
        order_id = await self._place_at_venue(request)

        order = ConditionalOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            leg_type=leg_type,
            trigger_price=trigger_price,
            quantity=qty,
            status=ConditionalOrderStatus.ACTIVE,
            created_at=self.clock(),
            position_order_id=position_order_id,
        )
        try:
            await self.order_store.insert(order)
        except IntegrityViolation as e:
            # The row already exists; the venue order is real, so report it
            await self._record(
                "insert_conditional_order",
                symbol,
                str(e),
                order_id=order_id,
                position_order_id=position_order_id,
            )
        return order_id

    async def _place_at_venue(self, request: ConditionalOrderRequest) -> str:
        return await self._venue_retry(self.venue.place_conditional_order)(request)

    async def _cancel_at_venue(self, symbol: str, retired: List[ConditionalOrder]) -> None:
        for order in retired:
            try:
                await self.venue.cancel_order(order.order_id, symbol)
            except Exception as e:
                logger.warning(
                    "Venue cancel of retired leg failed",
                    symbol=symbol,
                    order_id=order.order_id,
                    error=str(e),
                )
                await self._record(
                    "cancel_retired_leg",
                    symbol,
                    f"venue cancel failed: {e}",
                    order_id=order.order_id,
                )

    # ------------------------------------------------------------------
    # Reconciliation / lifecycle
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        position: Position,
        venue_order_lookup: Optional[VenueOrderLookup] = None,
    ) -> ReconcileSummary:
        """
        Bring the ledger in line with the leg ids a position knows about.

        Unknown ids are looked up at the venue and inserted with the mapped
        status and ``position_order_id = entry_order_id``; known rows that
        lack a position_order_id are backfilled. Each order is handled
        independently, and re-running is a no-op.
        """
        lookup = venue_order_lookup or self.venue.lookup_order
        base = normalize_to_base(position.symbol)
        side = _as_side(position.side)
        summary = ReconcileSummary()

        legs = (
            (LegType.STOP_LOSS, position.sl_order_id, position.stop_loss),
            (LegType.TAKE_PROFIT, position.tp_order_id, position.profit_target),
        )

        async with self._symbol_locks[base]:
            for leg_type, order_id, price in legs:
                if not order_id or price is None:
                    continue
                try:
                    existing = await self.order_store.get(order_id)
                    if existing is not None:
                        if existing.position_order_id is None and position.entry_order_id:
                            if await self.order_store.set_position_order_id(order_id, position.entry_order_id):
                                summary.backfilled += 1
                                logger.info(
                                    "Backfilled position_order_id",
                                    symbol=base,
                                    order_id=order_id,
                                    position_order_id=position.entry_order_id,
                                )
                                continue
                        summary.unchanged += 1
                        continue

                    detail = await lookup(order_id)
                    status = map_venue_status((detail or {}).get("status"))
                    await self.order_store.insert(
                        ConditionalOrder(
                            order_id=order_id,
                            symbol=base,
                            side=side,
                            leg_type=leg_type,
                            trigger_price=Decimal(str(price)),
                            quantity=Decimal(str(position.quantity)),
                            status=status,
                            created_at=self.clock(),
                            position_order_id=position.entry_order_id,
                        )
                    )
                    summary.inserted += 1
                    logger.info(
                        "Synced leg from venue",
                        symbol=base,
                        leg=leg_type.value,
                        order_id=order_id,
                        status=status.value,
                        position_order_id=position.entry_order_id,
                    )
                except IntegrityViolation as e:
                    summary.unchanged += 1
                    await self._record("reconcile", base, str(e), order_id=order_id)
                except Exception as e:
                    summary.failed += 1
                    logger.warning(
                        "Leg lookup failed, skipping (may have been triggered or cancelled)",
                        symbol=base,
                        leg=leg_type.value,
                        order_id=order_id,
                        error=str(e),
                    )

        return summary

    async def mark_triggered(self, order_id: str) -> bool:
        """
        Record a venue-reported fill: ACTIVE -> TRIGGERED.

        Returns False for unknown ids and for rows already terminal.
        """
        existing = await self.order_store.get(order_id)
        if existing is None:
            logger.warning("mark_triggered for unknown order", order_id=order_id)
            return False

        async with self._symbol_locks[existing.symbol]:
            updated = await self.order_store.mark_triggered(order_id, self.clock())

        if updated:
            logger.info(
                "LEDGER_TRIGGERED",
                symbol=existing.symbol,
                order_id=order_id,
                leg=existing.leg_type.value,
                position_order_id=existing.position_order_id,
            )
        return updated

    async def legs_for_position(self, position_order_id: str) -> List[ConditionalOrder]:
        """Every leg ever placed for an entry order, across replacements."""
        return await self.order_store.list_for_position(position_order_id)

    async def active_legs(self, symbol: str) -> List[ConditionalOrder]:
        return await self.order_store.list_active(normalize_to_base(symbol))

    # ------------------------------------------------------------------
    # Duplicate repair
    # ------------------------------------------------------------------

    async def repair_duplicates(self) -> RepairResult:
        """
        Delete duplicate rows, keeping the earliest per order id.

        Groups leg rows by ``order_id`` and close events by
        ``trigger_order_id``. Ties on creation time keep the lowest row id.
        A failing group is logged and skipped; a second run deletes nothing.
        """
        result = RepairResult()

        targets: List[Tuple[str, Optional[DuplicateRepairable], str]] = [
            ("price_orders", self.order_store, "order_rows_deleted"),
            ("position_close_events", self.close_event_store, "close_event_rows_deleted"),
        ]
        for table, store, counter in targets:
            if store is None:
                continue
            try:
                keys = await store.find_duplicate_keys()
            except Exception as e:
                result.groups_failed += 1
                logger.error("Failed to scan for duplicates", table=table, error=str(e))
                continue

            for key in keys:
                try:
                    rows = await store.list_duplicate_rows(key)
                    if len(rows) < 2:
                        continue
                    ordered = sorted(rows, key=lambda r: (r.created_at, r.row_id))
                    deleted = await store.delete_rows([r.row_id for r in ordered[1:]])
                    setattr(result, counter, getattr(result, counter) + deleted)
                    logger.info(
                        "Removed duplicate rows",
                        table=table,
                        key=key,
                        kept_row_id=ordered[0].row_id,
                        deleted=deleted,
                    )
                except Exception as e:
                    result.groups_failed += 1
                    logger.error("Duplicate repair failed for group", table=table, key=key, error=str(e))

        logger.info(
            "REPAIR_SUMMARY",
            order_rows_deleted=result.order_rows_deleted,
            close_event_rows_deleted=result.close_event_rows_deleted,
            groups_failed=result.groups_failed,
        )
        return result

    # ------------------------------------------------------------------

    async def _record(self, operation: str, symbol: str, message: str, order_id: Optional[str] = None, **details) -> None:
        try:
            await self.recorder.record(
                InconsistentState(
                    operation=operation,
                    symbol=symbol,
                    error_message=message,
                    created_at=self.clock(),
                    order_id=order_id,
                    details=details,
                )
            )
        except Exception as e:
            logger.error(
                "Failed to record inconsistent state",
                operation=operation,
                symbol=symbol,
                message=message,
                error=str(e),
            )
