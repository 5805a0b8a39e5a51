"""
Database maintenance service.

Keeps the ledger tables queryable by window and safe against duplicates:

  - normalize_timestamps: rewrite every timestamp column into the canonical
    ``YYYY-MM-DDTHH:MM:SS.mmmZ`` form (window queries compare strings)
  - ensure_unique_indexes: one row per venue order id, enforced by the
    database once legacy duplicates have been repaired
  - log_table_stats: row counts per table and per leg status
"""
from typing import Dict, List, Tuple

from sqlalchemy import text, func

from riskgate.monitoring.logger import get_logger
from riskgate.storage.db import Database
from riskgate.storage.repository import (
    ClosedPositionEventModel,
    ConditionalOrderModel,
    InconsistentStateModel,
)
from riskgate.utils.time_utils import parse_utc, to_utc_iso

logger = get_logger(__name__)

# (model, timestamp attributes) for every table that stores text timestamps
TIMESTAMP_COLUMNS: List[Tuple[type, Tuple[str, ...]]] = [
    (ClosedPositionEventModel, ("created_at",)),
    (ConditionalOrderModel, ("created_at", "updated_at")),
    (InconsistentStateModel, ("created_at",)),
]

# name -> DDL; both PostgreSQL and SQLite accept partial unique indexes
UNIQUE_INDEXES: Dict[str, str] = {
    "idx_price_orders_order_id_unique": (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_price_orders_order_id_unique "
        "ON price_orders (order_id)"
    ),
    "idx_close_events_trigger_order_unique": (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_close_events_trigger_order_unique "
        "ON position_close_events (trigger_order_id) "
        "WHERE trigger_order_id IS NOT NULL"
    ),
}


class DatabaseMaintenance:
    """Integrity maintenance for the ledger tables."""

    def __init__(self, db: Database):
        self.db = db

    def normalize_timestamps(self) -> Dict[str, int]:
        """
        Rewrite non-canonical timestamps in place.

        Values that cannot be parsed are counted and logged, never guessed.

        Returns:
            Counts: ``normalized``, ``unparseable``, ``already_canonical``
        """
        counts = {"normalized": 0, "unparseable": 0, "already_canonical": 0}

        for model, columns in TIMESTAMP_COLUMNS:
            table = model.__tablename__
            for attr in columns:
                column = getattr(model, attr)
                column_counts = {"normalized": 0, "unparseable": 0, "already_canonical": 0}
                try:
                    with self.db.get_session() as session:
                        rows = (
                            session.query(model.id, column)
                            .filter(column.isnot(None))
                            .all()
                        )
                        for row_id, value in rows:
                            try:
                                canonical = to_utc_iso(parse_utc(value))
                            except ValueError:
                                column_counts["unparseable"] += 1
                                logger.warning(
                                    "Unparseable timestamp left as-is",
                                    table=table,
                                    column=attr,
                                    row_id=row_id,
                                    value=value,
                                )
                                continue

                            if canonical == value:
                                column_counts["already_canonical"] += 1
                                continue

                            session.query(model).filter(model.id == row_id).update(
                                {column: canonical}, synchronize_session=False
                            )
                            column_counts["normalized"] += 1
                except Exception as e:
                    logger.error(
                        "Failed to normalize timestamps",
                        table=table,
                        column=attr,
                        error=str(e),
                    )
                    continue

                # Counted only once the session committed
                for key, n in column_counts.items():
                    counts[key] += n

        logger.info("TIMESTAMPS_NORMALIZED", **counts)
        return counts

    def ensure_unique_indexes(self) -> Dict[str, bool]:
        """
        Create the one-row-per-order-id unique indexes if they are missing.

        Creation fails while duplicates still exist; that is logged and
        reported as ``False`` so the caller can run duplicate repair first.
        """
        results: Dict[str, bool] = {}
        for name, ddl in UNIQUE_INDEXES.items():
            try:
                with self.db.engine.begin() as conn:
                    conn.execute(text(ddl))
                results[name] = True
                logger.info("UNIQUE_INDEX_READY", index=name)
            except Exception as e:
                results[name] = False
                logger.error(
                    "Failed to create unique index (duplicates present?)",
                    index=name,
                    error=str(e),
                )
        return results

    def log_table_stats(self) -> Dict[str, int]:
        """
        Log row counts for each ledger table, plus protective legs by status.
        """
        stats: Dict[str, int] = {}
        with self.db.get_session() as session:
            try:
                for model, name in [
                    (ClosedPositionEventModel, "position_close_events"),
                    (ConditionalOrderModel, "price_orders"),
                    (InconsistentStateModel, "inconsistent_states"),
                ]:
                    stats[name] = session.query(func.count()).select_from(model).scalar() or 0

                status_counts = (
                    session.query(ConditionalOrderModel.status, func.count())
                    .group_by(ConditionalOrderModel.status)
                    .all()
                )
                for status, cnt in status_counts:
                    stats[f"price_orders_{status}"] = cnt

                stats["inconsistent_unresolved"] = (
                    session.query(func.count())
                    .select_from(InconsistentStateModel)
                    .filter(InconsistentStateModel.resolved.is_(False))
                    .scalar()
                    or 0
                )

                logger.info("DB_TABLE_STATS", **stats)
            except Exception as e:
                logger.warning("Failed to gather table stats", error=str(e))

        return stats

    def run_maintenance(self) -> dict:
        """Normalize timestamps, enforce unique indexes and log table stats."""
        logger.info("Starting database maintenance...")

        timestamps = self.normalize_timestamps()
        indexes = self.ensure_unique_indexes()

        self.log_table_stats()

        return {
            "timestamps": timestamps,
            "unique_indexes": indexes,
        }
