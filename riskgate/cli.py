"""
CLI entrypoint for the position risk gate.

Operator commands: inspect cooldowns, penalties and protective legs, and run
the integrity tools (duplicate repair, timestamp normalization, table stats).
"""
import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer

from riskgate.config.config import Config, load_config
from riskgate.domain.models import ConditionalOrderRequest
from riskgate.exceptions import OperationalError
from riskgate.execution.conditional_orders import ConditionalOrderLedger
from riskgate.monitoring.logger import get_logger, setup_logging
from riskgate.risk.loss_penalty import LossPenaltyScorer
from riskgate.risk.symbol_cooldown import CooldownGate
from riskgate.storage.db import Database, init_db
from riskgate.storage.maintenance import DatabaseMaintenance
from riskgate.storage.repository import (
    SqlClosedEventStore,
    SqlConditionalOrderStore,
    SqlInconsistencyRecorder,
)

app = typer.Typer(
    name="riskgate",
    help="Position risk gate and protective-order ledger",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


class OfflineVenue:
    """Venue stand-in for commands that only touch the database."""

    async def place_conditional_order(self, request: ConditionalOrderRequest) -> str:
        raise OperationalError("No venue client in CLI mode")

    async def lookup_order(self, order_id: str) -> Dict[str, Any]:
        raise OperationalError("No venue client in CLI mode")

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        raise OperationalError("No venue client in CLI mode")


def _bootstrap(config_path: Path) -> Tuple[Config, Database]:
    config = load_config(str(config_path))
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    try:
        database_url = config.require_database_url()
    except ValueError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(1)
    return config, init_db(database_url, echo=config.data.echo_sql)


def _ledger(config: Config, db: Database) -> ConditionalOrderLedger:
    return ConditionalOrderLedger(
        SqlConditionalOrderStore(db),
        OfflineVenue(),
        close_event_store=SqlClosedEventStore(db),
        recorder=SqlInconsistencyRecorder(db),
        config=config.ledger,
    )


@app.command()
def cooldown(
    symbols: List[str] = typer.Argument(..., help="Symbols to check (any format, e.g. AVAX or AVAX/USDT)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Show whether each symbol is in a loss cooldown."""
    config, db = _bootstrap(config_path)
    gate = CooldownGate(SqlClosedEventStore(db), config.cooldown)

    try:
        results = asyncio.run(gate.evaluate_many(symbols))
    finally:
        db.dispose()

    for base, status in results.items():
        if status.in_cooldown:
            typer.secho(
                f"{base:<10} COOLDOWN  {status.remaining_hours:>5.1f}h  until {status.cooldown_until.isoformat()}  ({status.reason})",
                fg=typer.colors.YELLOW,
            )
        else:
            typer.secho(f"{base:<10} clear", fg=typer.colors.GREEN)


@app.command()
def penalty(
    symbol: str = typer.Argument(..., help="Symbol to score"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Show loss statistics and the resulting score penalty for a symbol."""
    _, db = _bootstrap(config_path)
    scorer = LossPenaltyScorer(SqlClosedEventStore(db))

    try:
        stats, points = asyncio.run(scorer.penalty_for(symbol))
    finally:
        db.dispose()

    typer.echo(f"Losses 24h:        {stats.losses_24h} (total {stats.total_loss_24h:.2f})")
    typer.echo(f"Losses 48h:        {stats.losses_48h} (total {stats.total_loss_48h:.2f})")
    typer.echo(f"Avg loss % 24h:    {stats.avg_loss_percent_24h:.2f}")
    typer.echo(f"Reversal loss:     {'yes' if stats.has_reversal_loss else 'no'}")
    typer.echo(f"Penalty:           {points}")


@app.command()
def legs(
    symbol: Optional[str] = typer.Option(None, "--symbol", help="Active legs for a symbol"),
    position: Optional[str] = typer.Option(None, "--position", help="Full leg history for an entry order id"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """List protective legs by symbol (active) or by entry order (all)."""
    if not symbol and not position:
        typer.secho("Pass --symbol or --position", fg=typer.colors.RED)
        raise typer.Exit(2)

    config, db = _bootstrap(config_path)
    ledger = _ledger(config, db)

    try:
        if position:
            rows = asyncio.run(ledger.legs_for_position(position))
        else:
            rows = asyncio.run(ledger.active_legs(symbol))
    finally:
        db.dispose()

    if not rows:
        typer.echo("No legs found")
        return
    for leg in rows:
        typer.echo(
            f"{leg.order_id:<20} {leg.symbol:<8} {leg.leg_type.value:<12} {leg.status.value:<10} "
            f"trigger={leg.trigger_price} qty={leg.quantity} position={leg.position_order_id or '-'}"
        )


@app.command()
def repair(
    ensure_indexes: bool = typer.Option(True, "--ensure-indexes/--no-ensure-indexes", help="Create unique indexes after repair"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Delete duplicate leg and close-event rows, keeping the earliest."""
    config, db = _bootstrap(config_path)
    ledger = _ledger(config, db)

    try:
        result = asyncio.run(ledger.repair_duplicates())
        indexes = DatabaseMaintenance(db).ensure_unique_indexes() if ensure_indexes else {}
    finally:
        db.dispose()

    typer.echo(f"Leg rows deleted:          {result.order_rows_deleted}")
    typer.echo(f"Close-event rows deleted:  {result.close_event_rows_deleted}")
    if result.groups_failed:
        typer.secho(f"Groups failed:             {result.groups_failed}", fg=typer.colors.RED)
    for name, ok in indexes.items():
        typer.secho(f"{name}: {'ok' if ok else 'FAILED'}", fg=typer.colors.GREEN if ok else typer.colors.RED)


@app.command("normalize-timestamps")
def normalize_timestamps(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Rewrite stored timestamps into the canonical UTC form."""
    _, db = _bootstrap(config_path)
    try:
        counts = DatabaseMaintenance(db).normalize_timestamps()
    finally:
        db.dispose()

    typer.echo(f"Normalized:         {counts['normalized']}")
    typer.echo(f"Already canonical:  {counts['already_canonical']}")
    if counts["unparseable"]:
        typer.secho(f"Unparseable:        {counts['unparseable']}", fg=typer.colors.RED)


@app.command()
def stats(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Row counts per table, legs per status, and recent inconsistencies."""
    _, db = _bootstrap(config_path)
    try:
        table_stats = DatabaseMaintenance(db).log_table_stats()
        unresolved = asyncio.run(SqlInconsistencyRecorder(db).list_unresolved(limit=10))
    finally:
        db.dispose()

    for name, count in table_stats.items():
        typer.echo(f"{name:<28} {count}")
    if unresolved:
        typer.echo("\nRecent unresolved inconsistencies:")
        for state in unresolved:
            typer.echo(
                f"  {state.created_at.isoformat()} {state.operation:<26} {state.symbol:<8} "
                f"{state.order_id or '-':<20} {state.error_message}"
            )


if __name__ == "__main__":
    app()
