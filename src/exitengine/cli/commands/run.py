"""Run the exit engine loop."""
from __future__ import annotations

import asyncio
from functools import partial

import typer

from ...bus import EventBus
from ...config import settings
from ...exit.emitter import IntentEmitter
from ...exit.governor import ControlGovernor
from ...exit.reconciliation import IntentReconciler
from ...exit.resolver import ProfileResolver
from ...exit.scheduler import TickScheduler
from ...exit.service import ExitService
from ...exit.state import PositionStateStore
from ...logging_conf import setup_logging
from ...storage.exit_sql import (
    SqlControlStore,
    SqlHoldingsFeed,
    SqlIntentStore,
    SqlPriceFeed,
    SqlProfileStore,
    SqlStateBackend,
    insert_exit_signal,
)
from ...utils.metrics import start_metrics_server
from ..utils import _open_db, _parse_pct

def build_scheduler(
    engine,
    *,
    bus: EventBus | None = None,
    require_approval: bool | None = None,
    avg_reset_pct: float | None = None,
    tick_interval_s: float | None = None,
    max_workers: int | None = None,
) -> TickScheduler:
    """Wire the exit engine against the SQL stores of ``engine``."""

    holdings = SqlHoldingsFeed(engine)
    prices = SqlPriceFeed(engine)
    intents = SqlIntentStore(engine)
    service = ExitService(
        state_store=PositionStateStore(SqlStateBackend(engine), reset_pct=avg_reset_pct),
        resolver=ProfileResolver(SqlProfileStore(engine)),
        emitter=IntentEmitter(intents, require_approval=require_approval),
        price_feed=prices,
        signal_sink=partial(insert_exit_signal, engine),
    )
    return TickScheduler(
        service,
        holdings,
        ControlGovernor(SqlControlStore(engine)),
        reconciler=IntentReconciler(intents, holdings, prices),
        bus=bus,
        tick_interval_s=tick_interval_s,
        max_workers=max_workers,
    )


def run(
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
    once: bool = typer.Option(False, "--once", help="Run a single sweep and exit"),
    tick_interval: float | None = typer.Option(None, "--tick-interval", help="Seconds between sweeps"),
    max_workers: int | None = typer.Option(None, "--max-workers", help="Concurrent evaluations"),
    require_approval: bool | None = typer.Option(
        None, "--require-approval/--no-require-approval", help="Hold intents for approval"
    ),
    avg_reset_pct: float | None = typer.Option(
        None,
        "--avg-reset-pct",
        callback=_parse_pct,
        help="Average price move that resets exit state (0-1 or 0-100)",
    ),
    metrics_port: int | None = typer.Option(None, "--metrics-port", help="Prometheus port"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (e.g., INFO, DEBUG)"),
) -> None:
    """Evaluate open positions periodically and emit exit intents."""

    setup_logging(log_level)
    port = metrics_port if metrics_port is not None else settings.metrics_port
    if port:
        start_metrics_server(port)

    scheduler = build_scheduler(
        _open_db(db_url),
        require_approval=require_approval,
        avg_reset_pct=avg_reset_pct,
        tick_interval_s=tick_interval,
        max_workers=max_workers,
    )

    async def _main() -> None:
        if once:
            await asyncio.to_thread(scheduler.service.state_store.load)
            outcomes = await scheduler.run_once()
            emitted = sum(1 for o in outcomes if o.intent is not None)
            typer.echo(f"evaluated={len(outcomes)} intents={emitted}")
            return
        try:
            await scheduler.run()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:  # pragma: no cover - interactive
        typer.echo("stopped")
