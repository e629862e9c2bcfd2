"""Order intent inspection and approval."""
from __future__ import annotations

from typing import List

import typer

from ...exit.emitter import approve_intent, reject_intent
from ...exit.exceptions import ExitEngineError
from ...exit.models import ACTIVE_INTENT_STATUSES
from ...storage.exit_sql import SqlIntentStore
from ..utils import _open_db

app = typer.Typer(help="Order intents emitted by the exit engine")


@app.command("list")
def list_(
    status: List[str] = typer.Option([], "--status", help="Filter by status (repeatable)"),
    active: bool = typer.Option(False, "--active", help="Only active intents"),
    limit: int = typer.Option(50, "--limit", help="Maximum rows"),
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """List intents, newest first."""

    statuses = set(s.upper() for s in status)
    if active:
        statuses |= ACTIVE_INTENT_STATUSES
    store = SqlIntentStore(_open_db(db_url))
    for i in store.list(statuses=statuses or None, limit=limit):
        limit_px = "" if i.limit_price is None else f"@{i.limit_price}"
        typer.echo(
            f"{i.intent_id}\t{i.status}\t{i.position_id}\t{i.symbol}\t"
            f"{i.intent_type}\t{i.qty}\t{i.order_type}{limit_px}\t{i.reason_code}"
        )


def _decide(fn, intent_id: str, actor: str, db_url: str | None) -> None:
    store = SqlIntentStore(_open_db(db_url))
    try:
        intent = fn(store, intent_id, actor)
    except ExitEngineError as exc:
        typer.echo(f"{intent_id}: {exc}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"{intent.intent_id} {intent.status}")


@app.command("approve")
def approve(
    intent_id: str,
    actor: str = typer.Option("cli", "--by", help="Operator name"),
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """Release a PENDING_APPROVAL intent."""

    _decide(approve_intent, intent_id, actor, db_url)


@app.command("reject")
def reject(
    intent_id: str,
    actor: str = typer.Option("cli", "--by", help="Operator name"),
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """Cancel a PENDING_APPROVAL intent."""

    _decide(reject_intent, intent_id, actor, db_url)
