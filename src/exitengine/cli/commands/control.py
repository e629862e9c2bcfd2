"""Inspect and change the control mode of the exit engine."""
from __future__ import annotations

import typer

from ...exit.exceptions import ValidationError
from ...exit.governor import ControlGovernor
from ...storage.exit_sql import SqlControlStore
from ..utils import _open_db

app = typer.Typer(help="Exit engine control mode")


@app.command("show")
def show(
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """Print the current control mode."""

    state = ControlGovernor(SqlControlStore(_open_db(db_url))).state()
    updated = state.updated_ts.isoformat() if state.updated_ts else "-"
    typer.echo(f"mode={state.mode} by={state.updated_by} at={updated} reason={state.reason or ''}")


@app.command("set")
def set_(
    mode: str = typer.Argument(..., help="RUNNING, PAUSE_ALL, PAUSE_PROFIT or EMERGENCY_FLATTEN"),
    reason: str | None = typer.Option(None, "--reason", help="Why the mode changes"),
    updated_by: str = typer.Option("cli", "--by", help="Operator name"),
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """Switch the control mode."""

    governor = ControlGovernor(SqlControlStore(_open_db(db_url)))
    try:
        state = governor.set_mode(mode, reason=reason, updated_by=updated_by)
    except ValidationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"mode={state.mode}")
