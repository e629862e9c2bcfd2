"""Exit profile management."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import typer

from ...exit.profile import SymbolOverride
from ...storage.exit_sql import SqlProfileStore
from ..utils import _load_profile, _open_db

app = typer.Typer(help="Exit profiles and symbol overrides")


@app.command("validate")
def validate(path: Path = typer.Argument(..., help="Profile YAML or JSON file")) -> None:
    """Check a profile file without storing it."""

    profile = _load_profile(path)
    typer.echo(
        f"{profile.profile_id}: ok (take-profit qty {profile.take_profit_qty_pct:.2f}, "
        f"{len(profile.custom_rules)} custom rules)"
    )


@app.command("load")
def load(
    path: Path = typer.Argument(..., help="Profile YAML or JSON file"),
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """Validate a profile file and store it."""

    profile = _load_profile(path)
    SqlProfileStore(_open_db(db_url)).save_profile(profile)
    typer.echo(f"{profile.profile_id} saved")


@app.command("list")
def list_(
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """List stored profiles."""

    for p in SqlProfileStore(_open_db(db_url)).list_profiles():
        status = "active" if p.is_active else "inactive"
        typer.echo(f"{p.profile_id}\t{status}\t{p.name}")


@app.command("override")
def override(
    symbol: str = typer.Argument(..., help="Symbol the override applies to"),
    profile_id: str = typer.Argument(..., help="Profile to use for the symbol"),
    reason: str = typer.Option("", "--reason", help="Why the symbol is special"),
    disable: bool = typer.Option(False, "--disable", help="Store the override disabled"),
    db_url: str | None = typer.Option(None, "--db-url", help="Database URL"),
) -> None:
    """Assign a profile to every position of ``symbol``."""

    store = SqlProfileStore(_open_db(db_url))
    if store.get_profile(profile_id) is None:
        typer.echo(f"unknown profile {profile_id}", err=True)
        raise typer.Exit(1)
    store.set_override(
        SymbolOverride(
            symbol=symbol,
            profile_id=profile_id,
            reason=reason,
            effective_from=datetime.now(timezone.utc),
            enabled=not disable,
        )
    )
    typer.echo(f"{symbol} -> {profile_id}")
