"""Utility helpers for the exitengine command line interface."""

from __future__ import annotations

from pathlib import Path

import typer

from ..exit.exceptions import ValidationError
from ..exit.profile import ExitProfile
from ..storage.exit_sql import get_engine, init_schema
from ..utils.pct import normalize_pct


def _parse_pct(value: float | None) -> float | None:
    """Accept a percentage either as fraction (0-1) or percent (0-100)."""

    if value is None:
        return None
    try:
        return normalize_pct(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _open_db(db_url: str | None):
    """Return an engine for ``db_url`` with the exit schema in place."""

    engine = get_engine(db_url)
    init_schema(engine)
    return engine


def _load_profile(path: Path) -> ExitProfile:
    """Read and validate a profile from a YAML or JSON file."""

    if not path.exists():
        raise typer.BadParameter(f"{path} does not exist")
    if path.suffix.lower() == ".json":
        profile = ExitProfile.from_json(path)
    else:
        profile = ExitProfile.from_yaml(path)
    try:
        return profile.validate()
    except ValidationError as exc:
        typer.echo(f"invalid profile {path}: {exc}", err=True)
        raise typer.Exit(1) from exc
