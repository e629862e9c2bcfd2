"""Command line entry point for exitengine.

This module registers the command groups defined under
:mod:`exitengine.cli.commands`.
"""
from __future__ import annotations

import logging
import sys

import typer

from .commands import control, intents, profile, run

log = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Position exit-risk controller")

# Register subcommands
app.command("run")(run.run)
app.add_typer(control.app, name="control")
app.add_typer(profile.app, name="profile")
app.add_typer(intents.app, name="intents")


def main() -> int:
    """Entry point used by ``python -m exitengine.cli``."""
    try:
        # click hands back the code of an explicit ``Exit`` when not standalone
        rv = app(standalone_mode=False)
        return rv if isinstance(rv, int) else 0
    except typer.Exit as exc:
        return exc.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
