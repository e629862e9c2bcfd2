"""Common logging utilities.

Every component of the exit engine obtains its logger through
``get_logger(__name__)`` so that names line up with the package layout and the
handlers installed by :func:`exitengine.logging_conf.setup_logging` apply.
"""

from __future__ import annotations

import logging


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger using the project's standard configuration.

    Parameters
    ----------
    name:
        Optional logger name.  When ``None`` the module name of this utility is
        used.
    """

    return logging.getLogger(name if name else __name__)


__all__ = ["get_logger"]
