"""Conversion between percent-integer and fraction scales.

Internally every threshold is a signed decimal fraction (``-0.05`` is -5%).
Operator facing payloads (the dashboard's custom rule editor, CLI flags) use
the percent scale where ``5`` means 5%.  All conversions go through this
module.
"""

from __future__ import annotations


def pct_to_fraction(value: float) -> float:
    """Return ``value`` expressed in percent (``7`` -> ``0.07``)."""

    return float(value) / 100.0


def fraction_to_pct(value: float) -> float:
    """Return fraction ``value`` in percent (``0.07`` -> ``7``).

    The result is rounded to 10 decimals so a round trip through
    :func:`pct_to_fraction` does not accumulate binary noise.
    """

    return round(float(value) * 100.0, 10)


def normalize_pct(value: float, *, signed: bool = False) -> float:
    """Accept either scale and return a fraction.

    Magnitudes from ``1`` up to ``100`` are percentages (``1`` means 1%),
    smaller magnitudes are fractions already.  Anything beyond raises
    :class:`ValueError`.
    """

    val = float(value)
    if val < 0 and not signed:
        raise ValueError("percentage must be non-negative")
    mag = abs(val)
    if mag >= 1:
        if mag <= 100:
            return val / 100.0
        raise ValueError("percentage must be between 0 and 1 or 0 and 100")
    return val


__all__ = ["pct_to_fraction", "fraction_to_pct", "normalize_pct"]
