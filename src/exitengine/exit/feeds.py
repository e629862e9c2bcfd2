"""Interfaces of the external collaborators consumed by the exit engine.

The evaluator never talks to a broker or a market-data source directly; it
reads snapshots through these protocols.  In-memory implementations are
provided for tests and paper runs, SQL implementations live in
:mod:`exitengine.storage.exit_sql`.
"""

from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Iterable, Mapping, Protocol

from .models import Position, PriceQuote, utcnow


class PriceFeed(Protocol):
    """Latest price per symbol."""

    def get_quote(self, symbol: str) -> PriceQuote | None:
        """Return the latest quote for ``symbol`` or ``None`` if unknown."""
        ...


class HoldingsFeed(Protocol):
    """Snapshot of positions, read once per cycle."""

    def open_positions(self) -> list[Position]:
        """Return every position with ``qty > 0``."""
        ...


class ATRProvider(Protocol):
    """Optional volatility source used to scale SL/TP thresholds."""

    def get_atr_pct(self, symbol: str) -> float | None:
        ...


class MemoryPriceFeed:
    def __init__(self, quotes: Mapping[str, PriceQuote] | None = None) -> None:
        self._quotes: dict[str, PriceQuote] = dict(quotes or {})
        self._lock = Lock()

    def update(self, symbol: str, price: float, as_of_ts: datetime | None = None) -> PriceQuote:
        quote = PriceQuote(symbol=symbol, price=float(price), as_of_ts=as_of_ts or utcnow())
        with self._lock:
            self._quotes[symbol] = quote
        return quote

    def get_quote(self, symbol: str) -> PriceQuote | None:
        with self._lock:
            return self._quotes.get(symbol)


class MemoryHoldingsFeed:
    def __init__(self, positions: Iterable[Position] = ()) -> None:
        self._positions: dict[str, Position] = {p.position_id: p for p in positions}
        self._lock = Lock()

    def upsert(self, position: Position) -> None:
        with self._lock:
            self._positions[position.position_id] = position

    def remove(self, position_id: str) -> None:
        with self._lock:
            self._positions.pop(position_id, None)

    def open_positions(self) -> list[Position]:
        with self._lock:
            return [p for p in self._positions.values() if p.qty > 0]


class StaticATRProvider:
    def __init__(self, values: Mapping[str, float] | None = None) -> None:
        self.values = dict(values or {})

    def get_atr_pct(self, symbol: str) -> float | None:
        return self.values.get(symbol)


__all__ = [
    "PriceFeed",
    "HoldingsFeed",
    "ATRProvider",
    "MemoryPriceFeed",
    "MemoryHoldingsFeed",
    "StaticATRProvider",
]
