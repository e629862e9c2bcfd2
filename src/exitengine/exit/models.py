from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, Optional
import uuid

# Position exit modes
EXIT_MODE_ENABLED = "ENABLED"
EXIT_MODE_DISABLED = "DISABLED"
EXIT_MODE_MANUAL_ONLY = "MANUAL_ONLY"

# PositionState phases
PHASE_OPEN = "OPEN"
PHASE_CLOSED = "CLOSED"

# Intent types
INTENT_EXIT_PARTIAL = "EXIT_PARTIAL"
INTENT_EXIT_FULL = "EXIT_FULL"

# Order types
ORDER_MKT = "MKT"
ORDER_LMT = "LMT"

# Intent statuses
STATUS_PENDING_APPROVAL = "PENDING_APPROVAL"
STATUS_NEW = "NEW"
STATUS_ACK = "ACK"
STATUS_SUBMITTED = "SUBMITTED"
STATUS_FILLED = "FILLED"
STATUS_REJECTED = "REJECTED"
STATUS_CANCELLED = "CANCELLED"

INTENT_STATUSES = frozenset({
    STATUS_PENDING_APPROVAL,
    STATUS_NEW,
    STATUS_ACK,
    STATUS_SUBMITTED,
    STATUS_FILLED,
    STATUS_REJECTED,
    STATUS_CANCELLED,
})

# At most one intent in these statuses may exist per position.  Every check of
# the invariant (emitter, stores, SQL index, reconciler) imports this set.
ACTIVE_INTENT_STATUSES = frozenset({STATUS_PENDING_APPROVAL, STATUS_NEW, STATUS_ACK})

ExitMode = Literal["ENABLED", "DISABLED", "MANUAL_ONLY"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Position:
    """Snapshot of an open position as reported by the holdings feed."""

    position_id: str
    account_id: str
    symbol: str
    qty: int
    original_qty: int
    avg_price: float
    opened_ts: datetime
    exit_mode: ExitMode = EXIT_MODE_ENABLED
    exit_profile_id: Optional[str] = None

    def profit_pct(self, price: float) -> float:
        return (float(price) - self.avg_price) / self.avg_price


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: float
    as_of_ts: datetime

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or utcnow()
        return (now - self.as_of_ts).total_seconds()


@dataclass
class PositionState:
    """Per-position evaluation state.

    ``stop_floor_breach_ticks`` and ``trailing_breach_ticks`` are independent
    consecutive-breach counters.  ``version`` increases on every committed
    write and is used for compare-and-set by the state store.
    """

    position_id: str
    phase: str = PHASE_OPEN
    high_water_mark_price: Optional[float] = None
    stop_floor_price: Optional[float] = None
    stop_floor_breach_ticks: int = 0
    trailing_breach_ticks: int = 0
    fired_triggers: frozenset[str] = frozenset()
    last_eval_ts: Optional[datetime] = None
    last_avg_price: Optional[float] = None
    version: int = 0

    def copy(self, **changes) -> "PositionState":
        return replace(self, **changes)

    def has_fired(self, trigger_id: str) -> bool:
        return trigger_id in self.fired_triggers

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "phase": self.phase,
            "high_water_mark_price": self.high_water_mark_price,
            "stop_floor_price": self.stop_floor_price,
            "stop_floor_breach_ticks": self.stop_floor_breach_ticks,
            "trailing_breach_ticks": self.trailing_breach_ticks,
            "fired_triggers": sorted(self.fired_triggers),
            "last_eval_ts": self.last_eval_ts.isoformat() if self.last_eval_ts else None,
            "last_avg_price": self.last_avg_price,
            "version": self.version,
        }


@dataclass(frozen=True)
class FiredTrigger:
    """Decision returned by the evaluator: at most one per position per cycle."""

    trigger_id: str
    exit_qty: int
    order_type: str
    limit_price: Optional[float] = None
    price: float = 0.0
    profit_pct: float = 0.0

    @property
    def is_milestone(self) -> bool:
        """Fired with nothing to sell (``qty_pct`` of zero)."""
        return self.exit_qty <= 0


@dataclass
class OrderIntent:
    position_id: str
    symbol: str
    intent_type: str
    qty: int
    order_type: str
    reason_code: str
    status: str
    limit_price: Optional[float] = None
    intent_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_ts: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_INTENT_STATUSES

    def to_dict(self) -> dict:
        return {
            "intent_id": self.intent_id,
            "position_id": self.position_id,
            "symbol": self.symbol,
            "intent_type": self.intent_type,
            "qty": self.qty,
            "order_type": self.order_type,
            "limit_price": self.limit_price,
            "reason_code": self.reason_code,
            "status": self.status,
            "created_ts": self.created_ts.isoformat(),
        }


@dataclass(frozen=True)
class ExitSignal:
    """Audit record of a fired trigger, kept for debugging and backtests."""

    position_id: str
    symbol: str
    reason_code: str
    price: float
    profit_pct: float
    evaluated_ts: datetime = field(default_factory=utcnow)
    signal_id: str = field(default_factory=lambda: str(uuid.uuid4()))
