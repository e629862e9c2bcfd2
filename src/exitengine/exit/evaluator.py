"""Pure trigger evaluation.

:func:`evaluate_triggers` looks at one position, its latest price, its state
and its resolved profile and selects at most one trigger.  It never mutates
its inputs; the caller decides which of the returned states to commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import math
from typing import Callable, Optional

from ..utils.logging import get_logger
from ..utils.price import exit_limit_price
from .custom_rules import evaluate_custom_rules
from .models import FiredTrigger, ORDER_LMT, ORDER_MKT, Position, PositionState, utcnow
from .priority import (
    HARDSTOP,
    SL1,
    SL2,
    STOP_FLOOR,
    TIME,
    TP1,
    TP2,
    TP3,
    TRAIL,
    TRAIL_PARTIAL,
    TRIGGER_KINDS,
)
from .profile import DEFAULT_STOP_FLOOR_PROFIT, ExitProfile

log = get_logger(__name__)

Permits = Callable[[str, str], bool]

_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of one evaluation.

    ``tracked`` carries the per-tick bookkeeping only (HWM, breach counters,
    ``last_eval_ts``).  ``fired`` additionally carries the side effects of
    ``trigger``; it equals ``tracked`` when nothing fired.
    """

    trigger: Optional[FiredTrigger]
    tracked: PositionState
    fired: PositionState

    @property
    def next_state(self) -> PositionState:
        return self.fired if self.trigger is not None else self.tracked


def exit_qty(basis: int, qty_pct: float, remaining: int) -> int:
    """Shares to exit: ``floor(basis * qty_pct)``, at least 1, capped at ``remaining``.

    A ``qty_pct`` of zero returns 0 (milestone trigger).
    """
    if qty_pct <= 0 or remaining <= 0:
        return 0
    return min(remaining, max(1, math.floor(basis * qty_pct + 1e-9)))


def trailing_mode(state: PositionState, profile: ExitProfile) -> Optional[str]:
    """Reason code trailing would fire with, or ``None`` while unarmed."""
    if profile.trailing is None:
        return None
    if state.has_fired(TP3) and profile.tp3 is not None and profile.tp3.start_trailing:
        return TRAIL
    if state.has_fired(TP2) or state.has_fired(TP3):
        return TRAIL_PARTIAL
    return None


def _track(
    state: PositionState, price: float, profile: ExitProfile, now: datetime
) -> PositionState:
    hwm = price if state.high_water_mark_price is None else max(state.high_water_mark_price, price)

    floor_ticks = 0
    if state.stop_floor_price is not None and price <= state.stop_floor_price:
        floor_ticks = state.stop_floor_breach_ticks + 1

    trail_ticks = 0
    if trailing_mode(state, profile) is not None and hwm > 0:
        drawdown = (price - hwm) / hwm
        if drawdown <= -profile.trailing.pct_trail:
            trail_ticks = state.trailing_breach_ticks + 1

    return state.copy(
        high_water_mark_price=hwm,
        stop_floor_breach_ticks=floor_ticks,
        trailing_breach_ticks=trail_ticks,
        last_eval_ts=now,
    )


def _apply_side_effects(
    tracked: PositionState, trigger_id: str, position: Position, profile: ExitProfile
) -> PositionState:
    changes: dict = {"fired_triggers": tracked.fired_triggers | {trigger_id}}
    if trigger_id == STOP_FLOOR:
        changes["stop_floor_breach_ticks"] = 0
    elif trigger_id in (TRAIL, TRAIL_PARTIAL):
        changes["trailing_breach_ticks"] = 0
    elif trigger_id == TP1:
        sfp = profile.tp1.stop_floor_profit
        if sfp is None:
            sfp = DEFAULT_STOP_FLOOR_PROFIT
        floor = position.avg_price * (1 + sfp)
        if tracked.stop_floor_price is not None:
            floor = max(floor, tracked.stop_floor_price)
        changes["stop_floor_price"] = floor
    return tracked.copy(**changes)


def _held_days(position: Position, now: datetime) -> float:
    return (now - position.opened_ts).total_seconds() / _SECONDS_PER_DAY


def _base_candidates(
    position: Position,
    price: float,
    tracked: PositionState,
    profile: ExitProfile,
    now: datetime,
    factor: Optional[float],
    tick_size: float,
):
    """Yield ``(trigger_id, FiredTrigger)`` for every met base condition in priority order."""

    remaining = position.qty
    profit = position.profit_pct(price)

    def market(trigger_id: str, qty: int) -> FiredTrigger:
        return FiredTrigger(trigger_id, qty, ORDER_MKT, None, price, profit)

    def limit(trigger_id: str, qty: int) -> FiredTrigger:
        return FiredTrigger(trigger_id, qty, ORDER_LMT, exit_limit_price(price, tick_size), price, profit)

    if profile.hardstop is not None and profit <= profile.hardstop.pct:
        yield HARDSTOP, market(HARDSTOP, remaining)

    if profile.sl2 is not None and profit <= profile.sl2.threshold(factor):
        yield SL2, market(SL2, remaining)

    if tracked.stop_floor_price is not None and tracked.stop_floor_breach_ticks >= profile.confirm_ticks:
        yield STOP_FLOOR, market(STOP_FLOOR, remaining)

    if profile.sl1 is not None and profit <= profile.sl1.threshold(factor):
        yield SL1, market(SL1, exit_qty(position.original_qty, profile.sl1.qty_pct, remaining))

    for trigger_id, cfg in ((TP3, profile.tp3), (TP2, profile.tp2), (TP1, profile.tp1)):
        if cfg is not None and profit >= cfg.threshold(factor):
            yield trigger_id, limit(trigger_id, exit_qty(position.original_qty, cfg.qty_pct, remaining))

    mode = trailing_mode(tracked, profile)
    if mode is not None and tracked.trailing_breach_ticks >= profile.confirm_ticks:
        if mode == TRAIL:
            yield TRAIL, market(TRAIL, remaining)
        else:
            qty = exit_qty(remaining, profile.trailing.partial_qty_pct, remaining)
            yield TRAIL_PARTIAL, market(TRAIL_PARTIAL, qty)

    ts = profile.time_stop
    if ts is not None and (ts.max_hold_days > 0 or ts.no_momentum_days > 0):
        held = _held_days(position, now)
        if ts.max_hold_days > 0 and held >= ts.max_hold_days:
            yield TIME, market(TIME, remaining)
        elif ts.no_momentum_days > 0 and held >= ts.no_momentum_days:
            hwm = tracked.high_water_mark_price or price
            best = (hwm - position.avg_price) / position.avg_price
            if best < ts.no_momentum_profit:
                yield TIME, market(TIME, remaining)


def evaluate_triggers(
    position: Position,
    price: float,
    state: PositionState,
    profile: ExitProfile,
    *,
    now: Optional[datetime] = None,
    atr_pct: Optional[float] = None,
    permits: Optional[Permits] = None,
    tick_size: float = 0.0,
) -> EvaluationResult:
    """Select the highest-priority trigger for ``position`` at ``price``.

    Parameters
    ----------
    permits:
        Governor gate ``permits(trigger_id, kind) -> bool``.  Refused triggers
        are skipped and the walk continues.  ``HARDSTOP`` is never gated.
    atr_pct:
        Volatility of the symbol.  Only used when the profile carries an
        ``atr`` section.
    """
    now = now or utcnow()
    tracked = _track(state, price, profile, now)
    factor = profile.atr.factor(atr_pct) if profile.atr is not None else None

    for trigger_id, fired in _base_candidates(position, price, tracked, profile, now, factor, tick_size):
        if tracked.has_fired(trigger_id):
            continue
        if trigger_id != HARDSTOP and permits is not None:
            if not permits(trigger_id, TRIGGER_KINDS[trigger_id]):
                log.debug("%s gated for %s", trigger_id, position.position_id)
                continue
        next_state = _apply_side_effects(tracked, trigger_id, position, profile)
        return EvaluationResult(trigger=fired, tracked=tracked, fired=next_state)

    custom = evaluate_custom_rules(
        profile.custom_rules,
        profit_pct=position.profit_pct(price),
        price=price,
        remaining_qty=position.qty,
        state=tracked,
        permits=permits,
        tick_size=tick_size,
    )
    if custom is not None:
        next_state = tracked.copy(fired_triggers=tracked.fired_triggers | {custom.trigger_id})
        return EvaluationResult(trigger=custom, tracked=tracked, fired=next_state)

    return EvaluationResult(trigger=None, tracked=tracked, fired=tracked)


__all__ = [
    "EvaluationResult",
    "exit_qty",
    "trailing_mode",
    "evaluate_triggers",
]
