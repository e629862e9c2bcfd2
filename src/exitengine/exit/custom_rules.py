"""Supplementary user-authored exit rules.

Consulted only when none of the base triggers fired in the cycle.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable, Optional

from ..utils.logging import get_logger
from ..utils.price import exit_limit_price
from .models import FiredTrigger, ORDER_LMT, ORDER_MKT, PositionState
from .priority import KIND_PROFIT, KIND_STOP_LOSS, custom_reason
from .profile import CustomExitRule, PROFIT_ABOVE

log = get_logger(__name__)

Permits = Callable[[str, str], bool]


def rule_kind(rule: CustomExitRule) -> str:
    """Governor kind of ``rule``: taking profit or cutting a loss."""
    return KIND_PROFIT if rule.condition == PROFIT_ABOVE else KIND_STOP_LOSS


def evaluate_custom_rules(
    rules: Iterable[CustomExitRule],
    *,
    profit_pct: float,
    price: float,
    remaining_qty: int,
    state: PositionState,
    permits: Optional[Permits] = None,
    tick_size: float = 0.0,
) -> Optional[FiredTrigger]:
    """Return the first matching enabled rule as a :class:`FiredTrigger`.

    ``rules`` are walked in ascending ``priority`` (ties broken by id).  Rules
    already recorded in ``state.fired_triggers`` and rules refused by
    ``permits`` are skipped.
    """
    for rule in sorted(rules, key=lambda r: (r.priority, r.id)):
        if not rule.enabled:
            continue
        trigger_id = custom_reason(rule.id)
        if state.has_fired(trigger_id):
            continue
        if not rule.matches(profit_pct):
            continue
        if permits is not None and not permits(trigger_id, rule_kind(rule)):
            log.debug("custom rule %s gated for %s", rule.id, state.position_id)
            continue

        qty = min(remaining_qty, max(1, math.floor(remaining_qty * rule.exit_percent + 1e-9)))
        if rule.condition == PROFIT_ABOVE:
            order_type, limit = ORDER_LMT, exit_limit_price(price, tick_size)
        else:
            order_type, limit = ORDER_MKT, None
        return FiredTrigger(
            trigger_id=trigger_id,
            exit_qty=qty,
            order_type=order_type,
            limit_price=limit,
            price=price,
            profit_pct=profit_pct,
        )
    return None


__all__ = ["rule_kind", "evaluate_custom_rules"]
