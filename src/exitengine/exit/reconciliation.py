"""Periodic clean-up of active intents.

Runs outside the evaluation sweep.  Every step is best-effort: a failing
cancellation is logged and the remaining intents are still processed.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from ..config import settings
from ..utils.logging import get_logger
from ..utils.metrics import INTENTS_RECONCILED
from .exceptions import ExitEngineError
from .feeds import HoldingsFeed, PriceFeed
from .models import (
    ACTIVE_INTENT_STATUSES,
    OrderIntent,
    STATUS_CANCELLED,
    STATUS_NEW,
    STATUS_PENDING_APPROVAL,
    utcnow,
)
from .priority import SL1, SL2
from .stores import IntentStore

log = get_logger(__name__)

# Intents not yet handed to the broker; only these are withdrawn on recovery
_UNSENT = frozenset({STATUS_PENDING_APPROVAL, STATUS_NEW})


@dataclass
class ReconcileReport:
    duplicates: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.duplicates) + len(self.recovered) + len(self.orphaned)


class IntentReconciler:
    """Cancel intents that no longer make sense.

    * duplicates: more than one active intent for a position, the newest is kept
    * orphaned: unsent intents of positions no longer held
    * recovered: unsent SL1/SL2 intents whose loss recovered above the
      ``sl1_recovery_pct`` / ``sl2_recovery_pct`` levels
    """

    def __init__(
        self,
        intents: IntentStore,
        holdings: HoldingsFeed,
        price_feed: PriceFeed,
        *,
        sl1_recovery_pct: float | None = None,
        sl2_recovery_pct: float | None = None,
        price_max_age_s: float | None = None,
    ) -> None:
        self.intents = intents
        self.holdings = holdings
        self.price_feed = price_feed
        self.recovery_levels = {
            SL1: settings.sl1_recovery_pct if sl1_recovery_pct is None else sl1_recovery_pct,
            SL2: settings.sl2_recovery_pct if sl2_recovery_pct is None else sl2_recovery_pct,
        }
        self.price_max_age_s = (
            settings.price_max_age_s if price_max_age_s is None else price_max_age_s
        )

    def _cancel(self, intent: OrderIntent, reason: str) -> bool:
        try:
            self.intents.update_status(intent.intent_id, STATUS_CANCELLED)
        except ExitEngineError as e:
            log.warning("could not cancel intent %s (%s): %s", intent.intent_id, reason, e)
            return False
        INTENTS_RECONCILED.labels(reason=reason).inc()
        log.info(
            "cancelled intent %s (%s %s) for %s: %s",
            intent.intent_id,
            intent.reason_code,
            intent.status,
            intent.position_id,
            reason,
        )
        return True

    def reconcile(self, now: datetime | None = None) -> ReconcileReport:
        now = now or utcnow()
        report = ReconcileReport()
        active = self.intents.list(statuses=ACTIVE_INTENT_STATUSES)

        by_position: dict[str, list[OrderIntent]] = defaultdict(list)
        for intent in active:
            by_position[intent.position_id].append(intent)

        survivors: list[OrderIntent] = []
        for rows in by_position.values():
            rows.sort(key=lambda i: i.created_ts, reverse=True)
            survivors.append(rows[0])
            for older in rows[1:]:
                if self._cancel(older, "duplicate"):
                    report.duplicates.append(older.intent_id)

        positions = {p.position_id: p for p in self.holdings.open_positions()}
        for intent in survivors:
            if intent.status not in _UNSENT:
                continue
            position = positions.get(intent.position_id)
            if position is None:
                if self._cancel(intent, "orphaned"):
                    report.orphaned.append(intent.intent_id)
                continue

            level = self.recovery_levels.get(intent.reason_code)
            if level is None:
                continue
            quote = self.price_feed.get_quote(position.symbol)
            if quote is None or quote.age_seconds(now) > self.price_max_age_s:
                continue
            profit = position.profit_pct(quote.price)
            if profit > level:
                if self._cancel(intent, "recovered"):
                    report.recovered.append(intent.intent_id)

        if report.total:
            log.info(
                "reconciliation cancelled %d intents (duplicates=%d recovered=%d orphaned=%d)",
                report.total,
                len(report.duplicates),
                len(report.recovered),
                len(report.orphaned),
            )
        return report


__all__ = ["ReconcileReport", "IntentReconciler"]
