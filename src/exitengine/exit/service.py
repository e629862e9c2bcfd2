from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..config import settings
from ..utils.logging import get_logger
from ..utils.metrics import EXIT_EVALUATIONS, EXIT_SKIPS, PERSISTENCE_FAILURES, TRIGGERS_FIRED
from .emitter import IntentEmitter
from .evaluator import EvaluationResult, evaluate_triggers
from .exceptions import (
    DuplicateIntentError,
    PersistenceError,
    StaleDataError,
    StateConflictError,
)
from .feeds import ATRProvider, PriceFeed
from .governor import ModeGate
from .models import (
    EXIT_MODE_DISABLED,
    ExitSignal,
    FiredTrigger,
    OrderIntent,
    Position,
    utcnow,
)
from .resolver import ProfileResolver
from .state import PositionStateStore
from .stores import MODE_RUNNING

log = get_logger(__name__)

# Outcome statuses
OUTCOME_NONE = "none"
OUTCOME_EMITTED = "emitted"
OUTCOME_MILESTONE = "milestone"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DISCARDED = "discarded"


@dataclass
class PositionOutcome:
    position_id: str
    status: str
    trigger: Optional[FiredTrigger] = None
    intent: Optional[OrderIntent] = None
    signal: Optional[ExitSignal] = None
    reason: Optional[str] = None


class ExitService:
    """Per-position pipeline: sync, guard, resolve, evaluate, emit, commit.

    Every failure is contained to the position being evaluated.  The intent
    is emitted before the state commit; if the commit then loses a version
    race the intent stays (the store still holds it as the active intent)
    and the next cycle sees the duplicate.
    """

    def __init__(
        self,
        *,
        state_store: PositionStateStore,
        resolver: ProfileResolver,
        emitter: IntentEmitter,
        price_feed: PriceFeed,
        atr_provider: ATRProvider | None = None,
        signal_sink: Callable[[ExitSignal], None] | None = None,
        price_max_age_s: float | None = None,
        tick_size: float | None = None,
    ) -> None:
        self.state_store = state_store
        self.resolver = resolver
        self.emitter = emitter
        self.price_feed = price_feed
        self.atr_provider = atr_provider
        self.signal_sink = signal_sink
        self.price_max_age_s = (
            settings.price_max_age_s if price_max_age_s is None else price_max_age_s
        )
        self.tick_size = settings.tick_size if tick_size is None else tick_size

    # ------------------------------------------------------------------
    def fresh_price(self, symbol: str, now: datetime) -> float:
        quote = self.price_feed.get_quote(symbol)
        if quote is None:
            raise StaleDataError(f"no price for {symbol}")
        age = quote.age_seconds(now)
        if age > self.price_max_age_s:
            raise StaleDataError(f"price for {symbol} is {age:.1f}s old")
        return quote.price

    def _skip(self, position: Position, reason: str, detail: str | None = None) -> PositionOutcome:
        EXIT_SKIPS.labels(reason=reason).inc()
        return PositionOutcome(position.position_id, OUTCOME_SKIPPED, reason=detail or reason)

    def _record_signal(self, position: Position, trigger: FiredTrigger, now: datetime) -> ExitSignal:
        signal = ExitSignal(
            position_id=position.position_id,
            symbol=position.symbol,
            reason_code=trigger.trigger_id,
            price=trigger.price,
            profit_pct=trigger.profit_pct,
            evaluated_ts=now,
        )
        if self.signal_sink is not None:
            try:
                self.signal_sink(signal)
            except Exception as e:
                log.warning("exit signal for %s not recorded: %s", position.position_id, e)
        return signal

    # ------------------------------------------------------------------
    def flatten_position(self, position: Position) -> PositionOutcome:
        try:
            intent = self.emitter.flatten(position)
        except DuplicateIntentError as e:
            log.info("flatten %s skipped: %s", position.position_id, e)
            return PositionOutcome(position.position_id, OUTCOME_DUPLICATE, reason=str(e))
        return PositionOutcome(position.position_id, OUTCOME_EMITTED, intent=intent)

    def evaluate_position(
        self,
        position: Position,
        gate: ModeGate | None = None,
        now: datetime | None = None,
    ) -> PositionOutcome:
        now = now or utcnow()
        gate = gate or ModeGate(MODE_RUNNING)

        if position.qty <= 0:
            return self._skip(position, "zero_qty")
        if position.exit_mode == EXIT_MODE_DISABLED:
            return self._skip(position, "disabled")
        if gate.flatten:
            return self.flatten_position(position)

        try:
            price = self.fresh_price(position.symbol, now)
        except StaleDataError as e:
            log.info("skip %s: %s", position.position_id, e)
            return self._skip(position, "stale", str(e))

        try:
            state = self.state_store.sync(position, price)
        except PersistenceError as e:
            PERSISTENCE_FAILURES.inc()
            log.error("state sync of %s failed: %s", position.position_id, e)
            return PositionOutcome(position.position_id, OUTCOME_DISCARDED, reason=str(e))

        profile = self.resolver.resolve(position, now)
        atr_pct = None
        if profile.atr is not None and self.atr_provider is not None:
            atr_pct = self.atr_provider.get_atr_pct(position.symbol)

        EXIT_EVALUATIONS.inc()
        result = evaluate_triggers(
            position,
            price,
            state,
            profile,
            now=now,
            atr_pct=atr_pct,
            permits=gate,
            tick_size=self.tick_size,
        )
        outcome, next_state = self._emit(position, result)

        try:
            self.state_store.commit(next_state, expected_version=state.version)
        except StateConflictError as e:
            EXIT_SKIPS.labels(reason="conflict").inc()
            log.info("discarding result for %s: %s", position.position_id, e)
            outcome.status, outcome.reason = OUTCOME_DISCARDED, str(e)
            return outcome
        except PersistenceError as e:
            PERSISTENCE_FAILURES.inc()
            log.error("state commit of %s failed: %s", position.position_id, e)
            outcome.status, outcome.reason = OUTCOME_DISCARDED, str(e)
            return outcome

        if outcome.trigger is not None and outcome.status in (OUTCOME_EMITTED, OUTCOME_MILESTONE):
            outcome.signal = self._record_signal(position, outcome.trigger, now)
        return outcome

    def _emit(self, position: Position, result: EvaluationResult):
        trigger = result.trigger
        if trigger is None:
            return PositionOutcome(position.position_id, OUTCOME_NONE), result.tracked

        TRIGGERS_FIRED.labels(reason_code=trigger.trigger_id).inc()
        if trigger.is_milestone:
            log.info("%s reached %s (no qty to exit)", position.position_id, trigger.trigger_id)
            return (
                PositionOutcome(position.position_id, OUTCOME_MILESTONE, trigger=trigger),
                result.fired,
            )

        try:
            intent = self.emitter.emit(position, trigger)
        except DuplicateIntentError as e:
            log.info("drop %s for %s: %s", trigger.trigger_id, position.position_id, e)
            outcome = PositionOutcome(
                position.position_id, OUTCOME_DUPLICATE, trigger=trigger, reason=str(e)
            )
            # the active intent already carries this trigger: its side effects belong to it
            if e.existing is not None and e.existing.reason_code == trigger.trigger_id:
                return outcome, result.fired
            return outcome, result.tracked

        return (
            PositionOutcome(position.position_id, OUTCOME_EMITTED, trigger=trigger, intent=intent),
            result.fired,
        )


__all__ = [
    "OUTCOME_NONE",
    "OUTCOME_EMITTED",
    "OUTCOME_MILESTONE",
    "OUTCOME_DUPLICATE",
    "OUTCOME_SKIPPED",
    "OUTCOME_DISCARDED",
    "PositionOutcome",
    "ExitService",
]
