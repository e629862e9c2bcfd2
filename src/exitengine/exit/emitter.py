from __future__ import annotations

from ..config import settings
from ..utils.logging import get_logger
from ..utils.metrics import DUPLICATE_INTENTS, INTENTS_EMITTED
from .exceptions import DuplicateIntentError, InvalidTransitionError
from .models import (
    EXIT_MODE_MANUAL_ONLY,
    FiredTrigger,
    INTENT_EXIT_FULL,
    INTENT_EXIT_PARTIAL,
    ORDER_MKT,
    OrderIntent,
    Position,
    STATUS_CANCELLED,
    STATUS_NEW,
    STATUS_PENDING_APPROVAL,
)
from .priority import EMERGENCY_FLATTEN
from .stores import IntentStore, MemoryIntentStore

log = get_logger(__name__)


class IntentEmitter:
    """Turn fired triggers into order intents.

    The store's ``create_if_no_active`` is the only place the
    one-active-intent-per-position rule is enforced; the emitter never reads
    then writes.
    """

    def __init__(self, store: IntentStore | None = None, *, require_approval: bool | None = None) -> None:
        self.store = store or MemoryIntentStore()
        self.require_approval = (
            settings.require_approval if require_approval is None else require_approval
        )

    def approval_required(self, position: Position) -> bool:
        return self.require_approval or position.exit_mode == EXIT_MODE_MANUAL_ONLY

    def emit(self, position: Position, trigger: FiredTrigger, *, approval_required: bool | None = None) -> OrderIntent:
        """Create the intent for ``trigger``.

        Raises :class:`DuplicateIntentError` when the position already has an
        active intent.
        """
        if approval_required is None:
            approval_required = self.approval_required(position)
        intent = OrderIntent(
            position_id=position.position_id,
            symbol=position.symbol,
            intent_type=INTENT_EXIT_FULL if trigger.exit_qty >= position.qty else INTENT_EXIT_PARTIAL,
            qty=trigger.exit_qty,
            order_type=trigger.order_type,
            limit_price=trigger.limit_price,
            reason_code=trigger.trigger_id,
            status=STATUS_PENDING_APPROVAL if approval_required else STATUS_NEW,
        )
        try:
            created = self.store.create_if_no_active(intent)
        except DuplicateIntentError:
            DUPLICATE_INTENTS.inc()
            raise
        INTENTS_EMITTED.labels(reason_code=created.reason_code, status=created.status).inc()
        log.info(
            "intent %s: %s %s x%d %s (%s, %s)",
            created.intent_id,
            created.intent_type,
            created.symbol,
            created.qty,
            created.order_type,
            created.reason_code,
            created.status,
        )
        return created

    def flatten(self, position: Position) -> OrderIntent:
        """Emergency full exit of ``position`` at market.

        Any other active intent is cancelled and replaced, except a released
        full exit covering the whole quantity, which is left in place and
        reported as a duplicate.
        """
        intent = OrderIntent(
            position_id=position.position_id,
            symbol=position.symbol,
            intent_type=INTENT_EXIT_FULL,
            qty=position.qty,
            order_type=ORDER_MKT,
            reason_code=EMERGENCY_FLATTEN,
            status=STATUS_NEW,
        )
        try:
            created = self.store.replace_active(intent, keep_full=True)
        except DuplicateIntentError:
            DUPLICATE_INTENTS.inc()
            raise
        INTENTS_EMITTED.labels(reason_code=EMERGENCY_FLATTEN, status=created.status).inc()
        log.warning("flatten %s: %s x%d", position.position_id, position.symbol, position.qty)
        return created


def _decide(store: IntentStore, intent_id: str, status: str, actor: str) -> OrderIntent:
    intent = store.get(intent_id)
    if intent.status != STATUS_PENDING_APPROVAL:
        raise InvalidTransitionError(
            f"intent {intent_id} is {intent.status}, only {STATUS_PENDING_APPROVAL} can be decided"
        )
    updated = store.update_status(intent_id, status)
    log.info("intent %s %s -> %s by %s", intent_id, intent.status, status, actor)
    return updated


def approve_intent(store: IntentStore, intent_id: str, actor: str = "operator") -> OrderIntent:
    """Release a pending intent to the order router (``NEW``)."""
    return _decide(store, intent_id, STATUS_NEW, actor)


def reject_intent(store: IntentStore, intent_id: str, actor: str = "operator") -> OrderIntent:
    """Cancel a pending intent."""
    return _decide(store, intent_id, STATUS_CANCELLED, actor)


__all__ = ["IntentEmitter", "approve_intent", "reject_intent"]
