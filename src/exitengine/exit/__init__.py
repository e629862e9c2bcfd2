"""Exit engine public API."""

from .exceptions import (
    DuplicateIntentError,
    ExitEngineError,
    IntentNotFoundError,
    InvalidTransitionError,
    PersistenceError,
    ProfileNotFoundError,
    StaleDataError,
    StateConflictError,
    ValidationError,
)
from .models import (
    ACTIVE_INTENT_STATUSES,
    ExitSignal,
    FiredTrigger,
    OrderIntent,
    Position,
    PositionState,
    PriceQuote,
)
from .priority import TRIGGER_PRIORITY
from .profile import DEFAULT_PROFILE, CustomExitRule, ExitProfile, SymbolOverride, TriggerConfig
from .evaluator import EvaluationResult, evaluate_triggers
from .state import PositionStateStore
from .resolver import ProfileResolver
from .governor import ControlGovernor, ModeGate
from .emitter import IntentEmitter, approve_intent, reject_intent
from .service import ExitService, PositionOutcome
from .reconciliation import IntentReconciler
from .scheduler import TickScheduler

__all__ = [
    "DuplicateIntentError",
    "ExitEngineError",
    "IntentNotFoundError",
    "InvalidTransitionError",
    "PersistenceError",
    "ProfileNotFoundError",
    "StaleDataError",
    "StateConflictError",
    "ValidationError",
    "ACTIVE_INTENT_STATUSES",
    "ExitSignal",
    "FiredTrigger",
    "OrderIntent",
    "Position",
    "PositionState",
    "PriceQuote",
    "TRIGGER_PRIORITY",
    "DEFAULT_PROFILE",
    "CustomExitRule",
    "ExitProfile",
    "SymbolOverride",
    "TriggerConfig",
    "EvaluationResult",
    "evaluate_triggers",
    "PositionStateStore",
    "ProfileResolver",
    "ControlGovernor",
    "ModeGate",
    "IntentEmitter",
    "approve_intent",
    "reject_intent",
    "ExitService",
    "PositionOutcome",
    "IntentReconciler",
    "TickScheduler",
]
