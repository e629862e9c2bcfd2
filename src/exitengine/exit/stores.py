"""Store interfaces and in-memory implementations.

``IntentStore.create_if_no_active`` is the single atomic check-and-set of the
active-intent invariant.  The in-memory store guards it with a lock, the SQL
store with a partial unique index.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock, RLock
from typing import Callable, Iterable, Protocol

from .exceptions import (
    DuplicateIntentError,
    IntentNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from .models import (
    ACTIVE_INTENT_STATUSES,
    INTENT_STATUSES,
    OrderIntent,
    PositionState,
    PHASE_OPEN,
    STATUS_ACK,
    STATUS_CANCELLED,
    STATUS_FILLED,
    STATUS_NEW,
    STATUS_PENDING_APPROVAL,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    utcnow,
)
from .profile import ExitProfile, SymbolOverride
from ..utils.logging import get_logger

log = get_logger(__name__)

# Control modes
MODE_RUNNING = "RUNNING"
MODE_PAUSE_ALL = "PAUSE_ALL"
MODE_PAUSE_PROFIT = "PAUSE_PROFIT"
MODE_EMERGENCY_FLATTEN = "EMERGENCY_FLATTEN"
CONTROL_MODES = (MODE_RUNNING, MODE_PAUSE_ALL, MODE_PAUSE_PROFIT, MODE_EMERGENCY_FLATTEN)

INTENT_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING_APPROVAL: frozenset({STATUS_NEW, STATUS_CANCELLED}),
    STATUS_NEW: frozenset({STATUS_ACK, STATUS_SUBMITTED, STATUS_REJECTED, STATUS_CANCELLED}),
    STATUS_ACK: frozenset({STATUS_SUBMITTED, STATUS_FILLED, STATUS_REJECTED, STATUS_CANCELLED}),
    STATUS_SUBMITTED: frozenset({STATUS_FILLED, STATUS_REJECTED, STATUS_CANCELLED}),
    STATUS_FILLED: frozenset(),
    STATUS_REJECTED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}


def check_transition(intent_id: str, old: str, new: str) -> None:
    if new not in INTENT_STATUSES:
        raise InvalidTransitionError(f"unknown intent status {new!r}")
    if new not in INTENT_TRANSITIONS.get(old, frozenset()):
        raise InvalidTransitionError(f"intent {intent_id}: {old} -> {new} not allowed")


def keeps_full_exit(existing: OrderIntent, intent: OrderIntent) -> bool:
    """Whether ``existing`` already does the job of full exit ``intent``.

    Only a full exit released to the router (``NEW`` or ``ACK``) that covers
    the whole quantity qualifies; one waiting for approval does not.
    """
    return (
        existing.intent_type == intent.intent_type
        and existing.status in (STATUS_NEW, STATUS_ACK)
        and existing.qty >= intent.qty
    )


@dataclass(frozen=True)
class ControlState:
    mode: str = MODE_RUNNING
    reason: str | None = None
    updated_by: str = "system"
    updated_ts: datetime | None = None


# ---------------------------------------------------------------------------
# Protocols
class StateBackend(Protocol):
    """Durable storage behind :class:`~exitengine.exit.state.PositionStateStore`."""

    def load_open(self) -> list[PositionState]:
        ...

    def save(self, state: PositionState) -> None:
        ...


class IntentStore(Protocol):
    def create_if_no_active(self, intent: OrderIntent) -> OrderIntent:
        ...

    def replace_active(self, intent: OrderIntent, *, keep_full: bool = True) -> OrderIntent:
        ...

    def get(self, intent_id: str) -> OrderIntent:
        ...

    def active_for(self, position_id: str) -> OrderIntent | None:
        ...

    def list(self, *, statuses: Iterable[str] | None = None, limit: int = 500) -> list[OrderIntent]:
        ...

    def update_status(self, intent_id: str, status: str) -> OrderIntent:
        ...


class ControlStore(Protocol):
    def get(self) -> ControlState:
        ...

    def set(self, mode: str, reason: str | None, updated_by: str) -> ControlState:
        ...


class ProfileStore(Protocol):
    def get_profile(self, profile_id: str) -> ExitProfile | None:
        ...

    def list_profiles(self) -> list[ExitProfile]:
        ...

    def save_profile(self, profile: ExitProfile) -> ExitProfile:
        ...

    def deactivate_profile(self, profile_id: str) -> None:
        ...

    def get_override(self, symbol: str) -> SymbolOverride | None:
        ...

    def set_override(self, override: SymbolOverride) -> None:
        ...

    def delete_override(self, symbol: str) -> None:
        ...

    def subscribe(self, callback: Callable[..., None]) -> None:
        ...


# ---------------------------------------------------------------------------
# Shared write hooks
class ProfileWriteHooks:
    """Validation and change notification shared by profile stores.

    Subscribers (the profile resolver) are called with ``profile_id`` or
    ``symbol`` keywords after every successful write.
    """

    def __init__(self) -> None:
        self._subscribers: list[Callable[..., None]] = []

    def subscribe(self, callback: Callable[..., None]) -> None:
        self._subscribers.append(callback)

    def _notify(self, *, profile_id: str | None = None, symbol: str | None = None) -> None:
        for cb in self._subscribers:
            try:
                cb(profile_id=profile_id, symbol=symbol)
            except Exception:  # pragma: no cover
                log.exception("profile subscriber failed")

    @staticmethod
    def _validate_override(override: SymbolOverride) -> None:
        if not override.symbol or not override.profile_id:
            raise ValidationError("override requires symbol and profile_id")


# ---------------------------------------------------------------------------
# In-memory implementations
class MemoryStateBackend:
    def __init__(self) -> None:
        self._rows: dict[str, PositionState] = {}
        self._lock = Lock()

    def load_open(self) -> list[PositionState]:
        with self._lock:
            return [s.copy() for s in self._rows.values() if s.phase == PHASE_OPEN]

    def save(self, state: PositionState) -> None:
        with self._lock:
            self._rows[state.position_id] = state.copy()

    def get(self, position_id: str) -> PositionState | None:
        with self._lock:
            row = self._rows.get(position_id)
            return row.copy() if row else None


class MemoryIntentStore:
    def __init__(self) -> None:
        self._intents: dict[str, OrderIntent] = {}
        # position_id -> ids of its active intents, terminal ones are dropped
        self._active: dict[str, list[str]] = defaultdict(list)
        self._lock = RLock()

    def _active_locked(self, position_id: str) -> OrderIntent | None:
        ids = self._active.get(position_id)
        return self._intents[ids[0]] if ids else None

    def _set_status_locked(self, intent: OrderIntent, status: str) -> None:
        intent.status = status
        ids = self._active[intent.position_id]
        if status in ACTIVE_INTENT_STATUSES:
            if intent.intent_id not in ids:
                ids.append(intent.intent_id)
        elif intent.intent_id in ids:
            ids.remove(intent.intent_id)
        if not ids:
            del self._active[intent.position_id]

    def _insert_locked(self, intent: OrderIntent) -> OrderIntent:
        stored = replace(intent)
        self._intents[stored.intent_id] = stored
        if stored.status in ACTIVE_INTENT_STATUSES:
            self._active[stored.position_id].append(stored.intent_id)
        return replace(stored)

    def create_if_no_active(self, intent: OrderIntent) -> OrderIntent:
        with self._lock:
            existing = self._active_locked(intent.position_id)
            if existing is not None:
                raise DuplicateIntentError(
                    f"position {intent.position_id} has active intent "
                    f"{existing.intent_id} ({existing.reason_code}, {existing.status})",
                    existing=replace(existing),
                )
            return self._insert_locked(intent)

    def replace_active(self, intent: OrderIntent, *, keep_full: bool = True) -> OrderIntent:
        with self._lock:
            existing = self._active_locked(intent.position_id)
            if existing is not None:
                if keep_full and keeps_full_exit(existing, intent):
                    raise DuplicateIntentError(
                        f"position {intent.position_id} already has full exit "
                        f"{existing.intent_id}",
                        existing=replace(existing),
                    )
                self._set_status_locked(existing, STATUS_CANCELLED)
            return self._insert_locked(intent)

    def get(self, intent_id: str) -> OrderIntent:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise IntentNotFoundError(intent_id)
            return replace(intent)

    def active_for(self, position_id: str) -> OrderIntent | None:
        with self._lock:
            intent = self._active_locked(position_id)
            return replace(intent) if intent else None

    def list(self, *, statuses: Iterable[str] | None = None, limit: int = 500) -> list[OrderIntent]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                replace(i)
                for i in self._intents.values()
                if wanted is None or i.status in wanted
            ]
        rows.sort(key=lambda i: i.created_ts, reverse=True)
        return rows[:limit]

    def update_status(self, intent_id: str, status: str) -> OrderIntent:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise IntentNotFoundError(intent_id)
            check_transition(intent_id, intent.status, status)
            # re-activating must still respect the one-active-intent rule
            if status in ACTIVE_INTENT_STATUSES and intent.status not in ACTIVE_INTENT_STATUSES:
                active = self._active_locked(intent.position_id)
                if active is not None:
                    raise DuplicateIntentError(intent.position_id, existing=replace(active))
            self._set_status_locked(intent, status)
            return replace(intent)


class MemoryControlStore:
    def __init__(self, mode: str = MODE_RUNNING) -> None:
        self._state = ControlState(mode=mode, updated_ts=utcnow())
        self._lock = Lock()

    def get(self) -> ControlState:
        with self._lock:
            return self._state

    def set(self, mode: str, reason: str | None, updated_by: str) -> ControlState:
        with self._lock:
            self._state = ControlState(
                mode=mode, reason=reason, updated_by=updated_by, updated_ts=utcnow()
            )
            return self._state


class MemoryProfileStore(ProfileWriteHooks):
    def __init__(
        self,
        profiles: Iterable[ExitProfile] = (),
        overrides: Iterable[SymbolOverride] = (),
    ) -> None:
        super().__init__()
        self._profiles: dict[str, ExitProfile] = {}
        self._overrides: dict[str, SymbolOverride] = {}
        self._lock = Lock()
        for p in profiles:
            self.save_profile(p)
        for o in overrides:
            self.set_override(o)

    def get_profile(self, profile_id: str) -> ExitProfile | None:
        with self._lock:
            return self._profiles.get(profile_id)

    def list_profiles(self) -> list[ExitProfile]:
        with self._lock:
            return sorted(self._profiles.values(), key=lambda p: p.profile_id)

    def save_profile(self, profile: ExitProfile) -> ExitProfile:
        profile.validate()
        with self._lock:
            self._profiles[profile.profile_id] = profile
        self._notify(profile_id=profile.profile_id)
        return profile

    def deactivate_profile(self, profile_id: str) -> None:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                return
            self._profiles[profile_id] = replace(profile, is_active=False)
        self._notify(profile_id=profile_id)

    def get_override(self, symbol: str) -> SymbolOverride | None:
        with self._lock:
            return self._overrides.get(symbol)

    def set_override(self, override: SymbolOverride) -> None:
        self._validate_override(override)
        with self._lock:
            self._overrides[override.symbol] = override
        self._notify(symbol=override.symbol)

    def delete_override(self, symbol: str) -> None:
        with self._lock:
            self._overrides.pop(symbol, None)
        self._notify(symbol=symbol)


__all__ = [
    "MODE_RUNNING",
    "MODE_PAUSE_ALL",
    "MODE_PAUSE_PROFIT",
    "MODE_EMERGENCY_FLATTEN",
    "CONTROL_MODES",
    "INTENT_TRANSITIONS",
    "check_transition",
    "keeps_full_exit",
    "ControlState",
    "StateBackend",
    "IntentStore",
    "ControlStore",
    "ProfileStore",
    "ProfileWriteHooks",
    "MemoryStateBackend",
    "MemoryIntentStore",
    "MemoryControlStore",
    "MemoryProfileStore",
]
