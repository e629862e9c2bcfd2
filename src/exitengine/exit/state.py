"""Position state store.

Keeps the authoritative per-position :class:`PositionState` in memory, mirrors
every committed write to a :class:`StateBackend` for crash recovery and guards
commits with an optimistic ``version`` check.
"""

from __future__ import annotations

from threading import Lock
from typing import Iterable, Optional

from ..config import settings
from ..utils.logging import get_logger
from ..utils.metrics import TRACKED_POSITIONS
from ..utils.retry import call_with_retry
from .exceptions import StateConflictError
from .models import PHASE_CLOSED, PHASE_OPEN, Position, PositionState
from .stores import MemoryStateBackend, StateBackend

log = get_logger(__name__)

AVG_RESET = "reset"
AVG_PARTIAL = "partial"
AVG_NOISE = "noise"


def apply_avg_price_change(
    state: PositionState,
    avg_price: float,
    price: float,
    *,
    reset_pct: float,
    noise_pct: float,
) -> tuple[PositionState, Optional[str]]:
    """Return ``state`` adjusted for a change of the position's average price.

    A move of at least ``reset_pct`` is treated as a new entry: fired
    triggers, the stop floor and both breach counters are cleared and the HWM
    restarts at ``price``.  A move above ``noise_pct`` only moves the
    baseline.  Anything at or below ``noise_pct`` is ignored.
    """
    base = state.last_avg_price
    if base is None or base <= 0:
        return state.copy(last_avg_price=avg_price), None
    delta = abs(avg_price - base) / base
    if delta >= reset_pct:
        return (
            state.copy(
                phase=PHASE_OPEN,
                fired_triggers=frozenset(),
                stop_floor_price=None,
                stop_floor_breach_ticks=0,
                trailing_breach_ticks=0,
                high_water_mark_price=price,
                last_avg_price=avg_price,
            ),
            AVG_RESET,
        )
    if delta > noise_pct:
        return state.copy(last_avg_price=avg_price), AVG_PARTIAL
    return state, AVG_NOISE


class PositionStateStore:
    def __init__(
        self,
        backend: StateBackend | None = None,
        *,
        reset_pct: float | None = None,
        noise_pct: float | None = None,
        retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        self.backend = backend or MemoryStateBackend()
        self.reset_pct = settings.avg_reset_pct if reset_pct is None else reset_pct
        self.noise_pct = settings.avg_noise_pct if noise_pct is None else noise_pct
        self._retry_kw = {
            "retries": settings.persist_retries if retries is None else retries,
            "base_delay": settings.persist_base_delay if base_delay is None else base_delay,
            "max_delay": settings.persist_max_delay if max_delay is None else max_delay,
        }
        self._states: dict[str, PositionState] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------
    def load(self) -> int:
        """Reload every OPEN state from the backend.  Returns the count."""
        rows = call_with_retry(self.backend.load_open, **self._retry_kw)
        with self._lock:
            self._states = {s.position_id: s for s in rows}
            TRACKED_POSITIONS.set(len(self._states))
            count = len(self._states)
        log.info("loaded %d open position states", count)
        return count

    def get(self, position_id: str) -> PositionState | None:
        with self._lock:
            state = self._states.get(position_id)
            return state.copy() if state else None

    def open_ids(self) -> set[str]:
        with self._lock:
            return set(self._states)

    # ------------------------------------------------------------------
    def _write_locked(self, state: PositionState) -> PositionState:
        current = self._states.get(state.position_id)
        version = current.version + 1 if current else state.version + 1
        new = state.copy(version=version)
        call_with_retry(self.backend.save, new, **self._retry_kw)
        if new.phase == PHASE_OPEN:
            self._states[new.position_id] = new
        else:
            self._states.pop(new.position_id, None)
        TRACKED_POSITIONS.set(len(self._states))
        return new.copy()

    def sync(self, position: Position, price: float) -> PositionState:
        """Bring the state in line with the holdings snapshot.

        Creates state the first time a position is seen with ``qty > 0`` and
        applies the average-price reset rules.  Returns a copy of the current
        state for evaluation.
        """
        with self._lock:
            state = self._states.get(position.position_id)
            if state is None:
                fresh = PositionState(
                    position_id=position.position_id,
                    phase=PHASE_OPEN,
                    high_water_mark_price=price,
                    last_avg_price=position.avg_price,
                )
                log.info("tracking position %s (%s)", position.position_id, position.symbol)
                return self._write_locked(fresh)

            adjusted, change = apply_avg_price_change(
                state,
                position.avg_price,
                price,
                reset_pct=self.reset_pct,
                noise_pct=self.noise_pct,
            )
            if change == AVG_RESET:
                log.info(
                    "avg price of %s moved %.4f -> %.4f, exit state reset",
                    position.position_id,
                    state.last_avg_price,
                    position.avg_price,
                )
            if adjusted is state:
                return state.copy()
            return self._write_locked(adjusted)

    def commit(self, state: PositionState, expected_version: int) -> PositionState:
        """Persist ``state`` if nobody committed since ``expected_version``.

        Raises :class:`StateConflictError` on a version mismatch and
        :class:`PersistenceError` when the backend keeps failing.
        """
        with self._lock:
            current = self._states.get(state.position_id)
            if current is None or current.version != expected_version:
                raise StateConflictError(
                    f"position {state.position_id}: expected version {expected_version}, "
                    f"found {current.version if current else None}"
                )
            return self._write_locked(state)

    def archive(self, position_id: str) -> PositionState | None:
        with self._lock:
            state = self._states.get(position_id)
            if state is None:
                return None
            log.info("archiving exit state of %s", position_id)
            return self._write_locked(state.copy(phase=PHASE_CLOSED))

    def archive_missing(self, open_ids: Iterable[str]) -> list[str]:
        """Archive every tracked position absent from ``open_ids``."""
        keep = set(open_ids)
        archived = []
        for position_id in sorted(self.open_ids() - keep):
            if self.archive(position_id) is not None:
                archived.append(position_id)
        return archived


__all__ = [
    "AVG_RESET",
    "AVG_PARTIAL",
    "AVG_NOISE",
    "apply_avg_price_change",
    "PositionStateStore",
]
