from __future__ import annotations

from ..utils.logging import get_logger
from ..utils.metrics import CONTROL_MODE
from .exceptions import ValidationError
from .priority import HARDSTOP, KIND_HARDSTOP, KIND_PROFIT
from .stores import (
    CONTROL_MODES,
    ControlState,
    ControlStore,
    MemoryControlStore,
    MODE_EMERGENCY_FLATTEN,
    MODE_PAUSE_ALL,
    MODE_PAUSE_PROFIT,
    MODE_RUNNING,
)

log = get_logger(__name__)


class ModeGate:
    """Trigger gate bound to one mode snapshot.

    A sweep takes a single snapshot so every position of the cycle sees the
    same mode.
    """

    def __init__(self, mode: str) -> None:
        self.mode = mode

    @property
    def flatten(self) -> bool:
        return self.mode == MODE_EMERGENCY_FLATTEN

    def __call__(self, trigger_id: str, kind: str) -> bool:
        if trigger_id == HARDSTOP or kind == KIND_HARDSTOP:
            return True
        if self.mode == MODE_PAUSE_ALL:
            return False
        if self.mode == MODE_PAUSE_PROFIT:
            return kind != KIND_PROFIT
        return True

    def __repr__(self) -> str:
        return f"ModeGate({self.mode})"


class ControlGovernor:
    """Operator control over the exit engine.

    ``RUNNING`` evaluates everything, ``PAUSE_PROFIT`` holds back
    profit-taking, ``PAUSE_ALL`` holds back everything except the hard stop,
    and ``EMERGENCY_FLATTEN`` skips evaluation and exits every position.
    """

    def __init__(self, store: ControlStore | None = None) -> None:
        self.store = store or MemoryControlStore()
        self._export(self.store.get().mode)

    def state(self) -> ControlState:
        return self.store.get()

    def mode(self) -> str:
        return self.store.get().mode

    def snapshot(self) -> ModeGate:
        mode = self.mode()
        self._export(mode)
        return ModeGate(mode)

    def permits(self, trigger_id: str, kind: str) -> bool:
        return self.snapshot()(trigger_id, kind)

    def set_mode(self, mode: str, reason: str | None = None, updated_by: str = "operator") -> ControlState:
        mode = (mode or "").strip().upper()
        if mode not in CONTROL_MODES:
            raise ValidationError(f"unknown control mode {mode!r}")
        previous = self.mode()
        state = self.store.set(mode, reason, updated_by)
        self._export(mode)
        log.warning(
            "control mode %s -> %s by %s (%s)", previous, mode, updated_by, reason or "no reason"
        )
        return state

    @staticmethod
    def _export(mode: str) -> None:
        for m in CONTROL_MODES:
            CONTROL_MODE.labels(mode=m).set(1 if m == mode else 0)


__all__ = [
    "ModeGate",
    "ControlGovernor",
    "MODE_RUNNING",
    "MODE_PAUSE_ALL",
    "MODE_PAUSE_PROFIT",
    "MODE_EMERGENCY_FLATTEN",
]
