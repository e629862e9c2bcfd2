"""Trigger identifiers and their fixed evaluation order."""

from __future__ import annotations

HARDSTOP = "HARDSTOP"
SL1 = "SL1"
SL2 = "SL2"
STOP_FLOOR = "STOP_FLOOR"
TP1 = "TP1"
TP2 = "TP2"
TP3 = "TP3"
TRAIL = "TRAIL"
TRAIL_PARTIAL = "TRAIL_PARTIAL"
TIME = "TIME"
CUSTOM = "CUSTOM"
EMERGENCY_FLATTEN = "EMERGENCY_FLATTEN"

# Highest priority first.  Custom rules come last and are ordered by their own
# ``priority`` field.  ``TRAIL`` stands for both trailing reason codes.
TRIGGER_PRIORITY: tuple[str, ...] = (
    HARDSTOP,
    SL2,
    STOP_FLOOR,
    SL1,
    TP3,
    TP2,
    TP1,
    TRAIL,
    TIME,
    CUSTOM,
)

# Trigger kinds used by the control governor
KIND_HARDSTOP = "hardstop"
KIND_STOP_LOSS = "stop_loss"
KIND_PROFIT = "profit"
KIND_TIME = "time"

TRIGGER_KINDS: dict[str, str] = {
    HARDSTOP: KIND_HARDSTOP,
    SL1: KIND_STOP_LOSS,
    SL2: KIND_STOP_LOSS,
    STOP_FLOOR: KIND_STOP_LOSS,
    TP1: KIND_PROFIT,
    TP2: KIND_PROFIT,
    TP3: KIND_PROFIT,
    TRAIL: KIND_PROFIT,
    TRAIL_PARTIAL: KIND_PROFIT,
    TIME: KIND_TIME,
}


def custom_reason(rule_id: str) -> str:
    """Reason code / fired-trigger id for custom rule ``rule_id``."""
    return f"{CUSTOM}:{rule_id}"


def priority_rank(trigger_id: str) -> int:
    """Position of ``trigger_id`` in :data:`TRIGGER_PRIORITY` (0 is highest)."""
    if trigger_id == TRAIL_PARTIAL:
        trigger_id = TRAIL
    elif trigger_id.startswith(CUSTOM + ":"):
        trigger_id = CUSTOM
    return TRIGGER_PRIORITY.index(trigger_id)


__all__ = [
    "HARDSTOP", "SL1", "SL2", "STOP_FLOOR", "TP1", "TP2", "TP3", "TRAIL",
    "TRAIL_PARTIAL", "TIME", "CUSTOM", "EMERGENCY_FLATTEN", "TRIGGER_PRIORITY",
    "KIND_HARDSTOP", "KIND_STOP_LOSS", "KIND_PROFIT", "KIND_TIME",
    "TRIGGER_KINDS", "custom_reason", "priority_rank",
]
