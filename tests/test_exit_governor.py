import pytest
from prometheus_client import REGISTRY

from exitengine.exit.exceptions import ValidationError
from exitengine.exit.governor import ControlGovernor, ModeGate
from exitengine.exit.stores import MemoryControlStore


def _gauge(mode):
    return REGISTRY.get_sample_value("exit_control_mode", {"mode": mode})


@pytest.mark.parametrize(
    "mode, trigger_id, kind, allowed",
    [
        ("RUNNING", "TP1", "profit", True),
        ("RUNNING", "SL1", "stop_loss", True),
        ("PAUSE_PROFIT", "TP1", "profit", False),
        ("PAUSE_PROFIT", "TRAIL", "profit", False),
        ("PAUSE_PROFIT", "SL1", "stop_loss", True),
        ("PAUSE_PROFIT", "STOP_FLOOR", "stop_loss", True),
        ("PAUSE_ALL", "SL2", "stop_loss", False),
        ("PAUSE_ALL", "TP3", "profit", False),
        ("PAUSE_ALL", "HARDSTOP", "hardstop", True),
        ("PAUSE_PROFIT", "HARDSTOP", "hardstop", True),
    ],
)
def test_gate_matrix(mode, trigger_id, kind, allowed):
    assert ModeGate(mode)(trigger_id, kind) is allowed


def test_flatten_flag():
    assert ModeGate("EMERGENCY_FLATTEN").flatten
    assert not ModeGate("PAUSE_ALL").flatten


def test_set_mode_normalises_and_records_actor():
    governor = ControlGovernor(MemoryControlStore())
    state = governor.set_mode(" pause_profit ", reason="earnings", updated_by="alice")
    assert state.mode == "PAUSE_PROFIT"
    assert state.reason == "earnings"
    assert state.updated_by == "alice"
    assert governor.mode() == "PAUSE_PROFIT"
    assert not governor.permits("TP1", "profit")


def test_set_mode_rejects_unknown_mode():
    governor = ControlGovernor(MemoryControlStore())
    with pytest.raises(ValidationError):
        governor.set_mode("HALT")
    assert governor.mode() == "RUNNING"


def test_snapshot_is_frozen_for_the_sweep():
    governor = ControlGovernor(MemoryControlStore())
    gate = governor.snapshot()
    governor.set_mode("PAUSE_ALL")
    assert gate("SL1", "stop_loss")
    assert not governor.snapshot()("SL1", "stop_loss")


def test_mode_gauge_tracks_current_mode():
    governor = ControlGovernor(MemoryControlStore())
    governor.set_mode("EMERGENCY_FLATTEN")
    assert _gauge("EMERGENCY_FLATTEN") == 1
    assert _gauge("RUNNING") == 0
    governor.set_mode("RUNNING")
    assert _gauge("RUNNING") == 1
    assert _gauge("EMERGENCY_FLATTEN") == 0
