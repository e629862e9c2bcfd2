from dataclasses import replace
from datetime import timedelta

import pytest
from hypothesis import given, settings as hsettings, strategies as st

from conftest import NOW, make_position
from exitengine.exit.evaluator import evaluate_triggers, exit_qty, trailing_mode
from exitengine.exit.governor import ModeGate
from exitengine.exit.models import ORDER_LMT, ORDER_MKT, PositionState
from exitengine.exit.profile import (
    ATRConfig,
    DEFAULT_PROFILE,
    TimeStopConfig,
    TriggerConfig,
)


def _state(**kw) -> PositionState:
    base = dict(position_id="P1", high_water_mark_price=10000.0, last_avg_price=10000.0)
    base.update(kw)
    return PositionState(**base)


def _eval(position, price, state, profile=DEFAULT_PROFILE, **kw):
    kw.setdefault("now", NOW)
    return evaluate_triggers(position, price, state, profile, **kw)


def test_scenario_a_tp1_sets_stop_floor():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 10700, _state())

    assert res.trigger.trigger_id == "TP1"
    assert res.trigger.exit_qty == 10
    assert res.trigger.order_type == ORDER_LMT
    assert res.trigger.limit_price == 10700
    assert res.fired.stop_floor_price == pytest.approx(10060)
    assert res.fired.has_fired("TP1")
    assert res.tracked.stop_floor_price is None
    assert res.tracked.high_water_mark_price == 10700


def test_scenario_b_stop_floor_needs_consecutive_breaches():
    pos = make_position(qty=100, avg_price=10000)
    state = _eval(pos, 10700, _state()).fired
    pos = replace(pos, qty=90)

    first = _eval(pos, 10059, state)
    assert first.trigger is None
    assert first.tracked.stop_floor_breach_ticks == 1

    second = _eval(pos, 10059, first.tracked)
    assert second.trigger.trigger_id == "STOP_FLOOR"
    assert second.trigger.exit_qty == 90
    assert second.trigger.order_type == ORDER_MKT
    assert second.fired.stop_floor_breach_ticks == 0


def test_stop_floor_counter_resets_on_recovery():
    pos = make_position(qty=90, avg_price=10000)
    state = _state(fired_triggers=frozenset({"TP1"}), stop_floor_price=10060.0)

    first = _eval(pos, 10050, state)
    recovered = _eval(pos, 10100, first.tracked)
    again = _eval(pos, 10050, recovered.tracked)

    assert first.tracked.stop_floor_breach_ticks == 1
    assert recovered.tracked.stop_floor_breach_ticks == 0
    assert again.trigger is None
    assert again.tracked.stop_floor_breach_ticks == 1


def test_hardstop_wins_over_stop_losses():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 9000, _state())
    assert res.trigger.trigger_id == "HARDSTOP"
    assert res.trigger.exit_qty == 100


def test_sl2_wins_over_sl1():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 9450, _state())
    assert res.trigger.trigger_id == "SL2"
    assert res.trigger.exit_qty == 100


def test_sl1_exits_share_of_original_qty():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 9650, _state())
    assert res.trigger.trigger_id == "SL1"
    assert res.trigger.exit_qty == 50
    assert res.trigger.order_type == ORDER_MKT


def test_fired_trigger_is_not_repeated():
    pos = make_position(qty=50, original_qty=100, avg_price=10000)
    res = _eval(pos, 9650, _state(fired_triggers=frozenset({"SL1"})))
    assert res.trigger is None


def test_highest_take_profit_selected():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 11600, _state())
    assert res.trigger.trigger_id == "TP3"
    assert res.trigger.exit_qty == 30


def test_take_profit_limit_rounded_to_tick():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 10703, _state(), tick_size=5)
    assert res.trigger.limit_price == pytest.approx(10705)


def test_atr_scaling_moves_thresholds():
    profile = replace(DEFAULT_PROFILE, atr=ATRConfig(ref=0.02, factor_min=0.7, factor_max=1.6))
    pos = make_position(qty=100, avg_price=10000)

    assert _eval(pos, 10700, _state(), profile).trigger.trigger_id == "TP1"
    # factor 1.5 pushes TP1 to its 10% band edge
    assert _eval(pos, 10700, _state(), profile, atr_pct=0.03).trigger is None
    assert _eval(pos, 11000, _state(), profile, atr_pct=0.03).trigger.trigger_id == "TP1"


def test_trailing_not_armed_before_tp2():
    pos = make_position(qty=90, original_qty=100, avg_price=10000)
    state = _state(high_water_mark_price=12000.0, fired_triggers=frozenset({"TP1"}))
    assert trailing_mode(state, DEFAULT_PROFILE) is None

    first = _eval(pos, 10500, state)
    second = _eval(pos, 10500, first.tracked)
    assert second.trigger is None
    assert second.tracked.trailing_breach_ticks == 0


def test_partial_trailing_after_tp2():
    pos = make_position(qty=70, original_qty=100, avg_price=10000)
    state = _state(high_water_mark_price=12000.0, fired_triggers=frozenset({"TP1", "TP2"}))
    assert trailing_mode(state, DEFAULT_PROFILE) == "TRAIL_PARTIAL"

    first = _eval(pos, 10500, state)
    assert first.trigger is None
    assert first.tracked.trailing_breach_ticks == 1

    second = _eval(pos, 10500, first.tracked)
    assert second.trigger.trigger_id == "TRAIL_PARTIAL"
    assert second.trigger.exit_qty == 14
    assert second.fired.trailing_breach_ticks == 0


def test_full_trailing_after_tp3_with_start_trailing():
    pos = make_position(qty=40, original_qty=100, avg_price=10000)
    state = _state(
        high_water_mark_price=13000.0,
        fired_triggers=frozenset({"TP1", "TP2", "TP3", "TRAIL_PARTIAL"}),
        trailing_breach_ticks=1,
    )
    res = _eval(pos, 12400, state)
    assert res.trigger.trigger_id == "TRAIL"
    assert res.trigger.exit_qty == 40


def test_time_stop_max_hold():
    profile = replace(DEFAULT_PROFILE, time_stop=TimeStopConfig(max_hold_days=5))
    pos = make_position(qty=100, avg_price=10000, opened_ts=NOW - timedelta(days=6))
    res = _eval(pos, 10100, _state(), profile)
    assert res.trigger.trigger_id == "TIME"
    assert res.trigger.exit_qty == 100


def test_time_stop_no_momentum():
    profile = replace(
        DEFAULT_PROFILE,
        time_stop=TimeStopConfig(no_momentum_days=3, no_momentum_profit=0.02),
    )
    pos = make_position(qty=100, avg_price=10000, opened_ts=NOW - timedelta(days=4))

    flat = _eval(pos, 10100, _state(high_water_mark_price=10150.0), profile)
    assert flat.trigger.trigger_id == "TIME"

    ran_up = _eval(pos, 10100, _state(high_water_mark_price=10300.0), profile)
    assert ran_up.trigger is None


def test_zero_time_stop_days_disable_rule():
    pos = make_position(qty=100, avg_price=10000, opened_ts=NOW - timedelta(days=400))
    assert _eval(pos, 10100, _state()).trigger is None


def test_gate_skips_profit_taking_and_keeps_walking():
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 10700, _state(), permits=ModeGate("PAUSE_PROFIT"))
    assert res.trigger is None
    assert res.tracked.high_water_mark_price == 10700


def test_scenario_d_hardstop_bypasses_pause_all():
    pos = make_position(qty=100, avg_price=10000)
    gate = ModeGate("PAUSE_ALL")
    assert _eval(pos, 9650, _state(), permits=gate).trigger is None
    res = _eval(pos, 9000, _state(), permits=gate)
    assert res.trigger.trigger_id == "HARDSTOP"


def test_zero_qty_pct_is_milestone():
    profile = replace(
        DEFAULT_PROFILE,
        tp1=TriggerConfig(base_pct=0.07, qty_pct=0.0, stop_floor_profit=0.01),
    )
    pos = make_position(qty=100, avg_price=10000)
    res = _eval(pos, 10700, _state(), profile)
    assert res.trigger.trigger_id == "TP1"
    assert res.trigger.is_milestone
    assert res.fired.stop_floor_price == pytest.approx(10100)


def test_inputs_not_mutated():
    pos = make_position(qty=100, avg_price=10000)
    state = _state()
    snapshot = replace(state)
    _eval(pos, 10700, state)
    assert state == snapshot


def test_exit_qty_rounding():
    assert exit_qty(100, 0.1, 100) == 10
    assert exit_qty(5, 0.1, 5) == 1
    assert exit_qty(100, 0.5, 20) == 20
    assert exit_qty(100, 0.0, 100) == 0
    assert exit_qty(100, 0.29, 100) == 29


@hsettings(max_examples=60, deadline=None)
@given(st.lists(st.floats(min_value=8000, max_value=13000), min_size=1, max_size=30))
def test_stop_floor_and_hwm_never_decrease(prices):
    pos = make_position(qty=100, avg_price=10000)
    state = _state()
    for price in prices:
        res = _eval(pos, price, state)
        nxt = res.next_state
        if state.stop_floor_price is not None:
            assert nxt.stop_floor_price >= state.stop_floor_price
        assert nxt.high_water_mark_price >= state.high_water_mark_price
        state = nxt
