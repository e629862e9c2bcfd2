from dataclasses import replace

from conftest import NOW, make_position
from exitengine.exit.custom_rules import evaluate_custom_rules
from exitengine.exit.evaluator import evaluate_triggers
from exitengine.exit.governor import ModeGate
from exitengine.exit.models import ORDER_LMT, ORDER_MKT, PositionState
from exitengine.exit.profile import CustomExitRule, ExitProfile, TriggerConfig


RULES = (
    CustomExitRule("late", "profit_above", 0.04, 0.5, priority=5),
    CustomExitRule("early", "profit_above", 0.03, 0.25, priority=1),
    CustomExitRule("cut", "profit_below", -0.02, 1.0, priority=2),
    CustomExitRule("off", "profit_above", 0.01, 1.0, priority=0, enabled=False),
)


def _state(**kw):
    return PositionState(position_id="P1", high_water_mark_price=10000.0, **kw)


def _run(profit_pct, state=None, permits=None, rules=RULES, remaining=80):
    return evaluate_custom_rules(
        rules,
        profit_pct=profit_pct,
        price=10000 * (1 + profit_pct),
        remaining_qty=remaining,
        state=state or _state(),
        permits=permits,
    )


def test_rules_walk_in_priority_order_skipping_disabled():
    fired = _run(0.05)
    assert fired.trigger_id == "CUSTOM:early"
    assert fired.exit_qty == 20
    assert fired.order_type == ORDER_LMT


def test_fired_rule_is_skipped():
    fired = _run(0.05, state=_state(fired_triggers=frozenset({"CUSTOM:early"})))
    assert fired.trigger_id == "CUSTOM:late"
    assert fired.exit_qty == 40


def test_profit_below_is_market_order():
    fired = _run(-0.025)
    assert fired.trigger_id == "CUSTOM:cut"
    assert fired.order_type == ORDER_MKT
    assert fired.limit_price is None
    assert fired.exit_qty == 80


def test_gate_refuses_profit_rules_only():
    gate = ModeGate("PAUSE_PROFIT")
    assert _run(0.05, permits=gate) is None
    assert _run(-0.025, permits=gate).trigger_id == "CUSTOM:cut"


def test_minimum_one_share():
    rules = (CustomExitRule("tiny", "profit_above", 0.01, 0.1),)
    assert _run(0.02, rules=rules, remaining=3).exit_qty == 1


def test_custom_rules_run_only_without_base_trigger():
    profile = ExitProfile(
        profile_id="c",
        sl1=None,
        hardstop=None,
        custom_rules=(CustomExitRule("below", "profit_below", -0.01, 0.5),),
    )
    pos = make_position(qty=100, avg_price=10000)

    res = evaluate_triggers(pos, 9850, _state(), profile, now=NOW)
    assert res.trigger.trigger_id == "CUSTOM:below"
    assert res.trigger.exit_qty == 50
    assert res.fired.has_fired("CUSTOM:below")

    with_sl = replace(profile, sl2=TriggerConfig(base_pct=-0.01))
    res = evaluate_triggers(pos, 9850, _state(), with_sl, now=NOW)
    assert res.trigger.trigger_id == "SL2"
