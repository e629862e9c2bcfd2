from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import NOW, make_position
from exitengine.exit.exceptions import DuplicateIntentError, InvalidTransitionError, IntentNotFoundError
from exitengine.exit.models import OrderIntent, PositionState
from exitengine.exit.profile import DEFAULT_PROFILE, CustomExitRule, SymbolOverride
from exitengine.exit.resolver import ProfileResolver
from exitengine.exit.state import PositionStateStore
from exitengine.storage.exit_sql import (
    SqlControlStore,
    SqlHoldingsFeed,
    SqlIntentStore,
    SqlPriceFeed,
    SqlProfileStore,
    SqlStateBackend,
    get_engine,
    init_schema,
    insert_exit_signal,
    select_exit_signals,
    upsert_position,
    upsert_price,
)
from exitengine.exit.models import ExitSignal


@pytest.fixture
def db():
    engine = get_engine("sqlite://")
    init_schema(engine)
    return engine


def _intent(reason="TP1", status="NEW", position_id="P1", **kw):
    return OrderIntent(position_id, "005930", "EXIT_PARTIAL", 10, "LMT", reason, status, limit_price=10700.0, **kw)


def test_init_schema_is_idempotent(db):
    init_schema(db)


def test_state_round_trip(db):
    backend = SqlStateBackend(db)
    state = PositionState(
        position_id="P1",
        high_water_mark_price=10700.0,
        stop_floor_price=10060.0,
        stop_floor_breach_ticks=1,
        fired_triggers=frozenset({"TP1", "CUSTOM:r1"}),
        last_eval_ts=NOW,
        last_avg_price=10000.0,
        version=3,
    )
    backend.save(state)
    assert backend.get("P1") == state

    backend.save(state.copy(phase="CLOSED", version=4))
    assert backend.load_open() == []
    assert backend.get("P1").version == 4


def test_state_store_recovers_from_sql(db):
    store = PositionStateStore(SqlStateBackend(db), retries=0)
    state = store.sync(make_position(), 10700)
    store.commit(state.copy(fired_triggers=frozenset({"TP1"}), stop_floor_price=10060.0), state.version)

    restarted = PositionStateStore(SqlStateBackend(db), retries=0)
    assert restarted.load() == 1
    recovered = restarted.get("P1")
    assert recovered.has_fired("TP1")
    assert recovered.stop_floor_price == 10060.0
    assert recovered.version == state.version + 1


def test_unique_active_intent_index(db):
    store = SqlIntentStore(db)
    first = store.create_if_no_active(_intent())
    with pytest.raises(DuplicateIntentError) as exc:
        store.create_if_no_active(_intent(reason="TP2"))
    assert exc.value.existing.intent_id == first.intent_id
    assert exc.value.existing.reason_code == "TP1"

    store.update_status(first.intent_id, "SUBMITTED")
    assert store.active_for("P1") is None
    second = store.create_if_no_active(_intent(reason="TP2"))
    assert store.active_for("P1").intent_id == second.intent_id


def test_intent_transitions(db):
    store = SqlIntentStore(db)
    intent = store.create_if_no_active(_intent(status="PENDING_APPROVAL"))
    assert store.update_status(intent.intent_id, "NEW").status == "NEW"
    assert store.update_status(intent.intent_id, "ACK").status == "ACK"
    with pytest.raises(InvalidTransitionError):
        store.update_status(intent.intent_id, "PENDING_APPROVAL")
    store.update_status(intent.intent_id, "FILLED")
    assert store.get(intent.intent_id).status == "FILLED"
    with pytest.raises(IntentNotFoundError):
        store.get("nope")


def test_list_filters_and_orders(db):
    store = SqlIntentStore(db)
    old = store.create_if_no_active(_intent(position_id="P1", created_ts=NOW - timedelta(minutes=1)))
    new = store.create_if_no_active(_intent(position_id="P2", created_ts=NOW))
    store.update_status(old.intent_id, "CANCELLED")

    assert [i.intent_id for i in store.list()] == [new.intent_id, old.intent_id]
    assert [i.intent_id for i in store.list(statuses=["CANCELLED"])] == [old.intent_id]
    assert len(store.list(limit=1)) == 1


def test_replace_active(db):
    store = SqlIntentStore(db)
    partial = store.create_if_no_active(_intent())
    full = OrderIntent("P1", "005930", "EXIT_FULL", 100, "MKT", "EMERGENCY_FLATTEN", "NEW")
    store.replace_active(full)
    assert store.get(partial.intent_id).status == "CANCELLED"
    assert store.active_for("P1").intent_id == full.intent_id

    with pytest.raises(DuplicateIntentError):
        store.replace_active(OrderIntent("P1", "005930", "EXIT_FULL", 100, "MKT", "EMERGENCY_FLATTEN", "NEW"))


def test_replace_active_cancels_full_exit_awaiting_approval(db):
    store = SqlIntentStore(db)
    pending = store.create_if_no_active(
        OrderIntent("P1", "005930", "EXIT_FULL", 100, "MKT", "SL2", "PENDING_APPROVAL")
    )
    flat = OrderIntent("P1", "005930", "EXIT_FULL", 100, "MKT", "EMERGENCY_FLATTEN", "NEW")
    store.replace_active(flat)
    assert store.get(pending.intent_id).status == "CANCELLED"
    assert store.active_for("P1").intent_id == flat.intent_id


def test_profile_store_round_trip_and_invalidation(db):
    store = SqlProfileStore(db)
    profile = replace(
        DEFAULT_PROFILE,
        profile_id="swing",
        custom_rules=(CustomExitRule("r1", "profit_above", 0.12, 0.5, priority=1),),
    )
    store.save_profile(profile)
    assert store.get_profile("swing") == profile
    assert [p.profile_id for p in store.list_profiles()] == ["swing"]

    resolver = ProfileResolver(store, default_profile_id="swing", ttl_s=3600.0)
    assert resolver.resolve(make_position(), NOW).profile_id == "swing"
    store.deactivate_profile("swing")
    assert store.get_profile("swing").is_active is False
    assert resolver.resolve(make_position(), NOW) is DEFAULT_PROFILE


def test_overrides(db):
    store = SqlProfileStore(db)
    store.set_override(SymbolOverride("005930", "swing", reason="earnings", effective_from=NOW))
    override = store.get_override("005930")
    assert override.profile_id == "swing"
    assert override.effective_from == NOW
    assert override.is_effective(NOW)
    store.delete_override("005930")
    assert store.get_override("005930") is None


def test_control_store(db):
    store = SqlControlStore(db)
    assert store.get().mode == "RUNNING"
    store.set("PAUSE_ALL", "vol", "alice")
    state = store.get()
    assert (state.mode, state.reason, state.updated_by) == ("PAUSE_ALL", "vol", "alice")


def test_holdings_and_prices(db):
    upsert_position(db, make_position("P1"))
    upsert_position(db, make_position("P2", qty=0, original_qty=100))
    upsert_price(db, "005930", 10100, as_of_ts=NOW)

    positions = SqlHoldingsFeed(db).open_positions()
    assert [p.position_id for p in positions] == ["P1"]
    assert positions[0].opened_ts == NOW - timedelta(days=1)

    quote = SqlPriceFeed(db).get_quote("005930")
    assert quote.price == 10100
    assert quote.as_of_ts == NOW
    assert SqlPriceFeed(db).get_quote("000660") is None


def test_exit_signals(db):
    insert_exit_signal(db, ExitSignal("P1", "005930", "TP1", 10700.0, 0.07, evaluated_ts=NOW))
    insert_exit_signal(db, ExitSignal("P2", "000660", "SL1", 9600.0, -0.04, evaluated_ts=NOW))
    rows = select_exit_signals(db, position_id="P1")
    assert len(rows) == 1
    assert rows[0]["reason_code"] == "TP1"
    assert len(select_exit_signals(db)) == 2
