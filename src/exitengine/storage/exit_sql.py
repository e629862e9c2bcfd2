"""SQL persistence of the exit engine.

Plain ``text()`` statements that run unchanged on SQLite and PostgreSQL.
Timestamps are stored as ISO-8601 strings, fired trigger sets and profile
configurations as JSON.

The one-active-intent-per-position rule is enforced by the partial unique
index ``ux_exit_intents_active``; inserting a second active intent fails with
an ``IntegrityError`` that is reported as :class:`DuplicateIntentError`.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
import json
import logging
from typing import Any, Iterable, Optional

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from ..config import settings
from ..exit.exceptions import (
    DuplicateIntentError,
    IntentNotFoundError,
    InvalidTransitionError,
)
from ..exit.models import (
    ACTIVE_INTENT_STATUSES,
    ExitSignal,
    OrderIntent,
    PHASE_OPEN,
    Position,
    PositionState,
    PriceQuote,
    STATUS_CANCELLED,
    utcnow,
)
from ..exit.profile import ExitProfile, SymbolOverride
from ..exit.stores import (
    ControlState,
    MODE_RUNNING,
    ProfileWriteHooks,
    check_transition,
    keeps_full_exit,
)

log = logging.getLogger(__name__)

_ACTIVE_SQL = ", ".join(f"'{s}'" for s in sorted(ACTIVE_INTENT_STATUSES))

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS exit_position_state (
        position_id TEXT PRIMARY KEY,
        phase TEXT NOT NULL,
        high_water_mark_price REAL,
        stop_floor_price REAL,
        stop_floor_breach_ticks INTEGER NOT NULL DEFAULT 0,
        trailing_breach_ticks INTEGER NOT NULL DEFAULT 0,
        fired_triggers TEXT NOT NULL DEFAULT '[]',
        last_eval_ts TEXT,
        last_avg_price REAL,
        version INTEGER NOT NULL DEFAULT 0,
        updated_ts TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exit_intents (
        intent_id TEXT PRIMARY KEY,
        position_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        intent_type TEXT NOT NULL,
        qty INTEGER NOT NULL,
        order_type TEXT NOT NULL,
        limit_price REAL,
        reason_code TEXT NOT NULL,
        status TEXT NOT NULL,
        created_ts TEXT NOT NULL,
        updated_ts TEXT
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS ux_exit_intents_active
        ON exit_intents (position_id) WHERE status IN ({_ACTIVE_SQL})
    """,
    """
    CREATE TABLE IF NOT EXISTS exit_profiles (
        profile_id TEXT PRIMARY KEY,
        name TEXT,
        description TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        config TEXT NOT NULL,
        updated_ts TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exit_symbol_overrides (
        symbol TEXT PRIMARY KEY,
        profile_id TEXT NOT NULL,
        reason TEXT,
        effective_from TEXT,
        enabled INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exit_control (
        id INTEGER PRIMARY KEY,
        mode TEXT NOT NULL,
        reason TEXT,
        updated_by TEXT,
        updated_ts TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exit_signals (
        signal_id TEXT PRIMARY KEY,
        position_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        reason_code TEXT NOT NULL,
        price REAL NOT NULL,
        profit_pct REAL NOT NULL,
        evaluated_ts TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS positions (
        position_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        symbol TEXT NOT NULL,
        qty INTEGER NOT NULL,
        original_qty INTEGER NOT NULL,
        avg_price REAL NOT NULL,
        opened_ts TEXT NOT NULL,
        exit_mode TEXT NOT NULL DEFAULT 'ENABLED',
        exit_profile_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS prices (
        symbol TEXT PRIMARY KEY,
        price REAL NOT NULL,
        as_of_ts TEXT NOT NULL
    )
    """,
]


def get_engine(url: str | None = None):
    """Return a SQLAlchemy engine for ``url`` (default ``settings.db_url``).

    In-memory SQLite URLs get a single shared connection so every thread sees
    the same database.
    """
    url = url or settings.db_url
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url):
        return create_engine(
            url, poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_schema(engine) -> None:
    with engine.begin() as conn:
        for stmt in SCHEMA:
            conn.execute(text(stmt))


# ---------------------------------------------------------------------------
# conversions
def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _state_from_row(row) -> PositionState:
    return PositionState(
        position_id=row["position_id"],
        phase=row["phase"],
        high_water_mark_price=row["high_water_mark_price"],
        stop_floor_price=row["stop_floor_price"],
        stop_floor_breach_ticks=int(row["stop_floor_breach_ticks"]),
        trailing_breach_ticks=int(row["trailing_breach_ticks"]),
        fired_triggers=frozenset(json.loads(row["fired_triggers"] or "[]")),
        last_eval_ts=_dt(row["last_eval_ts"]),
        last_avg_price=row["last_avg_price"],
        version=int(row["version"]),
    )


def _intent_from_row(row) -> OrderIntent:
    return OrderIntent(
        intent_id=row["intent_id"],
        position_id=row["position_id"],
        symbol=row["symbol"],
        intent_type=row["intent_type"],
        qty=int(row["qty"]),
        order_type=row["order_type"],
        limit_price=row["limit_price"],
        reason_code=row["reason_code"],
        status=row["status"],
        created_ts=_dt(row["created_ts"]),
    )


def _profile_from_row(row) -> ExitProfile:
    data = json.loads(row["config"])
    data["profile_id"] = row["profile_id"]
    data["is_active"] = bool(row["is_active"])
    return ExitProfile.from_dict(data)


def _override_from_row(row) -> SymbolOverride:
    return SymbolOverride(
        symbol=row["symbol"],
        profile_id=row["profile_id"],
        reason=row["reason"] or "",
        effective_from=_dt(row["effective_from"]),
        enabled=bool(row["enabled"]),
    )


def _position_from_row(row) -> Position:
    return Position(
        position_id=row["position_id"],
        account_id=row["account_id"],
        symbol=row["symbol"],
        qty=int(row["qty"]),
        original_qty=int(row["original_qty"]),
        avg_price=float(row["avg_price"]),
        opened_ts=_dt(row["opened_ts"]),
        exit_mode=row["exit_mode"],
        exit_profile_id=row["exit_profile_id"],
    )


# ---------------------------------------------------------------------------
# position state
class SqlStateBackend:
    def __init__(self, engine) -> None:
        self.engine = engine

    def load_open(self) -> list[PositionState]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT * FROM exit_position_state WHERE phase = :phase"),
                {"phase": PHASE_OPEN},
            ).mappings().all()
        return [_state_from_row(r) for r in rows]

    def get(self, position_id: str) -> PositionState | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM exit_position_state WHERE position_id = :pid"),
                {"pid": position_id},
            ).mappings().first()
        return _state_from_row(row) if row else None

    def save(self, state: PositionState) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO exit_position_state (
                        position_id, phase, high_water_mark_price, stop_floor_price,
                        stop_floor_breach_ticks, trailing_breach_ticks, fired_triggers,
                        last_eval_ts, last_avg_price, version, updated_ts
                    ) VALUES (
                        :position_id, :phase, :hwm, :floor, :floor_ticks, :trail_ticks,
                        :fired, :last_eval_ts, :last_avg_price, :version, :updated_ts
                    )
                    ON CONFLICT (position_id) DO UPDATE SET
                        phase = excluded.phase,
                        high_water_mark_price = excluded.high_water_mark_price,
                        stop_floor_price = excluded.stop_floor_price,
                        stop_floor_breach_ticks = excluded.stop_floor_breach_ticks,
                        trailing_breach_ticks = excluded.trailing_breach_ticks,
                        fired_triggers = excluded.fired_triggers,
                        last_eval_ts = excluded.last_eval_ts,
                        last_avg_price = excluded.last_avg_price,
                        version = excluded.version,
                        updated_ts = excluded.updated_ts
                    """
                ),
                dict(
                    position_id=state.position_id,
                    phase=state.phase,
                    hwm=state.high_water_mark_price,
                    floor=state.stop_floor_price,
                    floor_ticks=state.stop_floor_breach_ticks,
                    trail_ticks=state.trailing_breach_ticks,
                    fired=json.dumps(sorted(state.fired_triggers)),
                    last_eval_ts=_ts(state.last_eval_ts),
                    last_avg_price=state.last_avg_price,
                    version=state.version,
                    updated_ts=_ts(utcnow()),
                ),
            )


# ---------------------------------------------------------------------------
# intents
_INSERT_INTENT = text(
    """
    INSERT INTO exit_intents (
        intent_id, position_id, symbol, intent_type, qty, order_type,
        limit_price, reason_code, status, created_ts, updated_ts
    ) VALUES (
        :intent_id, :position_id, :symbol, :intent_type, :qty, :order_type,
        :limit_price, :reason_code, :status, :created_ts, :created_ts
    )
    """
)

_SELECT_ACTIVE = text(
    f"""
    SELECT * FROM exit_intents
    WHERE position_id = :pid AND status IN ({_ACTIVE_SQL})
    ORDER BY created_ts DESC
    """
)


def _intent_params(intent: OrderIntent) -> dict:
    params = intent.to_dict()
    params["created_ts"] = _ts(intent.created_ts)
    return params


class SqlIntentStore:
    def __init__(self, engine) -> None:
        self.engine = engine

    def _active(self, conn, position_id: str) -> OrderIntent | None:
        row = conn.execute(_SELECT_ACTIVE, {"pid": position_id}).mappings().first()
        return _intent_from_row(row) if row else None

    def _duplicate(self, intent: OrderIntent) -> DuplicateIntentError:
        existing = self.active_for(intent.position_id)
        msg = f"position {intent.position_id} has active intent"
        if existing is not None:
            msg += f" {existing.intent_id} ({existing.reason_code}, {existing.status})"
        return DuplicateIntentError(msg, existing=existing)

    def create_if_no_active(self, intent: OrderIntent) -> OrderIntent:
        try:
            with self.engine.begin() as conn:
                conn.execute(_INSERT_INTENT, _intent_params(intent))
        except IntegrityError as e:
            raise self._duplicate(intent) from e
        return replace(intent)

    def replace_active(self, intent: OrderIntent, *, keep_full: bool = True) -> OrderIntent:
        try:
            with self.engine.begin() as conn:
                existing = self._active(conn, intent.position_id)
                if existing is not None:
                    if keep_full and keeps_full_exit(existing, intent):
                        raise DuplicateIntentError(
                            f"position {intent.position_id} already has full exit "
                            f"{existing.intent_id}",
                            existing=existing,
                        )
                    conn.execute(
                        text(
                            "UPDATE exit_intents SET status = :status, updated_ts = :ts "
                            "WHERE intent_id = :iid"
                        ),
                        {"status": STATUS_CANCELLED, "ts": _ts(utcnow()), "iid": existing.intent_id},
                    )
                conn.execute(_INSERT_INTENT, _intent_params(intent))
        except IntegrityError as e:
            raise self._duplicate(intent) from e
        return replace(intent)

    def get(self, intent_id: str) -> OrderIntent:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM exit_intents WHERE intent_id = :iid"), {"iid": intent_id}
            ).mappings().first()
        if row is None:
            raise IntentNotFoundError(intent_id)
        return _intent_from_row(row)

    def active_for(self, position_id: str) -> OrderIntent | None:
        with self.engine.connect() as conn:
            return self._active(conn, position_id)

    def list(self, *, statuses: Iterable[str] | None = None, limit: int = 500) -> list[OrderIntent]:
        params: dict[str, Any] = {"limit": int(limit)}
        if statuses is not None:
            stmt = text(
                "SELECT * FROM exit_intents WHERE status IN :statuses "
                "ORDER BY created_ts DESC LIMIT :limit"
            ).bindparams(bindparam("statuses", expanding=True))
            params["statuses"] = sorted(set(statuses))
        else:
            stmt = text("SELECT * FROM exit_intents ORDER BY created_ts DESC LIMIT :limit")
        with self.engine.connect() as conn:
            rows = conn.execute(stmt, params).mappings().all()
        return [_intent_from_row(r) for r in rows]

    def update_status(self, intent_id: str, status: str) -> OrderIntent:
        current = self.get(intent_id)
        check_transition(intent_id, current.status, status)
        try:
            with self.engine.begin() as conn:
                res = conn.execute(
                    text(
                        "UPDATE exit_intents SET status = :new, updated_ts = :ts "
                        "WHERE intent_id = :iid AND status = :old"
                    ),
                    {"new": status, "old": current.status, "ts": _ts(utcnow()), "iid": intent_id},
                )
                if res.rowcount != 1:
                    raise InvalidTransitionError(
                        f"intent {intent_id} changed concurrently (was {current.status})"
                    )
        except IntegrityError as e:
            raise self._duplicate(current) from e
        current.status = status
        return current


# ---------------------------------------------------------------------------
# profiles and overrides
class SqlProfileStore(ProfileWriteHooks):
    def __init__(self, engine) -> None:
        super().__init__()
        self.engine = engine

    def get_profile(self, profile_id: str) -> ExitProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM exit_profiles WHERE profile_id = :pid"), {"pid": profile_id}
            ).mappings().first()
        return _profile_from_row(row) if row else None

    def list_profiles(self) -> list[ExitProfile]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT * FROM exit_profiles ORDER BY profile_id")
            ).mappings().all()
        return [_profile_from_row(r) for r in rows]

    def save_profile(self, profile: ExitProfile) -> ExitProfile:
        profile.validate()
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO exit_profiles (profile_id, name, description, is_active, config, updated_ts)
                    VALUES (:pid, :name, :description, :active, :config, :ts)
                    ON CONFLICT (profile_id) DO UPDATE SET
                        name = excluded.name,
                        description = excluded.description,
                        is_active = excluded.is_active,
                        config = excluded.config,
                        updated_ts = excluded.updated_ts
                    """
                ),
                dict(
                    pid=profile.profile_id,
                    name=profile.name,
                    description=profile.description,
                    active=1 if profile.is_active else 0,
                    config=json.dumps(profile.to_dict()),
                    ts=_ts(utcnow()),
                ),
            )
        log.info("saved exit profile %s", profile.profile_id)
        self._notify(profile_id=profile.profile_id)
        return profile

    def deactivate_profile(self, profile_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "UPDATE exit_profiles SET is_active = 0, updated_ts = :ts "
                    "WHERE profile_id = :pid"
                ),
                {"pid": profile_id, "ts": _ts(utcnow())},
            )
        self._notify(profile_id=profile_id)

    def get_override(self, symbol: str) -> SymbolOverride | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM exit_symbol_overrides WHERE symbol = :symbol"),
                {"symbol": symbol},
            ).mappings().first()
        return _override_from_row(row) if row else None

    def set_override(self, override: SymbolOverride) -> None:
        self._validate_override(override)
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO exit_symbol_overrides (symbol, profile_id, reason, effective_from, enabled)
                    VALUES (:symbol, :pid, :reason, :effective_from, :enabled)
                    ON CONFLICT (symbol) DO UPDATE SET
                        profile_id = excluded.profile_id,
                        reason = excluded.reason,
                        effective_from = excluded.effective_from,
                        enabled = excluded.enabled
                    """
                ),
                dict(
                    symbol=override.symbol,
                    pid=override.profile_id,
                    reason=override.reason,
                    effective_from=_ts(override.effective_from),
                    enabled=1 if override.enabled else 0,
                ),
            )
        self._notify(symbol=override.symbol)

    def delete_override(self, symbol: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("DELETE FROM exit_symbol_overrides WHERE symbol = :symbol"),
                {"symbol": symbol},
            )
        self._notify(symbol=symbol)


# ---------------------------------------------------------------------------
# control mode
class SqlControlStore:
    def __init__(self, engine) -> None:
        self.engine = engine

    def get(self) -> ControlState:
        with self.engine.connect() as conn:
            row = conn.execute(text("SELECT * FROM exit_control WHERE id = 1")).mappings().first()
        if row is None:
            return ControlState(mode=MODE_RUNNING)
        return ControlState(
            mode=row["mode"],
            reason=row["reason"],
            updated_by=row["updated_by"] or "system",
            updated_ts=_dt(row["updated_ts"]),
        )

    def set(self, mode: str, reason: str | None, updated_by: str) -> ControlState:
        state = ControlState(mode=mode, reason=reason, updated_by=updated_by, updated_ts=utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO exit_control (id, mode, reason, updated_by, updated_ts)
                    VALUES (1, :mode, :reason, :updated_by, :ts)
                    ON CONFLICT (id) DO UPDATE SET
                        mode = excluded.mode,
                        reason = excluded.reason,
                        updated_by = excluded.updated_by,
                        updated_ts = excluded.updated_ts
                    """
                ),
                dict(mode=mode, reason=reason, updated_by=updated_by, ts=_ts(state.updated_ts)),
            )
        return state


# ---------------------------------------------------------------------------
# holdings and prices
class SqlHoldingsFeed:
    def __init__(self, engine) -> None:
        self.engine = engine

    def open_positions(self) -> list[Position]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT * FROM positions WHERE qty > 0 ORDER BY position_id")
            ).mappings().all()
        return [_position_from_row(r) for r in rows]


class SqlPriceFeed:
    def __init__(self, engine) -> None:
        self.engine = engine

    def get_quote(self, symbol: str) -> PriceQuote | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM prices WHERE symbol = :symbol"), {"symbol": symbol}
            ).mappings().first()
        if row is None:
            return None
        return PriceQuote(symbol=row["symbol"], price=float(row["price"]), as_of_ts=_dt(row["as_of_ts"]))


def upsert_position(engine, position: Position) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO positions (
                    position_id, account_id, symbol, qty, original_qty, avg_price,
                    opened_ts, exit_mode, exit_profile_id
                ) VALUES (
                    :position_id, :account_id, :symbol, :qty, :original_qty, :avg_price,
                    :opened_ts, :exit_mode, :exit_profile_id
                )
                ON CONFLICT (position_id) DO UPDATE SET
                    qty = excluded.qty,
                    original_qty = excluded.original_qty,
                    avg_price = excluded.avg_price,
                    exit_mode = excluded.exit_mode,
                    exit_profile_id = excluded.exit_profile_id
                """
            ),
            dict(
                position_id=position.position_id,
                account_id=position.account_id,
                symbol=position.symbol,
                qty=position.qty,
                original_qty=position.original_qty,
                avg_price=position.avg_price,
                opened_ts=_ts(position.opened_ts),
                exit_mode=position.exit_mode,
                exit_profile_id=position.exit_profile_id,
            ),
        )


def upsert_price(engine, symbol: str, price: float, as_of_ts: datetime | None = None) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO prices (symbol, price, as_of_ts) VALUES (:symbol, :price, :ts)
                ON CONFLICT (symbol) DO UPDATE SET price = excluded.price, as_of_ts = excluded.as_of_ts
                """
            ),
            {"symbol": symbol, "price": float(price), "ts": _ts(as_of_ts or utcnow())},
        )


# ---------------------------------------------------------------------------
# audit
def insert_exit_signal(engine, signal: ExitSignal) -> None:
    """Record an exit signal row."""
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO exit_signals (
                    signal_id, position_id, symbol, reason_code, price, profit_pct, evaluated_ts
                ) VALUES (
                    :signal_id, :position_id, :symbol, :reason_code, :price, :profit_pct, :ts
                )
                """
            ),
            dict(
                signal_id=signal.signal_id,
                position_id=signal.position_id,
                symbol=signal.symbol,
                reason_code=signal.reason_code,
                price=signal.price,
                profit_pct=signal.profit_pct,
                ts=_ts(signal.evaluated_ts),
            ),
        )


def select_exit_signals(engine, position_id: str | None = None, limit: int = 100) -> list[dict]:
    sql = "SELECT * FROM exit_signals"
    params: dict[str, Any] = {"limit": int(limit)}
    if position_id is not None:
        sql += " WHERE position_id = :pid"
        params["pid"] = position_id
    sql += " ORDER BY evaluated_ts DESC LIMIT :limit"
    with engine.connect() as conn:
        rows = conn.execute(text(sql), params).mappings().all()
    return [dict(r) for r in rows]


__all__ = [
    "SCHEMA",
    "get_engine",
    "init_schema",
    "SqlStateBackend",
    "SqlIntentStore",
    "SqlProfileStore",
    "SqlControlStore",
    "SqlHoldingsFeed",
    "SqlPriceFeed",
    "upsert_position",
    "upsert_price",
    "insert_exit_signal",
    "select_exit_signals",
]
