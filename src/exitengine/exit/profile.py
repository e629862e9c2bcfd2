from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
import json
from typing import Any, Dict, Optional

import yaml

from ..utils.pct import pct_to_fraction, fraction_to_pct
from .exceptions import ValidationError

PROFIT_ABOVE = "profit_above"
PROFIT_BELOW = "profit_below"
CUSTOM_CONDITIONS = frozenset({PROFIT_ABOVE, PROFIT_BELOW})

DEFAULT_STOP_FLOOR_PROFIT = 0.006
DEFAULT_CONFIRM_TICKS = 2

# Plausible bounds for any price-move threshold (fractions)
MIN_THRESHOLD = -1.0
MAX_THRESHOLD = 10.0

_EPS = 1e-9


def _opt_float(data: Dict[str, Any], key: str) -> Optional[float]:
    val = data.get(key)
    return None if val is None else float(val)


@dataclass(frozen=True)
class TriggerConfig:
    """Threshold trigger (SL1, SL2, TP1, TP2, TP3).

    Attributes
    ----------
    base_pct:
        Signed price move that fires the trigger (``-0.03`` for -3%).
    min_pct, max_pct:
        Optional band the volatility-scaled threshold is clamped to.  The
        order of the two bounds does not matter (stop-loss bands are commonly
        written ``min_pct=-0.03, max_pct=-0.08``).
    qty_pct:
        Fraction of ``original_qty`` to exit.  ``0`` fires without selling.
    stop_floor_profit:
        TP1 only: profit fraction the stop floor is placed at.
    start_trailing:
        TP3 only: arm full trailing once TP3 fires.
    """

    base_pct: float
    qty_pct: float = 1.0
    min_pct: Optional[float] = None
    max_pct: Optional[float] = None
    stop_floor_profit: Optional[float] = None
    start_trailing: bool = False

    def threshold(self, factor: Optional[float] = None) -> float:
        """Effective threshold for volatility ``factor`` (``None`` = unscaled)."""
        if factor is None:
            return self.base_pct
        value = self.base_pct * factor
        bounds = [b for b in (self.min_pct, self.max_pct) if b is not None]
        if len(bounds) == 2:
            lo, hi = min(bounds), max(bounds)
            value = min(max(value, lo), hi)
        return value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerConfig":
        return cls(
            base_pct=float(data["base_pct"]),
            qty_pct=float(data.get("qty_pct", 1.0)),
            min_pct=_opt_float(data, "min_pct"),
            max_pct=_opt_float(data, "max_pct"),
            stop_floor_profit=_opt_float(data, "stop_floor_profit"),
            start_trailing=bool(data.get("start_trailing", False)),
        )


@dataclass(frozen=True)
class TrailingConfig:
    pct_trail: float
    partial_qty_pct: float = 0.2

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrailingConfig":
        return cls(
            pct_trail=float(data["pct_trail"]),
            partial_qty_pct=float(data.get("partial_qty_pct", 0.2)),
        )


@dataclass(frozen=True)
class TimeStopConfig:
    max_hold_days: int = 0
    no_momentum_days: int = 0
    no_momentum_profit: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeStopConfig":
        return cls(
            max_hold_days=int(data.get("max_hold_days", 0)),
            no_momentum_days=int(data.get("no_momentum_days", 0)),
            no_momentum_profit=float(data.get("no_momentum_profit", 0.0)),
        )


@dataclass(frozen=True)
class HardStopConfig:
    pct: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["HardStopConfig"]:
        if not data.get("enabled", True):
            return None
        return cls(pct=float(data["pct"]))


@dataclass(frozen=True)
class ATRConfig:
    """Volatility adjustment: ``factor = clamp(atr_pct / ref, min, max)``."""

    ref: float = 0.02
    factor_min: float = 0.7
    factor_max: float = 1.6

    def factor(self, atr_pct: Optional[float]) -> Optional[float]:
        if atr_pct is None or atr_pct <= 0:
            return None
        return min(max(atr_pct / self.ref, self.factor_min), self.factor_max)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ATRConfig":
        return cls(
            ref=float(data.get("ref", 0.02)),
            factor_min=float(data.get("factor_min", 0.7)),
            factor_max=float(data.get("factor_max", 1.6)),
        )


@dataclass(frozen=True)
class CustomExitRule:
    """User-authored profit-threshold rule (fraction scale internally).

    ``exit_percent`` is a fraction of the *remaining* quantity.
    """

    id: str
    condition: str
    threshold_pct: float
    exit_percent: float
    priority: int = 0
    enabled: bool = True
    description: str = ""

    def matches(self, profit_pct: float) -> bool:
        if self.condition == PROFIT_ABOVE:
            return profit_pct >= self.threshold_pct
        if self.condition == PROFIT_BELOW:
            return profit_pct <= self.threshold_pct
        return False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomExitRule":
        if "threshold" in data or "exitPercent" in data:
            return cls.from_ui(data)
        return cls(
            id=str(data["id"]),
            condition=str(data["condition"]),
            threshold_pct=float(data["threshold_pct"]),
            exit_percent=float(data["exit_percent"]),
            priority=int(data.get("priority", 0)),
            enabled=bool(data.get("enabled", True)),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    # Dashboard payloads ------------------------------------------------
    @classmethod
    def from_ui(cls, data: Dict[str, Any]) -> "CustomExitRule":
        """Parse the dashboard format (``threshold: 7`` means +7%)."""
        return cls(
            id=str(data["id"]),
            condition=str(data["condition"]),
            threshold_pct=pct_to_fraction(data["threshold"]),
            exit_percent=pct_to_fraction(data["exitPercent"]),
            priority=int(data.get("priority", 0)),
            enabled=bool(data.get("enabled", True)),
            description=str(data.get("description") or ""),
        )

    def to_ui(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "enabled": self.enabled,
            "condition": self.condition,
            "threshold": fraction_to_pct(self.threshold_pct),
            "exitPercent": fraction_to_pct(self.exit_percent),
            "priority": self.priority,
            "description": self.description,
        }


@dataclass(frozen=True)
class ExitProfile:
    """Exit rule set.  A trigger set to ``None`` is disabled."""

    profile_id: str
    name: str = ""
    description: str = ""
    is_active: bool = True
    sl1: Optional[TriggerConfig] = None
    sl2: Optional[TriggerConfig] = None
    tp1: Optional[TriggerConfig] = None
    tp2: Optional[TriggerConfig] = None
    tp3: Optional[TriggerConfig] = None
    trailing: Optional[TrailingConfig] = None
    time_stop: Optional[TimeStopConfig] = None
    hardstop: Optional[HardStopConfig] = None
    atr: Optional[ATRConfig] = None
    confirm_ticks: int = DEFAULT_CONFIRM_TICKS
    custom_rules: tuple[CustomExitRule, ...] = field(default_factory=tuple)

    @property
    def take_profit_qty_pct(self) -> float:
        return sum(t.qty_pct for t in (self.tp1, self.tp2, self.tp3) if t is not None)

    def sorted_custom_rules(self) -> list[CustomExitRule]:
        return sorted(self.custom_rules, key=lambda r: (r.priority, r.id))

    # ------------------------------------------------------------------
    # validation
    def validate(self) -> "ExitProfile":
        """Raise :class:`ValidationError` if the profile is malformed."""

        if not self.profile_id:
            raise ValidationError("profile_id is required")
        if self.confirm_ticks < 1:
            raise ValidationError("confirm_ticks must be >= 1")

        for name in ("sl1", "sl2"):
            trig = getattr(self, name)
            if trig is not None:
                _check_trigger(name, trig, negative=True)
        for name in ("tp1", "tp2", "tp3"):
            trig = getattr(self, name)
            if trig is not None:
                _check_trigger(name, trig, negative=False)

        if self.take_profit_qty_pct > 1.0 + _EPS:
            raise ValidationError(
                f"sum of take-profit qty_pct exceeds 1.0 ({self.take_profit_qty_pct:.4f})"
            )

        if self.tp1 is not None and self.tp1.stop_floor_profit is not None:
            if not -1.0 < self.tp1.stop_floor_profit < 1.0:
                raise ValidationError("tp1.stop_floor_profit out of bounds")

        if self.hardstop is not None and not MIN_THRESHOLD < self.hardstop.pct < 0:
            raise ValidationError("hardstop.pct must be negative and above -100%")

        if self.trailing is not None:
            if not 0 < self.trailing.pct_trail < 1:
                raise ValidationError("trailing.pct_trail must be in (0, 1)")
            if not 0 < self.trailing.partial_qty_pct <= 1:
                raise ValidationError("trailing.partial_qty_pct must be in (0, 1]")

        if self.time_stop is not None:
            ts = self.time_stop
            if ts.max_hold_days < 0 or ts.no_momentum_days < 0:
                raise ValidationError("time_stop days must be non-negative")
            if not MIN_THRESHOLD < ts.no_momentum_profit <= MAX_THRESHOLD:
                raise ValidationError("time_stop.no_momentum_profit out of bounds")

        if self.atr is not None:
            if self.atr.ref <= 0:
                raise ValidationError("atr.ref must be positive")
            if not 0 < self.atr.factor_min <= self.atr.factor_max:
                raise ValidationError("atr factors must satisfy 0 < factor_min <= factor_max")

        seen: set[str] = set()
        for rule in self.custom_rules:
            if not rule.id:
                raise ValidationError("custom rule id is required")
            if rule.id in seen:
                raise ValidationError(f"duplicate custom rule id {rule.id!r}")
            seen.add(rule.id)
            if rule.condition not in CUSTOM_CONDITIONS:
                raise ValidationError(f"unknown custom rule condition {rule.condition!r}")
            if not MIN_THRESHOLD < rule.threshold_pct <= MAX_THRESHOLD:
                raise ValidationError(f"custom rule {rule.id!r} threshold out of bounds")
            if not 0 < rule.exit_percent <= 1:
                raise ValidationError(f"custom rule {rule.id!r} exit_percent must be in (0, 1]")
        return self

    # ------------------------------------------------------------------
    # serialisation helpers
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExitProfile":
        # dashboard payloads nest the triggers under ``config``
        cfg = data.get("config", data)

        def trig(key: str) -> Optional[TriggerConfig]:
            raw = cfg.get(key)
            return TriggerConfig.from_dict(raw) if raw is not None else None

        hardstop = cfg.get("hardstop")
        trailing = cfg.get("trailing")
        time_stop = cfg.get("time_stop")
        atr = cfg.get("atr")
        return cls(
            profile_id=str(data.get("profile_id") or ""),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            is_active=bool(data.get("is_active", True)),
            sl1=trig("sl1"),
            sl2=trig("sl2"),
            tp1=trig("tp1"),
            tp2=trig("tp2"),
            tp3=trig("tp3"),
            trailing=TrailingConfig.from_dict(trailing) if trailing is not None else None,
            time_stop=TimeStopConfig.from_dict(time_stop) if time_stop is not None else None,
            hardstop=HardStopConfig.from_dict(hardstop) if hardstop is not None else None,
            atr=ATRConfig.from_dict(atr) if atr is not None else None,
            confirm_ticks=int(cfg.get("confirm_ticks", DEFAULT_CONFIRM_TICKS)),
            custom_rules=tuple(
                CustomExitRule.from_dict(r) for r in cfg.get("custom_rules") or []
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["custom_rules"] = [r.to_dict() for r in self.custom_rules]
        return out

    # YAML --------------------------------------------------------------
    @classmethod
    def from_yaml(cls, path: str | Path) -> "ExitProfile":
        with open(path, "r", encoding="utf8") as fh:
            data = yaml.safe_load(fh) or {}
        return cls.from_dict(data)

    def to_yaml(self, path: str | Path) -> None:
        with open(path, "w", encoding="utf8") as fh:
            yaml.safe_dump(self.to_dict(), fh, sort_keys=False)

    # JSON --------------------------------------------------------------
    @classmethod
    def from_json(cls, path: str | Path) -> "ExitProfile":
        with open(path, "r", encoding="utf8") as fh:
            data = json.load(fh)
        return cls.from_dict(data)

    def to_json(self, path: str | Path, *, indent: int = 2) -> None:
        with open(path, "w", encoding="utf8") as fh:
            json.dump(self.to_dict(), fh, indent=indent)


def _check_trigger(name: str, trig: TriggerConfig, *, negative: bool) -> None:
    if negative and not MIN_THRESHOLD < trig.base_pct < 0:
        raise ValidationError(f"{name}.base_pct must be negative and above -100%")
    if not negative and not 0 < trig.base_pct <= MAX_THRESHOLD:
        raise ValidationError(f"{name}.base_pct must be positive")
    for bound in (trig.min_pct, trig.max_pct):
        if bound is None:
            continue
        if (bound < 0) != negative or not MIN_THRESHOLD < bound <= MAX_THRESHOLD:
            raise ValidationError(f"{name} clamp band must share the sign of base_pct")
    if not 0 <= trig.qty_pct <= 1:
        raise ValidationError(f"{name}.qty_pct must be in [0, 1]")


@dataclass(frozen=True)
class SymbolOverride:
    symbol: str
    profile_id: str
    reason: str = ""
    effective_from: Optional[datetime] = None
    enabled: bool = True

    def is_effective(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        return self.effective_from is None or self.effective_from <= now


DEFAULT_PROFILE = ExitProfile(
    profile_id="default",
    name="Default",
    description="Built-in fallback profile",
    sl1=TriggerConfig(base_pct=-0.03, min_pct=-0.02, max_pct=-0.05, qty_pct=0.5),
    sl2=TriggerConfig(base_pct=-0.05, min_pct=-0.03, max_pct=-0.08, qty_pct=1.0),
    tp1=TriggerConfig(
        base_pct=0.07,
        min_pct=0.05,
        max_pct=0.10,
        qty_pct=0.10,
        stop_floor_profit=DEFAULT_STOP_FLOOR_PROFIT,
    ),
    tp2=TriggerConfig(base_pct=0.10, min_pct=0.08, max_pct=0.15, qty_pct=0.20),
    tp3=TriggerConfig(
        base_pct=0.15, min_pct=0.12, max_pct=0.20, qty_pct=0.30, start_trailing=True
    ),
    trailing=TrailingConfig(pct_trail=0.04, partial_qty_pct=0.2),
    time_stop=TimeStopConfig(max_hold_days=0),
    hardstop=HardStopConfig(pct=-0.10),
)


__all__ = [
    "PROFIT_ABOVE",
    "PROFIT_BELOW",
    "CUSTOM_CONDITIONS",
    "DEFAULT_STOP_FLOOR_PROFIT",
    "DEFAULT_CONFIRM_TICKS",
    "TriggerConfig",
    "TrailingConfig",
    "TimeStopConfig",
    "HardStopConfig",
    "ATRConfig",
    "CustomExitRule",
    "ExitProfile",
    "SymbolOverride",
    "DEFAULT_PROFILE",
]
