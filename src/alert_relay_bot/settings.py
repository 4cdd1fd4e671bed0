from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Literal, Optional

from .errors import ValidationError
from .locks import RWLock

log = logging.getLogger("settings")

MarginMode = Literal["cross", "isolated"]
AssetMode = Literal["multi", "single"]
OrderMode = Literal["market", "limit"]

MAX_LEVERAGE = 125
MAX_POSITION_USDT = 1_000_000.0

CHOICES: Dict[str, tuple[str, ...]] = {
    "margin_mode": ("cross", "isolated"),
    "asset_mode": ("multi", "single"),
    "order_mode": ("market", "limit"),
}
TOGGLES = ("use_sl", "auto_tp_mode", "dynamic_recalc", "market_tolerance_enabled")
TEXT_SETTINGS = (
    "leverage",
    "position_size_usdt",
    "price_tolerance",
    "tp1_pct",
    "tp2_pct",
    "tp3_pct",
    "manual_sl_pct",
    "auto_tp_pct",
    "auto_sl_pct",
    "tp1_close_pct",
    "tp2_close_pct",
    "tp3_close_pct",
)

SETTING_LABELS = {
    "margin_mode": "Margin Mode",
    "asset_mode": "Asset Mode",
    "order_mode": "Trading Mode",
    "leverage": "Leverage",
    "position_size_usdt": "Amount (USDT)",
    "price_tolerance": "Price Tolerance (%)",
    "use_sl": "Use Stop Loss",
    "auto_tp_mode": "Simplified TP/SL",
    "dynamic_recalc": "Dynamic Calculation",
    "market_tolerance_enabled": "Tolerance in Market Mode",
    "tp1_pct": "TP1 %",
    "tp2_pct": "TP2 %",
    "tp3_pct": "TP3 %",
    "manual_sl_pct": "SL %",
    "auto_tp_pct": "Auto TP %",
    "auto_sl_pct": "Auto SL %",
    "tp1_close_pct": "TP1 Close %",
    "tp2_close_pct": "TP2 Close %",
    "tp3_close_pct": "TP3 Close %",
}


@dataclass
class TradeSettings:
    margin_mode: MarginMode = "cross"
    leverage: int = 5
    asset_mode: AssetMode = "multi"
    order_mode: OrderMode = "market"
    position_size_usdt: float = 100.0
    use_sl: bool = False
    auto_tp_mode: bool = False
    tp1_pct: float = 0.75
    tp2_pct: float = 1.5
    tp3_pct: float = 2.0
    manual_sl_pct: float = 1.0
    auto_tp_pct: float = 1.0
    auto_sl_pct: float = 1.0
    # fraction, 0.005 == 0.5%
    price_tolerance: float = 0.005
    tp1_close_pct: float = 60.0
    tp2_close_pct: float = 20.0
    tp3_close_pct: float = 20.0
    tp1_enabled: bool = True
    tp2_enabled: bool = True
    tp3_enabled: bool = True
    dynamic_recalc: bool = True
    market_tolerance_enabled: bool = True

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "TradeSettings":
        dd = d or {}
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in dd.items():
            if key not in known:
                log.warning("unknown settings default ignored: %s", key)
                continue
            default = getattr(cls, key)
            if isinstance(default, bool):
                kwargs[key] = bool(value)
            elif isinstance(default, int):
                kwargs[key] = int(value)
            elif isinstance(default, float):
                kwargs[key] = float(value)
            else:
                kwargs[key] = str(value).lower()
        return normalize_close_percentages(cls(**kwargs))


def normalize_close_percentages(s: TradeSettings) -> TradeSettings:
    """Keep TP close weights summing to at most 100.

    TP1 is always enabled. The first TP that reaches 100 cumulatively is
    clamped to the remainder and every TP after it is zeroed and disabled.
    TP3 absorbs whatever TP1 and TP2 leave over.
    """
    out = replace(s)
    out.tp1_close_pct = min(max(out.tp1_close_pct, 0.0), 100.0)
    out.tp2_close_pct = min(max(out.tp2_close_pct, 0.0), 100.0)
    out.tp3_close_pct = min(max(out.tp3_close_pct, 0.0), 100.0)
    out.tp1_enabled = True

    if out.tp1_close_pct >= 100:
        out.tp1_close_pct = 100.0
        out.tp2_close_pct = out.tp3_close_pct = 0.0
        out.tp2_enabled = out.tp3_enabled = False
        return out

    remaining = 100.0 - out.tp1_close_pct
    if out.tp2_close_pct > remaining:
        out.tp2_close_pct = remaining
        out.tp3_close_pct = 0.0
        out.tp2_enabled = True
        out.tp3_enabled = False
        return out

    remaining -= out.tp2_close_pct
    out.tp3_close_pct = remaining if remaining > 0 else 0.0
    out.tp2_enabled = out.tp2_close_pct > 0
    out.tp3_enabled = out.tp3_close_pct > 0
    return out


def _parse_float(text: str, lo: float, hi: float, *, lo_inclusive: bool = True, hi_inclusive: bool = True) -> float:
    try:
        val = float(text.strip().replace(",", "."))
    except ValueError:
        val = math.nan
    ok = math.isfinite(val)
    if ok:
        ok = (val >= lo if lo_inclusive else val > lo) and (val <= hi if hi_inclusive else val < hi)
    if not ok:
        lo_s = "≥" if lo_inclusive else ">"
        hi_s = "≤" if hi_inclusive else "<"
        raise ValidationError(f"Invalid value. Please enter a number {lo_s} {lo:g} and {hi_s} {hi:g}.")
    return val


def apply_text_setting(s: TradeSettings, name: str, text: str) -> TradeSettings:
    """Validate operator input for ``name`` and return updated settings."""
    out = replace(s)
    if name == "leverage":
        try:
            lev = int(text.strip())
        except ValueError:
            lev = 0
        if not 1 <= lev <= MAX_LEVERAGE:
            raise ValidationError(f"Invalid leverage value. Enter a positive integer up to {MAX_LEVERAGE}.")
        out.leverage = lev
    elif name == "position_size_usdt":
        out.position_size_usdt = _parse_float(text, 0, MAX_POSITION_USDT, lo_inclusive=False)
    elif name == "price_tolerance":
        out.price_tolerance = _parse_float(text, 0, 100) / 100.0
    elif name == "tp1_pct":
        out.tp1_pct = _parse_float(text, 0, 1000, lo_inclusive=False)
    elif name in ("tp2_pct", "tp3_pct"):
        if not getattr(s, name[:3] + "_enabled"):
            raise ValidationError(f"{name[:3].upper()} is currently disabled by the TP close percentages.")
        setattr(out, name, _parse_float(text, 0, 1000, lo_inclusive=False))
    elif name == "auto_tp_pct":
        out.auto_tp_pct = _parse_float(text, 0, 1000, lo_inclusive=False)
    elif name in ("manual_sl_pct", "auto_sl_pct"):
        setattr(out, name, _parse_float(text, 0, 100, lo_inclusive=False, hi_inclusive=False))
    elif name in ("tp1_close_pct", "tp2_close_pct", "tp3_close_pct"):
        val = _parse_float(text, 0, 100)
        if name == "tp2_close_pct" and s.tp1_close_pct >= 100:
            raise ValidationError("Cannot set TP2 close percentage when TP1 is 100%.")
        if name == "tp3_close_pct" and s.tp1_close_pct + s.tp2_close_pct >= 100:
            raise ValidationError("Cannot set TP3 close percentage when TP1 + TP2 is 100%.")
        setattr(out, name, val)
    else:
        raise ValidationError(f"Unknown setting: {name}")
    return out


def apply_choice(s: TradeSettings, name: str, value: str) -> TradeSettings:
    allowed = CHOICES.get(name)
    if allowed is None:
        raise ValidationError(f"Unknown setting: {name}")
    v = value.strip().lower()
    if v not in allowed:
        raise ValidationError(f"Invalid {SETTING_LABELS[name]} selected.")
    return replace(s, **{name: v})


def toggle(s: TradeSettings, name: str) -> TradeSettings:
    if name not in TOGGLES:
        raise ValidationError(f"Unknown setting: {name}")
    return replace(s, **{name: not getattr(s, name)})


class SettingsRepository:
    """Per-operator settings. ``update`` is the single write path: it swaps in
    a fully built record under the write lock, so readers see either the old
    or the new settings, never a mix."""

    def __init__(self, defaults: Optional[TradeSettings] = None) -> None:
        self._lock = RWLock()
        self._defaults = normalize_close_percentages(defaults or TradeSettings())
        self._settings: Dict[int, TradeSettings] = {}

    def get(self, operator_id: int) -> TradeSettings:
        with self._lock.read():
            current = self._settings.get(operator_id)
            if current is not None:
                return replace(current)
        with self._lock.write():
            current = self._settings.setdefault(operator_id, replace(self._defaults))
            return replace(current)

    def update(self, operator_id: int, change: Callable[[TradeSettings], TradeSettings]) -> TradeSettings:
        with self._lock.write():
            current = self._settings.get(operator_id) or replace(self._defaults)
            updated = normalize_close_percentages(change(replace(current)))
            self._settings[operator_id] = updated
        log.info(
            "settings_updated operator=%s mode=%s close=[%.2f, %.2f, %.2f] enabled=[%s, %s, %s]",
            operator_id,
            updated.order_mode,
            updated.tp1_close_pct,
            updated.tp2_close_pct,
            updated.tp3_close_pct,
            updated.tp1_enabled,
            updated.tp2_enabled,
            updated.tp3_enabled,
        )
        return replace(updated)
