from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

from .models import Signal
from .settings import TradeSettings

PRICE_DECIMALS = 6
# sub-unit prices keep this many significant digits instead
PRICE_SIGNIFICANT = 6
MAX_PRICE_DECIMALS = 15


def _places(entry: float) -> int:
    lead = Decimal(repr(entry)).adjusted()
    return min(max(PRICE_DECIMALS, PRICE_SIGNIFICANT - 1 - lead), MAX_PRICE_DECIMALS)


def _round_beyond(value: float, entry: float, above: bool) -> float:
    """Round to six places, or six significant digits for prices below 0.1,
    adding places while the result would land on or across the entry."""
    for places in range(_places(entry), MAX_PRICE_DECIMALS + 1):
        r = round(value, places)
        if (r > entry) if above else (r < entry):
            return r
    return value


def _tp(entry: float, pct: float, buy: bool) -> float:
    raw = entry * (1 + pct / 100.0) if buy else entry * (1 - pct / 100.0)
    return _round_beyond(raw, entry, above=buy)


def _sl(entry: float, pct: float, buy: bool) -> float:
    raw = entry * (1 - pct / 100.0) if buy else entry * (1 + pct / 100.0)
    return _round_beyond(raw, entry, above=not buy)


def recalculate(signal: Signal, settings: TradeSettings) -> Signal:
    """Derive TP1..TP3 and SL from the entry price.

    Returns a new Signal; the input is never mutated. The result equals the
    input when dynamic recalculation is off or the entry is not positive.
    Auto mode computes TP1 only and zeroes TP2/TP3. Manual mode writes all
    three TPs regardless of the per-TP enabled flags. SL is only touched when
    stop loss is enabled. The entry price and ``manual_entry_edited`` are
    never changed, so an operator-set entry survives bulk settings changes.
    """
    out = replace(signal)
    if not settings.dynamic_recalc or not signal.entry_price > 0:
        return out

    entry = signal.entry_price
    buy = signal.direction == "Buy"

    if settings.auto_tp_mode:
        out.tp1 = _tp(entry, settings.auto_tp_pct, buy)
        out.tp2 = 0.0
        out.tp3 = 0.0
        if settings.use_sl:
            out.sl = _sl(entry, settings.auto_sl_pct, buy)
        return out

    out.tp1 = _tp(entry, settings.tp1_pct, buy)
    out.tp2 = _tp(entry, settings.tp2_pct, buy)
    out.tp3 = _tp(entry, settings.tp3_pct, buy)
    if settings.use_sl:
        out.sl = _sl(entry, settings.manual_sl_pct, buy)
    return out


def apply_levels(target: Signal, computed: Signal) -> None:
    """Copy derived levels onto ``target`` in place (used inside repository
    update callbacks)."""
    target.tp1 = computed.tp1
    target.tp2 = computed.tp2
    target.tp3 = computed.tp3
    target.sl = computed.sl
