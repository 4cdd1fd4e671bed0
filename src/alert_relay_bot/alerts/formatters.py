from __future__ import annotations

import html
from decimal import Decimal
from typing import Any, Dict, List

from ..models import FIELD_LABELS, Signal
from ..settings import CHOICES, SETTING_LABELS, TradeSettings
from ..storage.journal import PERIOD_TITLES, PerformanceData

# callback_data is "action|payload[|field]"
ACTION_EDIT = "edit"
ACTION_FIELD = "field"
ACTION_CONFIRM = "conf"
ACTION_DISMISS = "dismiss"
ACTION_SET_OPTION = "setopt"
ACTION_CHANGE_OPTION = "chgopt"
ACTION_PERFORMANCE = "performance"

GREEN = "\U0001F7E2"
RED = "\U0001F534"
WHITE = "\U000026AA"
CHECK = "✅"
CROSS = "❌"
NO_ENTRY = "\U0001F6AB"

CHOICE_LABELS = {
    "cross": "Cross",
    "isolated": "Isolated",
    "multi": "Multi",
    "single": "Single",
    "market": "Market",
    "limit": "Limit",
}


def escape(val: Any) -> str:
    return html.escape(str(val)) if val is not None else ""


def format_float(value: float) -> str:
    """Zero renders as "-"; anything else keeps exactly its own decimals."""
    if value == 0:
        return "-"
    s = format(Decimal(repr(float(value))), "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s


def _button(text: str, *parts: str) -> Dict[str, str]:
    return {"text": text, "callback_data": "|".join(parts)}


def _flag(on: bool) -> str:
    return CHECK if on else NO_ENTRY


# --- Signals ---

def format_signal(sig: Signal) -> str:
    emoji = GREEN if sig.direction == "Buy" else RED if sig.direction == "Sell" else WHITE
    lines = [
        f"{emoji} <b>{escape(sig.direction)} Signal</b>",
        "",
        f"<b>Symbol:</b> {escape(sig.symbol)}",
        f"<b>Timeframe:</b> {escape(sig.timeframe)}",
        f"<b>Time:</b> {escape(sig.time)}",
        f"<b>Entry Price:</b> {format_float(sig.entry_price)}",
        f"<b>TP1:</b> {format_float(sig.tp1)}",
        f"<b>TP2:</b> {format_float(sig.tp2)}",
        f"<b>TP3:</b> {format_float(sig.tp3)}",
        f"<b>SL:</b> {format_float(sig.sl)}",
        f"<b>High Price:</b> {format_float(sig.high_price)}",
        f"<b>Low Price:</b> {format_float(sig.low_price)}",
        f"<b>Midpoint:</b> {format_float(sig.midpoint)}",
    ]
    if sig.confirmed:
        lines += ["", f"{CHECK} Signal confirmed and sent to Binance."]
    elif sig.dismissed:
        lines += ["", f"{CROSS} Signal has been dismissed."]
    return "\n".join(lines)


def _reference_row(signal_id: str) -> List[Dict[str, str]]:
    return [
        _button("Set High Price", ACTION_FIELD, signal_id, "high_price"),
        _button("Set Low Price", ACTION_FIELD, signal_id, "low_price"),
        _button("Set Midpoint", ACTION_FIELD, signal_id, "midpoint"),
    ]


def signal_keyboard(signal_id: str) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                _button("Edit", ACTION_EDIT, signal_id),
                _button("Confirm", ACTION_CONFIRM, signal_id),
                _button("Dismiss", ACTION_DISMISS, signal_id),
            ],
            _reference_row(signal_id),
        ]
    }


def edit_keyboard(signal_id: str) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                _button(FIELD_LABELS["entry_price"], ACTION_FIELD, signal_id, "entry_price"),
                _button(FIELD_LABELS["sl"], ACTION_FIELD, signal_id, "sl"),
            ],
            [
                _button(FIELD_LABELS["tp1"], ACTION_FIELD, signal_id, "tp1"),
                _button(FIELD_LABELS["tp2"], ACTION_FIELD, signal_id, "tp2"),
            ],
            [_button(FIELD_LABELS["tp3"], ACTION_FIELD, signal_id, "tp3")],
            _reference_row(signal_id),
        ]
    }


def format_field_updated(sig: Signal, field: str, value: float) -> str:
    return (
        f"{FIELD_LABELS.get(field, field)} for {escape(sig.symbol)} ({escape(sig.time)}) "
        f"has been updated to {format_float(value)}."
    )


# --- Settings ---

def format_settings(s: TradeSettings) -> str:
    lines = [
        "Your Current Settings:",
        "",
        f"<b>Margin Mode:</b> {CHOICE_LABELS[s.margin_mode]}",
        f"<b>Leverage:</b> {s.leverage}x",
        f"<b>Asset Mode:</b> {CHOICE_LABELS[s.asset_mode]}",
        f"<b>Trading Mode:</b> {CHOICE_LABELS[s.order_mode]}",
        f"<b>Amount (USDT):</b> {s.position_size_usdt:.2f}",
        f"<b>Use Stop Loss:</b> {_flag(s.use_sl)}",
        f"<b>Simplified TP/SL:</b> {_flag(s.auto_tp_mode)}",
        f"<b>Dynamic Calculation:</b> {_flag(s.dynamic_recalc)}",
        f"<b>Tolerance in Market Mode:</b> {_flag(s.market_tolerance_enabled)}",
        f"<b>Price Tolerance:</b> {s.price_tolerance * 100:.2f}%",
    ]
    if s.auto_tp_mode:
        lines += [
            f"<b>Auto TP Percentage:</b> {s.auto_tp_pct:.2f}%",
            f"<b>Auto SL Percentage:</b> {s.auto_sl_pct:.2f}%",
        ]
    else:
        lines.append("")
        lines.append(f"<b>TP1 Percentage:</b> {s.tp1_pct:.2f}%")
        if s.tp2_enabled:
            lines.append(f"<b>TP2 Percentage:</b> {s.tp2_pct:.2f}%")
        if s.tp3_enabled:
            lines.append(f"<b>TP3 Percentage:</b> {s.tp3_pct:.2f}%")
        lines.append(f"<b>SL Percentage:</b> {s.manual_sl_pct:.2f}%")
        lines += ["", "Close Percentage for Each TP:", f"TP1: {s.tp1_close_pct:.2f}%"]
        if s.tp2_enabled:
            lines.append(f"TP2: {s.tp2_close_pct:.2f}%")
        if s.tp3_enabled:
            lines.append(f"TP3: {s.tp3_close_pct:.2f}%")
    return "\n".join(lines)


def settings_keyboard(s: TradeSettings) -> Dict[str, Any]:
    def opt(text: str, name: str) -> Dict[str, str]:
        return _button(text, ACTION_SET_OPTION, name)

    rows: List[List[Dict[str, str]]] = [
        [opt("Margin Mode", "margin_mode"), opt("Leverage", "leverage")],
        [opt("Asset Mode", "asset_mode"), opt("Trading Mode", "order_mode")],
        [opt("Amount (USDT)", "position_size_usdt"), opt(f"{_flag(s.use_sl)} Use Stop Loss", "use_sl")],
        [
            opt(f"{_flag(s.auto_tp_mode)} Simplified TP/SL", "auto_tp_mode"),
            opt(f"{_flag(s.dynamic_recalc)} Dynamic Calculation", "dynamic_recalc"),
        ],
        [
            opt(f"{_flag(s.market_tolerance_enabled)} Tolerance in Market Mode", "market_tolerance_enabled"),
            opt("Set Price Tolerance", "price_tolerance"),
        ],
    ]
    if s.auto_tp_mode:
        rows.append([opt("Set Auto SL %", "auto_sl_pct"), opt("Set Auto TP %", "auto_tp_pct")])
    else:
        rows.append([opt("Set TP1 %", "tp1_pct"), opt("TP1 Close %", "tp1_close_pct")])
        if s.tp2_enabled:
            rows.append([opt("Set TP2 %", "tp2_pct"), opt("TP2 Close %", "tp2_close_pct")])
        if s.tp3_enabled:
            rows.append([opt("Set TP3 %", "tp3_pct"), opt("TP3 Close %", "tp3_close_pct")])
        rows.append([opt("Set SL %", "manual_sl_pct")])
    rows.append([_button("View Performance", ACTION_SET_OPTION, "performance")])
    return {"inline_keyboard": rows}


def option_keyboard(name: str) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [_button(CHOICE_LABELS[v], ACTION_CHANGE_OPTION, name, v) for v in CHOICES[name]]
        ]
    }


def format_setting_prompt(name: str) -> str:
    label = SETTING_LABELS.get(name, name)
    if name.endswith("_pct") or name == "price_tolerance":
        return f"Please enter the new percentage for {label} (e.g., 1.5)."
    return f"Please enter the new value for {label}."


# --- Performance ---

def performance_keyboard() -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [_button(PERIOD_TITLES["day"], ACTION_PERFORMANCE, "day"), _button(PERIOD_TITLES["week"], ACTION_PERFORMANCE, "week")],
            [_button(PERIOD_TITLES["month"], ACTION_PERFORMANCE, "month"), _button(PERIOD_TITLES["year"], ACTION_PERFORMANCE, "year")],
            [_button(PERIOD_TITLES["years"], ACTION_PERFORMANCE, "years")],
        ]
    }


def format_performance(period: str, data: PerformanceData) -> str:
    title = PERIOD_TITLES.get(period)
    header = f"<b>Performance Summary for {title}</b>" if title else "<b>Performance Summary</b>"
    lines = [
        header,
        f"Total Trades: {data.total_trades}",
        f"Winning Trades: {data.winning_trades}",
        f"Losing Trades: {data.losing_trades}",
        f"Win Ratio: {data.win_ratio:.2f}",
        f"Average Profit: {data.average_profit:.2f}",
        f"Average Loss: {data.average_loss:.2f}",
        f"Total Profit: {data.total_profit:.2f}",
        f"Total Loss: {data.total_loss:.2f}",
        f"Net Profit: {data.net_profit:.2f}",
    ]
    return "\n".join(lines)
