from __future__ import annotations
from dataclasses import dataclass
from typing import Literal, Optional

Direction = Literal["Buy", "Sell"]

# Fields an operator may type a value for.
EDITABLE_FIELDS = ("entry_price", "tp1", "tp2", "tp3", "sl")
# Fields whose stored value can be copied straight into entry_price.
REFERENCE_FIELDS = ("high_price", "low_price", "midpoint")

FIELD_LABELS = {
    "entry_price": "Entry Price",
    "tp1": "TP1",
    "tp2": "TP2",
    "tp3": "TP3",
    "sl": "SL",
    "high_price": "High Price",
    "low_price": "Low Price",
    "midpoint": "Midpoint",
}


def normalize_direction(raw: Optional[str]) -> Optional[Direction]:
    d = (raw or "").strip().lower()
    if d in ("buy", "long"):
        return "Buy"
    if d in ("sell", "short"):
        return "Sell"
    return None


@dataclass
class Signal:
    signal_id: str
    direction: Direction
    symbol: str
    timeframe: str = ""
    time: str = ""
    entry_price: float = 0.0
    tp1: float = 0.0
    tp2: float = 0.0
    tp3: float = 0.0
    sl: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0
    midpoint: float = 0.0
    confirmed: bool = False
    dismissed: bool = False
    manual_entry_edited: bool = False

    @property
    def closed(self) -> bool:
        return self.confirmed or self.dismissed

    @property
    def entry_side(self) -> str:
        return "BUY" if self.direction == "Buy" else "SELL"

    @property
    def exit_side(self) -> str:
        return "SELL" if self.direction == "Buy" else "BUY"
