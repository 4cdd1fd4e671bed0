from __future__ import annotations

import csv
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..models import Signal

log = logging.getLogger("journal")

SIGNAL_FIELDS = ["ts_ms", "signal_id", "symbol", "direction", "time", "entry_price", "tp1", "tp2", "tp3", "sl"]
TRADE_FIELDS = ["ts_ms", "signal_id", "symbol", "leg", "entry_price", "exit_price", "profit"]

DAY_MS = 24 * 60 * 60 * 1000
PERIODS_MS = {
    "day": DAY_MS,
    "week": 7 * DAY_MS,
    "month": 30 * DAY_MS,
    "year": 365 * DAY_MS,
    "years": 5 * 365 * DAY_MS,
}
PERIOD_TITLES = {
    "day": "Previous Day",
    "week": "Previous Week",
    "month": "Previous Month",
    "year": "Previous Year",
    "years": "Recent Years",
}


@dataclass
class PerformanceData:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_ratio: float = 0.0
    average_profit: float = 0.0
    average_loss: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0


class TradeJournal:
    """Append-only CSV sink: one row per confirmed signal, one per realized
    protective fill."""

    def __init__(self, out_dir: str):
        self.out = Path(out_dir)
        self.out.mkdir(parents=True, exist_ok=True)
        self.signals_csv = self.out / "signals.csv"
        self.trades_csv = self.out / "trades.csv"
        self._init_files()

    def _init_files(self) -> None:
        for path, fields in ((self.signals_csv, SIGNAL_FIELDS), (self.trades_csv, TRADE_FIELDS)):
            if not path.exists():
                with path.open("w", newline="", encoding="utf-8") as f:
                    w = csv.DictWriter(f, fieldnames=fields)
                    w.writeheader()

    def log_signal(self, signal: Signal, ts_ms: Optional[int] = None) -> None:
        row = {
            "ts_ms": ts_ms if ts_ms is not None else int(time.time() * 1000),
            "signal_id": signal.signal_id,
            "symbol": signal.symbol,
            "direction": signal.direction,
            "time": signal.time,
            "entry_price": signal.entry_price,
            "tp1": signal.tp1,
            "tp2": signal.tp2,
            "tp3": signal.tp3,
            "sl": signal.sl,
        }
        with self.signals_csv.open("a", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=SIGNAL_FIELDS)
            w.writerow(row)

    def log_trade(self, d: Dict[str, Any]) -> None:
        with self.trades_csv.open("a", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=TRADE_FIELDS, extrasaction="ignore")
            w.writerow(d)
        log.info("trade_logged signal=%s leg=%s profit=%s", d.get("signal_id"), d.get("leg"), d.get("profit"))

    def trades_for_period(self, period: str, now_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        if period not in PERIODS_MS:
            raise ValueError(f"unknown period: {period}")
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        since = now - PERIODS_MS[period]
        out: List[Dict[str, Any]] = []
        with self.trades_csv.open("r", newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                try:
                    ts = int(float(row.get("ts_ms") or 0))
                    profit = float(row.get("profit") or 0)
                except ValueError:
                    log.warning("trade_row_skipped row=%s", row)
                    continue
                if since <= ts <= now:
                    out.append({**row, "ts_ms": ts, "profit": profit})
        return out


def performance_metrics(trades: Iterable[Dict[str, Any]]) -> PerformanceData:
    data = PerformanceData()
    for t in trades:
        profit = float(t.get("profit") or 0)
        data.total_trades += 1
        if profit > 0:
            data.winning_trades += 1
            data.total_profit += profit
        else:
            data.losing_trades += 1
            data.total_loss += profit
    if data.total_trades:
        data.win_ratio = data.winning_trades / data.total_trades
    if data.winning_trades:
        data.average_profit = data.total_profit / data.winning_trades
    if data.losing_trades:
        data.average_loss = data.total_loss / data.losing_trades
    data.net_profit = data.total_profit + data.total_loss
    return data
