import pytest

from alert_relay_bot.models import Signal
from alert_relay_bot.storage.journal import DAY_MS, TradeJournal, performance_metrics


def test_metrics_empty_is_all_zero():
    data = performance_metrics([])
    assert data.total_trades == 0
    assert data.win_ratio == 0.0
    assert data.average_profit == 0.0
    assert data.average_loss == 0.0
    assert data.net_profit == 0.0


def test_metrics_counts_zero_profit_as_loss():
    data = performance_metrics([{"profit": 10}, {"profit": -5}, {"profit": 0}])
    assert data.total_trades == 3
    assert data.winning_trades == 1
    assert data.losing_trades == 2
    assert data.win_ratio == pytest.approx(1 / 3)
    assert data.average_profit == 10
    assert data.average_loss == -2.5
    assert data.net_profit == 5


def test_trades_for_period_filters_by_window(tmp_path):
    j = TradeJournal(str(tmp_path))
    now = 100 * DAY_MS
    j.log_trade({"ts_ms": now - DAY_MS // 2, "signal_id": "a", "symbol": "BTCUSDT", "leg": "tp1", "profit": 2})
    j.log_trade({"ts_ms": now - 3 * DAY_MS, "signal_id": "b", "symbol": "BTCUSDT", "leg": "sl", "profit": -1})
    assert [r["signal_id"] for r in j.trades_for_period("day", now_ms=now)] == ["a"]
    assert [r["signal_id"] for r in j.trades_for_period("week", now_ms=now)] == ["a", "b"]
    with pytest.raises(ValueError):
        j.trades_for_period("decade", now_ms=now)


def test_log_signal_appends_row(tmp_path):
    j = TradeJournal(str(tmp_path))
    j.log_signal(Signal(signal_id="s1", direction="Sell", symbol="ETHUSDT", entry_price=2000.0), ts_ms=1)
    lines = j.signals_csv.read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("1,s1,ETHUSDT,Sell")
