import asyncio

import pytest

from alert_relay_bot.binance.rest import SymbolFilters, ceil_to_tick, floor_to_tick, quantize, round_to_tick, step_decimals
from alert_relay_bot.errors import ExchangeError
from alert_relay_bot.execution.orchestrator import TradeOrchestrator, beyond_entry, protective_targets, trigger_price
from alert_relay_bot.models import Signal
from alert_relay_bot.settings import TradeSettings


class FakeRest:
    def __init__(self, market_price=100.0, filters=None):
        self.key = "k"
        self.market_price = market_price
        self.filters = filters or SymbolFilters(step_size=0.001, min_qty=0.001, tick_size=0.1)
        self.calls = []
        self.position = {}
        self.fail = {}
        self._oid = 0

    async def _hit(self, name, *args):
        await asyncio.sleep(0)
        self.calls.append((name,) + args)
        err = self.fail.get(name)
        if err is not None:
            raise err

    async def set_multi_assets(self, multi):
        await self._hit("set_multi_assets", multi)

    async def change_margin_type(self, symbol, mode):
        await self._hit("change_margin_type", symbol, mode)

    async def change_leverage(self, symbol, leverage):
        await self._hit("change_leverage", symbol, leverage)

    async def position_risk(self, symbol):
        await self._hit("position_risk", symbol)
        return self.position

    async def get_symbol_filters(self, symbol):
        await self._hit("get_symbol_filters", symbol)
        return self.filters

    async def price(self, symbol):
        await self._hit("price", symbol)
        return self.market_price

    async def _order(self, name, *args):
        await self._hit(name, *args)
        self._oid += 1
        return {"orderId": self._oid}

    async def order_market(self, symbol, side, qty, oid):
        return await self._order("order_market", symbol, side, qty)

    async def order_limit(self, symbol, side, qty, price, oid):
        return await self._order("order_limit", symbol, side, qty, price)

    async def order_take_profit_market(self, symbol, side, stop_price, oid):
        return await self._order("order_take_profit_market", symbol, side, stop_price)

    async def order_stop_market(self, symbol, side, stop_price, oid):
        return await self._order("order_stop_market", symbol, side, stop_price)

    def names(self):
        return [c[0] for c in self.calls]

    def orders(self):
        return [c for c in self.calls if c[0].startswith("order_")]


def _sig(symbol="BTCUSDT", direction="Buy", entry=100.0):
    return Signal(
        signal_id="s1", direction=direction, symbol=symbol, entry_price=entry, tp1=101.0, tp2=102.0, tp3=103.0, sl=99.0
    )


def _settings(**kw):
    base = dict(use_sl=True, position_size_usdt=100.0, price_tolerance=0.005)
    base.update(kw)
    return TradeSettings(**base)


def test_price_drift_aborts_before_any_order():
    rest = FakeRest(market_price=105.0)
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings(price_tolerance=0.02)))
    assert res.ok is False
    assert res.error_kind == "price_drift"
    assert "tolerance" in res.msg
    assert rest.orders() == []


def test_market_sequence_places_entry_then_protective_legs():
    rest = FakeRest(market_price=100.2)
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings()))
    assert res.ok is True
    assert rest.names()[:4] == ["set_multi_assets", "change_margin_type", "change_leverage", "get_symbol_filters"]
    assert rest.orders() == [
        ("order_market", "BTCUSDT", "BUY", "1.000"),
        ("order_take_profit_market", "BTCUSDT", "SELL", "101.0"),
        ("order_take_profit_market", "BTCUSDT", "SELL", "102.0"),
        ("order_take_profit_market", "BTCUSDT", "SELL", "103.0"),
        ("order_stop_market", "BTCUSDT", "SELL", "99.0"),
    ]
    assert [leg.role for leg in res.legs] == ["entry", "tp1", "tp2", "tp3", "sl"]
    assert [leg.order_id for leg in res.legs] == [1, 2, 3, 4, 5]
    assert all(len(oid) <= 36 for oid in res.order_ids)


def test_limit_mode_skips_drift_check_and_rounds_price():
    rest = FakeRest(market_price=150.0)
    sig = _sig(direction="Sell", entry=100.04)
    sig.tp1, sig.tp2, sig.tp3 = 99.0, 98.0, 97.0
    res = asyncio.run(TradeOrchestrator(rest).execute(sig, _settings(order_mode="limit", use_sl=False)))
    assert res.ok is True
    assert "price" not in rest.names()
    assert rest.orders()[0] == ("order_limit", "BTCUSDT", "SELL", "0.999", "100.0")
    assert rest.orders()[1:] == [
        ("order_take_profit_market", "BTCUSDT", "BUY", "99.0"),
        ("order_take_profit_market", "BTCUSDT", "BUY", "98.0"),
        ("order_take_profit_market", "BTCUSDT", "BUY", "97.0"),
    ]


def test_tolerance_disabled_skips_price_check():
    rest = FakeRest(market_price=150.0)
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings(market_tolerance_enabled=False)))
    assert res.ok is True
    assert "price" not in rest.names()


def test_margin_rejection_aborts_when_mode_not_effective():
    rest = FakeRest()
    rest.fail["change_margin_type"] = ExchangeError("POST", "/fapi/v1/marginType", 400, code=-4047, msg="open orders")
    rest.position = {"marginType": "isolated", "leverage": "5"}
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings()))
    assert res.ok is False
    assert res.error_kind == "exchange"
    assert rest.orders() == []


def test_margin_already_set_is_not_an_error():
    rest = FakeRest()
    rest.fail["change_margin_type"] = ExchangeError("POST", "/fapi/v1/marginType", 400, code=-4046, msg="No need")
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings()))
    assert res.ok is True
    assert "position_risk" not in rest.names()


def test_leverage_rejection_tolerated_when_already_effective():
    rest = FakeRest()
    rest.fail["change_leverage"] = ExchangeError("POST", "/fapi/v1/leverage", 400, code=-1000, msg="busy")
    rest.position = {"marginType": "cross", "leverage": "5"}
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings(leverage=5)))
    assert res.ok is True


def test_quantity_below_minimum_is_rejected():
    rest = FakeRest()
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings(position_size_usdt=0.01)))
    assert res.ok is False
    assert res.error_kind == "quantization"
    assert rest.orders() == []


def test_partial_failure_reports_placed_orders():
    rest = FakeRest()
    rest.fail["order_stop_market"] = ExchangeError("POST", "/fapi/v1/order", 400, code=-2021, msg="would trigger")
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings()))
    assert res.ok is False
    assert len(res.legs) == 4
    assert "4 order(s) were already placed" in res.msg


def test_same_account_sequences_do_not_interleave():
    rest = FakeRest()
    orch = TradeOrchestrator(rest)

    async def run():
        await asyncio.gather(
            orch.execute(_sig("BTCUSDT"), _settings()),
            orch.execute(_sig("ETHUSDT"), _settings()),
        )

    asyncio.run(run())
    symbols = [c[1] for c in rest.calls if c[0] != "set_multi_assets"]
    switches = sum(1 for a, b in zip(symbols, symbols[1:]) if a != b)
    assert switches == 1


def test_protective_targets_auto_mode_uses_tp1_only():
    s = _settings(auto_tp_mode=True)
    assert protective_targets(_sig(), s) == [("tp1", 101.0), ("sl", 99.0)]


def test_protective_targets_skip_disabled_and_empty_levels():
    s = _settings(use_sl=False, tp3_enabled=False)
    sig = _sig()
    sig.tp2 = 0.0
    assert protective_targets(sig, s) == [("tp1", 101.0)]


def test_quantize_floors_to_step():
    assert quantize(0.123456, 0.001) == "0.123"
    assert quantize(1.9999, 1) == "1"
    assert quantize(5, 0.01) == "5.00"
    assert step_decimals(0.0001) == 4


def test_round_to_tick_nearest():
    assert round_to_tick(101.25, 0.1) == "101.3"
    assert round_to_tick(101.24, 0.1) == "101.2"
    assert round_to_tick(0.000123456, 0.0000001) == "0.0001235"


def test_order_value_below_min_notional_is_rejected():
    rest = FakeRest(filters=SymbolFilters(step_size=0.001, min_qty=0.001, tick_size=0.1, min_notional=5.0))
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings(position_size_usdt=4.0)))
    assert res.ok is False
    assert res.error_kind == "quantization"
    assert "minimum 5" in res.msg
    assert rest.orders() == []


def test_order_value_at_min_notional_is_placed():
    rest = FakeRest(filters=SymbolFilters(step_size=0.001, min_qty=0.001, tick_size=0.1, min_notional=5.0))
    res = asyncio.run(TradeOrchestrator(rest).execute(_sig(), _settings(position_size_usdt=6.0)))
    assert res.ok is True
    assert rest.orders()[0] == ("order_market", "BTCUSDT", "BUY", "0.060")


def test_coarse_tick_rounds_triggers_away_from_entry():
    rest = FakeRest(market_price=1.0, filters=SymbolFilters(step_size=1, min_qty=1, tick_size=0.01))
    sig = _sig(entry=1.0)
    sig.tp1, sig.sl = 1.003, 0.996
    res = asyncio.run(TradeOrchestrator(rest).execute(sig, _settings(auto_tp_mode=True)))
    assert res.ok is True
    assert rest.orders() == [
        ("order_market", "BTCUSDT", "BUY", "100"),
        ("order_take_profit_market", "BTCUSDT", "SELL", "1.01"),
        ("order_stop_market", "BTCUSDT", "SELL", "0.99"),
    ]


def test_coarse_tick_short_rounds_tp_down_and_sl_up():
    rest = FakeRest(market_price=1.0, filters=SymbolFilters(step_size=1, min_qty=1, tick_size=0.01))
    sig = _sig(direction="Sell", entry=1.0)
    sig.tp1, sig.sl = 0.997, 1.004
    res = asyncio.run(TradeOrchestrator(rest).execute(sig, _settings(auto_tp_mode=True)))
    assert res.ok is True
    assert rest.orders()[1:] == [
        ("order_take_profit_market", "BTCUSDT", "BUY", "0.99"),
        ("order_stop_market", "BTCUSDT", "BUY", "1.01"),
    ]


def test_trigger_on_wrong_side_of_entry_places_nothing():
    rest = FakeRest(market_price=1.0, filters=SymbolFilters(step_size=1, min_qty=1, tick_size=0.01))
    sig = _sig(entry=1.0)
    sig.tp1, sig.sl = 0.995, 0.98
    res = asyncio.run(TradeOrchestrator(rest).execute(sig, _settings(auto_tp_mode=True)))
    assert res.ok is False
    assert res.error_kind == "quantization"
    assert "TP1" in res.msg
    assert rest.orders() == []


def test_trigger_price_direction_by_role():
    assert trigger_price("tp1", 1.003, True, 0.01) == "1.01"
    assert trigger_price("sl", 0.996, True, 0.01) == "0.99"
    assert trigger_price("tp2", 0.997, False, 0.01) == "0.99"
    assert trigger_price("sl", 1.004, False, 0.01) == "1.01"


def test_beyond_entry_is_strict():
    assert beyond_entry("tp1", "1.01", 1.0, True) is True
    assert beyond_entry("tp1", "1.00", 1.0, True) is False
    assert beyond_entry("sl", "1.00", 1.0, True) is False
    assert beyond_entry("sl", "1.01", 1.0, False) is True


def test_floor_and_ceil_to_tick():
    assert floor_to_tick(101.29, 0.1) == "101.2"
    assert ceil_to_tick(101.21, 0.1) == "101.3"
    assert ceil_to_tick(101.2, 0.1) == "101.2"
