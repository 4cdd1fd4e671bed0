from __future__ import annotations

import asyncio
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..binance.rest import BinanceRest, ceil_to_tick, floor_to_tick, quantize, round_to_tick
from ..errors import ExchangeError, PriceDriftError, QuantizationError, TradeError, user_message
from ..models import Signal
from ..settings import TradeSettings
from .base import ExecutionResult, OrderLeg
from .fill_monitor import FillMonitor

log = logging.getLogger("orchestrator")

# "No need to change margin type."
MARGIN_UNCHANGED_CODE = -4046


class TradeOrchestrator:
    """Runs the exchange call sequence for one confirmed signal.

    Sequences for the same exchange account never interleave: each ``execute``
    holds that account's lock from margin setup to the last protective order.
    Different accounts proceed independently.
    """

    def __init__(self, rest: BinanceRest, fill_monitor: Optional[FillMonitor] = None):
        self.rest = rest
        self.fill_monitor = fill_monitor
        self._locks: Dict[str, asyncio.Lock] = {}

    def _account_lock(self) -> asyncio.Lock:
        account = self.rest.key or "default"
        lock = self._locks.get(account)
        if lock is None:
            lock = self._locks[account] = asyncio.Lock()
        return lock

    def _client_oid(self, prefix: str, symbol: str) -> str:
        # Binance caps client ids at 36 chars
        ts = int(time.time() * 1000)
        token = uuid.uuid4().hex[:8]
        base = f"{prefix}_{symbol}_{token}_{ts}"
        return base[:32]

    async def execute(self, signal: Signal, settings: TradeSettings, chat_id: Optional[int] = None) -> ExecutionResult:
        legs: List[OrderLeg] = []
        async with self._account_lock():
            log.info(
                "execute_start signal=%s symbol=%s dir=%s mode=%s entry=%s",
                signal.signal_id,
                signal.symbol,
                signal.direction,
                settings.order_mode,
                signal.entry_price,
            )
            try:
                await self._run(signal, settings, chat_id, legs)
            except TradeError as e:
                log.warning(
                    "execute_failed signal=%s symbol=%s kind=%s placed=%d err=%s",
                    signal.signal_id,
                    signal.symbol,
                    e.kind,
                    len(legs),
                    e,
                )
                msg = user_message(e)
                if legs:
                    msg += f"\n{len(legs)} order(s) were already placed; check your Binance positions."
                return ExecutionResult(ok=False, msg=msg, error=e, legs=legs)

        if self.fill_monitor is not None:
            self.fill_monitor.ensure_running()
        entry = legs[0]
        protective = len(legs) - 1
        log.info("execute_done signal=%s symbol=%s legs=%d", signal.signal_id, signal.symbol, len(legs))
        return ExecutionResult(
            ok=True,
            msg=(
                f"Trade placed on Binance: {entry.side} {entry.qty} {signal.symbol} ({entry.order_type.lower()})"
                f", {protective} protective order(s)."
            ),
            legs=legs,
        )

    async def _run(self, signal: Signal, settings: TradeSettings, chat_id: Optional[int], legs: List[OrderLeg]) -> None:
        symbol = signal.symbol
        if not signal.entry_price > 0:
            raise QuantizationError(f"entry price for {symbol} must be positive")

        await self._configure(symbol, settings)

        filters = await self.rest.get_symbol_filters(symbol)
        qty = quantize(settings.position_size_usdt / signal.entry_price, filters.step_size)
        if Decimal(qty) <= 0 or float(qty) < filters.min_qty:
            raise QuantizationError(
                f"quantity {qty} for {symbol} is below the exchange minimum {filters.min_qty:g}; increase the position size"
            )
        if filters.min_notional is not None and float(qty) * signal.entry_price < filters.min_notional:
            raise QuantizationError(
                f"order value {float(qty) * signal.entry_price:g} USDT for {symbol} is below the exchange minimum "
                f"{filters.min_notional:g}; increase the position size"
            )

        # all triggers are validated before anything is sent
        buy = signal.direction == "Buy"
        plan: List[Tuple[str, str]] = []
        for role, target in protective_targets(signal, settings):
            stop_price = trigger_price(role, target, buy, filters.tick_size)
            if not beyond_entry(role, stop_price, signal.entry_price, buy):
                raise QuantizationError(
                    f"{role.upper()} {stop_price} for {symbol} is not on the protective side of entry "
                    f"{signal.entry_price:g} at tick size {filters.tick_size:g}"
                )
            plan.append((role, stop_price))

        if settings.order_mode == "market" and settings.market_tolerance_enabled:
            await self._check_drift(signal, settings)

        side = signal.entry_side
        if settings.order_mode == "market":
            oid = self._client_oid("en", symbol)
            leg = OrderLeg("entry", oid, "MARKET", side, qty=qty)
            await self._place(leg, signal, chat_id, legs, self._bind(self.rest.order_market, symbol, side, qty, oid))
        else:
            price = round_to_tick(signal.entry_price, filters.tick_size)
            oid = self._client_oid("en", symbol)
            leg = OrderLeg("entry", oid, "LIMIT", side, price=price, qty=qty)
            await self._place(leg, signal, chat_id, legs, self._bind(self.rest.order_limit, symbol, side, qty, price, oid))

        exit_side = signal.exit_side
        for role, stop_price in plan:
            if role == "sl":
                oid = self._client_oid("sl", symbol)
                leg = OrderLeg("sl", oid, "STOP_MARKET", exit_side, price=stop_price)
                call = self._bind(self.rest.order_stop_market, symbol, exit_side, stop_price, oid)
            else:
                oid = self._client_oid(role, symbol)
                leg = OrderLeg(role, oid, "TAKE_PROFIT_MARKET", exit_side, price=stop_price)  # type: ignore[arg-type]
                call = self._bind(self.rest.order_take_profit_market, symbol, exit_side, stop_price, oid)
            await self._place(leg, signal, chat_id, legs, call)

    @staticmethod
    def _bind(fn: Callable[..., Awaitable[Any]], *args: Any) -> Callable[[], Awaitable[Any]]:
        return lambda: fn(*args)

    async def _place(
        self,
        leg: OrderLeg,
        signal: Signal,
        chat_id: Optional[int],
        legs: List[OrderLeg],
        call: Callable[[], Awaitable[Any]],
    ) -> None:
        # registered before the request so an instant fill is not missed
        if self.fill_monitor is not None:
            self.fill_monitor.track(chat_id, signal, leg)
        try:
            order = await call()
        except TradeError:
            if self.fill_monitor is not None:
                self.fill_monitor.forget(leg.client_order_id)
            raise
        leg.order_id = order.get("orderId") if isinstance(order, dict) else None
        legs.append(leg)
        log.info(
            "order_placed signal=%s role=%s type=%s side=%s qty=%s price=%s ref=%s",
            signal.signal_id,
            leg.role,
            leg.order_type,
            leg.side,
            leg.qty or "-",
            leg.price or "-",
            leg.client_order_id,
        )

    async def _configure(self, symbol: str, settings: TradeSettings) -> None:
        try:
            await self.rest.set_multi_assets(settings.asset_mode == "multi")
        except ExchangeError as e:
            # account-wide flag, Binance also rejects "already in this mode"
            log.info("asset_mode_not_applied mode=%s code=%s msg=%s", settings.asset_mode, e.code, e.msg)

        try:
            await self.rest.change_margin_type(symbol, settings.margin_mode)
        except ExchangeError as e:
            if e.code != MARGIN_UNCHANGED_CODE:
                pos = await self.rest.position_risk(symbol)
                effective = str(pos.get("marginType", "")).lower()
                if effective != settings.margin_mode:
                    log.warning(
                        "margin_type_rejected symbol=%s wanted=%s effective=%s code=%s msg=%s",
                        symbol,
                        settings.margin_mode,
                        effective or "?",
                        e.code,
                        e.msg,
                    )
                    raise
                log.info("margin_type_rejected_but_effective symbol=%s mode=%s code=%s", symbol, effective, e.code)

        try:
            await self.rest.change_leverage(symbol, settings.leverage)
        except ExchangeError as e:
            pos = await self.rest.position_risk(symbol)
            try:
                effective_lev = int(float(pos.get("leverage", 0)))
            except (TypeError, ValueError):
                effective_lev = 0
            if effective_lev != settings.leverage:
                log.warning(
                    "leverage_rejected symbol=%s wanted=%s effective=%s code=%s msg=%s",
                    symbol,
                    settings.leverage,
                    effective_lev,
                    e.code,
                    e.msg,
                )
                raise
            log.info("leverage_rejected_but_effective symbol=%s leverage=%s", symbol, effective_lev)

    async def _check_drift(self, signal: Signal, settings: TradeSettings) -> None:
        market = await self.rest.price(signal.symbol)
        deviation = abs(market - signal.entry_price) / signal.entry_price
        if deviation > settings.price_tolerance:
            raise PriceDriftError(signal.symbol, signal.entry_price, market, deviation, settings.price_tolerance)
        log.info(
            "drift_ok symbol=%s entry=%s market=%s deviation=%.4f tolerance=%.4f",
            signal.symbol,
            signal.entry_price,
            market,
            deviation,
            settings.price_tolerance,
        )


def protective_targets(signal: Signal, settings: TradeSettings) -> List[Tuple[str, float]]:
    """(role, trigger price) for every protective leg the settings enable."""
    out: List[Tuple[str, float]] = []
    if settings.auto_tp_mode:
        if signal.tp1 > 0:
            out.append(("tp1", signal.tp1))
    else:
        for i, price in enumerate((signal.tp1, signal.tp2, signal.tp3), start=1):
            if getattr(settings, f"tp{i}_enabled") and price > 0:
                out.append((f"tp{i}", price))
    if settings.use_sl and signal.sl > 0:
        out.append(("sl", signal.sl))
    return out


def trigger_price(role: str, target: float, buy: bool, tick: float) -> str:
    """Snap a trigger to the tick grid away from entry: a long's TP rounds up
    and its SL down, a short's the other way round."""
    if (role != "sl") == buy:
        return ceil_to_tick(target, tick)
    return floor_to_tick(target, tick)


def beyond_entry(role: str, price: str, entry: float, buy: bool) -> bool:
    p, e = Decimal(price), Decimal(str(entry))
    if (role != "sl") == buy:
        return p > e
    return p < e
