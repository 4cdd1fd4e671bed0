from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from ..errors import CredentialsError, ExchangeError, QuantizationError

log = logging.getLogger("binance.rest")

MARGIN_TYPES = {"cross": "CROSSED", "isolated": "ISOLATED"}


@dataclass
class SymbolFilters:
    step_size: float
    min_qty: float
    tick_size: float
    min_notional: Optional[float] = None


class BinanceRest:
    """Thin USDⓈ-M futures client. Every call is bounded by ``timeout_sec``
    and non-200 answers raise ``ExchangeError`` carrying Binance's code/msg."""

    def __init__(
        self,
        base_url: str,
        recv_window_ms: int = 5000,
        timeout_sec: float = 10.0,
        api_key: str = "",
        api_secret: str = "",
    ):
        self.base_url = base_url.rstrip("/")
        self.recv_window_ms = recv_window_ms
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self.key = api_key
        self.secret = api_secret
        self._session: Optional[aiohttp.ClientSession] = None
        self._filters_cache: Dict[str, SymbolFilters] = {}

    @property
    def has_credentials(self) -> bool:
        return bool(self.key and self.secret)

    def set_credentials(self, api_key: str, api_secret: str) -> None:
        self.key = api_key
        self.secret = api_secret
        log.info("binance_credentials_updated")

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @staticmethod
    def _sign(params: Dict[str, Any], secret: str) -> Dict[str, Any]:
        if not secret:
            raise CredentialsError("API secret missing (use /setapi or set .env)")
        query = urlencode(params, doseq=True)
        sig = hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
        params["signature"] = sig
        return params

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
        keyed: bool = False,
        creds: Optional[Tuple[str, str]] = None,
    ) -> Any:
        if self._session is None:
            await self.start()
        assert self._session is not None
        key, secret = creds if creds is not None else (self.key, self.secret)
        params = dict(params or {})
        url = f"{self.base_url}{path}"
        headers = {"X-MBX-APIKEY": key} if (signed or keyed) and key else None

        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self.recv_window_ms
            params = self._sign(params, secret)

        try:
            async with self._session.request(method.upper(), url, params=params, headers=headers) as r:
                data = await r.json(content_type=None)
                if r.status != 200:
                    code = data.get("code") if isinstance(data, dict) else None
                    msg = data.get("msg", "") if isinstance(data, dict) else str(data)[:300]
                    raise ExchangeError(method.upper(), path, r.status, code=code, msg=msg, body=data)
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ExchangeError(method.upper(), path, 0, msg=f"{type(e).__name__}: {e}") from e

    # account / credentials

    async def account(self, creds: Optional[Tuple[str, str]] = None) -> Any:
        return await self._request("GET", "/fapi/v2/account", signed=True, creds=creds)

    async def check_credentials(self, api_key: str, api_secret: str) -> None:
        """Raises ``ExchangeError`` if the pair cannot read the account."""
        await self.account(creds=(api_key, api_secret))

    # position configuration

    async def change_margin_type(self, symbol: str, margin_mode: str) -> Any:
        margin_type = MARGIN_TYPES[margin_mode]
        return await self._request("POST", "/fapi/v1/marginType", {"symbol": symbol, "marginType": margin_type}, signed=True)

    async def change_leverage(self, symbol: str, leverage: int) -> Any:
        return await self._request("POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True)

    async def set_multi_assets(self, multi: bool) -> Any:
        return await self._request(
            "POST", "/fapi/v1/multiAssetsMargin", {"multiAssetsMargin": "true" if multi else "false"}, signed=True
        )

    async def position_risk(self, symbol: str) -> Dict[str, Any]:
        data = await self._request("GET", "/fapi/v2/positionRisk", {"symbol": symbol}, signed=True)
        if isinstance(data, list):
            for row in data:
                if row.get("symbol") == symbol:
                    return row
            return {}
        return data if isinstance(data, dict) else {}

    # market data

    async def exchange_info(self) -> Any:
        return await self._request("GET", "/fapi/v1/exchangeInfo")

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        if symbol in self._filters_cache:
            return self._filters_cache[symbol]

        info = await self.exchange_info()
        target = None
        for s in info.get("symbols", []):
            if s.get("symbol") == symbol:
                target = s
                break
        if target is None:
            raise QuantizationError(f"symbol {symbol} is not listed on Binance Futures")

        step = min_qty = tick = None
        min_notional = None
        for f in target.get("filters", []):
            t = f.get("filterType")
            if t == "LOT_SIZE":
                step = float(f["stepSize"])
                min_qty = float(f["minQty"])
            elif t == "PRICE_FILTER":
                tick = float(f["tickSize"])
            elif t == "MIN_NOTIONAL":
                raw = f.get("notional", f.get("minNotional"))
                if raw is not None:
                    min_notional = float(raw)

        if step is None or min_qty is None or tick is None or step <= 0 or tick <= 0:
            raise QuantizationError(f"missing LOT_SIZE or PRICE_FILTER for {symbol}")

        out = SymbolFilters(step_size=step, min_qty=min_qty, tick_size=tick, min_notional=min_notional)
        self._filters_cache[symbol] = out
        return out

    async def price(self, symbol: str) -> float:
        data = await self._request("GET", "/fapi/v1/ticker/price", {"symbol": symbol})
        return float(data["price"])

    # orders

    async def create_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/fapi/v1/order", params, signed=True)

    async def order_market(self, symbol: str, side: str, qty: str, client_order_id: str) -> Dict[str, Any]:
        return await self.create_order(
            {"symbol": symbol, "side": side, "type": "MARKET", "quantity": qty, "newClientOrderId": client_order_id}
        )

    async def order_limit(self, symbol: str, side: str, qty: str, price: str, client_order_id: str) -> Dict[str, Any]:
        return await self.create_order(
            {
                "symbol": symbol,
                "side": side,
                "type": "LIMIT",
                "timeInForce": "GTC",
                "quantity": qty,
                "price": price,
                "newClientOrderId": client_order_id,
            }
        )

    async def _close_position_trigger(self, order_type: str, symbol: str, side: str, stop_price: str, client_order_id: str) -> Dict[str, Any]:
        return await self.create_order(
            {
                "symbol": symbol,
                "side": side,
                "type": order_type,
                "stopPrice": stop_price,
                "closePosition": "true",
                "workingType": "MARK_PRICE",
                "priceProtect": "TRUE",
                "newClientOrderId": client_order_id,
            }
        )

    async def order_take_profit_market(self, symbol: str, side: str, stop_price: str, client_order_id: str) -> Dict[str, Any]:
        return await self._close_position_trigger("TAKE_PROFIT_MARKET", symbol, side, stop_price, client_order_id)

    async def order_stop_market(self, symbol: str, side: str, stop_price: str, client_order_id: str) -> Dict[str, Any]:
        return await self._close_position_trigger("STOP_MARKET", symbol, side, stop_price, client_order_id)

    # user data stream

    async def start_user_stream(self) -> str:
        data = await self._request("POST", "/fapi/v1/listenKey", keyed=True)
        return str(data["listenKey"])

    async def keepalive_user_stream(self) -> None:
        await self._request("PUT", "/fapi/v1/listenKey", keyed=True)

    async def close_user_stream(self) -> None:
        await self._request("DELETE", "/fapi/v1/listenKey", keyed=True)


def step_decimals(step: float) -> int:
    d = Decimal(str(step)).normalize()
    return max(-d.as_tuple().exponent, 0)


def _render(q: Decimal, step: float) -> str:
    places = step_decimals(step)
    return format(q.quantize(Decimal(1).scaleb(-places)), "f")


def quantize(x: float, step: float) -> str:
    """Floor ``x`` to a multiple of ``step`` and render it with exactly the
    step's decimal places."""
    if step <= 0:
        raise QuantizationError(f"invalid step size {step}")
    dstep = Decimal(str(step))
    q = (Decimal(str(x)) / dstep).to_integral_value(rounding=ROUND_FLOOR) * dstep
    return _render(q, step)


def _to_tick(price: float, tick: float, rounding: str) -> str:
    if tick <= 0:
        raise QuantizationError(f"invalid tick size {tick}")
    dtick = Decimal(str(tick))
    q = (Decimal(str(price)) / dtick).to_integral_value(rounding=rounding) * dtick
    return _render(q, tick)


def round_to_tick(price: float, tick: float) -> str:
    """Nearest multiple of ``tick``, rendered with the tick's precision."""
    return _to_tick(price, tick, ROUND_HALF_UP)


def floor_to_tick(price: float, tick: float) -> str:
    return _to_tick(price, tick, ROUND_FLOOR)


def ceil_to_tick(price: float, tick: float) -> str:
    return _to_tick(price, tick, ROUND_CEILING)
