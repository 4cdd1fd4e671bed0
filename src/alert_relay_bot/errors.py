from __future__ import annotations

from typing import Any, Optional

# Binance: "price is outside the allowable range" for the order type.
PRICE_OUT_OF_BAND_CODE = -4131

GENERIC_ERROR_TEXT = "An unexpected error occurred. Please try again later."


class RelayError(Exception):
    """Base class for everything this package raises on purpose."""


class ValidationError(RelayError):
    pass


class SignalNotFoundError(RelayError):
    def __init__(self, signal_id: str):
        super().__init__(f"signal not found: {signal_id}")
        self.signal_id = signal_id


class SignalClosedError(RelayError):
    def __init__(self, signal_id: str, state: str):
        super().__init__(f"signal {signal_id} already {state}")
        self.signal_id = signal_id
        self.state = state


class TradeError(RelayError):
    kind = "trade"


class ExchangeError(TradeError):
    kind = "exchange"

    def __init__(self, method: str, path: str, status: int, code: Optional[int] = None, msg: str = "", body: Any = None):
        super().__init__(f"Binance {method} {path} failed {status}: code={code} msg={msg}")
        self.method = method
        self.path = path
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body


class PriceDriftError(TradeError):
    kind = "price_drift"

    def __init__(self, symbol: str, entry_price: float, market_price: float, deviation: float, tolerance: float):
        super().__init__(
            f"{symbol} price drift {deviation * 100:.2f}% exceeds tolerance {tolerance * 100:.2f}% "
            f"(entry={entry_price} market={market_price})"
        )
        self.symbol = symbol
        self.entry_price = entry_price
        self.market_price = market_price
        self.deviation = deviation
        self.tolerance = tolerance


class QuantizationError(TradeError):
    kind = "quantization"


class CredentialsError(TradeError):
    kind = "credentials"


def user_message(exc: BaseException) -> str:
    """Operator-facing text for an error. Never echoes raw exchange payloads."""
    if isinstance(exc, PriceDriftError):
        return (
            f"Trade not placed: {exc.symbol} moved {exc.deviation * 100:.2f}% away from the signal entry, "
            f"above your tolerance of {exc.tolerance * 100:.2f}%. Edit the entry price or raise the tolerance."
        )
    if isinstance(exc, ExchangeError) and exc.code == PRICE_OUT_OF_BAND_CODE:
        return (
            "Trade could not be placed because the requested price is outside Binance's allowable range. "
            "Please move closer to the current market price and try again."
        )
    if isinstance(exc, CredentialsError):
        return "Binance API credentials are not configured. Use /setapi to add them."
    if isinstance(exc, ExchangeError):
        if exc.status == 0:
            return "Could not reach Binance. Please try again later."
        return f"Binance rejected the request ({exc.path}, code {exc.code}). Check your settings and try again."
    if isinstance(exc, QuantizationError):
        return f"Trade not placed: {exc}"
    if isinstance(exc, (ValidationError, SignalClosedError)):
        return str(exc)
    if isinstance(exc, SignalNotFoundError):
        return "Signal not found."
    return GENERIC_ERROR_TEXT
