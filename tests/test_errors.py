from alert_relay_bot.errors import (
    GENERIC_ERROR_TEXT,
    CredentialsError,
    ExchangeError,
    PriceDriftError,
    QuantizationError,
    SignalNotFoundError,
    ValidationError,
    user_message,
)


def test_user_messages_never_echo_raw_payloads():
    err = ExchangeError("POST", "/fapi/v1/order", 400, code=-2019, msg="Margin is insufficient.", body={"secret": "x"})
    msg = user_message(err)
    assert "/fapi/v1/order" in msg
    assert "-2019" in msg
    assert "secret" not in msg


def test_user_message_variants():
    assert "allowable range" in user_message(ExchangeError("POST", "/fapi/v1/order", 400, code=-4131))
    assert user_message(ExchangeError("GET", "/x", 0, msg="timeout")).startswith("Could not reach Binance")
    assert "/setapi" in user_message(CredentialsError("no secret"))
    assert "0.50%" in user_message(PriceDriftError("BTCUSDT", 100.0, 101.0, 0.01, 0.005))
    assert user_message(QuantizationError("too small")) == "Trade not placed: too small"
    assert user_message(ValidationError("bad input")) == "bad input"
    assert user_message(SignalNotFoundError("s1")) == "Signal not found."
    assert user_message(RuntimeError("boom")) == GENERIC_ERROR_TEXT
