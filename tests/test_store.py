import pytest

from alert_relay_bot.errors import SignalClosedError, SignalNotFoundError
from alert_relay_bot.models import Signal
from alert_relay_bot.store import MAX_SIGNAL_ID_LEN, MessageIdRegistry, SignalRepository, sanitize_signal_id


def _sig(signal_id="s1", entry=100.0, **kw):
    return Signal(signal_id=signal_id, direction="Buy", symbol="BTCUSDT", time="2024-01-01 00:00", entry_price=entry, **kw)


def test_sanitize_collapses_unsafe_runs_and_is_idempotent():
    once = sanitize_signal_id("BTC-USDT 15m#1")
    assert once == "BTC_USDT_15m_1"
    assert sanitize_signal_id(once) == once
    assert sanitize_signal_id("__a!!b__") == "a_b"


def test_sanitize_caps_length():
    out = sanitize_signal_id("x" * 100)
    assert len(out) == MAX_SIGNAL_ID_LEN
    assert sanitize_signal_id(out) == out


def test_sanitize_empty_gets_unique_fallback():
    a = sanitize_signal_id("")
    b = sanitize_signal_id("--//--")
    assert a.startswith("signal_")
    assert b.startswith("signal_")
    assert a != b


def test_create_overwrites_same_id():
    repo = SignalRepository()
    repo.create("s1", _sig(entry=100.0))
    repo.create("s1", _sig(entry=200.0))
    assert len(repo) == 1
    assert repo.get("s1").entry_price == 200.0


def test_get_returns_copy():
    repo = SignalRepository()
    repo.create("s1", _sig())
    got = repo.get("s1")
    got.entry_price = 1.0
    assert repo.get("s1").entry_price == 100.0


def test_update_missing_raises():
    repo = SignalRepository()
    with pytest.raises(SignalNotFoundError):
        repo.update("nope", lambda d: None)
    assert repo.get("nope") is None


def test_closed_signal_rejects_edits_and_second_close():
    repo = SignalRepository()
    repo.create("s1", _sig())
    done = repo.mark_confirmed("s1")
    assert done.confirmed and not done.dismissed

    with pytest.raises(SignalClosedError):
        repo.update("s1", lambda d: setattr(d, "tp1", 5.0))
    with pytest.raises(SignalClosedError):
        repo.mark_dismissed("s1")
    with pytest.raises(SignalClosedError):
        repo.mark_confirmed("s1")
    assert repo.get("s1").tp1 == 0.0


def test_update_cannot_flip_terminal_flags():
    repo = SignalRepository()
    repo.create("s1", _sig())
    out = repo.update("s1", lambda d: setattr(d, "confirmed", True))
    assert out.confirmed is False
    assert repo.get("s1").closed is False


def test_list_unconfirmed_newest_first():
    repo = SignalRepository()
    for sid in ("a", "b", "c"):
        repo.create(sid, _sig(sid))
    repo.mark_dismissed("b")
    assert [s.signal_id for s in repo.list_unconfirmed(10)] == ["c", "a"]
    assert [s.signal_id for s in repo.list_unconfirmed(1)] == ["c"]

    # overwriting moves the id to the front
    repo.create("a", _sig("a", entry=50.0))
    assert [s.signal_id for s in repo.list_unconfirmed(10)] == ["a", "c"]


def test_message_registry():
    reg = MessageIdRegistry()
    assert reg.get("s1") is None
    reg.set("s1", 42, 7)
    assert reg.get("s1") == (42, 7)
