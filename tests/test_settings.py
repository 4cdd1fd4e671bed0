import itertools
import threading

import pytest

from alert_relay_bot.errors import ValidationError
from alert_relay_bot.settings import (
    SettingsRepository,
    TradeSettings,
    apply_choice,
    apply_text_setting,
    normalize_close_percentages,
    toggle,
)


def _set(repo, op, name, text):
    return repo.update(op, lambda cur: apply_text_setting(cur, name, text))


def test_defaults_are_normalized():
    s = SettingsRepository().get(1)
    assert (s.tp1_close_pct, s.tp2_close_pct, s.tp3_close_pct) == (60.0, 20.0, 20.0)
    assert s.tp1_enabled and s.tp2_enabled and s.tp3_enabled


def test_tp2_clamped_to_remainder_disables_tp3():
    repo = SettingsRepository()
    s = _set(repo, 1, "tp1_close_pct", "70")
    assert (s.tp1_close_pct, s.tp2_close_pct, s.tp3_close_pct) == (70.0, 20.0, 10.0)

    s = _set(repo, 1, "tp2_close_pct", "50")
    assert (s.tp1_close_pct, s.tp2_close_pct, s.tp3_close_pct) == (70.0, 30.0, 0.0)
    assert s.tp2_enabled is True
    assert s.tp3_enabled is False


def test_tp1_full_close_disables_later_tps():
    repo = SettingsRepository()
    s = _set(repo, 1, "tp1_close_pct", "100")
    assert (s.tp2_close_pct, s.tp3_close_pct) == (0.0, 0.0)
    assert not s.tp2_enabled and not s.tp3_enabled

    with pytest.raises(ValidationError):
        _set(repo, 1, "tp2_close_pct", "10")
    with pytest.raises(ValidationError):
        _set(repo, 1, "tp2_pct", "1.5")
    # rejected edits leave the stored record alone
    assert repo.get(1).tp1_close_pct == 100.0


def test_normalize_is_stable():
    s = normalize_close_percentages(TradeSettings(tp1_close_pct=70, tp2_close_pct=50, tp3_close_pct=40))
    assert normalize_close_percentages(s) == s
    assert s.tp1_close_pct + s.tp2_close_pct + s.tp3_close_pct <= 100


def test_operators_are_isolated():
    repo = SettingsRepository()
    _set(repo, 1, "leverage", "20")
    assert repo.get(1).leverage == 20
    assert repo.get(2).leverage == 5


def test_get_returns_copy():
    repo = SettingsRepository()
    s = repo.get(1)
    s.leverage = 99
    assert repo.get(1).leverage == 5


@pytest.mark.parametrize(
    "name,text",
    [
        ("leverage", "0"),
        ("leverage", "126"),
        ("leverage", "abc"),
        ("position_size_usdt", "0"),
        ("position_size_usdt", "-5"),
        ("price_tolerance", "101"),
        ("tp1_pct", "0"),
        ("manual_sl_pct", "100"),
        ("auto_sl_pct", "0"),
        ("tp1_close_pct", "120"),
        ("tp1_close_pct", "nan"),
        ("no_such_setting", "1"),
    ],
)
def test_invalid_values_rejected(name, text):
    with pytest.raises(ValidationError):
        apply_text_setting(TradeSettings(), name, text)


def test_valid_values_parsed():
    s = TradeSettings()
    assert apply_text_setting(s, "leverage", "20").leverage == 20
    assert apply_text_setting(s, "price_tolerance", "0.5").price_tolerance == pytest.approx(0.005)
    assert apply_text_setting(s, "position_size_usdt", "250,5").position_size_usdt == 250.5
    assert apply_text_setting(s, "manual_sl_pct", "2").manual_sl_pct == 2.0


def test_choices_and_toggles():
    s = TradeSettings()
    assert apply_choice(s, "margin_mode", "ISOLATED").margin_mode == "isolated"
    with pytest.raises(ValidationError):
        apply_choice(s, "margin_mode", "portfolio")
    assert toggle(s, "use_sl").use_sl is True
    with pytest.raises(ValidationError):
        toggle(s, "leverage")


def test_from_dict_casts_and_ignores_unknown():
    s = TradeSettings.from_dict({"leverage": "10", "use_sl": True, "margin_mode": "ISOLATED", "bogus": 1})
    assert s.leverage == 10
    assert s.use_sl is True
    assert s.margin_mode == "isolated"


def test_concurrent_readers_never_see_torn_settings():
    repo = SettingsRepository()
    full = TradeSettings(tp1_close_pct=100)
    split = TradeSettings(tp1_close_pct=50, tp2_close_pct=50)
    errors = []
    stop = threading.Event()

    def writer():
        for i in range(500):
            repo.update(1, lambda cur, i=i: full if i % 2 else split)
        stop.set()

    def reader():
        while not stop.is_set():
            s = repo.get(1)
            total = s.tp1_close_pct + s.tp2_close_pct + s.tp3_close_pct
            if total > 100 or (s.tp1_close_pct >= 100 and s.tp2_enabled):
                errors.append(s)

    threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=writer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


@pytest.mark.parametrize("order", list(itertools.permutations(["tp1_close_pct", "tp2_close_pct", "tp3_close_pct"])))
def test_close_weights_bounded_in_any_update_order(order):
    repo = SettingsRepository()
    values = {"tp1_close_pct": "70", "tp2_close_pct": "50", "tp3_close_pct": "40"}
    for name in order:
        try:
            _set(repo, 1, name, values[name])
        except ValidationError:
            pass
        s = repo.get(1)
        assert s.tp1_close_pct + s.tp2_close_pct + s.tp3_close_pct <= 100
        assert s.tp1_enabled
