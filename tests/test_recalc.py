import pytest

from alert_relay_bot.models import Signal
from alert_relay_bot.recalc import recalculate
from alert_relay_bot.settings import TradeSettings


def _sig(direction="Buy", entry=100.0, **kw):
    return Signal(signal_id="s1", direction=direction, symbol="BTCUSDT", entry_price=entry, **kw)


def _manual(**kw):
    base = dict(tp1_pct=1.0, tp2_pct=2.0, tp3_pct=3.0, manual_sl_pct=1.0, use_sl=True)
    base.update(kw)
    return TradeSettings(**base)


def test_buy_levels():
    out = recalculate(_sig(), _manual())
    assert out.tp1 == pytest.approx(101.0)
    assert out.tp2 == pytest.approx(102.0)
    assert out.tp3 == pytest.approx(103.0)
    assert out.sl == pytest.approx(99.0)


def test_sell_levels_are_mirrored():
    out = recalculate(_sig("Sell"), _manual())
    assert out.tp1 == pytest.approx(99.0)
    assert out.tp3 == pytest.approx(97.0)
    assert out.sl == pytest.approx(101.0)


def test_input_is_not_mutated():
    sig = _sig()
    recalculate(sig, _manual())
    assert sig.tp1 == 0.0


def test_auto_mode_sets_tp1_only():
    s = _manual(auto_tp_mode=True, auto_tp_pct=2.0, auto_sl_pct=0.5)
    out = recalculate(_sig(tp2=5.0, tp3=6.0), s)
    assert out.tp1 == pytest.approx(102.0)
    assert out.tp2 == 0.0
    assert out.tp3 == 0.0
    assert out.sl == pytest.approx(99.5)


def test_sl_untouched_when_stop_loss_disabled():
    out = recalculate(_sig(sl=95.0), _manual(use_sl=False))
    assert out.sl == 95.0


def test_noop_when_dynamic_off_or_entry_missing():
    sig = _sig(tp1=123.0)
    assert recalculate(sig, _manual(dynamic_recalc=False)) == sig
    zero = _sig(entry=0.0, tp1=5.0)
    assert recalculate(zero, _manual()) == zero


def test_results_rounded_to_six_places():
    out = recalculate(_sig(entry=0.123456789), _manual())
    assert out.tp1 == round(0.123456789 * 1.01, 6)


def test_operator_entry_survives_recalculation():
    sig = _sig(entry=105.0, manual_entry_edited=True)
    out = recalculate(sig, _manual())
    assert out.entry_price == 105.0
    assert out.manual_entry_edited is True
    assert out.tp1 == pytest.approx(106.05)


@pytest.mark.parametrize("entry", [1e-8, 0.00001234, 3e-5, 0.5, 100.0])
@pytest.mark.parametrize("direction", ["Buy", "Sell"])
def test_levels_stay_on_their_side_of_small_entries(entry, direction):
    out = recalculate(_sig(direction, entry=entry), _manual(tp1_pct=0.75))
    tps = [out.tp1, out.tp2, out.tp3]
    if direction == "Buy":
        assert all(tp > entry for tp in tps)
        assert out.sl < entry
    else:
        assert all(0 < tp < entry for tp in tps)
        assert out.sl > entry


def test_tiny_entry_keeps_significant_digits():
    out = recalculate(_sig(entry=0.00001234), _manual(tp1_pct=0.75))
    assert out.tp1 == pytest.approx(0.00001234 * 1.0075, rel=1e-5)
    assert out.sl == pytest.approx(0.00001234 * 0.99, rel=1e-5)
