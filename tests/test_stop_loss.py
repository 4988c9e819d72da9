import math

import pytest

from backtester.errors import ConfigurationError, DataNotReady
from backtester.models import Pricing, TradeDirection
from backtester.stop_loss import StopLoss, StopLossType, resolve_stop_price

PRICING = Pricing(symbol="EURUSD", pip_size=0.0001, spread=0.0)


def test_atr_stop_armed_at_entry():
    stop = StopLoss.init(StopLossType.ATR, 1.5)
    price = stop.arm(TradeDirection.LONG, 100.0, PRICING, atr_value=2.0)
    assert math.isclose(price, 97.0)
    assert stop.armed
    assert not stop.is_triggered(high=101.0, low=97.5)
    assert stop.is_triggered(high=101.0, low=97.0)
    assert math.isclose(stop.price, 97.0)


def test_atr_stop_short_is_above_entry():
    stop = StopLoss.init("atr", 1.5)
    assert math.isclose(stop.arm(TradeDirection.SHORT, 100.0, PRICING, atr_value=2.0), 103.0)
    assert stop.is_triggered(high=103.0, low=99.0)


def test_atr_stop_requires_atr_value():
    stop = StopLoss.init(StopLossType.ATR, 1.5)
    with pytest.raises(DataNotReady):
        stop.arm(TradeDirection.LONG, 100.0, PRICING, atr_value=None)
    with pytest.raises(DataNotReady):
        stop.arm(TradeDirection.LONG, 100.0, PRICING, atr_value=float("nan"))


def test_none_stop_never_triggers():
    stop = StopLoss.init(StopLossType.NONE)
    assert stop.arm(TradeDirection.LONG, 100.0, PRICING) is None
    assert not stop.armed
    assert not stop.is_triggered(high=1_000.0, low=0.0)


def test_price_percentage_and_pips_stops():
    assert resolve_stop_price(StopLossType.PRICE, 95.0, TradeDirection.LONG, 100.0, PRICING) == 95.0
    assert math.isclose(resolve_stop_price(StopLossType.PERCENTAGE, 2.0, TradeDirection.LONG, 100.0, PRICING), 98.0)
    assert math.isclose(resolve_stop_price(StopLossType.PERCENTAGE, 2.0, TradeDirection.SHORT, 100.0, PRICING), 102.0)
    assert math.isclose(resolve_stop_price(StopLossType.PIPS, 10, TradeDirection.LONG, 1.1000, PRICING), 1.0990)
    assert resolve_stop_price(StopLossType.PIPS, 0, TradeDirection.LONG, 1.1000, PRICING) is None


def test_trailing_updates_never_loosen_long():
    stop = StopLoss.init(StopLossType.PIPS, 10)
    stop.arm(TradeDirection.LONG, 1.1000, PRICING)
    seen = [stop.price]
    for candidate in (1.0995, 1.0980, 1.1001, 1.0990, 1.1010):
        stop.update(StopLossType.TRAILING, candidate)
        seen.append(stop.price)
    assert all(later >= earlier for earlier, later in zip(seen, seen[1:]))
    assert math.isclose(stop.price, 1.1010)


def test_trailing_updates_never_loosen_short():
    stop = StopLoss.init(StopLossType.PIPS, 10)
    stop.arm(TradeDirection.SHORT, 1.1000, PRICING)
    for candidate in (1.1005, 1.0990, 1.1020):
        stop.update(StopLossType.TRAILING, candidate)
    assert math.isclose(stop.price, 1.0990)


def test_non_trailing_update_replaces_and_rearm_restores_kind():
    stop = StopLoss.init(StopLossType.ATR, 1.5)
    stop.arm(TradeDirection.LONG, 100.0, PRICING, atr_value=2.0)
    stop.update(StopLossType.PRICE, 95.0)
    assert stop.price == 95.0
    stop.reset()
    assert not stop.armed
    stop.arm(TradeDirection.LONG, 100.0, PRICING, atr_value=2.0)
    assert stop.stop_type is StopLossType.ATR
    assert math.isclose(stop.price, 97.0)


def test_invalid_stop_configuration():
    with pytest.raises(ConfigurationError):
        StopLoss.init("unknown")
    with pytest.raises(ConfigurationError):
        StopLoss.init(StopLossType.PIPS, -1.0)
