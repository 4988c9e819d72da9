import pytest

from backtester.config import EngineConfig, StrategyConfig
from backtester.errors import ConfigurationError, DataNotReady
from backtester.models import Pricing, StrategyType, TradeDirection, TradeType
from backtester.orders import OrderType
from backtester.stop_loss import StopLossType
from backtester.strategy import PositionKind, load_strategy_class
from backtester.trades import resolve_trade_in
from strategies import STRATEGY_REGISTRY, BollingerBandsReversals, EmaScalping, MacdDual, Stoch, build_strategy, get_strategy_class

HOUR_NS = 3_600_000_000_000


def test_registry_and_loading(tmp_path):
    assert set(STRATEGY_REGISTRY) == {"BollingerBandsReversals", "EmaScalping", "MacdDual", "Stoch"}
    assert get_strategy_class("Stoch") is Stoch
    assert get_strategy_class("strategies.macd_dual:MacdDual") is MacdDual

    (tmp_path / "custom.py").write_text(
        "from backtester.strategy import Strategy\n\n\nclass Custom(Strategy):\n    name = 'Custom'\n",
        encoding="utf-8",
    )
    custom = load_strategy_class("custom.py:Custom", tmp_path)
    assert custom.name == "Custom"

    for spec in ("nope", "math:sqrt", "custom.py:Missing", "missing.py:Custom"):
        with pytest.raises(ConfigurationError):
            load_strategy_class(spec, tmp_path)


def test_build_strategy_from_config():
    engine = EngineConfig(atr_stop_loss=1.5, order_size=3)
    strategy = build_strategy(StrategyConfig(strategy="Stoch", time_frame="1h", strategy_type="OnlyLong"), engine)
    assert strategy.strategy_type is StrategyType.ONLY_LONG
    assert strategy.stop_loss.stop_type is StopLossType.ATR
    assert strategy.stop_loss.value == 1.5
    assert strategy.order_size == 3.0
    assert strategy.describe()["time_frame"] == "H1"


def test_multi_timeframe_requires_higher_time_frame():
    with pytest.raises(ConfigurationError):
        MacdDual(time_frame="H1")
    strategy = MacdDual(time_frame="H1", higher_time_frame="4h")
    assert strategy.higher_time_frame == "H4"
    assert strategy.htf_required
    assert not MacdDual(time_frame="H1", higher_time_frame="H4", params={"htf_required": False}).htf_required


def test_stoch_crosses(make_instrument, zero_spread):
    instrument = make_instrument(
        [1.0, 1.0, 1.0],
        indicators={"stoch_a": [10.0, 18.0, 75.0], "stoch_b": [15.0, 12.0, 78.0]},
    )
    strategy = Stoch(time_frame="H1")
    assert strategy.entry_long(1, instrument, None, zero_spread).kind is PositionKind.MARKET_IN
    assert strategy.entry_short(1, instrument, None, zero_spread).is_none
    trade_in = resolve_trade_in(1, 1.0, instrument, zero_spread, TradeType.ENTRY_LONG)
    assert strategy.exit_long(2, instrument, None, trade_in, zero_spread).kind is PositionKind.MARKET_OUT

    warming = make_instrument([1.0, 1.0], indicators={"stoch_a": [float("nan"), 10.0], "stoch_b": [float("nan"), 5.0]})
    with pytest.raises(DataNotReady):
        strategy.entry_long(1, warming, None, zero_spread)


def test_ema_scalping_bracket_prices(make_instrument):
    pricing = Pricing(symbol="EURUSD", pip_size=0.0001, spread=0.0002)
    instrument = make_instrument(
        [1.1000] * 6,
        highs=[1.1010, 1.1020, 1.1015, 1.1012, 1.1011, 1.1008],
        lows=[1.0990] * 6,
        indicators={"ema_a": [1.0995] * 6, "ema_c": [1.0980] * 6},
    )
    strategy = EmaScalping(time_frame="H1", higher_time_frame="H4")
    position = strategy.entry_long(5, instrument, None, pricing)

    assert position.kind is PositionKind.ORDER
    buy, sell, stop = position.orders
    assert buy.order_type is OrderType.BUY_ORDER and buy.direction is TradeDirection.LONG
    assert buy.value == pytest.approx(1.1023)
    assert stop.order_type is OrderType.STOP_LOSS
    assert stop.value == pytest.approx(1.0987)
    assert sell.order_type is OrderType.SELL_ORDER
    assert sell.value == pytest.approx(1.1023 + 0.0038 * 2.0)

    assert EmaScalping(time_frame="H1", higher_time_frame="H4", params={"risk_reward_ratio": 1.0}).risk_reward_ratio == 1.0


def test_ema_scalping_direction_follows_companion(make_instrument):
    instrument = make_instrument([1.1] * 8)
    htf = make_instrument(
        [1.1, 1.1],
        lows=[1.09, 1.09],
        highs=[1.11, 1.11],
        time_frame="H4",
        step_ns=4 * HOUR_NS,
        indicators={"ema_a": [1.10, 1.10], "ema_c": [1.08, 1.08]},
    )
    long_only = EmaScalping(time_frame="H1", higher_time_frame="H4")
    assert long_only.trading_direction(5, instrument, htf) is TradeDirection.LONG
    assert long_only.trading_direction(5, instrument, None) is TradeDirection.NONE

    short_only = EmaScalping(time_frame="H1", higher_time_frame="H4", strategy_type="OnlyShortMTF")
    assert short_only.trading_direction(5, instrument, htf) is TradeDirection.NONE


def test_macd_dual_uses_companion_cross(make_instrument, zero_spread):
    instrument = make_instrument([1.0] * 8, indicators={"macd_a": [0.0] * 8, "macd_b": [0.0] * 8})
    htf = make_instrument(
        [1.0, 1.0],
        time_frame="H4",
        step_ns=4 * HOUR_NS,
        indicators={"macd_a": [0.1, 0.5], "macd_b": [0.2, 0.3]},
    )
    strategy = MacdDual(time_frame="H1", higher_time_frame="H4")
    assert strategy.entry_long(5, instrument, htf, zero_spread).kind is PositionKind.MARKET_IN
    assert strategy.entry_long(2, instrument, htf, zero_spread).is_none
    assert strategy.entry_long(5, instrument, None, zero_spread).is_none
    assert strategy.entry_short(5, instrument, htf, zero_spread).is_none

    both_ways = MacdDual(time_frame="H1", higher_time_frame="H4", strategy_type="LongShortMTF")
    assert both_ways.trading_direction(5, instrument, htf) is TradeDirection.LONG
    assert both_ways.trading_direction(5, instrument, None) is TradeDirection.NONE


def test_macd_dual_exit_trails_stop_to_low(make_instrument, zero_spread):
    instrument = make_instrument(
        [100.0, 100.0],
        lows=[99.0, 99.0],
        highs=[101.0, 101.0],
        indicators={"macd_a": [1.0, 0.2], "macd_b": [0.5, 0.4]},
    )
    strategy = MacdDual(time_frame="H1", higher_time_frame="H4")
    strategy.stop_loss.arm(TradeDirection.LONG, 100.0, zero_spread, atr_value=2.0)
    assert strategy.stop_loss.price == pytest.approx(96.0)

    trade_in = resolve_trade_in(0, 1.0, instrument, zero_spread, TradeType.ENTRY_LONG)
    position = strategy.exit_long(1, instrument, None, trade_in, zero_spread)
    assert position.kind is PositionKind.MARKET_OUT
    assert strategy.stop_loss.stop_type is StopLossType.TRAILING
    assert strategy.stop_loss.price == pytest.approx(99.0)


def test_bollinger_exit_only_tightens_stop(make_instrument, zero_spread):
    instrument = make_instrument(
        [1.2, 1.1],
        opens=[1.0, 1.3],
        indicators={"bb_a": [1.1, 1.2], "bb_b": [0.5, 0.5]},
    )
    strategy = BollingerBandsReversals(time_frame="H1", higher_time_frame="H4")
    strategy.stop_loss.arm(TradeDirection.LONG, 1.2, zero_spread, atr_value=0.5)
    trade_in = resolve_trade_in(0, 1.0, instrument, zero_spread, TradeType.ENTRY_LONG)

    assert strategy.exit_long(1, instrument, None, trade_in, zero_spread).is_none
    assert strategy.stop_loss.price == pytest.approx(0.6)
    assert strategy.entry_short(1, instrument, None, zero_spread).is_none
