import asyncio
import math
import threading
import time

import numpy as np
import pytest

from backtester.config import EngineConfig
from backtester.errors import BacktestCancelled, CompanionUnavailable, DataError
from backtester.feed import InstrumentFeeder
from backtester.models import StrategyType, TradeDirection, TradeType
from backtester.orders import OrderSpec
from backtester.runtime import BacktestEngine
from backtester.stop_loss import StopLossType
from backtester.strategy import Position, Strategy, prev_index


class BandCross(Strategy):
    name = "BandCross"
    BAND = 105.0

    def entry_long(self, index, instrument, htf, pricing):
        if instrument.close[prev_index(index)] <= self.BAND < instrument.close[index]:
            return Position.market_in()
        return Position.none()

    def exit_long(self, index, instrument, htf, trade_in, pricing):
        return Position.market_out() if index == 15 else Position.none()


class Bracket(Strategy):
    name = "Bracket"

    def entry_long(self, index, instrument, htf, pricing):
        if index != 5:
            return Position.none()
        return Position.order(
            [
                OrderSpec.buy(TradeDirection.LONG, 101.0),
                OrderSpec.sell(TradeDirection.LONG, 103.0),
                OrderSpec.stop_loss(TradeDirection.LONG, 99.0),
            ]
        )


class AlwaysInOut(Strategy):
    name = "AlwaysInOut"
    default_strategy_type = StrategyType.LONG_SHORT

    def entry_long(self, index, instrument, htf, pricing):
        return Position.market_in() if index % 2 else Position.none()

    def entry_short(self, index, instrument, htf, pricing):
        return Position.market_in()

    def exit_long(self, index, instrument, htf, trade_in, pricing):
        return Position.market_out() if index - trade_in.index_in >= 2 else Position.none()

    def exit_short(self, index, instrument, htf, trade_in, pricing):
        return Position.market_out() if instrument.close[index] > instrument.close[prev_index(index)] else Position.none()


class HtfFollower(Strategy):
    name = "HtfFollower"
    default_strategy_type = StrategyType.ONLY_LONG_MTF


def _band_closes():
    return [100.0] * 10 + [106.0] * 5 + [108.0] * 5


def _random_walk(rows=200, seed=7):
    rng = np.random.RandomState(seed)
    return (100.0 + np.cumsum(rng.normal(0.0, 0.5, rows))).tolist()


def test_band_cross_scenario(make_instrument):
    instrument = make_instrument(_band_closes())
    run = BacktestEngine(BandCross(time_frame="H1")).run(instrument)

    assert [trade.index_in for trade in run.trades_in] == [10]
    assert [trade.index_out for trade in run.trades_out] == [15]
    trade_out = run.trades_out[0]
    assert trade_out.trade_type is TradeType.EXIT_LONG
    assert math.isclose(trade_out.profit_per, (108.0 - 106.0) / 106.0 * 100.0)
    assert run.result.trades == 1
    assert math.isclose(run.result.net_profit_per, trade_out.profit_per)


def test_commission_reduces_net_profit(make_instrument):
    instrument = make_instrument(_band_closes())
    config = EngineConfig(commission=0.25)
    run = BacktestEngine(BandCross(time_frame="H1", config=config)).run(instrument)
    expected = (108.0 - 106.0) / 106.0 * 100.0 - 0.25
    assert run.result.net_profit_per == pytest.approx(expected)
    assert run.result.commissions_per == pytest.approx(0.25)


def test_bracket_orders_one_cancels_other(make_instrument):
    closes = [100.0] * 6 + [101.2, 102.0, 100.0, 100.0]
    highs = [100.5] * 6 + [101.5, 103.5, 100.5, 100.5]
    lows = [99.5] * 6 + [100.2, 101.0, 99.5, 99.5]
    instrument = make_instrument(closes, highs=highs, lows=lows)
    run = BacktestEngine(Bracket(time_frame="H1")).run(instrument)

    assert [trade.trade_type for trade in run.trades_in] == [TradeType.ORDER_IN_LONG]
    assert run.trades_in[0].index_in == 6
    assert run.trades_in[0].price_in == pytest.approx(101.0)
    trade_out = run.trades_out[0]
    assert trade_out.trade_type is TradeType.ORDER_OUT_LONG
    assert trade_out.index_out == 7
    assert trade_out.profit_per == pytest.approx((103.0 - 101.0) / 101.0 * 100.0)

    statuses = {record["order_type"]: record["status"] for record in run.orders}
    assert statuses == {"BuyOrder": "Filled", "SellOrder": "Filled", "StopLoss": "Cancelled"}


def test_bracket_worst_case_when_both_exits_touch(make_instrument):
    closes = [100.0] * 6 + [101.2, 100.0, 100.0, 100.0]
    highs = [100.5] * 6 + [101.5, 103.5, 100.5, 100.5]
    lows = [99.5] * 6 + [100.2, 98.5, 99.5, 99.5]
    instrument = make_instrument(closes, highs=highs, lows=lows)
    run = BacktestEngine(Bracket(time_frame="H1")).run(instrument)

    trade_out = run.trades_out[0]
    assert trade_out.trade_type is TradeType.STOP_LOSS_LONG
    assert trade_out.price_out == pytest.approx(99.0)
    assert run.result.stop_losses == 1


def test_stop_reached_on_fill_candle_closes_trade(make_instrument):
    closes = [100.0] * 6 + [100.0, 100.0, 100.0, 100.0]
    highs = [100.5] * 6 + [101.5, 100.5, 100.5, 100.5]
    lows = [99.5] * 6 + [98.5, 99.5, 99.5, 99.5]
    instrument = make_instrument(closes, highs=highs, lows=lows)
    run = BacktestEngine(Bracket(time_frame="H1")).run(instrument)

    assert [(trade.index_in, trade.price_in) for trade in run.trades_in] == [(6, 101.0)]
    (trade_out,) = run.trades_out
    assert trade_out.trade_type is TradeType.STOP_LOSS_LONG
    assert trade_out.index_out == 6
    assert trade_out.price_out == pytest.approx(99.0)

    statuses = {record["order_type"]: record["status"] for record in run.orders}
    assert statuses == {"BuyOrder": "Filled", "SellOrder": "Cancelled", "StopLoss": "Filled"}


def test_unfilled_entry_order_expires(make_instrument):
    class LateBuy(Strategy):
        name = "LateBuy"

        def entry_long(self, index, instrument, htf, pricing):
            return Position.order([OrderSpec.buy(TradeDirection.LONG, 110.0)]) if index == 2 else Position.none()

    instrument = make_instrument([100.0] * 10)
    config = EngineConfig(warm_up=2, pending_order_validity=3)
    run = BacktestEngine(LateBuy(time_frame="H1", config=config)).run(instrument)

    assert run.result.trades == 0
    (record,) = run.orders
    assert record["status"] == "Expired"
    assert record["index_closed"] == 6


def test_trades_alternate_and_runs_are_deterministic(make_instrument):
    instrument = make_instrument(_random_walk())
    first = BacktestEngine(AlwaysInOut(time_frame="H1")).run(instrument)
    second = BacktestEngine(AlwaysInOut(time_frame="H1")).run(instrument)

    assert first.result.to_dict(include_trades=True) == second.result.to_dict(include_trades=True)
    assert first.result.trades > 0
    assert len(first.trades_in) - len(first.trades_out) in (0, 1)
    for position, trade_out in enumerate(first.trades_out):
        trade_in = first.trades_in[position]
        assert trade_out.trade_in_id == trade_in.id == position
        assert trade_out.index_out >= trade_in.index_in
        if position + 1 < len(first.trades_in):
            assert first.trades_in[position + 1].index_in >= trade_out.index_out


def test_stop_loss_policy_closes_position(make_instrument):
    class AtrLong(Strategy):
        name = "AtrLong"
        stop_loss_type = StopLossType.ATR

        def entry_long(self, index, instrument, htf, pricing):
            return Position.market_in() if index == 5 else Position.none()

    closes = [100.0] * 8 + [96.0, 96.0]
    instrument = make_instrument(closes, indicators={"atr": [2.0] * 10})
    strategy = AtrLong(time_frame="H1", params={"stop_loss_value": 1.5})
    run = BacktestEngine(strategy).run(instrument)

    trade_out = run.trades_out[0]
    assert trade_out.trade_type is TradeType.STOP_LOSS_LONG
    assert trade_out.index_out == 8
    assert trade_out.price_out == pytest.approx(97.0)
    assert not strategy.stop_loss.armed


def test_atr_not_ready_skips_market_entry(make_instrument):
    class AtrLong(Strategy):
        name = "AtrLong"
        stop_loss_type = StopLossType.ATR

        def entry_long(self, index, instrument, htf, pricing):
            return Position.market_in()

    atr = [float("nan")] * 7 + [1.0] * 3
    instrument = make_instrument([100.0] * 10, indicators={"atr": atr})
    run = BacktestEngine(AtrLong(time_frame="H1")).run(instrument)
    assert run.trades_in[0].index_in == 7


def test_cooldown_spaces_entries(make_instrument):
    class EveryCandle(Strategy):
        name = "EveryCandle"

        def entry_long(self, index, instrument, htf, pricing):
            return Position.market_in()

        def exit_long(self, index, instrument, htf, trade_in, pricing):
            return Position.market_out()

    instrument = make_instrument([100.0] * 20)
    spaced = BacktestEngine(
        EveryCandle(time_frame="H1", config=EngineConfig(wait_for_next_trade=3, wait_for_next_trade_enabled=True))
    ).run(instrument)
    assert [trade.index_in for trade in spaced.trades_in] == [5, 9, 13, 17]
    assert [trade.index_out for trade in spaced.trades_out] == [6, 10, 14, 18]

    back_to_back = BacktestEngine(EveryCandle(time_frame="H1")).run(instrument)
    assert [trade.index_in for trade in back_to_back.trades_in] == list(range(5, 19))


def test_cancellation_between_steps(make_instrument):
    instrument = make_instrument(_band_closes())
    cancel_event = threading.Event()
    cancel_event.set()
    with pytest.raises(BacktestCancelled):
        BacktestEngine(BandCross(time_frame="H1")).run(instrument, cancel_event=cancel_event)


def test_empty_series_is_a_data_error(make_instrument):
    with pytest.raises(DataError):
        BacktestEngine(BandCross(time_frame="H1")).run(make_instrument([]))


def test_short_series_yields_zero_trades(make_instrument):
    run = BacktestEngine(BandCross(time_frame="H1")).run(make_instrument([100.0, 106.0, 108.0]))
    assert run.result.trades == 0
    assert run.result.profit_factor == 0.0


def test_required_companion_failure_is_fatal(make_instrument):
    async def failing_fetch(symbol, time_frame):
        raise DataError(f"no {symbol} {time_frame}")

    instrument = make_instrument(_band_closes())
    config = EngineConfig(htf_fetch_retries=1)
    strategy = HtfFollower(time_frame="H1", higher_time_frame="H4", config=config)
    with pytest.raises(CompanionUnavailable):
        BacktestEngine(strategy).run(instrument, fetch_companion=failing_fetch)


def test_optional_companion_degrades_to_none(make_instrument):
    calls = []

    async def failing_fetch(symbol, time_frame):
        calls.append((symbol, time_frame))
        raise DataError("unavailable")

    instrument = make_instrument(_band_closes())
    config = EngineConfig(htf_fetch_retries=2)
    strategy = HtfFollower(time_frame="H1", higher_time_frame="H4", params={"htf_required": False}, config=config)
    run = BacktestEngine(strategy).run(instrument, fetch_companion=failing_fetch)
    assert run.companion_time_frame is None
    assert calls == [("EURUSD", "H4")] * 3


def test_companion_fetch_timeout(make_instrument):
    async def slow_fetch(symbol, time_frame):
        await asyncio.sleep(5)

    instrument = make_instrument(_band_closes())
    config = EngineConfig(htf_fetch_timeout=0.01, htf_fetch_retries=0)
    strategy = HtfFollower(time_frame="H1", higher_time_frame="H4", config=config)
    with pytest.raises(CompanionUnavailable):
        BacktestEngine(strategy).run(instrument, fetch_companion=slow_fetch)


def test_companion_is_fetched_once_and_passed_to_hooks(make_instrument):
    seen = []

    class Recorder(HtfFollower):
        def entry_long(self, index, instrument, htf, pricing):
            seen.append(htf)
            return Position.none()

    companion = make_instrument([100.0] * 5, time_frame="H4", step_ns=4 * 3_600_000_000_000)

    async def fetch(symbol, time_frame):
        return companion

    instrument = make_instrument(_band_closes())
    run = BacktestEngine(Recorder(time_frame="H1", higher_time_frame="H4")).run(instrument, fetch_companion=fetch)
    assert run.companion_time_frame == "H4"
    assert seen and all(item is companion for item in seen)


def test_companion_timeout_bounds_run_time(tmp_path, make_instrument):
    release = threading.Event()

    class StuckFeeder(InstrumentFeeder):
        def _read(self, symbol, time_frame):
            release.wait(5)
            raise DataError("released")

    feeder = StuckFeeder(tmp_path, load_timeout=0.2)
    config = EngineConfig(htf_fetch_timeout=0.2, htf_fetch_retries=1)
    strategy = HtfFollower(time_frame="H1", higher_time_frame="H4", params={"htf_required": False}, config=config)
    started = time.monotonic()
    try:
        run = BacktestEngine(strategy).run(make_instrument(_band_closes()), fetch_companion=feeder.fetch_instrument)
    finally:
        release.set()

    assert time.monotonic() - started < 2.0
    assert run.companion_time_frame is None


class ReverseOnExit(Strategy):
    name = "ReverseOnExit"

    def entry_long(self, index, instrument, htf, pricing):
        return Position.market_in() if index == 5 else Position.none()

    def exit_long(self, index, instrument, htf, trade_in, pricing):
        if index == 7:
            return Position.market_out([OrderSpec.buy(TradeDirection.LONG, 100.2)])
        return Position.none()


def test_entry_orders_from_market_exit_fill_next_candle(make_instrument):
    run = BacktestEngine(ReverseOnExit(time_frame="H1")).run(make_instrument([100.0] * 10))
    assert [trade.index_in for trade in run.trades_in] == [5, 8]
    assert run.trades_in[1].price_in == pytest.approx(100.2)


def test_entry_orders_from_market_exit_respect_cooldown(make_instrument):
    config = EngineConfig(wait_for_next_trade=3, wait_for_next_trade_enabled=True)
    run = BacktestEngine(ReverseOnExit(time_frame="H1", config=config)).run(make_instrument([100.0] * 10))
    assert [trade.index_in for trade in run.trades_in] == [5]
    assert [trade.index_out for trade in run.trades_out] == [7]
    assert not [record for record in run.orders if record["order_type"] == "BuyOrder"]
