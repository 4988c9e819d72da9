"""Stochastic crossover out of the oversold and overbought zones."""

from __future__ import annotations

from backtester.models import Instrument, Pricing, StrategyType, TradeIn
from backtester.stop_loss import StopLossType
from backtester.strategy import Position, Strategy, prev_index


class Stoch(Strategy):
    name = "Stoch"
    default_strategy_type = StrategyType.LONG_SHORT
    stop_loss_type = StopLossType.ATR
    DEFAULT_PARAMS = {"oversold": 20.0, "overbought": 70.0}

    def _values(self, index: int, instrument: Instrument) -> tuple[float, float, float, float]:
        prev = prev_index(index)
        return (
            instrument.indicator("stoch_a", index),
            instrument.indicator("stoch_b", index),
            instrument.indicator("stoch_a", prev),
            instrument.indicator("stoch_b", prev),
        )

    def _cross_up(self, index: int, instrument: Instrument) -> bool:
        stoch_a, stoch_b, prev_a, prev_b = self._values(index, instrument)
        return stoch_a <= float(self.params["oversold"]) and stoch_a > stoch_b and prev_a <= prev_b

    def _cross_down(self, index: int, instrument: Instrument) -> bool:
        stoch_a, stoch_b, prev_a, prev_b = self._values(index, instrument)
        return stoch_a >= float(self.params["overbought"]) and stoch_a < stoch_b and prev_a >= prev_b

    def entry_long(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        return Position.market_in() if self._cross_up(index, instrument) else Position.none()

    def exit_long(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        return Position.market_out() if self._cross_down(index, instrument) else Position.none()

    def entry_short(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        return Position.market_in() if self._cross_down(index, instrument) else Position.none()

    def exit_short(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        return Position.market_out() if self._cross_up(index, instrument) else Position.none()
