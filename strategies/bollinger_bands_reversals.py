"""Bollinger band reversals filtered by higher-timeframe MACD.

Positions are closed by the stop loss only: a rejection at the top band tightens
it to the candle low.
"""

from __future__ import annotations

from backtester.models import Instrument, Pricing, StrategyType, TradeDirection, TradeIn
from backtester.stop_loss import StopLossType
from backtester.strategy import Position, Strategy, prev_index

from .macd_dual import htf_macd_above, htf_macd_cross_up, htf_macd_direction


class BollingerBandsReversals(Strategy):
    name = "BollingerBandsReversals"
    default_strategy_type = StrategyType.ONLY_LONG_MTF
    stop_loss_type = StopLossType.ATR

    def trading_direction(self, index: int, instrument: Instrument, htf: Instrument | None) -> TradeDirection:
        if self.strategy_type is StrategyType.LONG_SHORT_MTF:
            return htf_macd_direction(index, instrument, htf)
        return super().trading_direction(index, instrument, htf)

    def _rejected_low_band(self, index: int, instrument: Instrument) -> bool:
        prev = prev_index(index)
        prev_close = float(instrument.close[prev])
        close = float(instrument.close[index])
        return (
            prev_close < float(instrument.open[prev])
            and prev_close < instrument.indicator("bb_b", prev)
            and close >= instrument.indicator("bb_b", index)
            and close >= float(instrument.open[index])
        )

    def _rejected_top_band(self, index: int, instrument: Instrument) -> bool:
        prev = prev_index(index)
        prev_close = float(instrument.close[prev])
        close = float(instrument.close[index])
        return (
            prev_close > float(instrument.open[prev])
            and prev_close > instrument.indicator("bb_a", prev)
            and close <= instrument.indicator("bb_a", index)
            and close <= float(instrument.open[index])
        )

    def entry_long(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        if htf_macd_cross_up(index, instrument, htf):
            return Position.market_in()
        if htf_macd_above(index, instrument, htf) and self._rejected_low_band(index, instrument):
            return Position.market_in()
        return Position.none()

    def exit_long(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        if self._rejected_top_band(index, instrument):
            self.update_stop_loss(StopLossType.TRAILING, float(instrument.low[index]))
        return Position.none()

    def entry_short(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        if not self.strategy_type.allows_short:
            return Position.none()
        return Position.market_in() if self._rejected_top_band(index, instrument) else Position.none()

    def exit_short(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        if self._rejected_low_band(index, instrument):
            self.update_stop_loss(StopLossType.TRAILING, float(instrument.high[index]))
        return Position.none()
