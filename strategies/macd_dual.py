"""Multi-timeframe MACD: higher-timeframe crosses lead, local crosses confirm."""

from __future__ import annotations

from backtester.models import Instrument, Pricing, StrategyType, TradeDirection, TradeIn, htf_value
from backtester.stop_loss import StopLossType
from backtester.strategy import Position, Strategy, prev_index


def htf_macd_cross_up(index: int, instrument: Instrument, htf: Instrument | None) -> bool:
    return htf_value(
        index,
        instrument,
        htf,
        lambda idx, prev, inst: inst.indicator("macd_a", idx) > inst.indicator("macd_b", idx)
        and inst.indicator("macd_b", prev) >= inst.indicator("macd_a", prev),
    )


def htf_macd_cross_down(index: int, instrument: Instrument, htf: Instrument | None) -> bool:
    return htf_value(
        index,
        instrument,
        htf,
        lambda idx, prev, inst: inst.indicator("macd_a", idx) < inst.indicator("macd_b", idx)
        and inst.indicator("macd_a", prev) >= inst.indicator("macd_b", prev),
    )


def htf_macd_above(index: int, instrument: Instrument, htf: Instrument | None) -> bool:
    return htf_value(
        index,
        instrument,
        htf,
        lambda idx, _prev, inst: inst.indicator("macd_a", idx) > inst.indicator("macd_b", idx),
    )


def htf_macd_direction(index: int, instrument: Instrument, htf: Instrument | None) -> TradeDirection:
    """Long above the higher-timeframe signal line, short below, none without a companion."""
    return htf_value(
        index,
        instrument,
        htf,
        lambda idx, _prev, inst: TradeDirection.LONG
        if inst.indicator("macd_a", idx) > inst.indicator("macd_b", idx)
        else TradeDirection.SHORT,
        default=TradeDirection.NONE,
    )


class MacdDual(Strategy):
    name = "MacdDual"
    default_strategy_type = StrategyType.ONLY_LONG_MTF
    stop_loss_type = StopLossType.ATR

    def trading_direction(self, index: int, instrument: Instrument, htf: Instrument | None) -> TradeDirection:
        if self.strategy_type is StrategyType.LONG_SHORT_MTF:
            return htf_macd_direction(index, instrument, htf)
        return super().trading_direction(index, instrument, htf)

    def _long_signal(self, index: int, instrument: Instrument, htf: Instrument | None) -> bool:
        prev = prev_index(index)
        macd_a = instrument.indicator("macd_a", index)
        macd_b = instrument.indicator("macd_b", index)
        local_cross = macd_a > macd_b and instrument.indicator("macd_b", prev) >= instrument.indicator("macd_a", prev)
        return htf_macd_cross_up(index, instrument, htf) or (htf_macd_above(index, instrument, htf) and local_cross)

    def _short_signal(self, index: int, instrument: Instrument, htf: Instrument | None) -> bool:
        prev = prev_index(index)
        macd_a = instrument.indicator("macd_a", index)
        macd_b = instrument.indicator("macd_b", index)
        local_cross = macd_a < macd_b and instrument.indicator("macd_b", prev) <= instrument.indicator("macd_a", prev)
        return htf_macd_cross_down(index, instrument, htf) or local_cross

    def entry_long(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        return Position.market_in() if self._long_signal(index, instrument, htf) else Position.none()

    def exit_long(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        if not self._short_signal(index, instrument, htf):
            return Position.none()
        self.update_stop_loss(StopLossType.TRAILING, float(instrument.low[index]))
        return Position.market_out()

    def entry_short(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        if not self.strategy_type.allows_short:
            return Position.none()
        return Position.market_in() if self._short_signal(index, instrument, htf) else Position.none()

    def exit_short(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        return Position.market_out() if self._long_signal(index, instrument, htf) else Position.none()
