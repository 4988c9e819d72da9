"""EMA pullback scalping with stop-entry orders and risk/reward targets."""

from __future__ import annotations

from backtester.models import Instrument, Pricing, StrategyType, TradeDirection, htf_value
from backtester.orders import OrderSpec
from backtester.strategy import Position, Strategy


def _htf_ema_direction(idx: int, _prev: int, htf: Instrument) -> TradeDirection:
    ema_a = htf.indicator("ema_a", idx)
    ema_c = htf.indicator("ema_c", idx)
    if ema_a > ema_c and float(htf.low[idx]) > ema_c:
        return TradeDirection.LONG
    if ema_a < ema_c and float(htf.high[idx]) < ema_c:
        return TradeDirection.SHORT
    return TradeDirection.NONE


class EmaScalping(Strategy):
    """Buy stop above the recent high after a pullback into the fast EMA.

    The stop sits a margin below the trigger candle and the target is
    ``risk_reward_ratio`` times the risk, spread included.
    """

    name = "EmaScalping"
    default_strategy_type = StrategyType.ONLY_LONG_MTF
    DEFAULT_PARAMS = {"pips_margin": 3.0, "previous_bars": 5}

    @property
    def risk_reward_ratio(self) -> float:
        return float(self.params.get("risk_reward_ratio", self.config.risk_reward_ratio))

    def trading_direction(self, index: int, instrument: Instrument, htf: Instrument | None) -> TradeDirection:
        direction = htf_value(index, instrument, htf, _htf_ema_direction, default=TradeDirection.NONE)
        if direction is TradeDirection.LONG and not self.strategy_type.allows_long:
            return TradeDirection.NONE
        if direction is TradeDirection.SHORT and not self.strategy_type.allows_short:
            return TradeDirection.NONE
        return direction

    def _window(self, index: int) -> slice:
        return slice(max(index - int(self.params["previous_bars"]), 0), index + 1)

    def entry_long(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        low = float(instrument.low[index])
        close = float(instrument.close[index])
        if not (low < instrument.indicator("ema_a", index) and close > instrument.indicator("ema_c", index)):
            return Position.none()
        margin = pricing.to_pips(float(self.params["pips_margin"]))
        buy_price = float(instrument.high[self._window(index)].max()) + margin
        stop_price = low - margin
        risk = buy_price + pricing.spread - stop_price
        sell_price = buy_price + risk * self.risk_reward_ratio
        return Position.order(
            [
                OrderSpec.buy(TradeDirection.LONG, buy_price),
                OrderSpec.sell(TradeDirection.LONG, sell_price),
                OrderSpec.stop_loss(TradeDirection.LONG, stop_price),
            ]
        )

    def entry_short(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        high = float(instrument.high[index])
        close = float(instrument.close[index])
        if not (high > instrument.indicator("ema_a", index) and close < instrument.indicator("ema_c", index)):
            return Position.none()
        margin = pricing.to_pips(float(self.params["pips_margin"]))
        buy_price = float(instrument.low[self._window(index)].min()) - margin
        stop_price = high + margin
        risk = stop_price + pricing.spread - buy_price
        sell_price = buy_price - risk * self.risk_reward_ratio
        return Position.order(
            [
                OrderSpec.buy(TradeDirection.SHORT, buy_price),
                OrderSpec.sell(TradeDirection.SHORT, sell_price),
                OrderSpec.stop_loss(TradeDirection.SHORT, stop_price),
            ]
        )
