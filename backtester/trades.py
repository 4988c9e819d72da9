"""Turn fill events into immutable trade records and compute realized economics."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

import numpy as np

from core.market_metadata import timeframe_duration_ns

from .models import Instrument, Pricing, TradeDirection, TradeIn, TradeOut, TradeType

if TYPE_CHECKING:
    from .orders import Order

logger = logging.getLogger(__name__)


def _with_spread(price: float, direction: TradeDirection, pricing: Pricing, *, entering: bool) -> float:
    # Longs buy at the ask and sell at the bid; shorts the other way round.
    sign = direction.sign if entering else -direction.sign
    return price + sign * pricing.half_spread


def calculate_profit(size: float, price_in: float, price_out: float, direction: TradeDirection) -> float:
    profit = size * (price_out - price_in)
    return -profit if direction is TradeDirection.SHORT else profit


def calculate_profit_per(price_in: float, price_out: float, direction: TradeDirection) -> float:
    if price_in == 0:
        return 0.0
    profit_per = (price_out - price_in) / price_in * 100.0
    return -profit_per if direction is TradeDirection.SHORT else profit_per


def calculate_runup(
    instrument: Instrument, index_in: int, index_out: int, price_in: float, direction: TradeDirection
) -> float:
    """Maximum favourable excursion over the candles the trade was open, inclusive."""
    if direction is TradeDirection.SHORT:
        excursion = price_in - float(np.min(instrument.low[index_in : index_out + 1]))
    else:
        excursion = float(np.max(instrument.high[index_in : index_out + 1])) - price_in
    return max(excursion, 0.0)


def calculate_drawdown(
    instrument: Instrument, index_in: int, index_out: int, price_in: float, direction: TradeDirection
) -> float:
    """Maximum adverse excursion over the candles the trade was open, inclusive."""
    if direction is TradeDirection.SHORT:
        excursion = float(np.max(instrument.high[index_in : index_out + 1])) - price_in
    else:
        excursion = price_in - float(np.min(instrument.low[index_in : index_out + 1]))
    return max(excursion, 0.0)


def _per(value: float, price_in: float) -> float:
    return value / price_in * 100.0 if price_in else 0.0


def resolve_trade_in(
    index: int,
    size: float,
    instrument: Instrument,
    pricing: Pricing,
    trade_type: TradeType,
    order: "Order | None" = None,
    *,
    trade_id: int = 0,
) -> TradeIn:
    candle = instrument.candle(index)
    base_price = order.target_price if order is not None else candle.close
    price_in = _with_spread(base_price, trade_type.direction, pricing, entering=True)
    trade_in = TradeIn(
        id=trade_id,
        trade_type=trade_type,
        index_in=index,
        date_in=candle.time_utc,
        price_in=price_in,
        size=float(size),
        spread=pricing.spread,
        order_id=None if order is None else order.id,
    )
    logger.debug(
        "%s %s trade in #%s at %s idx=%s price=%.6f",
        instrument.symbol,
        trade_type.value,
        trade_id,
        candle.time_utc,
        index,
        price_in,
    )
    return trade_in


def resolve_trade_out(
    index: int,
    instrument: Instrument,
    pricing: Pricing,
    trade_in: TradeIn,
    trade_type: TradeType,
    order: "Order | None" = None,
    *,
    price: float | None = None,
    stop_loss: bool = False,
) -> TradeOut:
    """Close ``trade_in`` at the candle close, the order target, or an explicit trigger price."""
    candle = instrument.candle(index)
    direction = trade_in.direction
    if price is not None:
        base_price = float(price)
    elif order is not None:
        base_price = order.target_price
    else:
        base_price = candle.close
    price_out = _with_spread(base_price, direction, pricing, entering=False)
    run_up = calculate_runup(instrument, trade_in.index_in, index, trade_in.price_in, direction)
    draw_down = calculate_drawdown(instrument, trade_in.index_in, index, trade_in.price_in, direction)
    trade_out = TradeOut(
        id=trade_in.id,
        trade_type=trade_type,
        trade_in_id=trade_in.id,
        trade_in_type=trade_in.trade_type,
        index_in=trade_in.index_in,
        date_in=trade_in.date_in,
        price_in=trade_in.price_in,
        index_out=index,
        date_out=candle.time_utc,
        price_out=price_out,
        size=trade_in.size,
        spread_out=pricing.spread,
        profit=calculate_profit(trade_in.size, trade_in.price_in, price_out, direction),
        profit_per=calculate_profit_per(trade_in.price_in, price_out, direction),
        run_up=run_up,
        run_up_per=_per(run_up, trade_in.price_in),
        draw_down=draw_down,
        draw_down_per=_per(draw_down, trade_in.price_in),
        stop_loss=stop_loss,
        order_id=None if order is None else order.id,
    )
    logger.debug(
        "%s %s trade out #%s idx=%s price=%.6f profit_per=%.4f stop_loss=%s",
        instrument.symbol,
        trade_type.value,
        trade_out.id,
        index,
        price_out,
        trade_out.profit_per,
        stop_loss,
    )
    return trade_out


def there_are_funds(trades_out: Iterable[TradeOut], max_loss_per: float = 90.0) -> bool:
    """False once the cumulative per-trade profit % has fallen to ``-max_loss_per``."""
    return sum(trade.profit_per for trade in trades_out) > -abs(max_loss_per)


@dataclass
class Cooldown:
    """Suppresses entries for ``candles`` bars after each exit."""

    candles: int = 0
    enabled: bool = False
    time_frame: str = "H1"
    resume_at_ns: int | None = None

    def start(self, exit_time_ns: int) -> None:
        if not self.enabled or self.candles <= 0:
            self.resume_at_ns = None
            return
        self.resume_at_ns = int(exit_time_ns) + self.candles * timeframe_duration_ns(self.time_frame)

    def ready(self, time_ns: int) -> bool:
        if not self.enabled or self.resume_at_ns is None:
            return True
        return int(time_ns) >= self.resume_at_ns

    def reset(self) -> None:
        self.resume_at_ns = None
