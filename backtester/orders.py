"""Pending order lifecycle: preparation, fills, one-cancels-other and expiry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable

from core.market_metadata import timeframe_duration_ns

from .errors import ConfigurationError
from .models import Instrument, Pricing, TradeDirection, TradeIn, TradeOut, TradeType, iso_utc
from .stop_loss import StopLoss
from .trades import resolve_trade_in, resolve_trade_out

logger = logging.getLogger(__name__)


class OrderType(str, Enum):
    BUY_ORDER = "BuyOrder"  # opens a position in the order's direction
    SELL_ORDER = "SellOrder"  # closes it at a target
    TAKE_PROFIT = "TakeProfit"
    STOP_LOSS = "StopLoss"


class OrderCondition(str, Enum):
    GREATER = "Greater"
    LOWER = "Lower"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    FILLED = "Filled"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class PriceMode(str, Enum):
    PRICE = "Price"
    PIPS = "Pips"
    ATR = "Atr"
    PERCENTAGE = "Percentage"

    @classmethod
    def from_value(cls, value: Any) -> "PriceMode":
        if isinstance(value, PriceMode):
            return value
        key = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ConfigurationError(f"Unsupported price mode: {value}")


@dataclass(frozen=True)
class OrderSpec:
    """Order request issued by a strategy. Relative prices are resolved at issuance."""

    order_type: OrderType
    direction: TradeDirection
    value: float
    mode: PriceMode = PriceMode.PRICE
    size: float | None = None
    condition: OrderCondition | None = None

    @property
    def is_entry(self) -> bool:
        return self.order_type is OrderType.BUY_ORDER

    @classmethod
    def buy(cls, direction: TradeDirection, value: float, *, mode: PriceMode = PriceMode.PRICE, size: float | None = None) -> "OrderSpec":
        return cls(OrderType.BUY_ORDER, direction, float(value), mode, size)

    @classmethod
    def sell(cls, direction: TradeDirection, value: float, *, mode: PriceMode = PriceMode.PRICE, size: float | None = None) -> "OrderSpec":
        return cls(OrderType.SELL_ORDER, direction, float(value), mode, size)

    @classmethod
    def take_profit(cls, direction: TradeDirection, value: float, *, mode: PriceMode = PriceMode.PRICE) -> "OrderSpec":
        return cls(OrderType.TAKE_PROFIT, direction, float(value), mode)

    @classmethod
    def stop_loss(cls, direction: TradeDirection, value: float, *, mode: PriceMode = PriceMode.PRICE) -> "OrderSpec":
        return cls(OrderType.STOP_LOSS, direction, float(value), mode)


@dataclass
class Order:
    id: int
    group_id: int
    order_type: OrderType
    direction: TradeDirection
    condition: OrderCondition
    origin_price: float
    target_price: float
    size: float
    index_created: int
    created_at: datetime
    updated_at: datetime
    valid_until: datetime | None = None
    status: OrderStatus = OrderStatus.PENDING
    trade_id: int | None = None
    index_closed: int | None = None

    @property
    def active(self) -> bool:
        return self.status is OrderStatus.PENDING

    @property
    def is_entry(self) -> bool:
        return self.order_type is OrderType.BUY_ORDER

    def is_triggered(self, high: float, low: float) -> bool:
        if self.condition is OrderCondition.GREATER:
            return high >= self.target_price
        return low <= self.target_price

    def is_expired(self, time_utc: datetime) -> bool:
        return self.valid_until is not None and self.valid_until < time_utc

    def close(self, status: OrderStatus, index: int, time_utc: datetime) -> None:
        if not self.active:
            raise RuntimeError(f"Order {self.id} already {self.status.value}")
        self.status = status
        self.index_closed = index
        self.updated_at = time_utc

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "order_type": self.order_type.value,
            "direction": self.direction.value,
            "condition": self.condition.value,
            "origin_price": float(self.origin_price),
            "target_price": float(self.target_price),
            "size": float(self.size),
            "index_created": self.index_created,
            "created_at": iso_utc(self.created_at),
            "updated_at": iso_utc(self.updated_at),
            "valid_until": iso_utc(self.valid_until),
            "status": self.status.value,
            "active": self.active,
            "trade_id": self.trade_id,
            "index_closed": self.index_closed,
        }


@dataclass(frozen=True)
class PositionResult:
    """Outcome of resolving pending orders against one candle."""

    trade_in: TradeIn | None = None
    trade_out: TradeOut | None = None
    order: Order | None = None


def _default_condition(order_type: OrderType, direction: TradeDirection, target: float, close: float) -> OrderCondition:
    if order_type is OrderType.BUY_ORDER:
        return OrderCondition.GREATER if target >= close else OrderCondition.LOWER
    favourable = OrderCondition.GREATER if direction is TradeDirection.LONG else OrderCondition.LOWER
    if order_type is OrderType.STOP_LOSS:
        return OrderCondition.LOWER if favourable is OrderCondition.GREATER else OrderCondition.GREATER
    return favourable


class OrderBook:
    """Owns every order of one run. Order ids are unique and monotonically assigned."""

    def __init__(self, time_frame: str, *, overwrite: bool = False, validity_candles: int = 5):
        if validity_candles < 0:
            raise ConfigurationError("pending_order_validity must be non-negative")
        self.time_frame = time_frame
        self.overwrite = bool(overwrite)
        self.validity_candles = int(validity_candles)
        self._orders: list[Order] = []
        self._seq = 0
        self._group_seq = 0

    @property
    def orders(self) -> tuple[Order, ...]:
        return tuple(self._orders)

    def pending(self, *, trade_id: int | None = None, linked_only: bool = False) -> list[Order]:
        active = [order for order in self._orders if order.active]
        if linked_only:
            return [order for order in active if order.trade_id == trade_id]
        return active

    def records(self) -> list[dict[str, Any]]:
        return [order.to_record() for order in self._orders]

    def _resolve_target(
        self,
        spec: OrderSpec,
        reference: float,
        index: int,
        instrument: Instrument,
        pricing: Pricing,
    ) -> float:
        if spec.mode is PriceMode.PRICE:
            return float(spec.value)
        if spec.mode is PriceMode.PIPS:
            distance = pricing.to_pips(spec.value)
        elif spec.mode is PriceMode.ATR:
            distance = instrument.indicator("atr", index) * spec.value
        else:
            distance = reference * spec.value / 100.0
        sign = -spec.direction.sign if spec.order_type is OrderType.STOP_LOSS else spec.direction.sign
        return reference + sign * distance

    def prepare_orders(
        self,
        index: int,
        instrument: Instrument,
        pricing: Pricing,
        specs: Iterable[OrderSpec],
        *,
        default_size: float,
        entry_price: float | None = None,
        trade_id: int | None = None,
    ) -> list[Order]:
        """Freeze strategy order specs into concrete orders with absolute prices.

        Entry orders are priced against the current close. Exit orders are priced
        against ``entry_price`` when a trade is open, else against the entry order of
        the same batch.
        """
        specs = list(specs)
        time_utc = instrument.time_utc(index)
        close = float(instrument.close[index])
        valid_until = None
        if trade_id is None:
            valid_until = time_utc + timedelta(
                microseconds=self.validity_candles * timeframe_duration_ns(self.time_frame) // 1_000
            )
        self._group_seq += 1
        group_id = self._group_seq

        resolved: list[tuple[OrderSpec, float, float]] = []
        batch_entry_price = entry_price
        for spec in sorted(specs, key=lambda item: not item.is_entry):
            if spec.is_entry:
                target = self._resolve_target(spec, close, index, instrument, pricing)
                if batch_entry_price is None:
                    batch_entry_price = target
                resolved.append((spec, close, target))
            else:
                reference = close if batch_entry_price is None else batch_entry_price
                resolved.append((spec, reference, self._resolve_target(spec, reference, index, instrument, pricing)))

        orders: list[Order] = []
        for spec, reference, target in resolved:
            self._seq += 1
            orders.append(
                Order(
                    id=self._seq,
                    group_id=group_id,
                    order_type=spec.order_type,
                    direction=spec.direction,
                    condition=spec.condition or _default_condition(spec.order_type, spec.direction, target, close),
                    origin_price=reference,
                    target_price=target,
                    size=float(spec.size if spec.size is not None else default_size),
                    index_created=index,
                    created_at=time_utc,
                    updated_at=time_utc,
                    valid_until=valid_until,
                    trade_id=trade_id,
                )
            )
        return orders

    def submit(
        self,
        index: int,
        instrument: Instrument,
        pricing: Pricing,
        specs: Iterable[OrderSpec],
        *,
        default_size: float,
        open_trade: TradeIn | None = None,
    ) -> list[Order]:
        """Prepare and book a batch, applying the pending-order overwrite switch.

        While flat a batch must carry an entry order and competes with every pending
        order. While a trade is open, entry specs are dropped and the batch competes
        with the exit orders protecting that trade.
        """
        specs = list(specs)
        if open_trade is None:
            if not any(spec.is_entry for spec in specs):
                logger.debug("%s idx=%s: exit-only order batch while flat ignored", instrument.symbol, index)
                return []
            competing = self.pending()
        else:
            dropped = [spec for spec in specs if spec.is_entry]
            if dropped:
                logger.debug("%s idx=%s: %s entry specs dropped while a trade is open", instrument.symbol, index, len(dropped))
            specs = [spec for spec in specs if not spec.is_entry]
            if not specs:
                return []
            competing = self.pending(trade_id=open_trade.id, linked_only=True)

        if competing and not self.overwrite:
            logger.debug("%s idx=%s: %s pending orders kept, new batch discarded", instrument.symbol, index, len(competing))
            return []

        orders = self.prepare_orders(
            index,
            instrument,
            pricing,
            specs,
            default_size=default_size,
            entry_price=None if open_trade is None else open_trade.price_in,
            trade_id=None if open_trade is None else open_trade.id,
        )
        if competing:
            time_utc = instrument.time_utc(index)
            for order in competing:
                order.close(OrderStatus.CANCELLED, index, time_utc)
            logger.debug("%s idx=%s: %s pending orders overwritten", instrument.symbol, index, len(competing))
        self._orders.extend(orders)
        return orders

    def resolve_pending(
        self,
        index: int,
        instrument: Instrument,
        pricing: Pricing,
        open_trade: TradeIn | None,
        stop_loss: StopLoss,
        *,
        next_trade_id: int,
    ) -> PositionResult:
        """Test pending orders against candle ``index``. At most one fill per call.

        With a trade open only its exits are eligible, the stop-loss policy first
        (worst case), then exit orders with stop orders ahead of targets. A trade
        opened by an order fill on this candle is tested against its stops only;
        market entries fill at the close and skip their own candle. While flat the
        oldest triggered, unexpired entry order fills.
        """
        candle = instrument.candle(index)
        if open_trade is not None:
            if index < open_trade.index_in or (index == open_trade.index_in and open_trade.order_id is None):
                return PositionResult()
            entry_candle = index == open_trade.index_in
            direction = open_trade.direction
            if stop_loss.is_triggered(candle.high, candle.low):
                trade_out = resolve_trade_out(
                    index,
                    instrument,
                    pricing,
                    open_trade,
                    TradeType.stop_loss(direction),
                    price=stop_loss.price,
                    stop_loss=True,
                )
                self.cancel_linked(open_trade.id, index, instrument)
                return PositionResult(trade_out=trade_out)

            exits = [
                order
                for order in self.pending(trade_id=open_trade.id, linked_only=True)
                if not order.is_entry
                and order.index_created < index
                and (not entry_candle or order.order_type is OrderType.STOP_LOSS)
            ]
            exits.sort(key=lambda order: (order.order_type is not OrderType.STOP_LOSS, order.id))
            for order in exits:
                if not order.is_triggered(candle.high, candle.low):
                    continue
                is_stop = order.order_type is OrderType.STOP_LOSS
                trade_out = resolve_trade_out(
                    index,
                    instrument,
                    pricing,
                    open_trade,
                    TradeType.stop_loss(direction) if is_stop else TradeType.order_out(direction),
                    order,
                    stop_loss=is_stop,
                )
                order.close(OrderStatus.FILLED, index, candle.time_utc)
                self.cancel_linked(open_trade.id, index, instrument)
                return PositionResult(trade_out=trade_out, order=order)
            return PositionResult()

        entries = [
            order
            for order in self.pending()
            if order.is_entry and order.index_created < index and not order.is_expired(candle.time_utc)
        ]
        for order in sorted(entries, key=lambda item: item.id):
            if not order.is_triggered(candle.high, candle.low):
                continue
            trade_in = resolve_trade_in(
                index,
                order.size,
                instrument,
                pricing,
                TradeType.order_in(order.direction),
                order,
                trade_id=next_trade_id,
            )
            order.close(OrderStatus.FILLED, index, candle.time_utc)
            order.trade_id = trade_in.id
            for sibling in self.pending():
                if sibling.group_id == order.group_id and not sibling.is_entry:
                    sibling.trade_id = trade_in.id
                    sibling.valid_until = None
                    sibling.updated_at = candle.time_utc
            self.cancel_unlinked(index, instrument)
            return PositionResult(trade_in=trade_in, order=order)
        return PositionResult()

    def cancel_linked(self, trade_id: int, index: int, instrument: Instrument) -> list[Order]:
        """One-cancels-other: drop every pending order protecting ``trade_id``."""
        time_utc = instrument.time_utc(index)
        cancelled = self.pending(trade_id=trade_id, linked_only=True)
        for order in cancelled:
            order.close(OrderStatus.CANCELLED, index, time_utc)
        if cancelled:
            logger.debug("%s idx=%s: cancelled %s orders of trade %s", instrument.symbol, index, len(cancelled), trade_id)
        return cancelled

    def cancel_unlinked(self, index: int, instrument: Instrument) -> list[Order]:
        """Cancel entry orders and their not-yet-linked exits, e.g. after another entry filled."""
        time_utc = instrument.time_utc(index)
        cancelled = [order for order in self.pending() if order.trade_id is None]
        for order in cancelled:
            order.close(OrderStatus.CANCELLED, index, time_utc)
        return cancelled

    def cancel_expired(self, index: int, instrument: Instrument) -> list[Order]:
        """Expire orders whose valid-until is strictly before candle ``index``.

        Only called while flat; orders protecting an open trade carry no expiry.
        """
        time_utc = instrument.time_utc(index)
        expired = [order for order in self.pending() if order.is_expired(time_utc)]
        for order in expired:
            order.close(OrderStatus.EXPIRED, index, time_utc)
            logger.debug("%s idx=%s: order %s expired", instrument.symbol, index, order.id)
        return expired
