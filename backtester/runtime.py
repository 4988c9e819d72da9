"""Candle-driven simulation driver for a single instrument and strategy."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .config import EngineConfig
from .errors import BacktestCancelled, CompanionUnavailable, DataError, DataNotReady
from .models import Instrument, Pricing, TradeDirection, TradeIn, TradeOut, TradeType
from .orders import OrderBook
from .results import BacktestResult, build_backtest_result
from .stop_loss import StopLossType
from .strategy import Position, PositionKind, Strategy
from .trades import Cooldown, resolve_trade_in, resolve_trade_out, there_are_funds

logger = logging.getLogger(__name__)

CompanionFetcher = Callable[[str, str], Awaitable[Instrument]]


@dataclass
class BacktestRun:
    result: BacktestResult
    trades_in: list[TradeIn]
    trades_out: list[TradeOut]
    orders: list[dict[str, Any]]
    pricing: Pricing
    companion_time_frame: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result.to_dict(),
            "trades_in": [item.to_dict() for item in self.trades_in],
            "trades_out": [item.to_dict() for item in self.trades_out],
            "orders": list(self.orders),
            "pricing": self.pricing.to_dict(),
            "companion_time_frame": self.companion_time_frame,
        }


@dataclass
class _RunState:
    book: OrderBook
    cooldown: Cooldown
    trades_in: list[TradeIn] = field(default_factory=list)
    trades_out: list[TradeOut] = field(default_factory=list)
    open_trade: TradeIn | None = None


class BacktestEngine:
    """Runs one strategy over one instrument. Each run owns its own order and trade state."""

    def __init__(self, strategy: Strategy, config: EngineConfig | None = None, pricing: Pricing | None = None):
        self.strategy = strategy
        self.config = config or strategy.config
        self.pricing = pricing

    async def fetch_companion(self, symbol: str, fetcher: CompanionFetcher) -> Instrument | None:
        """Await the higher-timeframe series once, with a timeout per attempt and bounded retries."""
        time_frame = self.strategy.higher_time_frame
        if time_frame is None:
            return None
        attempts = int(self.config.htf_fetch_retries) + 1
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                companion = await asyncio.wait_for(fetcher(symbol, time_frame), timeout=self.config.htf_fetch_timeout)
            except (asyncio.TimeoutError, DataError, OSError) as exc:
                last_error = exc
                logger.debug("%s %s companion fetch attempt %s/%s failed: %s", symbol, time_frame, attempt, attempts, exc)
                continue
            logger.info("%s companion %s loaded with %s candles", symbol, time_frame, companion.rows)
            return companion

        if self.strategy.htf_required:
            raise CompanionUnavailable(f"{symbol} {time_frame}: companion unavailable after {attempts} attempts") from last_error
        logger.warning("%s %s companion unavailable, running %s without it", symbol, time_frame, self.strategy.name)
        return None

    async def run_async(
        self,
        instrument: Instrument,
        *,
        htf: Instrument | None = None,
        fetch_companion: CompanionFetcher | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BacktestRun:
        if htf is None and self.strategy.strategy_type.is_multi_timeframe:
            if fetch_companion is not None:
                htf = await self.fetch_companion(instrument.symbol, fetch_companion)
            elif self.strategy.htf_required:
                raise CompanionUnavailable(
                    f"{instrument.symbol}: {self.strategy.name} requires {self.strategy.higher_time_frame} companion data"
                )
        return self.simulate(instrument, htf=htf, cancel_event=cancel_event)

    def run(
        self,
        instrument: Instrument,
        *,
        htf: Instrument | None = None,
        fetch_companion: CompanionFetcher | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BacktestRun:
        """Run on a private event loop.

        Blocking companion loads go to an executor owned by this call. It is shut down
        without waiting, so a fetch that timed out cannot hold the run open.
        """
        loop = asyncio.new_event_loop()
        executor = ThreadPoolExecutor(
            max_workers=int(self.config.htf_fetch_retries) + 1, thread_name_prefix="companion-fetch"
        )
        loop.set_default_executor(executor)
        try:
            return loop.run_until_complete(
                self.run_async(instrument, htf=htf, fetch_companion=fetch_companion, cancel_event=cancel_event)
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    def simulate(
        self,
        instrument: Instrument,
        *,
        htf: Instrument | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BacktestRun:
        if instrument.rows == 0:
            raise DataError(f"{instrument.symbol} {instrument.time_frame}: empty candle series")
        strategy = self.strategy
        pricing = self.pricing or self.config.pricing_for(instrument.symbol, instrument.market)
        state = _RunState(
            book=OrderBook(
                strategy.time_frame,
                overwrite=self.config.overwrite_pending_orders,
                validity_candles=self.config.pending_order_validity,
            ),
            cooldown=Cooldown(
                candles=self.config.wait_for_next_trade,
                enabled=self.config.wait_for_next_trade_enabled,
                time_frame=strategy.time_frame,
            ),
        )
        strategy.stop_loss.reset()
        logger.info(
            "Backtest start %s %s %s candles=%s spread_pips=%.2f",
            strategy.name,
            instrument.symbol,
            strategy.time_frame,
            instrument.rows,
            pricing.spread_pips,
        )

        for index in range(self.config.warm_up, instrument.rows - 1):
            if cancel_event is not None and cancel_event.is_set():
                raise BacktestCancelled(f"{strategy.name} {instrument.symbol} cancelled at index {index}")
            self._step(state, index, instrument, htf, pricing)

        result = build_backtest_result(
            instrument,
            state.trades_out,
            strategy=strategy.name,
            strategy_type=strategy.strategy_type.value,
            time_frame=strategy.time_frame,
            higher_time_frame=strategy.higher_time_frame,
            config=self.config,
        )
        logger.info(
            "Backtest done %s %s trades=%s net_profit_per=%.4f",
            strategy.name,
            instrument.symbol,
            result.trades,
            result.net_profit_per,
        )
        return BacktestRun(
            result=result,
            trades_in=list(state.trades_in),
            trades_out=list(state.trades_out),
            orders=state.book.records(),
            pricing=pricing,
            companion_time_frame=None if htf is None else htf.time_frame,
        )

    def _step(self, state: _RunState, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> None:
        strategy = self.strategy
        filled = state.book.resolve_pending(
            index,
            instrument,
            pricing,
            state.open_trade,
            strategy.stop_loss,
            next_trade_id=len(state.trades_in),
        )
        if filled.trade_in is not None:
            self._open(state, filled.trade_in, index, instrument, pricing)
            # Worst case: the fill candle may also reach the new trade's stop.
            filled = state.book.resolve_pending(
                index,
                instrument,
                pricing,
                state.open_trade,
                strategy.stop_loss,
                next_trade_id=len(state.trades_in),
            )
            if filled.trade_out is not None:
                self._close(state, filled.trade_out, index, instrument)
        elif filled.trade_out is not None:
            self._close(state, filled.trade_out, index, instrument)

        if state.open_trade is not None:
            trade_in = state.open_trade
            if trade_in.direction is TradeDirection.SHORT:
                hook = strategy.exit_short
            else:
                hook = strategy.exit_long
            position = self._call(hook, index, instrument, htf, trade_in, pricing)
            if position.kind is PositionKind.MARKET_OUT:
                trade_out = resolve_trade_out(
                    index, instrument, pricing, trade_in, TradeType.market_out(trade_in.direction)
                )
                state.book.cancel_linked(trade_in.id, index, instrument)
                self._close(state, trade_out, index, instrument)
                if position.orders and self._may_enter(state, index, instrument):
                    state.book.submit(index, instrument, pricing, position.orders, default_size=strategy.order_size)
            elif position.kind is PositionKind.ORDER:
                state.book.submit(
                    index, instrument, pricing, position.orders, default_size=strategy.order_size, open_trade=trade_in
                )

        if state.open_trade is None and self._may_enter(state, index, instrument):
            entry = self._entry_position(index, instrument, htf, pricing)
            if entry is not None:
                direction, position = entry
                if position.kind is PositionKind.MARKET_IN:
                    self._market_in(state, direction, position, index, instrument, pricing)
                elif position.kind is PositionKind.ORDER:
                    state.book.submit(index, instrument, pricing, position.orders, default_size=strategy.order_size)

        if state.open_trade is None:
            state.book.cancel_expired(index, instrument)

    def _may_enter(self, state: _RunState, index: int, instrument: Instrument) -> bool:
        if not state.cooldown.ready(int(instrument.time_ns[index])):
            return False
        return there_are_funds(state.trades_out, self.config.max_loss_per)

    def _call(self, hook: Callable[..., Position], *args: Any) -> Position:
        try:
            position = hook(*args)
        except DataNotReady as exc:
            logger.debug("%s %s skipped: %s", self.strategy.name, hook.__name__, exc)
            return Position.none()
        return position if position is not None else Position.none()

    def _entry_position(
        self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing
    ) -> tuple[TradeDirection, Position] | None:
        strategy = self.strategy
        strategy_type = strategy.strategy_type
        try:
            direction = strategy.trading_direction(index, instrument, htf)
        except DataNotReady as exc:
            logger.debug("%s trading_direction skipped: %s", strategy.name, exc)
            return None

        if direction is TradeDirection.LONG:
            candidates = [TradeDirection.LONG] if strategy_type.allows_long else []
        elif direction is TradeDirection.SHORT:
            candidates = [TradeDirection.SHORT] if strategy_type.allows_short else []
        elif strategy_type.is_multi_timeframe:
            candidates = []
        else:
            candidates = [
                item
                for item, allowed in ((TradeDirection.LONG, strategy_type.allows_long), (TradeDirection.SHORT, strategy_type.allows_short))
                if allowed
            ]

        for candidate in candidates:
            hook = strategy.entry_long if candidate is TradeDirection.LONG else strategy.entry_short
            position = self._call(hook, index, instrument, htf, pricing)
            if position.kind in (PositionKind.MARKET_IN, PositionKind.ORDER):
                return candidate, position
        return None

    def _stop_atr(self, index: int, instrument: Instrument) -> float | None:
        if not instrument.has_indicator("atr"):
            return None
        try:
            return instrument.indicator("atr", index)
        except DataNotReady:
            return None

    def _market_in(
        self,
        state: _RunState,
        direction: TradeDirection,
        position: Position,
        index: int,
        instrument: Instrument,
        pricing: Pricing,
    ) -> None:
        strategy = self.strategy
        if strategy.stop_loss.stop_type is StopLossType.ATR and self._stop_atr(index, instrument) is None:
            logger.debug("%s idx=%s: ATR not ready, entry skipped", instrument.symbol, index)
            return
        state.book.cancel_unlinked(index, instrument)
        trade_in = resolve_trade_in(
            index,
            strategy.order_size,
            instrument,
            pricing,
            TradeType.market_in(direction),
            trade_id=len(state.trades_in),
        )
        self._open(state, trade_in, index, instrument, pricing)
        if position.orders:
            state.book.submit(
                index, instrument, pricing, position.orders, default_size=strategy.order_size, open_trade=trade_in
            )

    def _open(self, state: _RunState, trade_in: TradeIn, index: int, instrument: Instrument, pricing: Pricing) -> None:
        state.trades_in.append(trade_in)
        state.open_trade = trade_in
        stop_loss = self.strategy.stop_loss
        try:
            stop_loss.arm(trade_in.direction, trade_in.price_in, pricing, self._stop_atr(index, instrument))
        except DataNotReady as exc:
            stop_loss.reset()
            logger.warning("%s idx=%s: trade %s opened without stop loss: %s", instrument.symbol, index, trade_in.id, exc)

    def _close(self, state: _RunState, trade_out: TradeOut, index: int, instrument: Instrument) -> None:
        state.trades_out.append(trade_out)
        state.open_trade = None
        self.strategy.stop_loss.reset()
        state.cooldown.start(int(instrument.time_ns[index]))
