"""Strategy base class, position results and dynamic strategy loading."""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from core.market_metadata import normalize_timeframe

from .config import EngineConfig
from .errors import ConfigurationError
from .models import Instrument, Pricing, StrategyType, TradeDirection, TradeIn
from .orders import OrderSpec
from .stop_loss import StopLoss, StopLossType

logger = logging.getLogger(__name__)


class PositionKind(str, Enum):
    NONE = "None"
    MARKET_IN = "MarketIn"
    MARKET_OUT = "MarketOut"
    ORDER = "Order"


@dataclass(frozen=True)
class Position:
    """What a strategy hook asks the engine to do at the current candle."""

    kind: PositionKind = PositionKind.NONE
    orders: tuple[OrderSpec, ...] = ()

    @classmethod
    def none(cls) -> "Position":
        return cls()

    @classmethod
    def market_in(cls, orders: Iterable[OrderSpec] = ()) -> "Position":
        return cls(PositionKind.MARKET_IN, tuple(orders))

    @classmethod
    def market_out(cls, orders: Iterable[OrderSpec] = ()) -> "Position":
        return cls(PositionKind.MARKET_OUT, tuple(orders))

    @classmethod
    def order(cls, orders: Iterable[OrderSpec]) -> "Position":
        orders = tuple(orders)
        if not orders:
            raise ValueError("Position.order requires at least one order spec")
        return cls(PositionKind.ORDER, orders)

    @property
    def is_none(self) -> bool:
        return self.kind is PositionKind.NONE


def prev_index(index: int) -> int:
    return max(int(index) - 1, 0)


class Strategy:
    """Entry/exit rules evaluated as a function of instrument state at an index.

    Subclasses override the hooks they need. The only state a strategy carries
    between candles is its ``stop_loss``, changed through ``update_stop_loss``.
    Hooks may assume ``warm_up <= index < len(instrument) - 1``.
    """

    name: str = "Strategy"
    default_strategy_type: StrategyType = StrategyType.ONLY_LONG
    stop_loss_type: StopLossType = StopLossType.NONE
    DEFAULT_PARAMS: dict[str, Any] = {}

    def __init__(
        self,
        *,
        time_frame: str,
        higher_time_frame: str | None = None,
        strategy_type: StrategyType | str | None = None,
        params: dict[str, Any] | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.params = {**self.DEFAULT_PARAMS, **dict(params or {})}
        self.time_frame = normalize_timeframe(time_frame)
        self.strategy_type = StrategyType.from_value(strategy_type or self.default_strategy_type)
        self.higher_time_frame: str | None = None
        if self.strategy_type.is_multi_timeframe:
            if not higher_time_frame:
                raise ConfigurationError(f"{self.name}: {self.strategy_type.value} requires higher_time_frame")
            self.higher_time_frame = normalize_timeframe(higher_time_frame)
        self.htf_required = bool(self.params.get("htf_required", self.strategy_type.is_multi_timeframe))
        self.order_size = float(self.params.get("order_size", self.config.order_size))

        stop_type = StopLossType.from_value(self.params.get("stop_loss_type", self.stop_loss_type))
        default_value = self.config.atr_stop_loss if stop_type is StopLossType.ATR else 0.0
        self.stop_loss = StopLoss.init(stop_type, float(self.params.get("stop_loss_value", default_value)))

    def trading_direction(self, index: int, instrument: Instrument, htf: Instrument | None) -> TradeDirection:
        if self.strategy_type.is_long_only:
            return TradeDirection.LONG
        if not self.strategy_type.allows_long:
            return TradeDirection.SHORT
        return TradeDirection.NONE

    def entry_long(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        return Position.none()

    def exit_long(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        return Position.none()

    def entry_short(self, index: int, instrument: Instrument, htf: Instrument | None, pricing: Pricing) -> Position:
        return Position.none()

    def exit_short(
        self, index: int, instrument: Instrument, htf: Instrument | None, trade_in: TradeIn, pricing: Pricing
    ) -> Position:
        return Position.none()

    def update_stop_loss(self, stop_type: StopLossType | str, price: float) -> StopLoss:
        self.stop_loss.update(stop_type, price)
        return self.stop_loss

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "strategy_type": self.strategy_type.value,
            "time_frame": self.time_frame,
            "higher_time_frame": self.higher_time_frame,
            "stop_loss": self.stop_loss.to_dict(),
            "order_size": self.order_size,
            "params": dict(self.params),
        }


def _sanitize_module_name(path: Path) -> str:
    digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()
    return f"_backtest_strategy_{digest}"


def load_strategy_class(spec: str, base_dir: Path | None = None) -> type[Strategy]:
    """Import a strategy class from ``module:Class``, ``module.Class`` or ``path/to/file.py:Class``."""
    raw_spec = str(spec or "").strip()
    if not raw_spec:
        raise ConfigurationError("strategy class spec is required")

    if ":" in raw_spec:
        target, class_name = raw_spec.rsplit(":", 1)
    elif "." in raw_spec:
        target, class_name = raw_spec.rsplit(".", 1)
    else:
        raise ConfigurationError(f"Invalid strategy class spec: {spec}")

    target = target.strip()
    class_name = class_name.strip()
    if not target or not class_name:
        raise ConfigurationError(f"Invalid strategy class spec: {spec}")

    is_file_ref = target.endswith(".py") or "\\" in target or "/" in target
    if is_file_ref:
        file_path = Path(target)
        if not file_path.is_absolute():
            file_path = ((base_dir or Path.cwd()) / file_path).resolve()
        if not file_path.exists():
            raise ConfigurationError(f"Strategy module file not found: {file_path}")
        module_name = _sanitize_module_name(file_path)
        module_spec = importlib.util.spec_from_file_location(module_name, file_path)
        if module_spec is None or module_spec.loader is None:
            raise ConfigurationError(f"Unable to import strategy module from {file_path}")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
    else:
        try:
            module = importlib.import_module(target)
        except ImportError as exc:
            raise ConfigurationError(f"Unable to import strategy module {target}: {exc}") from exc

    strategy_class = getattr(module, class_name, None)
    if strategy_class is None:
        raise ConfigurationError(f"Strategy class {class_name} not found in {target}")
    if not (isinstance(strategy_class, type) and issubclass(strategy_class, Strategy)):
        raise ConfigurationError(f"{target}:{class_name} is not a Strategy subclass")
    return strategy_class
