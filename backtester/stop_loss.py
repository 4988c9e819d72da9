"""Stop-loss policy: computes and tracks the forced-exit trigger of an open trade."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ConfigurationError, DataNotReady
from .models import Pricing, TradeDirection

logger = logging.getLogger(__name__)


class StopLossType(str, Enum):
    NONE = "None"
    ATR = "Atr"
    PRICE = "Price"
    PERCENTAGE = "Percentage"
    PIPS = "Pips"
    TRAILING = "Trailing"

    @classmethod
    def from_value(cls, value: Any) -> "StopLossType":
        if isinstance(value, StopLossType):
            return value
        key = str(value or "none").strip().lower()
        for member in cls:
            if member.value.lower() == key:
                return member
        raise ConfigurationError(f"Unsupported stop_loss type: {value}")


def resolve_stop_price(
    stop_type: StopLossType,
    value: float,
    direction: TradeDirection,
    reference_price: float,
    pricing: Pricing,
    atr_value: float | None = None,
) -> float | None:
    """Absolute trigger price for a stop of ``stop_type`` placed against ``reference_price``."""
    if stop_type is StopLossType.NONE or direction is TradeDirection.NONE:
        return None
    sign = direction.sign
    if stop_type is StopLossType.PRICE:
        return float(value)
    if stop_type is StopLossType.ATR:
        if atr_value is None or math.isnan(atr_value):
            raise DataNotReady("ATR value required to arm an ATR stop loss")
        return reference_price - sign * float(atr_value) * float(value)
    if stop_type is StopLossType.PERCENTAGE:
        return reference_price - sign * reference_price * float(value) / 100.0
    # Pips and the initial distance of a trailing stop.
    if value <= 0:
        return None
    return reference_price - sign * pricing.to_pips(value)


@dataclass
class StopLoss:
    """Configured stop kind plus the trigger of the currently open trade.

    ``value`` is the configured parameter (ATR multiple, literal price, percentage or
    pip distance). ``price`` is the live trigger; ``None`` while flat or when the
    policy never fires.
    """

    stop_type: StopLossType = StopLossType.NONE
    value: float = 0.0
    direction: TradeDirection = TradeDirection.NONE
    price: float | None = None

    def __post_init__(self) -> None:
        self.stop_type = StopLossType.from_value(self.stop_type)
        self._configured = (self.stop_type, float(self.value))

    @classmethod
    def init(cls, stop_type: StopLossType | str, value: float = 0.0) -> "StopLoss":
        stop_type = StopLossType.from_value(stop_type)
        if value < 0:
            raise ConfigurationError(f"stop loss value must be non-negative, got {value}")
        return cls(stop_type=stop_type, value=float(value))

    @property
    def armed(self) -> bool:
        return self.direction is not TradeDirection.NONE and self.price is not None

    def arm(
        self,
        direction: TradeDirection,
        entry_price: float,
        pricing: Pricing,
        atr_value: float | None = None,
    ) -> float | None:
        """Fix the trigger for a newly opened trade. Restores the configured kind first."""
        self.stop_type, self.value = self._configured
        self.direction = direction
        self.price = resolve_stop_price(self.stop_type, self.value, direction, entry_price, pricing, atr_value)
        return self.price

    def update(self, stop_type: StopLossType | str, price: float) -> None:
        """Replace the trigger. Trailing updates only move it in the trade's favour."""
        stop_type = StopLossType.from_value(stop_type)
        if stop_type is StopLossType.NONE:
            self.stop_type = stop_type
            self.price = None
            return
        if stop_type is StopLossType.TRAILING and self.price is not None:
            if self.direction is TradeDirection.SHORT:
                price = min(self.price, float(price))
            else:
                price = max(self.price, float(price))
        self.stop_type = stop_type
        self.price = float(price)

    def reset(self) -> None:
        self.direction = TradeDirection.NONE
        self.price = None

    def is_triggered(self, high: float, low: float) -> bool:
        if not self.armed:
            return False
        if self.direction is TradeDirection.LONG:
            return low <= self.price
        return high >= self.price

    def to_dict(self) -> dict[str, Any]:
        return {
            "stop_type": self.stop_type.value,
            "value": float(self.value),
            "direction": self.direction.value,
            "price": None if self.price is None else float(self.price),
        }
