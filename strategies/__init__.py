"""Shipped strategies and the name registry used by configs and the CLI."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from backtester.strategy import Strategy, load_strategy_class

from .bollinger_bands_reversals import BollingerBandsReversals
from .ema_scalping import EmaScalping
from .macd_dual import MacdDual
from .stoch import Stoch

if TYPE_CHECKING:
    from backtester.config import EngineConfig, StrategyConfig

STRATEGY_REGISTRY: dict[str, type[Strategy]] = {
    cls.name: cls for cls in (BollingerBandsReversals, EmaScalping, MacdDual, Stoch)
}


def get_strategy_class(spec: str, base_dir: Path | None = None) -> type[Strategy]:
    """Resolve a registry name, or fall back to ``module:Class`` / file path loading."""
    key = str(spec or "").strip()
    if key in STRATEGY_REGISTRY:
        return STRATEGY_REGISTRY[key]
    return load_strategy_class(key, base_dir)


def build_strategy(
    strategy_config: "StrategyConfig",
    engine_config: "EngineConfig",
    base_dir: Path | None = None,
) -> Strategy:
    strategy_class = get_strategy_class(strategy_config.strategy, base_dir)
    return strategy_class(
        time_frame=strategy_config.time_frame,
        higher_time_frame=strategy_config.higher_time_frame,
        strategy_type=strategy_config.strategy_type,
        params=strategy_config.params,
        config=engine_config,
    )


__all__ = [
    "STRATEGY_REGISTRY",
    "BollingerBandsReversals",
    "EmaScalping",
    "MacdDual",
    "Stoch",
    "build_strategy",
    "get_strategy_class",
]
