"""Explicit configuration objects for engine runs and batch backtests."""

from __future__ import annotations

import json
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from core.market_metadata import (
    MARKETS,
    get_instrument_class,
    get_pip_value,
    normalize_market,
    normalize_symbol,
    normalize_timeframe,
)

from .errors import ConfigurationError
from .models import Pricing, StrategyType


def _number(name: str, value: Any, *, minimum: float | None = None, strict: bool = False, integer: bool = False) -> Any:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be numeric, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be numeric, got {value!r}") from exc
    if math.isnan(number) or math.isinf(number):
        raise ConfigurationError(f"{name} must be finite, got {value!r}")
    if integer:
        if not number.is_integer():
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        number = int(number)
    if minimum is not None:
        if strict and number <= minimum:
            raise ConfigurationError(f"{name} must be greater than {minimum}, got {value!r}")
        if not strict and number < minimum:
            raise ConfigurationError(f"{name} must be at least {minimum}, got {value!r}")
    return number


def _flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    key = str(value).strip().lower()
    if key in {"1", "true", "yes", "on"}:
        return True
    if key in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


@dataclass
class SpreadConfig:
    """Spread model in pips, by market class with optional per-symbol overrides."""

    pips_by_market: dict[str, float] = field(default_factory=dict)
    pips_by_symbol: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, value: Any | None) -> "SpreadConfig":
        if value in (None, "", "None"):
            return cls()
        if isinstance(value, SpreadConfig):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls(pips_by_market={"DEFAULT": _number("spread", value, minimum=0.0)})
        if not isinstance(value, Mapping):
            raise ConfigurationError("spread must be a number or a mapping")
        by_market: dict[str, float] = {}
        by_symbol: dict[str, float] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key).strip().upper()
            if key == "SYMBOLS":
                if not isinstance(raw_value, Mapping):
                    raise ConfigurationError("spread.symbols must be a mapping")
                for symbol, pips in raw_value.items():
                    by_symbol[normalize_symbol(str(symbol))] = _number(f"spread.symbols.{symbol}", pips, minimum=0.0)
            elif key in MARKETS or key in {"DEFAULT", "FX", "JPY", "METAL"}:
                by_market[key] = _number(f"spread.{raw_key}", raw_value, minimum=0.0)
            else:
                raise ConfigurationError(f"Unknown spread bucket: {raw_key}")
        return cls(pips_by_market=by_market, pips_by_symbol=by_symbol)

    def pips_for(self, symbol: str, market: str = "FOREX") -> float:
        symbol = normalize_symbol(symbol)
        if symbol in self.pips_by_symbol:
            return float(self.pips_by_symbol[symbol])
        market = normalize_market(market)
        instrument_class = get_instrument_class(symbol, market)
        for key in (instrument_class, market, "DEFAULT"):
            if key in self.pips_by_market:
                return float(self.pips_by_market[key])
        return 0.0

    def pricing_for(self, symbol: str, market: str = "FOREX") -> Pricing:
        pip_size = get_pip_value(symbol, market)
        return Pricing(symbol=normalize_symbol(symbol), pip_size=pip_size, spread=self.pips_for(symbol, market) * pip_size)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {key: float(value) for key, value in self.pips_by_market.items()}
        if self.pips_by_symbol:
            payload["symbols"] = {key: float(value) for key, value in self.pips_by_symbol.items()}
        return payload


# Legacy environment variable names used by batch drivers.
_ENV_KEYS: dict[str, str] = {
    "ORDER_SIZE": "order_size",
    "COMMISSION": "commission",
    "EQUITY": "equity",
    "SPREAD_PIPS": "spread",
    "ATR_STOP_LOSS": "atr_stop_loss",
    "RISK_REWARD_RATIO": "risk_reward_ratio",
    "WAIT_FOR_NEXT_TRADE": "wait_for_next_trade",
    "WAIT_FOR_NEXT_TRADE_ENABLED": "wait_for_next_trade_enabled",
    "OVERWRITE_ORDERS": "overwrite_pending_orders",
    "WARM_UP": "warm_up",
    "PENDING_ORDER_VALIDITY": "pending_order_validity",
    "MAX_LOSS_PER": "max_loss_per",
}


@dataclass
class EngineConfig:
    """Per-run engine options. Invalid values raise ConfigurationError on construction."""

    order_size: float = 1.0
    commission: float = 0.0
    equity: float = 10_000.0
    spread: SpreadConfig = field(default_factory=SpreadConfig)
    atr_stop_loss: float = 2.0
    risk_reward_ratio: float = 2.0
    wait_for_next_trade: int = 0
    wait_for_next_trade_enabled: bool = False
    overwrite_pending_orders: bool = False
    warm_up: int = 5
    pending_order_validity: int = 5
    max_loss_per: float = 90.0
    htf_fetch_timeout: float = 30.0
    htf_fetch_retries: int = 2

    def __post_init__(self) -> None:
        self.order_size = _number("order_size", self.order_size, minimum=0.0, strict=True)
        self.commission = _number("commission", self.commission, minimum=0.0)
        self.equity = _number("equity", self.equity, minimum=0.0, strict=True)
        self.spread = SpreadConfig.from_raw(self.spread)
        self.atr_stop_loss = _number("atr_stop_loss", self.atr_stop_loss, minimum=0.0)
        self.risk_reward_ratio = _number("risk_reward_ratio", self.risk_reward_ratio, minimum=0.0, strict=True)
        self.wait_for_next_trade = _number("wait_for_next_trade", self.wait_for_next_trade, minimum=0, integer=True)
        self.wait_for_next_trade_enabled = _flag("wait_for_next_trade_enabled", self.wait_for_next_trade_enabled)
        self.overwrite_pending_orders = _flag("overwrite_pending_orders", self.overwrite_pending_orders)
        self.warm_up = _number("warm_up", self.warm_up, minimum=1, integer=True)
        self.pending_order_validity = _number("pending_order_validity", self.pending_order_validity, minimum=0, integer=True)
        self.max_loss_per = _number("max_loss_per", self.max_loss_per, minimum=0.0, strict=True)
        self.htf_fetch_timeout = _number("htf_fetch_timeout", self.htf_fetch_timeout, minimum=0.0, strict=True)
        self.htf_fetch_retries = _number("htf_fetch_retries", self.htf_fetch_retries, minimum=0, integer=True)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "EngineConfig":
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ConfigurationError("engine config must be a JSON object")
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload).difference(known))
        if unknown:
            raise ConfigurationError(f"Unknown engine options: {unknown}")
        return cls(**dict(payload))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        payload = {option: env[name] for name, option in _ENV_KEYS.items() if name in env and env[name] != ""}
        if "spread" in payload:
            payload["spread"] = _number("SPREAD_PIPS", payload["spread"], minimum=0.0)
        return cls.from_dict(payload)

    def pricing_for(self, symbol: str, market: str = "FOREX") -> Pricing:
        return self.spread.pricing_for(symbol, market)

    def to_dict(self) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        payload["spread"] = self.spread.to_dict()
        return payload


@dataclass
class StrategyConfig:
    strategy: str
    time_frame: str
    higher_time_frame: str | None = None
    strategy_type: str | None = None
    params: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not str(self.strategy or "").strip():
            raise ConfigurationError("strategy is required")
        try:
            self.time_frame = normalize_timeframe(self.time_frame)
            if self.higher_time_frame:
                self.higher_time_frame = normalize_timeframe(self.higher_time_frame)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if self.strategy_type not in (None, ""):
            self.strategy_type = StrategyType.from_value(self.strategy_type).value
        else:
            self.strategy_type = None

    @classmethod
    def from_raw(cls, value: Any) -> "StrategyConfig":
        if isinstance(value, StrategyConfig):
            return value
        if not isinstance(value, Mapping):
            raise ConfigurationError("Each strategy entry must be a JSON object")
        params = value.get("params") or {}
        if not isinstance(params, Mapping):
            raise ConfigurationError(f"params for {value.get('strategy')} must be a mapping")
        return cls(
            strategy=str(value.get("strategy") or "").strip(),
            time_frame=str(value.get("time_frame") or ""),
            higher_time_frame=value.get("higher_time_frame") or None,
            strategy_type=value.get("strategy_type"),
            params=dict(params),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "time_frame": self.time_frame,
            "higher_time_frame": self.higher_time_frame,
            "strategy_type": self.strategy_type,
            "params": dict(self.params),
        }


@dataclass
class BacktestRunConfig:
    data_root: Path
    report_dir: Path
    symbols: list[str]
    strategies: list[StrategyConfig]
    market: str = "FOREX"
    engine: EngineConfig = field(default_factory=EngineConfig)
    results_path: Path | None = None
    max_workers: int = 4
    _config_dir: Path | None = None

    @classmethod
    def from_dict(
        cls,
        payload: dict[str, Any],
        *,
        config_dir: Path | None = None,
    ) -> "BacktestRunConfig":
        if not isinstance(payload, Mapping):
            raise ConfigurationError("Backtest config must be a JSON object")
        strategies_raw = payload.get("strategies")
        if not isinstance(strategies_raw, list) or not strategies_raw:
            raise ConfigurationError("Backtest config requires a non-empty strategies list")
        strategies = [StrategyConfig.from_raw(item) for item in strategies_raw]

        symbols_raw = payload.get("symbols")
        if not isinstance(symbols_raw, list) or not symbols_raw:
            raise ConfigurationError("Backtest config requires a non-empty symbols list")
        try:
            market = normalize_market(str(payload.get("market") or "FOREX"))
            symbols = list(dict.fromkeys(normalize_symbol(str(item)) for item in symbols_raw))
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        data_root = Path(payload.get("data_root") or "")
        report_dir = Path(payload.get("report_dir") or "")
        if not str(payload.get("data_root") or ""):
            raise ConfigurationError("data_root is required")
        if not str(payload.get("report_dir") or ""):
            raise ConfigurationError("report_dir is required")
        results_raw = payload.get("results_path")

        return cls(
            data_root=data_root,
            report_dir=report_dir,
            symbols=symbols,
            strategies=strategies,
            market=market,
            engine=EngineConfig.from_dict(payload.get("engine")),
            results_path=Path(results_raw) if results_raw else None,
            max_workers=_number("max_workers", payload.get("max_workers", 4), minimum=1, integer=True),
            _config_dir=config_dir,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "BacktestRunConfig":
        config_path = Path(path)
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {exc}") from exc
        config = cls.from_dict(payload, config_dir=config_path.parent)
        if not config.data_root.is_absolute():
            config.data_root = (config_path.parent / config.data_root).resolve()
        if not config.report_dir.is_absolute():
            config.report_dir = (config_path.parent / config.report_dir).resolve()
        if config.results_path is not None and not config.results_path.is_absolute():
            config.results_path = (config_path.parent / config.results_path).resolve()
        return config

    @property
    def config_dir(self) -> Path | None:
        return self._config_dir

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_root": str(self.data_root),
            "report_dir": str(self.report_dir),
            "results_path": None if self.results_path is None else str(self.results_path),
            "market": self.market,
            "symbols": list(self.symbols),
            "max_workers": self.max_workers,
            "engine": self.engine.to_dict(),
            "strategies": [item.to_dict() for item in self.strategies],
        }
