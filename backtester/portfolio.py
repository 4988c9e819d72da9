"""Batch driver: every configured strategy over every configured symbol."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

from strategies import build_strategy

from .config import BacktestRunConfig, StrategyConfig
from .errors import DataError
from .feed import InstrumentFeeder
from .results import BacktestResult, StrategySummary, _json_default, summarize_strategy, write_portfolio_report, write_run_artifacts
from .runtime import BacktestEngine, BacktestRun
from .store import ResultStore

logger = logging.getLogger(__name__)


@dataclass
class PortfolioArtifacts:
    results: list[BacktestResult]
    summaries: list[StrategySummary]
    failures: list[dict[str, Any]] = field(default_factory=list)
    paths: dict[str, Any] = field(default_factory=dict)


def _run_dir_name(strategy_config: StrategyConfig, strategy_name: str) -> str:
    parts = [strategy_name, strategy_config.time_frame]
    if strategy_config.higher_time_frame:
        parts.append(strategy_config.higher_time_frame)
    if strategy_config.strategy_type:
        parts.append(strategy_config.strategy_type)
    return "_".join(parts)


def _run_pair(
    config: BacktestRunConfig,
    strategy_config: StrategyConfig,
    symbol: str,
    feeder: InstrumentFeeder,
    cancel_event: threading.Event | None,
) -> BacktestRun:
    strategy = build_strategy(strategy_config, config.engine, config.config_dir)
    instrument = feeder.load_instrument(symbol, strategy.time_frame)
    engine = BacktestEngine(strategy, config.engine)
    return engine.run(
        instrument,
        fetch_companion=feeder.fetch_instrument if strategy.strategy_type.is_multi_timeframe else None,
        cancel_event=cancel_event,
    )


def _summarize(results: list[BacktestResult]) -> list[StrategySummary]:
    grouped: dict[tuple[Any, ...], list[BacktestResult]] = {}
    for result in results:
        key = (result.strategy, result.strategy_type, result.time_frame, result.higher_time_frame or "", result.market)
        grouped.setdefault(key, []).append(result)
    return [summarize_strategy(grouped[key]) for key in sorted(grouped)]


def run_portfolio(
    config: BacktestRunConfig,
    feeder: InstrumentFeeder | None = None,
    store: ResultStore | None = None,
    cancel_event: threading.Event | None = None,
) -> PortfolioArtifacts:
    """Run all (strategy, symbol) pairs on independent engines and write artifacts.

    A ``DataError`` fails only its own pair. Configuration errors surface before any
    simulation starts.
    """
    owns_feeder = feeder is None
    feeder = feeder or InstrumentFeeder(config.data_root, market=config.market, load_timeout=config.engine.htf_fetch_timeout)
    if store is None and config.results_path is not None:
        store = ResultStore(config.results_path)

    # Strategy config errors fail the batch before any simulation.
    names = {
        id(item): build_strategy(item, config.engine, config.config_dir).name for item in config.strategies
    }

    pairs = [(item, symbol) for item in config.strategies for symbol in config.symbols]
    logger.info("Portfolio backtest: %s strategies x %s symbols", len(config.strategies), len(config.symbols))

    runs: dict[int, BacktestRun] = {}
    failures: list[dict[str, Any]] = []
    max_workers = min(max(1, int(config.max_workers)), max(1, len(pairs)))
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        future_map = {
            pool.submit(_run_pair, config, strategy_config, symbol, feeder, cancel_event): (position, strategy_config, symbol)
            for position, (strategy_config, symbol) in enumerate(pairs)
        }
        for future in as_completed(future_map):
            position, strategy_config, symbol = future_map[future]
            try:
                runs[position] = future.result()
            except DataError as exc:
                logger.warning("Backtest %s %s failed: %s", names[id(strategy_config)], symbol, exc)
                failures.append(
                    {
                        "strategy": names[id(strategy_config)],
                        "time_frame": strategy_config.time_frame,
                        "symbol": symbol,
                        "error": f"{type(exc).__name__}: {exc}",
                    }
                )
    if owns_feeder:
        feeder.evict()

    config.report_dir.mkdir(parents=True, exist_ok=True)
    results: list[BacktestResult] = []
    run_paths: dict[str, dict[str, str]] = {}
    for position, run in sorted(runs.items()):
        strategy_config, symbol = pairs[position]
        result = run.result
        results.append(result)
        run_dir = config.report_dir / _run_dir_name(strategy_config, result.strategy) / symbol
        run_paths[f"{result.strategy}/{result.time_frame}/{symbol}"] = write_run_artifacts(run_dir, result, run.orders)
        if store is not None:
            store.upsert_instrument_result(result)

    results.sort(key=lambda item: (item.strategy, item.strategy_type, item.time_frame, item.higher_time_frame or "", item.symbol))
    failures.sort(key=lambda item: (item["strategy"], item["time_frame"], item["symbol"]))
    summaries = _summarize(results)
    if store is not None:
        for summary in summaries:
            store.upsert_strategy_result(summary)

    run_config_path = config.report_dir / "run_config.json"
    run_config_path.write_text(json.dumps(config.to_dict(), indent=2, default=_json_default), encoding="utf-8")
    paths: dict[str, Any] = {
        **write_portfolio_report(config.report_dir, results, summaries, failures),
        "run_config_json": str(run_config_path),
        "runs": run_paths,
    }
    logger.info(
        "Portfolio backtest done: %s results, %s failures, report_dir=%s",
        len(results),
        len(failures),
        config.report_dir,
    )
    return PortfolioArtifacts(results=results, summaries=summaries, failures=failures, paths=paths)
