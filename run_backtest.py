"""CLI for portfolio backtests and stored result queries."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from backtester import BacktestError, BacktestRunConfig, EngineConfig  # noqa: E402
from backtester.portfolio import run_portfolio  # noqa: E402
from backtester.results import _json_default  # noqa: E402
from backtester.store import ResultStore  # noqa: E402
from core.logging_setup import get_logger, setup_logging  # noqa: E402
from strategies import STRATEGY_REGISTRY  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Candle strategy backtester CLI")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run every configured strategy over every configured symbol")
    run_parser.add_argument("--config", required=True, help="Path to the backtest JSON config")
    run_parser.add_argument(
        "--engine-from-env",
        action="store_true",
        help="Take engine options from ORDER_SIZE, COMMISSION, SPREAD_PIPS, ... instead of the config file",
    )

    subparsers.add_parser("list-strategies", help="List the shipped strategies")

    show_parser = subparsers.add_parser("show-results", help="Show stored results ranked by net profit")
    show_parser.add_argument("--results", required=True, help="Path to the results store JSON")
    show_parser.add_argument("--strategy", help="Optional strategy name filter")
    show_parser.add_argument("--symbol", help="Optional symbol filter")
    show_parser.add_argument("--top", type=int, default=10, help="Number of rows to show")
    show_parser.add_argument(
        "--strategies-only",
        action="store_true",
        help="Show per-strategy aggregates instead of per-instrument results",
    )

    return parser.parse_args()


def _run_portfolio(args: argparse.Namespace) -> int:
    logger = get_logger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return 2

    try:
        config = BacktestRunConfig.from_path(config_path)
        if args.engine_from_env:
            config.engine = EngineConfig.from_env()
        artifacts = run_portfolio(config)
    except (BacktestError, ValueError) as exc:
        logger.error(str(exc))
        return 3

    logger.info("Report dir: %s", artifacts.paths["report_dir"])
    logger.info("Results: %s", len(artifacts.results))
    logger.info("Failures: %s", len(artifacts.failures))
    for summary in artifacts.summaries:
        logger.info(
            "%s %s: avg net profit %.4f%% over %s instruments",
            summary.strategy,
            summary.time_frame,
            summary.avg_net_profit_per,
            summary.instruments,
        )
    return 0


def _list_strategies(args: argparse.Namespace) -> int:
    for name in sorted(STRATEGY_REGISTRY):
        strategy_class = STRATEGY_REGISTRY[name]
        print(
            f"{name}\tdefault_type={strategy_class.default_strategy_type.value}"
            f"\tstop_loss={strategy_class.stop_loss_type.value}"
        )
    return 0


def _show_results(args: argparse.Namespace) -> int:
    logger = get_logger(__name__)
    results_path = Path(args.results)
    if not results_path.exists():
        logger.error("results store does not exist: %s", results_path)
        return 2

    store = ResultStore(results_path)
    try:
        if args.strategies_only:
            documents = store.find_strategy_results(strategy=args.strategy)
        else:
            documents = store.find_instrument_results(strategy=args.strategy, symbol=args.symbol)
    except BacktestError as exc:
        logger.error(str(exc))
        return 3

    rows = documents[: max(0, int(args.top))]
    for row in rows:
        row.pop("trades_out", None)
    print(json.dumps(rows, indent=2, default=_json_default))
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "run":
        return _run_portfolio(args)
    if args.command == "list-strategies":
        return _list_strategies(args)
    if args.command == "show-results":
        return _show_results(args)
    raise ValueError(f"Unknown command: {args.command}")


def main() -> None:
    args = _parse_args()
    setup_logging(log_level=args.log_level)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
