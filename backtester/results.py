"""Fold completed trades into per-instrument results and write run artifacts."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Sequence

import pandas as pd

from .models import Instrument, TradeOut, iso_utc

if TYPE_CHECKING:
    from .config import EngineConfig

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat().replace("+00:00", "Z")
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _profit_factor(series: pd.Series) -> float:
    if series.empty:
        return 0.0
    wins = float(series[series > 0].sum())
    losses = float(series[series < 0].sum())
    if losses == 0:
        return 0.0
    return float(wins / abs(losses))


def _max_drawdown_from_series(values: pd.Series) -> float:
    if values.empty:
        return 0.0
    values = values.astype(float)
    return float((values - values.cummax()).min())


def _max_runup_from_series(values: pd.Series) -> float:
    if values.empty:
        return 0.0
    values = values.astype(float)
    return float((values - values.cummin()).max())


def _mean(series: pd.Series) -> float:
    return float(series.mean()) if not series.empty else 0.0


@dataclass(frozen=True)
class BacktestResult:
    """Aggregate outcome of one (instrument, strategy) run.

    Profit figures ending in ``_per`` are percentage points accumulated additively
    over trades. Commission is charged per round trip in percentage points.
    """

    strategy: str
    strategy_type: str
    time_frame: str
    higher_time_frame: str | None
    market: str
    symbol: str
    date_start: str | None
    date_end: str | None
    trades: int
    wining_trades: int
    losing_trades: int
    won_per_trade_per: float
    lost_per_trade_per: float
    stop_losses: int
    gross_profit_per: float
    gross_loss_per: float
    commissions_per: float
    net_profit_per: float
    net_profit: float
    profitable_trades: float
    profit_factor: float
    max_drawdown_per: float
    max_runup_per: float
    buy_hold_per: float
    equity: float
    final_equity: float
    trades_out: tuple[TradeOut, ...] = field(default=(), repr=False, compare=True)

    def key(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "strategy_type": self.strategy_type,
            "time_frame": self.time_frame,
            "higher_time_frame": self.higher_time_frame,
            "market": self.market,
            "symbol": self.symbol,
        }

    def to_dict(self, *, include_trades: bool = False) -> dict[str, Any]:
        payload = {
            **self.key(),
            "date_start": self.date_start,
            "date_end": self.date_end,
            "trades": self.trades,
            "wining_trades": self.wining_trades,
            "losing_trades": self.losing_trades,
            "won_per_trade_per": self.won_per_trade_per,
            "lost_per_trade_per": self.lost_per_trade_per,
            "stop_losses": self.stop_losses,
            "gross_profit_per": self.gross_profit_per,
            "gross_loss_per": self.gross_loss_per,
            "commissions_per": self.commissions_per,
            "net_profit_per": self.net_profit_per,
            "net_profit": self.net_profit,
            "profitable_trades": self.profitable_trades,
            "profit_factor": self.profit_factor,
            "max_drawdown_per": self.max_drawdown_per,
            "max_runup_per": self.max_runup_per,
            "buy_hold_per": self.buy_hold_per,
            "equity": self.equity,
            "final_equity": self.final_equity,
        }
        if include_trades:
            payload["trades_out"] = [trade.to_dict() for trade in self.trades_out]
        return payload


def trades_frame(trades_out: Iterable[TradeOut]) -> pd.DataFrame:
    return pd.DataFrame([trade.to_dict() for trade in trades_out])


def buy_and_hold_per(instrument: Instrument) -> float:
    if instrument.rows == 0:
        return 0.0
    first = float(instrument.close[0])
    last = float(instrument.close[-1])
    if first == 0:
        return 0.0
    return (last - first) / first * 100.0


def build_backtest_result(
    instrument: Instrument,
    trades_out: Sequence[TradeOut],
    *,
    strategy: str,
    strategy_type: str,
    time_frame: str,
    higher_time_frame: str | None,
    config: "EngineConfig",
) -> BacktestResult:
    """Pure fold over completed trades. Zero trades is a valid outcome with zeroed metrics."""
    trades_out = tuple(trades_out)
    frame = trades_frame(trades_out)
    commission = float(config.commission)
    if frame.empty:
        net_series = pd.Series(dtype=float)
        stop_losses = 0
    else:
        net_series = frame["profit_per"].astype(float) - commission
        stop_losses = int(frame["stop_loss"].astype(bool).sum())

    wins = net_series[net_series > 0]
    losses = net_series[net_series <= 0]
    total = int(len(net_series))
    net_profit_per = float(net_series.sum()) if total else 0.0
    equity_curve = pd.concat([pd.Series([0.0]), net_series.cumsum()], ignore_index=True)
    net_profit = float(config.equity) * net_profit_per / 100.0

    return BacktestResult(
        strategy=strategy,
        strategy_type=strategy_type,
        time_frame=time_frame,
        higher_time_frame=higher_time_frame,
        market=instrument.market,
        symbol=instrument.symbol,
        date_start=iso_utc(instrument.time_utc(0)) if instrument.rows else None,
        date_end=iso_utc(instrument.time_utc(instrument.rows - 1)) if instrument.rows else None,
        trades=total,
        wining_trades=int(len(wins)),
        losing_trades=int(len(losses)),
        won_per_trade_per=_mean(wins),
        lost_per_trade_per=_mean(losses),
        stop_losses=stop_losses,
        gross_profit_per=float(wins.sum()) if not wins.empty else 0.0,
        gross_loss_per=float(losses.sum()) if not losses.empty else 0.0,
        commissions_per=commission * total,
        net_profit_per=net_profit_per,
        net_profit=net_profit,
        profitable_trades=(len(wins) / total * 100.0) if total else 0.0,
        profit_factor=_profit_factor(net_series),
        max_drawdown_per=_max_drawdown_from_series(equity_curve),
        max_runup_per=_max_runup_from_series(equity_curve),
        buy_hold_per=buy_and_hold_per(instrument),
        equity=float(config.equity),
        final_equity=float(config.equity) + net_profit,
        trades_out=trades_out,
    )


@dataclass(frozen=True)
class StrategySummary:
    """Per-strategy aggregate over every instrument it was tested on."""

    strategy: str
    strategy_type: str
    time_frame: str
    higher_time_frame: str | None
    market: str
    instruments: int
    trades: int
    avg_net_profit_per: float
    avg_profitable_trades: float
    avg_profit_factor: float
    avg_max_drawdown_per: float
    avg_buy_hold_per: float
    symbols: tuple[str, ...] = ()

    def key(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "strategy_type": self.strategy_type,
            "time_frame": self.time_frame,
            "higher_time_frame": self.higher_time_frame,
            "market": self.market,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.key(),
            "instruments": self.instruments,
            "trades": self.trades,
            "avg_net_profit_per": self.avg_net_profit_per,
            "avg_profitable_trades": self.avg_profitable_trades,
            "avg_profit_factor": self.avg_profit_factor,
            "avg_max_drawdown_per": self.avg_max_drawdown_per,
            "avg_buy_hold_per": self.avg_buy_hold_per,
            "symbols": list(self.symbols),
        }


def summarize_strategy(results: Sequence[BacktestResult]) -> StrategySummary:
    if not results:
        raise ValueError("summarize_strategy requires at least one result")
    first = results[0]
    for item in results[1:]:
        if {k: v for k, v in item.key().items() if k != "symbol"} != {k: v for k, v in first.key().items() if k != "symbol"}:
            raise ValueError("summarize_strategy expects results of a single strategy configuration")
    frame = pd.DataFrame([item.to_dict() for item in results])
    return StrategySummary(
        strategy=first.strategy,
        strategy_type=first.strategy_type,
        time_frame=first.time_frame,
        higher_time_frame=first.higher_time_frame,
        market=first.market,
        instruments=int(len(frame)),
        trades=int(frame["trades"].sum()),
        avg_net_profit_per=float(frame["net_profit_per"].mean()),
        avg_profitable_trades=float(frame["profitable_trades"].mean()),
        avg_profit_factor=float(frame["profit_factor"].mean()),
        avg_max_drawdown_per=float(frame["max_drawdown_per"].mean()),
        avg_buy_hold_per=float(frame["buy_hold_per"].mean()),
        symbols=tuple(sorted(frame["symbol"].astype(str).tolist())),
    )


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:.6g}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def _render_result_report(result: BacktestResult) -> str:
    return "\n".join(
        [
            f"# Backtest Report: {result.strategy} {result.symbol}",
            "",
            f"- Strategy type: `{result.strategy_type}`",
            f"- Timeframe: `{result.time_frame}`",
            f"- Higher timeframe: `{result.higher_time_frame}`",
            f"- Window: `{result.date_start}` to `{result.date_end}`",
            "",
            "## Summary Metrics",
            "",
            _md_table(
                [
                    {"metric": "Trades", "value": result.trades},
                    {"metric": "Winning trades", "value": result.wining_trades},
                    {"metric": "Losing trades", "value": result.losing_trades},
                    {"metric": "Stop losses", "value": result.stop_losses},
                    {"metric": "Win rate %", "value": result.profitable_trades},
                    {"metric": "Net profit %", "value": result.net_profit_per},
                    {"metric": "Commissions %", "value": result.commissions_per},
                    {"metric": "Profit factor", "value": result.profit_factor},
                    {"metric": "Max drawdown %", "value": result.max_drawdown_per},
                    {"metric": "Buy and hold %", "value": result.buy_hold_per},
                    {"metric": "Final equity", "value": result.final_equity},
                ],
                ["metric", "value"],
            ).rstrip(),
            "",
        ]
    )


def write_run_artifacts(
    report_dir: str | Path,
    result: BacktestResult,
    orders: Sequence[dict[str, Any]] = (),
) -> dict[str, str]:
    """Write trades.csv, orders.csv, summary.json and report.md for one run."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    trades_path = out_dir / "trades.csv"
    orders_path = out_dir / "orders.csv"
    summary_path = out_dir / "summary.json"
    report_path = out_dir / "report.md"

    trades_frame(result.trades_out).to_csv(trades_path, index=False)
    pd.DataFrame(list(orders)).to_csv(orders_path, index=False)
    summary_path.write_text(json.dumps(result.to_dict(), indent=2, default=_json_default), encoding="utf-8")
    report_path.write_text(_render_result_report(result), encoding="utf-8")
    logger.debug("Wrote artifacts for %s %s to %s", result.strategy, result.symbol, out_dir)

    return {
        "report_dir": str(out_dir),
        "trades_csv": str(trades_path),
        "orders_csv": str(orders_path),
        "summary_json": str(summary_path),
        "report_md": str(report_path),
    }


def write_portfolio_report(
    report_dir: str | Path,
    results: Sequence[BacktestResult],
    summaries: Sequence[StrategySummary],
    failures: Sequence[dict[str, Any]] = (),
) -> dict[str, str]:
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    results_path = out_dir / "results.csv"
    summary_path = out_dir / "summary.json"
    report_path = out_dir / "report.md"

    pd.DataFrame([item.to_dict() for item in results]).to_csv(results_path, index=False)
    summary = {
        "results": [item.to_dict() for item in results],
        "strategies": [item.to_dict() for item in summaries],
        "failures": list(failures),
    }
    summary_path.write_text(json.dumps(summary, indent=2, default=_json_default), encoding="utf-8")

    lines = [
        "# Portfolio Backtest Report",
        "",
        "## Strategies",
        "",
        _md_table(
            [item.to_dict() for item in summaries],
            ["strategy", "strategy_type", "time_frame", "instruments", "trades", "avg_net_profit_per", "avg_profitable_trades"],
        ).rstrip(),
        "",
        "## Instruments",
        "",
        _md_table(
            [item.to_dict() for item in results],
            ["strategy", "symbol", "trades", "net_profit_per", "profitable_trades", "profit_factor", "max_drawdown_per", "buy_hold_per"],
        ).rstrip(),
        "",
    ]
    if failures:
        lines.extend(["## Failures", "", _md_table(list(failures), ["strategy", "symbol", "error"]).rstrip(), ""])
    report_path.write_text("\n".join(lines), encoding="utf-8")

    return {
        "report_dir": str(out_dir),
        "results_csv": str(results_path),
        "summary_json": str(summary_path),
        "report_md": str(report_path),
    }
