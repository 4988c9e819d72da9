import json

import pytest

from backtester.config import BacktestRunConfig, EngineConfig, SpreadConfig, StrategyConfig
from backtester.errors import ConfigurationError


def test_engine_defaults():
    config = EngineConfig()
    assert config.order_size == 1.0
    assert config.warm_up == 5
    assert config.pending_order_validity == 5
    assert config.wait_for_next_trade_enabled is False
    assert config.to_dict()["spread"] == {}


@pytest.mark.parametrize(
    "options",
    [
        {"order_size": 0},
        {"commission": -0.1},
        {"warm_up": 0},
        {"pending_order_validity": -1},
        {"wait_for_next_trade": 1.5},
        {"equity": "lots"},
        {"overwrite_pending_orders": "maybe"},
        {"risk_reward_ratio": float("nan")},
    ],
)
def test_engine_validation(options):
    with pytest.raises(ConfigurationError):
        EngineConfig(**options)


def test_unknown_engine_option_rejected():
    with pytest.raises(ConfigurationError, match="Unknown engine options"):
        EngineConfig.from_dict({"order_sise": 2})


def test_pips_profit_target_is_not_an_engine_option():
    with pytest.raises(ConfigurationError, match="Unknown engine options"):
        EngineConfig.from_dict({"pips_profit_target": 20})
    assert "pips_profit_target" not in EngineConfig.from_env({"PIPS_PROFIT_TARGET": "20"}).to_dict()


def test_engine_from_env():
    config = EngineConfig.from_env(
        {
            "ORDER_SIZE": "2.5",
            "SPREAD_PIPS": "1.5",
            "WAIT_FOR_NEXT_TRADE": "4",
            "WAIT_FOR_NEXT_TRADE_ENABLED": "true",
            "OVERWRITE_ORDERS": "0",
            "COMMISSION": "",
            "UNRELATED": "x",
        }
    )
    assert config.order_size == 2.5
    assert config.wait_for_next_trade == 4
    assert config.wait_for_next_trade_enabled is True
    assert config.overwrite_pending_orders is False
    assert config.commission == 0.0
    assert config.pricing_for("EURUSD").spread == pytest.approx(0.00015)


def test_spread_lookup_order():
    spread = SpreadConfig.from_raw({"default": 2.0, "jpy": 1.5, "symbols": {"eur/usd": 0.5}})
    assert spread.pips_for("EURUSD") == 0.5
    assert spread.pips_for("USDJPY") == 1.5
    assert spread.pips_for("GBPUSD") == 2.0

    eurusd = spread.pricing_for("EURUSD")
    assert eurusd.pip_size == 0.0001
    assert eurusd.spread == pytest.approx(0.00005)
    assert spread.pricing_for("USDJPY").spread == pytest.approx(0.015)
    assert SpreadConfig.from_raw(None).pips_for("EURUSD") == 0.0

    with pytest.raises(ConfigurationError):
        SpreadConfig.from_raw({"bogus": 1.0})


def test_strategy_config_normalizes():
    config = StrategyConfig.from_raw({"strategy": "MacdDual", "time_frame": "1h", "higher_time_frame": "4h", "strategy_type": "long_short_mtf"})
    assert config.time_frame == "H1"
    assert config.higher_time_frame == "H4"
    assert config.strategy_type == "LongShortMTF"

    with pytest.raises(ConfigurationError):
        StrategyConfig.from_raw({"strategy": "Stoch", "time_frame": "7h"})
    with pytest.raises(ConfigurationError):
        StrategyConfig.from_raw({"strategy": "Stoch", "time_frame": "H1", "params": [1, 2]})


def test_run_config_from_path_resolves_relative_paths(tmp_path):
    config_path = tmp_path / "configs" / "run.json"
    config_path.parent.mkdir()
    config_path.write_text(
        json.dumps(
            {
                "data_root": "../data",
                "report_dir": "reports",
                "results_path": "reports/results.json",
                "symbols": ["eur/usd", "EURUSD", "gbpusd"],
                "strategies": [{"strategy": "Stoch", "time_frame": "H1"}],
                "engine": {"commission": 0.1, "spread": 1.0},
            }
        ),
        encoding="utf-8",
    )
    config = BacktestRunConfig.from_path(config_path)

    assert config.data_root == (tmp_path / "data").resolve()
    assert config.report_dir == (tmp_path / "configs" / "reports").resolve()
    assert config.results_path == (tmp_path / "configs" / "reports" / "results.json").resolve()
    assert config.config_dir == config_path.parent
    assert config.symbols == ["EURUSD", "GBPUSD"]
    assert config.engine.commission == 0.1
    assert config.to_dict()["engine"]["spread"] == {"DEFAULT": 1.0}


@pytest.mark.parametrize(
    "payload",
    [
        {"data_root": "d", "report_dir": "r", "symbols": ["EURUSD"], "strategies": []},
        {"data_root": "d", "report_dir": "r", "symbols": [], "strategies": [{"strategy": "Stoch", "time_frame": "H1"}]},
        {"report_dir": "r", "symbols": ["EURUSD"], "strategies": [{"strategy": "Stoch", "time_frame": "H1"}]},
        {"data_root": "d", "report_dir": "r", "market": "BONDS", "symbols": ["EURUSD"], "strategies": [{"strategy": "Stoch", "time_frame": "H1"}]},
    ],
)
def test_run_config_validation(payload):
    with pytest.raises(ConfigurationError):
        BacktestRunConfig.from_dict(payload)


def test_invalid_json_is_a_configuration_error(tmp_path):
    path = tmp_path / "run.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        BacktestRunConfig.from_path(path)
