"""Tests for config loading, env overrides and validation"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pm_15m_hedge.config import HedgeConfig, RunMode, load_config


class TestDefaults:
    def test_defaults_are_valid(self):
        cfg = HedgeConfig()
        assert cfg.mode == RunMode.DRYRUN
        assert not cfg.trading_enabled
        assert cfg.strategy.order_usd == 3.0
        assert cfg.strategy.tier_thresholds == (0.40, 0.45, 0.50)
        assert cfg.strategy.max_pair_cost == 0.98
        assert cfg.risk.pnl_floor == -8.0
        assert cfg.execution.min_shares == 5
        assert cfg.poll_interval_seconds == 1.0
        assert cfg.validate() == []

    def test_storage_paths(self):
        cfg = HedgeConfig()
        cfg.storage.state_dir = "/tmp/hedge"
        assert cfg.storage.path("trades.csv") == Path("/tmp/hedge/trades.csv")


class TestYaml:
    def test_nested_sections(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "mode: live\n"
            "trading_enabled: true\n"
            "strategy:\n"
            "  order_usd: 5\n"
            "  tier_thresholds: [0.35, 0.45, 0.55]\n"
            "  not_a_field: 1\n"
            "risk:\n"
            "  pnl_floor: -20\n"
        )
        cfg = HedgeConfig.from_yaml(str(path))

        assert cfg.mode == RunMode.LIVE
        assert cfg.trading_enabled
        assert cfg.strategy.order_usd == 5
        assert cfg.strategy.tier_thresholds == (0.35, 0.45, 0.55)
        assert cfg.strategy.cooldown_seconds == 15.0
        assert cfg.risk.pnl_floor == -20
        assert cfg.validate() == ["LIVE mode requires private_key"]

    def test_round_trip_omits_secrets(self, tmp_path):
        cfg = HedgeConfig()
        cfg.api.private_key = "0xsecretkey"
        cfg.api.api_secret = "hunter2"
        cfg.strategy.max_window_spend = 12.5
        path = tmp_path / "out.yaml"
        cfg.to_yaml(str(path))

        text = path.read_text()
        assert "0xsecretkey" not in text
        assert "hunter2" not in text

        loaded = HedgeConfig.from_yaml(str(path))
        assert loaded.api.private_key == ""
        assert loaded.strategy.max_window_spend == 12.5
        assert loaded.strategy.tier_breakpoints == (4.0, 8.0)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert HedgeConfig.from_yaml(str(path)).validate() == []


class TestEnv:
    def test_env_overrides(self):
        cfg = load_config(None, env={
            "HEDGE_LIVE": "1",
            "HEDGE_TRADING_ENABLED": "1",
            "PM_PRIVATE_KEY": "0xabc",
            "PM_SIGNATURE_TYPE": "1",
            "HEDGE_ORDER_USD": "2.5",
            "HEDGE_MAX_EXPOSURE": "25",
            "HEDGE_STATE_DIR": "/tmp/state",
        })
        assert cfg.mode == RunMode.LIVE
        assert cfg.trading_enabled
        assert cfg.api.private_key == "0xabc"
        assert cfg.api.signature_type == 1
        assert cfg.strategy.order_usd == 2.5
        assert cfg.risk.max_open_exposure == 25.0
        assert cfg.storage.state_dir == "/tmp/state"
        assert cfg.validate() == []

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "missing.yaml"), env={})
        assert cfg.mode == RunMode.DRYRUN
        assert cfg.strategy.order_usd == 3.0

    def test_trading_flag_can_be_disabled(self):
        cfg = HedgeConfig(trading_enabled=True)
        cfg.apply_env({"HEDGE_TRADING_ENABLED": "0"})
        assert not cfg.trading_enabled


class TestValidate:
    @pytest.mark.parametrize("section,name,value,message", [
        ("strategy", "late_hedge_ceiling", 0.60, "late_hedge_ceiling below hedge_ceiling"),
        ("strategy", "max_pair_cost", 1.2, "max_pair_cost must be in (0, 1]"),
        ("strategy", "order_usd", 0, "order_usd and max_window_spend must be positive"),
        ("strategy", "tier_breakpoints", (8.0, 4.0), "tier_breakpoints must be increasing"),
        ("risk", "pnl_floor", 0.0, "pnl_floor must be negative"),
        ("execution", "max_limit_price", 1.0, "max_limit_price must be below 1.0"),
        ("execution", "max_attempts", 0, "max_attempts must be at least 1"),
    ])
    def test_invalid_values(self, section, name, value, message):
        cfg = HedgeConfig()
        setattr(getattr(cfg, section), name, value)
        assert message in cfg.validate()
