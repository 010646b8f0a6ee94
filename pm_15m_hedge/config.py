"""
Configuration for PM 15m Hedge Engine
=====================================
Typed config with YAML loading, env overrides and small-account defaults.

All tunable knobs live here. Prices are Polymarket share prices (0..1),
money is USDC, times are minutes/seconds as named.
"""

import os
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

import yaml


class RunMode(Enum):
    DRYRUN = "dryrun"   # Simulated order ids, full bookkeeping
    LIVE = "live"       # Real orders


@dataclass
class StrategyParams:
    """Gate thresholds for the hedged pair strategy"""
    # Market cycle length
    cycle_minutes: float = 15.0

    # Don't trade the opening minutes of a window
    min_elapsed_minutes: float = 2.0

    # Minimum seconds between buys
    cooldown_seconds: float = 15.0

    # Max USDC spent inside one window
    max_window_spend: float = 30.0

    # Cheap threshold tiers: elapsed < 4m -> 0.40, < 8m -> 0.45, else 0.50
    tier_breakpoints: Tuple[float, float] = (4.0, 8.0)
    tier_thresholds: Tuple[float, float, float] = (0.40, 0.45, 0.50)

    # Skip fresh windows when up + down asks exceed this
    max_entry_sum: float = 1.02

    # No new (unhedged) positions after this minute
    new_position_cutoff_minutes: float = 10.0

    # Opposite side must be at or below this for the entry to be hedgeable
    hedge_ceiling: float = 0.65

    # |delta| in percent required to call a direction
    min_momentum_pct: float = 0.15

    # Late hedge: accept a pricier hedge once this late in the window
    late_hedge_minutes: float = 11.0
    late_hedge_ceiling: float = 0.70

    # Simulated pair cost must stay under this (non-late buys).
    # In (0, 1]; 1.0 is plain break-even
    max_pair_cost: float = 0.98

    # Qty difference (shares) treated as balanced
    balance_tolerance: float = 1.0

    # Streak bias: after N same-side wins, block that side above this price
    streak_block_count: int = 2
    streak_price_ceiling: float = 0.20

    # Loss streak sizing: after N losses, scale entries by this factor
    loss_streak_discount_after: int = 2
    loss_streak_size_factor: float = 0.5

    # Base entry size (USDC)
    order_usd: float = 3.0


@dataclass
class RiskLimits:
    """Account-level risk limits"""
    # Circuit breaker on total open cost
    max_open_exposure: float = 40.0

    # Consecutive losses that trigger a pause
    loss_streak_pause: int = 3
    pause_minutes: float = 30.0

    # Hard stops (latched until cleared by an operator)
    pnl_floor: float = -8.0
    min_win_rate: float = 0.30
    min_trades_for_win_rate: int = 6

    # Open positions this long past market end are written off
    stale_after_seconds: float = 300.0

    # Advisory alert when mark-to-market loss reaches this fraction
    stop_loss_pct: float = 0.20

    # Ring buffer of recent outcomes kept for streak logic
    recent_outcomes_size: int = 20


@dataclass
class ExecutionParams:
    """Order pricing and submission"""
    # Pay up to this much above the quote
    slippage: float = 0.003
    max_limit_price: float = 0.95
    tick_size: float = 0.001

    # Polymarket minimum order size (shares)
    min_shares: int = 5

    # Post retries (the order is signed once)
    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0


@dataclass
class ApiConfig:
    """API credentials and endpoints"""
    private_key: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""
    proxy_address: str = ""  # Polymarket proxy wallet (funder)
    signature_type: int = 2

    clob_host: str = "https://clob.polymarket.com"
    gamma_host: str = "https://gamma-api.polymarket.com"
    binance_host: str = "https://api.binance.com"
    polygon_rpc_url: str = "https://polygon-rpc.com"

    # Chainlink BTC/USD aggregator on Polygon (resolution source)
    chainlink_aggregator: str = "0xc907E116054Ad103354f2D350FD2514433D57F6f"
    use_chainlink: bool = True

    slug_prefix: str = "btc-updown-15m"
    binance_symbol: str = "BTCUSDT"
    chain_id: int = 137  # Polygon
    request_timeout: float = 5.0


@dataclass
class StorageConfig:
    """Where state and journals go"""
    state_dir: str = "pm_15m_hedge_data"
    tracker_file: str = "tracker_state.json"
    window_file: str = "window_state.json"
    trades_file: str = "trades.csv"
    events_file: str = "events.jsonl"
    log_file: str = "pm_15m_hedge.log"
    log_level: str = "INFO"

    def path(self, name: str) -> Path:
        return Path(self.state_dir) / name


_GROUPS = {
    "strategy": StrategyParams,
    "risk": RiskLimits,
    "execution": ExecutionParams,
    "api": ApiConfig,
    "storage": StorageConfig,
}


def _build(cls, data: Optional[dict]):
    """Build a dataclass from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in (data or {}).items():
        if key not in known:
            continue
        if isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass
class HedgeConfig:
    """Master configuration"""
    mode: RunMode = RunMode.DRYRUN
    trading_enabled: bool = False
    poll_interval_ms: int = 1000
    kill_switch_file: str = "KILL_SWITCH"

    strategy: StrategyParams = field(default_factory=StrategyParams)
    risk: RiskLimits = field(default_factory=RiskLimits)
    execution: ExecutionParams = field(default_factory=ExecutionParams)
    api: ApiConfig = field(default_factory=ApiConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_dict(cls, data: dict) -> "HedgeConfig":
        cfg = cls()
        for name, group_cls in _GROUPS.items():
            if name in data:
                setattr(cfg, name, _build(group_cls, data[name]))
        if "mode" in data:
            cfg.mode = RunMode(str(data["mode"]).lower())
        if "trading_enabled" in data:
            cfg.trading_enabled = bool(data["trading_enabled"])
        if "poll_interval_ms" in data:
            cfg.poll_interval_ms = int(data["poll_interval_ms"])
        if "kill_switch_file" in data:
            cfg.kill_switch_file = str(data["kill_switch_file"])
        return cfg

    @classmethod
    def from_yaml(cls, path: str) -> "HedgeConfig":
        """Load config from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        data = {
            "mode": self.mode.value,
            "trading_enabled": self.trading_enabled,
            "poll_interval_ms": self.poll_interval_ms,
            "kill_switch_file": self.kill_switch_file,
        }
        for name in _GROUPS:
            group = asdict(getattr(self, name))
            data[name] = {k: list(v) if isinstance(v, tuple) else v for k, v in group.items()}
        # Never write secrets back out
        for secret in ("private_key", "api_key", "api_secret", "api_passphrase"):
            data["api"][secret] = ""
        return data

    def to_yaml(self, path: str):
        """Save config to YAML file."""
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def apply_env(self, env: Optional[dict] = None) -> "HedgeConfig":
        """Override from environment variables"""
        env = os.environ if env is None else env

        if env.get("HEDGE_LIVE") == "1":
            self.mode = RunMode.LIVE
        if env.get("HEDGE_TRADING_ENABLED") is not None:
            self.trading_enabled = env["HEDGE_TRADING_ENABLED"] == "1"

        # Credentials only ever come from env or the YAML file
        if env.get("PM_PRIVATE_KEY"):
            self.api.private_key = env["PM_PRIVATE_KEY"]
        if env.get("PM_API_KEY"):
            self.api.api_key = env["PM_API_KEY"]
        if env.get("PM_API_SECRET"):
            self.api.api_secret = env["PM_API_SECRET"]
        if env.get("PM_API_PASSPHRASE"):
            self.api.api_passphrase = env["PM_API_PASSPHRASE"]
        if env.get("PM_PROXY"):
            self.api.proxy_address = env["PM_PROXY"]
        if env.get("PM_SIGNATURE_TYPE"):
            self.api.signature_type = int(env["PM_SIGNATURE_TYPE"])
        if env.get("POLYGON_RPC_URL"):
            self.api.polygon_rpc_url = env["POLYGON_RPC_URL"]

        # Sizing / risk overrides
        if env.get("HEDGE_ORDER_USD"):
            self.strategy.order_usd = float(env["HEDGE_ORDER_USD"])
        if env.get("HEDGE_MAX_WINDOW_SPEND"):
            self.strategy.max_window_spend = float(env["HEDGE_MAX_WINDOW_SPEND"])
        if env.get("HEDGE_MAX_EXPOSURE"):
            self.risk.max_open_exposure = float(env["HEDGE_MAX_EXPOSURE"])
        if env.get("HEDGE_PNL_FLOOR"):
            self.risk.pnl_floor = float(env["HEDGE_PNL_FLOOR"])
        if env.get("HEDGE_STATE_DIR"):
            self.storage.state_dir = env["HEDGE_STATE_DIR"]

        return self

    def validate(self) -> list:
        """Validate configuration, return list of errors"""
        errors = []
        s, r, e = self.strategy, self.risk, self.execution

        if self.mode == RunMode.LIVE and not self.api.private_key:
            errors.append("LIVE mode requires private_key")

        if len(s.tier_breakpoints) != 2 or len(s.tier_thresholds) != 3:
            errors.append("cheap threshold needs 2 breakpoints and 3 thresholds")
        elif list(s.tier_breakpoints) != sorted(s.tier_breakpoints):
            errors.append("tier_breakpoints must be increasing")

        if not 0 < s.max_pair_cost <= 1.0:
            errors.append("max_pair_cost must be in (0, 1]")
        if s.late_hedge_ceiling < s.hedge_ceiling:
            errors.append("late_hedge_ceiling below hedge_ceiling")
        if s.order_usd <= 0 or s.max_window_spend <= 0:
            errors.append("order_usd and max_window_spend must be positive")
        if not 0 < s.loss_streak_size_factor <= 1:
            errors.append("loss_streak_size_factor must be in (0, 1]")

        if r.max_open_exposure <= 0:
            errors.append("max_open_exposure must be positive")
        if r.pnl_floor >= 0:
            errors.append("pnl_floor must be negative")

        if e.max_limit_price >= 1.0:
            errors.append("max_limit_price must be below 1.0")
        if e.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if e.tick_size <= 0:
            errors.append("tick_size must be positive")

        return errors

    def print_summary(self):
        """Print configuration summary"""
        s, r = self.strategy, self.risk
        print("=" * 60)
        print("PM 15M HEDGE CONFIGURATION")
        print("=" * 60)
        print(f"Mode:             {self.mode.value.upper()}")
        print(f"Trading:          {'ENABLED' if self.trading_enabled else 'DISABLED'}")
        print(f"Proxy Wallet:     {self.api.proxy_address[:20]}..." if self.api.proxy_address else "Proxy Wallet:     NOT SET")
        print()
        print("Strategy:")
        print(f"  Order size:         ${s.order_usd:.2f}")
        print(f"  Window spend cap:   ${s.max_window_spend:.2f}")
        print(f"  Cheap tiers:        {s.tier_thresholds} @ {s.tier_breakpoints}m")
        print(f"  Hedge ceiling:      {s.hedge_ceiling:.2f} (late {s.late_hedge_ceiling:.2f} after {s.late_hedge_minutes:.0f}m)")
        print(f"  Max pair cost:      {s.max_pair_cost:.3f}")
        print(f"  Min momentum:       {s.min_momentum_pct:.2f}%")
        print()
        print("Risk:")
        print(f"  Max exposure:       ${r.max_open_exposure:.2f}")
        print(f"  Pause after:        {r.loss_streak_pause} losses ({r.pause_minutes:.0f}m)")
        print(f"  P&L floor:          ${r.pnl_floor:.2f}")
        print(f"  Min win rate:       {r.min_win_rate:.0%} after {r.min_trades_for_win_rate} trades")
        print("=" * 60)


def load_config(path: Optional[str] = None, env: Optional[dict] = None) -> HedgeConfig:
    """Load config from file (if it exists), then apply env overrides."""
    if path and Path(path).exists():
        cfg = HedgeConfig.from_yaml(path)
    else:
        cfg = HedgeConfig()
    return cfg.apply_env(env)
