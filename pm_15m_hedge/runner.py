"""
PM 15m Hedge Engine - Main Runner

Polls the market data feeds and feeds one snapshot per tick into the
HedgeEngine.

Usage:
    pm-15m-hedge                       # dry run (simulated order ids)
    pm-15m-hedge --live --enable       # real orders
    pm-15m-hedge --once                # single tick and exit
    pm-15m-hedge --stats               # show tracker statistics
    pm-15m-hedge --clear-halt          # operator reset after a risk halt

Create the kill switch file (default ./KILL_SWITCH) to stop the loop.
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import HedgeConfig, RunMode, load_config
from .engine import HedgeEngine
from .events import EventBus, EventJournal
from .feeds import MarketDataFeed
from .gateway import ClobOrderGateway, DryRunGateway, OrderGateway
from .store import StateStore, TradeJournal
from .tracker import PositionTracker

logger = logging.getLogger(__name__)

STATUS_EVERY_TICKS = 30


def setup_logging(config: HedgeConfig):
    """Configure logging."""
    log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    handlers = [
        logging.StreamHandler(sys.stdout),
    ]

    if config.storage.log_file:
        log_path = config.storage.path(config.storage.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, config.storage.log_level.upper()),
        format=log_format,
        handlers=handlers,
    )

    # Reduce noise from requests / web3
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)


def check_kill_switch(config: HedgeConfig) -> bool:
    """Check if kill switch file exists."""
    if Path(config.kill_switch_file).exists():
        logging.critical(f"KILL SWITCH detected: {config.kill_switch_file}")
        return True
    return False


def build_store(config: HedgeConfig) -> StateStore:
    storage = config.storage
    return StateStore(storage.state_dir, storage.tracker_file, storage.window_file)


def build_gateway(config: HedgeConfig) -> OrderGateway:
    if config.mode == RunMode.LIVE:
        return ClobOrderGateway(config)
    return DryRunGateway()


def build_engine(config: HedgeConfig, gateway: Optional[OrderGateway] = None,
                 bus: Optional[EventBus] = None) -> HedgeEngine:
    """Wire store, trade journal and gateway into an engine."""
    storage = config.storage
    return HedgeEngine(
        config,
        gateway or build_gateway(config),
        store=build_store(config),
        journal=TradeJournal(str(storage.path(storage.trades_file))),
        bus=bus,
    )


def format_status(stats: dict) -> str:
    pnl = stats["pnl"]
    streak = stats["streak"]
    line = (
        f"P&L ${pnl['total_pnl']:+.2f} | {pnl['wins']}W/{pnl['losses']}L ({pnl['win_rate']:.0f}%) "
        f"| streak {streak['count']}{(streak['type'] or '-')[0]} "
        f"| open {stats['open_positions']} (${pnl['open_exposure']:.2f})"
    )
    window = stats["window"]
    if window:
        line += f" | window up {window['qty_up']:.0f} down {window['qty_down']:.0f}"
        if window["pair_cost"] is not None:
            line += f" pair {window['pair_cost']:.3f}"
        if window["locked"]:
            line += " LOCKED"
    return line + f" | trades/h {stats['trades_last_hour']}"


def show_stats(config: HedgeConfig):
    """Print tracker statistics from the persisted state."""
    tracker = PositionTracker(config, store=build_store(config))
    stats = tracker.get_stats()
    print("\n" + "=" * 60)
    print("PM 15M HEDGE - STATISTICS")
    print("=" * 60)
    print(f"Trades:         {stats['total_trades']} ({stats['wins']}W / {stats['losses']}L)")
    print(f"Win rate:       {stats['win_rate']:.1f}% (recent {stats['recent_win_rate']:.1f}%)")
    print(f"Total P&L:      ${stats['total_pnl']:+.2f} (avg ${stats['avg_pnl']:+.3f})")
    print(f"ROI:            {stats['roi']:.1f}% on ${stats['total_cost']:.2f}")
    print(f"Streak:         {stats['current_streak']} {stats['streak_type'] or '-'}")
    print(f"Open positions: {stats['open_positions']} (${stats['open_exposure']:.2f})")
    if stats["halted_reason"]:
        print(f"HALTED:         {stats['halted_reason']} (use --clear-halt)")
    elif stats["paused_at"]:
        print(f"PAUSED:         {stats['pause_reason']}")
    print("=" * 60 + "\n")


def run_loop(engine: HedgeEngine, feed: MarketDataFeed, config: HedgeConfig,
             stop: threading.Event, once: bool = False,
             events: Optional[EventJournal] = None):
    """Tick until stopped, killed, or after one tick with --once."""
    if once:
        feed.poll_once()
    else:
        feed.start()

    try:
        while not stop.is_set():
            if check_kill_switch(config):
                break

            result = engine.on_tick(feed.snapshot())
            if result.execution is not None and not result.execution.success:
                logger.warning(f"Execution failed: {result.execution.reason}")
            elif not result.decision.trade:
                logger.debug(f"No trade: {result.decision.reason}")

            if once:
                logger.info(f"Decision: {result.decision.reason}")
                break
            if engine.ticks % STATUS_EVERY_TICKS == 0:
                logger.info(format_status(engine.get_stats()))

            stop.wait(config.poll_interval_seconds)
    finally:
        feed.stop()
        if events is not None:
            events.flush()
        logger.info(format_status(engine.get_stats()))


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="PM 15m Hedge Engine (BTC Up/Down)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config YAML file")
    parser.add_argument("--live", action="store_true",
                        help="Place real orders (default: dry run)")
    parser.add_argument("--enable", action="store_true",
                        help="Enable trading (otherwise gates reject with 'trading disabled')")
    parser.add_argument("--once", action="store_true",
                        help="Run a single tick and exit")
    parser.add_argument("--stats", action="store_true",
                        help="Show statistics and exit")
    parser.add_argument("--clear-halt", action="store_true",
                        help="Clear a latched risk halt and exit")
    parser.add_argument("--order-usd", type=float, default=None,
                        help="Override base order size (USDC)")
    parser.add_argument("--poll-interval", type=int, default=None,
                        help="Override poll interval (ms)")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.live:
        config.mode = RunMode.LIVE
    if args.enable:
        config.trading_enabled = True
    if args.order_usd is not None:
        config.strategy.order_usd = args.order_usd
    if args.poll_interval is not None:
        config.poll_interval_ms = args.poll_interval
    if args.debug:
        config.storage.log_level = "DEBUG"

    setup_logging(config)

    if args.stats:
        show_stats(config)
        return 0

    if args.clear_halt:
        tracker = PositionTracker(config, store=build_store(config))
        if tracker.clear_halt():
            print("Risk halt cleared.")
        else:
            print("No halt or pause active.")
        return 0

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        return 1

    stop = threading.Event()

    def signal_handler(signum, frame):
        """Handle Ctrl+C gracefully."""
        print("\n\nShutting down gracefully...")
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    print("\n" + "=" * 60)
    print(f"PM 15M HEDGE - {config.mode.value.upper()}")
    print("=" * 60)
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    config.print_summary()
    print("\nPress Ctrl+C to stop.\n")

    bus = EventBus()
    events = EventJournal(str(config.storage.path(config.storage.events_file)))
    bus.subscribe(events)
    engine = build_engine(config, bus=bus)
    feed = MarketDataFeed(config.api, interval=config.poll_interval_seconds)
    run_loop(engine, feed, config, stop, once=args.once, events=events)
    return 0


if __name__ == "__main__":
    sys.exit(main())
