"""End-to-end tests for the hedge engine tick loop"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pm_15m_hedge.config import HedgeConfig
from pm_15m_hedge.engine import HedgeEngine
from pm_15m_hedge.events import EventType
from pm_15m_hedge.feeds import MarketSnapshot
from pm_15m_hedge.gateway import DryRunGateway
from pm_15m_hedge.models import UP, DOWN, MomentumHint, PositionStatus, Quote, Strategy
from pm_15m_hedge.store import StateStore, TradeJournal


START = 1_699_999_200.0
END = START + 900
PTB = 65000.0


class Clock:
    def __init__(self, t):
        self.t = t

    def __call__(self):
        return self.t


def quote(up, down, market_id="m1", end=END, ptb=PTB):
    return Quote(market_id, up, down, end, ptb, up_token_id="UP_TOKEN",
                 down_token_id="DOWN_TOKEN", market_start_time=end - 900)


def snapshot(q, momentum=None, resolution_price=None, at=0.0):
    return MarketSnapshot(q, momentum, resolution_price, at)


@pytest.fixture
def config():
    return HedgeConfig(trading_enabled=True)


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def engine(config, clock):
    return HedgeEngine(config, DryRunGateway(), clock=clock)


def run_entry_and_hedge(engine, clock):
    """INITIAL Up at minute 3, HEDGE Down at minute 5."""
    clock.t = START + 180
    first = engine.on_tick(snapshot(quote(0.30, 0.60), MomentumHint(delta_3m=0.3), PTB))
    clock.t = START + 300
    second = engine.on_tick(snapshot(quote(0.50, 0.38), MomentumHint(delta_3m=-0.1), PTB))
    return first, second


class TestFullCycle:
    """Entry, hedge, lock, roll-over and resolution."""

    def test_entry_then_hedge_locks_window(self, engine, clock):
        first, second = run_entry_and_hedge(engine, clock)

        assert first.decision.trade
        assert first.decision.strategy == Strategy.INITIAL
        assert first.decision.outcome == UP
        assert first.execution.success
        assert first.execution.shares == 9

        assert second.decision.strategy == Strategy.HEDGE
        assert second.decision.outcome == DOWN
        assert second.execution.shares == 9
        assert second.decision.details["simulated_pair_cost"] == pytest.approx(0.686)

        window = engine.windows.active
        assert window.qty_up == 9
        assert window.qty_down == 9
        assert window.locked
        assert engine.last_buy_at == START + 300
        assert engine.tracker.open_exposure == pytest.approx(2.727 + 3.447)

    def test_cooldown_between_buys(self, engine, clock):
        clock.t = START + 180
        engine.on_tick(snapshot(quote(0.30, 0.60), MomentumHint(delta_3m=0.3), PTB))
        clock.t = START + 185
        result = engine.on_tick(snapshot(quote(0.50, 0.38), MomentumHint(), PTB))
        assert not result.decision.trade
        assert result.decision.reason == "cooldown"

    def test_locked_window_stops_buying(self, engine, clock):
        run_entry_and_hedge(engine, clock)
        clock.t = START + 400
        result = engine.on_tick(snapshot(quote(0.20, 0.20), MomentumHint(delta_3m=0.3), PTB))
        assert result.decision.reason == "profit locked"
        assert result.execution is None

    def test_rollover_resolves_previous_market(self, engine, clock):
        run_entry_and_hedge(engine, clock)

        clock.t = END + 10
        next_quote = quote(0.50, 0.50, market_id="m2", end=END + 900, ptb=65100.0)
        result = engine.on_tick(snapshot(next_quote, MomentumHint(), 65050.0))

        assert len(result.resolved) == 2
        statuses = {p.outcome: p.status for p in result.resolved}
        assert statuses[UP] == PositionStatus.RESOLVED_WIN
        assert statuses[DOWN] == PositionStatus.RESOLVED_LOSS
        assert engine.tracker.state.total_pnl == pytest.approx(9 - 2.727 - 3.447)
        assert engine.tracker.loss_streak() == 0

        assert engine.windows.active.market_id == "m2"
        assert engine.windows.history[-1].market_id == "m1"
        assert result.decision.reason == "too early"
        assert engine.bus.counts[EventType.WINDOW_ARCHIVE.value] == 1
        assert engine.bus.counts[EventType.WINDOW_OPEN.value] == 2

    def test_no_resolution_without_price(self, engine, clock):
        run_entry_and_hedge(engine, clock)
        clock.t = END + 10
        result = engine.on_tick(snapshot(quote(0.5, 0.5, market_id="m2", end=END + 900)))
        assert result.resolved == []
        assert len(engine.tracker.state.open_positions) == 2


class TestInputs:
    def test_malformed_payload_is_invalid_quote(self, engine, clock):
        result = engine.on_payload({"market_id": "m1", "bogus": 1})
        assert result.decision.reason == "invalid quote"

        result = engine.on_payload({"up_price": 0.3, "down_price": 0.6})
        assert result.decision.reason == "invalid quote"

    def test_payload_tick(self, engine, clock):
        clock.t = START + 180
        result = engine.on_payload(
            {
                "market_id": "m1",
                "up_price": "0.30",
                "down_price": "0.60",
                "market_end_time": END,
                "price_to_beat": PTB,
                "up_token_id": "UP_TOKEN",
                "down_token_id": "DOWN_TOKEN",
            },
            {"delta_1m": 0.1, "delta_3m": 0.3},
            resolution_price=PTB,
        )
        assert result.decision.trade
        assert result.execution.success

    @pytest.mark.parametrize("field,value", [
        ("market_end_time", "nan"),
        ("market_end_time", "inf"),
        ("up_price", "nan"),
        ("down_price", float("inf")),
        ("down_price", "-inf"),
    ])
    def test_non_finite_numbers_are_invalid_quote(self, engine, clock, field, value):
        clock.t = START + 180
        payload = {
            "market_id": "m1",
            "up_price": "0.30",
            "down_price": "0.60",
            "market_end_time": END,
            "price_to_beat": PTB,
        }
        payload[field] = value
        result = engine.on_payload(payload, {"delta_3m": 0.3}, resolution_price=PTB)

        assert not result.decision.trade
        assert result.decision.reason == "invalid quote"
        assert result.execution is None
        assert engine.tracker.state.open_positions == []

    def test_non_finite_momentum_is_dropped(self, engine, clock):
        clock.t = START + 180
        result = engine.on_payload(
            {"market_id": "m1", "up_price": 0.30, "down_price": 0.60,
             "market_end_time": END, "price_to_beat": PTB},
            {"delta_3m": "nan"},
        )
        assert not result.decision.trade
        assert result.decision.reason == "no momentum"
        assert engine.tracker.state.open_positions == []

    def test_non_finite_resolution_price_defers_resolution(self, engine, clock):
        engine.tracker.add_position("o1", "LONG", UP, 0.30, 10, 3.0, "m1", END, PTB, opened_at=START)
        clock.t = END + 5
        payload = {"market_id": "m2", "up_price": 0.5, "down_price": 0.5,
                   "market_end_time": END + 900, "price_to_beat": PTB}

        result = engine.on_payload(payload, resolution_price=float("nan"))
        assert result.resolved == []
        assert len(engine.tracker.state.open_positions) == 1

        result = engine.on_payload(payload, resolution_price=PTB + 50)
        assert len(result.resolved) == 1
        assert result.resolved[0].won

    def test_disabled_trading_still_resolves(self, config, clock):
        config.trading_enabled = False
        engine = HedgeEngine(config, DryRunGateway(), clock=clock)
        engine.tracker.add_position("o1", "LONG", UP, 0.30, 10, 3.0, "m1", END, PTB, opened_at=START)

        clock.t = END + 5
        result = engine.on_tick(snapshot(quote(0.5, 0.5, market_id="m2", end=END + 900), None, PTB + 50))

        assert result.decision.reason == "trading disabled"
        assert len(result.resolved) == 1
        assert result.resolved[0].won


class TestStatsAndRestore:
    def test_trades_last_hour(self, engine, clock):
        run_entry_and_hedge(engine, clock)
        assert engine.trades_last_hour(START + 300) == 2
        assert engine.trades_last_hour(START + 180 + 3601) == 1

    def test_get_stats(self, engine, clock):
        run_entry_and_hedge(engine, clock)
        stats = engine.get_stats(START + 300)

        assert stats["mode"] == "dryrun"
        assert stats["trading_enabled"]
        assert stats["ticks"] == 2
        assert stats["open_positions"] == 2
        assert stats["window"]["locked"]
        assert stats["trades_last_hour"] == 2
        assert stats["events"][EventType.GATE_DECISION.value] == 2

    def test_restart_restores_window_and_positions(self, config, clock, tmp_path):
        store = StateStore(str(tmp_path))
        engine = HedgeEngine(config, DryRunGateway(), store=store, clock=clock)
        run_entry_and_hedge(engine, clock)

        restarted = HedgeEngine(config, DryRunGateway(), store=store, clock=clock)
        assert restarted.windows.active.market_id == "m1"
        assert restarted.windows.active.locked
        assert restarted.last_buy_at == START + 300
        assert len(restarted.tracker.state.open_positions) == 2

        clock.t = START + 305
        result = restarted.on_tick(snapshot(quote(0.2, 0.2), MomentumHint(delta_3m=0.3), PTB))
        assert result.decision.reason == "cooldown"

    def test_trade_journal_written_on_resolution(self, config, clock, tmp_path):
        journal = TradeJournal(str(tmp_path / "trades.csv"))
        engine = HedgeEngine(config, DryRunGateway(), journal=journal, clock=clock)
        run_entry_and_hedge(engine, clock)

        clock.t = END + 10
        engine.on_tick(snapshot(quote(0.5, 0.5, market_id="m2", end=END + 900), None, 64000.0))

        rows = journal.read_rows()
        assert len(rows) == 2
        assert {r["strategy"] for r in rows} == {Strategy.INITIAL, Strategy.HEDGE}
        assert {r["result"] for r in rows} == {"WIN", "LOSS"}
