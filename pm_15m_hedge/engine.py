"""
Hedge Engine - one object that owns all trading state.

Per tick:
    resolve ended positions -> stale cleanup -> stop-loss advisory
    -> window roll-over -> risk state -> decision -> execution

on_tick is serialized by a lock, so the window manager and the tracker
only ever have one writer even when feeds run on their own threads.
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import HedgeConfig
from .decision import evaluate
from .events import EventBus, EventType
from .executor import ExecutionResult, OrderExecutor
from .feeds import MarketSnapshot
from .gateway import OrderGateway
from .models import InvalidPayload, MomentumHint, Position, Quote, RiskState, TradeDecision
from .store import StateStore, TradeJournal
from .tracker import PositionTracker
from .window import WindowManager

logger = logging.getLogger(__name__)

HOUR = 3600.0


@dataclass
class TickResult:
    decision: TradeDecision
    execution: Optional[ExecutionResult] = None
    resolved: List[Position] = field(default_factory=list)
    stale: List[Position] = field(default_factory=list)
    stop_loss_alerts: List[dict] = field(default_factory=list)


class HedgeEngine:
    """Window manager, decision engine, executor and tracker wired together."""

    def __init__(self, config: HedgeConfig, gateway: OrderGateway,
                 store: Optional[StateStore] = None,
                 journal: Optional[TradeJournal] = None,
                 bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.store = store
        self.bus = bus or EventBus()
        self.clock = clock

        self.windows = WindowManager()
        self.tracker = PositionTracker(config, store=store, bus=self.bus, journal=journal)
        self.executor = OrderExecutor(config, gateway, self.windows, self.tracker, self.bus)

        self.last_buy_at: Optional[float] = None
        self._trade_times: deque = deque()
        self._lock = threading.Lock()
        self.ticks = 0

        self._restore_window()

    def _restore_window(self):
        if self.store is None:
            return
        self.windows.load_dict(self.store.load_window())
        if self.windows.active is not None:
            self.last_buy_at = self.windows.active.last_buy_at

    def _save_window(self):
        if self.store is None:
            return
        if not self.store.save_window(self.windows.to_dict()):
            self.bus.publish(EventType.PERSISTENCE_ERROR, target="window_state")

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def enable_trading(self):
        self.config.trading_enabled = True
        logger.info("Trading ENABLED")

    def disable_trading(self):
        self.config.trading_enabled = False
        logger.info("Trading DISABLED")

    def clear_halt(self) -> bool:
        with self._lock:
            return self.tracker.clear_halt()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def risk_state(self, now: float) -> RiskState:
        stop = self.tracker.should_stop_trading(now)
        side, side_len = self.tracker.side_streak()
        return RiskState(
            open_exposure=self.tracker.open_exposure,
            last_buy_at=self.last_buy_at,
            loss_streak=self.tracker.loss_streak(),
            side_streak_outcome=side,
            side_streak_len=side_len,
            stop=stop.stop,
            stop_reason=stop.reason,
        )

    def on_tick(self, snapshot: MarketSnapshot) -> TickResult:
        with self._lock:
            self.ticks += 1
            now = self.clock()
            quote = snapshot.quote

            # 1-3. bookkeeping on positions
            resolved = []
            if snapshot.resolution_price is not None:
                resolved = self.tracker.check_resolutions(
                    snapshot.resolution_price,
                    quote.price_to_beat if quote else None,
                    now=now,
                    market_id=quote.market_id if quote else None,
                )
            stale = self.tracker.cleanup_stale_positions(now)
            alerts = []
            if quote is not None:
                alerts = self.tracker.check_stop_loss(quote.up_price, quote.down_price, quote.market_id)

            if quote is None:
                decision = TradeDecision.reject("invalid quote")
                self._publish_decision(decision, None)
                return TickResult(decision, resolved=resolved, stale=stale, stop_loss_alerts=alerts)

            # 4. window for this market
            previous = self.windows.active
            window = self.windows.get_or_create_window(
                quote.market_id, now, start_pair_cost=quote.sum_prices if quote.is_valid else None
            )
            if window is not previous:
                if previous is not None:
                    self.bus.publish(EventType.WINDOW_ARCHIVE, market_id=previous.market_id,
                                     qty_up=previous.qty_up, qty_down=previous.qty_down,
                                     total_cost=previous.total_cost, locked=previous.locked)
                self.bus.publish(EventType.WINDOW_OPEN, market_id=window.market_id,
                                 start_pair_cost=window.start_pair_cost)
                self._save_window()

            # 5-6. decide
            risk = self.risk_state(now)
            decision = evaluate(quote, window, snapshot.momentum, risk, self.config, now)
            self._publish_decision(decision, quote.market_id)

            # 7. execute
            execution = None
            if decision.trade:
                execution = self.executor.execute(decision, quote, window, snapshot.momentum, now)
                if execution.success:
                    self.last_buy_at = now
                    self._trade_times.append(now)
                    while self._trade_times and now - self._trade_times[0] > HOUR:
                        self._trade_times.popleft()
                    self._save_window()

            return TickResult(decision, execution, resolved, stale, alerts)

    def on_payload(self, quote_payload: dict, momentum_payload: Optional[dict] = None,
                   resolution_price: Optional[float] = None) -> TickResult:
        """Tick from raw feed payloads; a malformed quote becomes an "invalid quote" rejection."""
        try:
            quote = Quote.from_payload(quote_payload)
        except InvalidPayload as e:
            logger.warning(f"Rejected quote payload: {e}")
            quote = None
        momentum = None
        if momentum_payload is not None:
            try:
                momentum = MomentumHint.from_payload(momentum_payload)
            except InvalidPayload as e:
                logger.warning(f"Rejected momentum payload: {e}")
        if resolution_price is not None and not math.isfinite(resolution_price):
            logger.warning(f"Ignoring non-finite resolution price: {resolution_price!r}")
            resolution_price = None
        return self.on_tick(MarketSnapshot(quote, momentum, resolution_price, self.clock()))

    def _publish_decision(self, decision: TradeDecision, market_id: Optional[str]):
        self.bus.publish(EventType.GATE_DECISION, market_id=market_id, trade=decision.trade,
                         reason=decision.reason, outcome=decision.outcome,
                         price=decision.price, size_usd=decision.size_usd,
                         strategy=decision.strategy, details=decision.details)

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def trades_last_hour(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        return sum(1 for t in self._trade_times if now - t <= HOUR)

    def get_stats(self, now: Optional[float] = None) -> dict:
        """Read-only snapshot for status lines and dashboards."""
        pnl = self.tracker.get_stats()
        return {
            "mode": self.config.mode.value,
            "trading_enabled": self.config.trading_enabled,
            "ticks": self.ticks,
            "pnl": pnl,
            "open_positions": pnl["open_positions"],
            "streak": {"count": pnl["current_streak"], "type": pnl["streak_type"]},
            "window": self.windows.snapshot(),
            "trades_last_hour": self.trades_last_hour(now),
            "last_buy_at": self.last_buy_at,
            "events": dict(self.bus.counts),
        }
