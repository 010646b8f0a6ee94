"""
Order Execution Adapter
=======================
Turns a TradeDecision into a limit order and folds a successful fill back
into the window and the position tracker.

Pricing:
    limit  = min(price + slippage, max_limit_price), rounded to tick
    shares = max(floor(usd / limit), min_shares)

A failed submit leaves the window and tracker untouched.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from .config import HedgeConfig, ExecutionParams
from .events import EventBus, EventType
from .gateway import OrderGateway, BUY_SIDE
from .models import UP, BuyRecord, MomentumHint, Position, Quote, TradeDecision, opposite
from .tracker import PositionTracker
from .window import Window, WindowManager

logger = logging.getLogger(__name__)


def round_to_tick(price: float, tick: float) -> float:
    return round(round(price / tick) * tick, 6)


def limit_price_for(price: float, params: ExecutionParams) -> float:
    """Quote price plus slippage, capped, on the tick grid."""
    limit = min(price + params.slippage, params.max_limit_price)
    return round_to_tick(limit, params.tick_size)


def shares_for(size_usd: float, limit_price: float, params: ExecutionParams) -> int:
    """Whole shares affordable at limit_price, never below the exchange minimum."""
    if limit_price <= 0:
        raise ValueError(f"limit price must be positive, got {limit_price}")
    shares = int(math.floor(size_usd / limit_price + 1e-9))
    return max(shares, params.min_shares)


@dataclass
class ExecutionResult:
    """Result of executing one decision"""
    success: bool
    reason: str = ""
    order_id: Optional[str] = None
    outcome: Optional[str] = None
    limit_price: Optional[float] = None
    shares: int = 0
    cost: float = 0.0
    position: Optional[Position] = None
    buy: Optional[BuyRecord] = None


class OrderExecutor:
    """Prices, submits and records buys for the active window."""

    def __init__(self, config: HedgeConfig, gateway: OrderGateway,
                 windows: WindowManager, tracker: PositionTracker,
                 bus: Optional[EventBus] = None):
        self.config = config
        self.gateway = gateway
        self.windows = windows
        self.tracker = tracker
        self.bus = bus

    def _publish(self, event_type: EventType, **data):
        if self.bus is not None:
            self.bus.publish(event_type, **data)

    def execute(self, decision: TradeDecision, quote: Quote, window: Window,
                momentum: Optional[MomentumHint] = None,
                now: Optional[float] = None) -> ExecutionResult:
        now = time.time() if now is None else now
        if not decision.trade:
            return ExecutionResult(False, reason=f"not a trade: {decision.reason}")

        outcome = decision.outcome
        token_id = quote.token_of(outcome)
        if not token_id:
            logger.warning(f"No token id for {outcome} in {quote.market_id}")
            self._publish(EventType.ORDER_FAILED, market_id=quote.market_id,
                          outcome=outcome, error="missing token id")
            return ExecutionResult(False, reason="missing token id", outcome=outcome)

        params = self.config.execution
        limit = limit_price_for(decision.price, params)
        shares = shares_for(decision.size_usd, limit, params)
        cost = round(shares * limit, 6)

        self._publish(EventType.ORDER_SUBMIT, market_id=quote.market_id, outcome=outcome,
                      strategy=decision.strategy, token_id=token_id,
                      price=limit, shares=shares, cost=cost)
        logger.info(
            f"{decision.strategy} BUY {outcome} {shares} @ {limit:.3f} "
            f"(${cost:.2f}) in {quote.market_id}"
        )

        result = self.gateway.submit(token_id, BUY_SIDE, limit, shares)
        if not result.success or not result.order_id:
            error = result.error or "no order id returned"
            logger.warning(f"Order failed for {outcome} in {quote.market_id}: {error}")
            self._publish(EventType.ORDER_FAILED, market_id=quote.market_id, outcome=outcome,
                          strategy=decision.strategy, error=error, attempts=result.attempts)
            return ExecutionResult(False, reason=f"order failed: {error}", outcome=outcome,
                                   limit_price=limit, shares=shares, cost=cost)

        buy = self.windows.record_buy(window, outcome, limit, shares, cost, result.order_id,
                                      now=now, strategy=decision.strategy or "")
        signal = momentum.signal if momentum is not None else None
        position = self.tracker.add_position(
            order_id=result.order_id,
            direction="LONG" if outcome == UP else "SHORT",
            outcome=outcome,
            entry_price=limit,
            size=shares,
            cost=cost,
            market_id=quote.market_id,
            market_end_time=quote.market_end_time,
            price_to_beat=quote.price_to_beat,
            opened_at=now,
            strategy=decision.strategy or "",
            opposite_price=quote.price_of(opposite(outcome)),
            momentum_pct=signal,
            overreaction=signal is not None and abs(signal) >= self.config.strategy.min_momentum_pct,
        )
        return ExecutionResult(True, reason="filled", order_id=result.order_id, outcome=outcome,
                               limit_price=limit, shares=shares, cost=cost,
                               position=position, buy=buy)
