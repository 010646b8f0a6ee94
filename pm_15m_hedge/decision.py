"""
Trade Decision Engine
=====================
Pure gate sequence: (quote, window, momentum, risk, config, now) -> TradeDecision.

Gates run in a fixed order and the first failing gate names the reason.
Nothing here mutates state or does I/O, so the same inputs always give
the same decision.

Branches once the common gates pass:
    nothing held   -> INITIAL on the cheap side momentum agrees with
    one side held  -> HEDGE (cheap) or LATE_HEDGE (late, pricier)
    both held      -> REBALANCE the short side, or GROW when balanced
"""

import logging
from collections import namedtuple
from typing import Optional

from .config import HedgeConfig, StrategyParams
from .executor import limit_price_for, shares_for
from .models import UP, DOWN, MomentumHint, Quote, RiskState, Strategy, TradeDecision, opposite
from .window import Window, pair_cost, simulate_pair_cost

logger = logging.getLogger(__name__)

_Candidate = namedtuple("_Candidate", ["outcome", "price", "size_usd", "strategy"])

# Float slack for "would not increase" comparisons
EPS = 1e-9


def elapsed_minutes(market_end_time: float, now: float, cycle_minutes: float = 15.0) -> float:
    """Minutes since the market opened, from its end time."""
    return cycle_minutes - (market_end_time - now) / 60.0


def cheap_threshold(elapsed: float, params: StrategyParams) -> float:
    """Max price that counts as cheap; loosens as the window ages."""
    first, second = params.tier_breakpoints
    early, mid, late = params.tier_thresholds
    if elapsed < first:
        return early
    if elapsed < second:
        return mid
    return late


def _entry(quote: Quote, momentum: Optional[MomentumHint], risk: RiskState,
           params: StrategyParams, elapsed: float, threshold: float):
    if elapsed > params.new_position_cutoff_minutes:
        return TradeDecision.reject("too late for new position", elapsed=elapsed)
    if risk.stop:
        return TradeDecision.reject("risk stop", stop_reason=risk.stop_reason)

    cheap = [o for o in (UP, DOWN) if quote.price_of(o) <= threshold]
    if not cheap:
        return TradeDecision.reject("no cheap side", threshold=threshold,
                                    up=quote.up_price, down=quote.down_price)

    hedgeable = [o for o in cheap if quote.price_of(opposite(o)) <= params.hedge_ceiling]
    if not hedgeable:
        return TradeDecision.reject("can't hedge", hedge_ceiling=params.hedge_ceiling,
                                    up=quote.up_price, down=quote.down_price)

    signal = momentum.signal if momentum is not None else None
    if signal is None:
        return TradeDecision.reject("no momentum")
    if abs(signal) < params.min_momentum_pct:
        return TradeDecision.reject("weak momentum", momentum_pct=signal)

    direction = UP if signal > 0 else DOWN
    if direction not in hedgeable:
        return TradeDecision.reject("momentum conflict", momentum_pct=signal, cheap=hedgeable)

    return _Candidate(direction, quote.price_of(direction), params.order_usd, Strategy.INITIAL)


def _hedge(quote: Quote, window: Window, params: StrategyParams,
           execution, elapsed: float, threshold: float):
    held = UP if window.qty_up > 0 else DOWN
    missing = opposite(held)
    price = quote.price_of(missing)

    if price <= threshold:
        strategy = Strategy.HEDGE
    elif elapsed >= params.late_hedge_minutes and price <= params.late_hedge_ceiling:
        strategy = Strategy.LATE_HEDGE
    else:
        return TradeDecision.reject("waiting for hedge", outcome=missing, price=price,
                                    threshold=threshold)

    # Match the held quantity
    size_usd = window.qty_of(held) * limit_price_for(price, execution)
    return _Candidate(missing, price, size_usd, strategy)


def _both_held(quote: Quote, window: Window, risk: RiskState, params: StrategyParams,
               execution, threshold: float):
    diff = window.qty_up - window.qty_down
    if abs(diff) >= params.balance_tolerance:
        short = DOWN if diff > 0 else UP
        price = quote.price_of(short)
        if price > threshold:
            return TradeDecision.reject("rebalance too expensive", outcome=short, price=price,
                                        threshold=threshold)
        size_usd = abs(diff) * limit_price_for(price, execution)
        return _Candidate(short, price, size_usd, Strategy.REBALANCE)

    if quote.up_price <= threshold and quote.down_price <= threshold:
        if risk.stop:
            return TradeDecision.reject("risk stop", stop_reason=risk.stop_reason)
        outcome = UP if quote.up_price <= quote.down_price else DOWN
        return _Candidate(outcome, quote.price_of(outcome), params.order_usd, Strategy.GROW)

    return TradeDecision.reject("no growth", threshold=threshold)


def evaluate(quote: Optional[Quote], window: Window, momentum: Optional[MomentumHint],
             risk: RiskState, config: HedgeConfig, now: float) -> TradeDecision:
    """Run the gate sequence and return the first rejection or a buy."""
    params = config.strategy
    execution = config.execution

    # 1. enabled and valid input
    if not config.trading_enabled:
        return TradeDecision.reject("trading disabled")
    if quote is None or not quote.is_valid:
        return TradeDecision.reject("invalid quote")
    if quote.price_to_beat is None:
        return TradeDecision.reject("no price to beat")

    # 2. circuit breaker
    if risk.open_exposure >= config.risk.max_open_exposure:
        return TradeDecision.reject("circuit breaker", open_exposure=risk.open_exposure)

    # 3. timing
    elapsed = elapsed_minutes(quote.market_end_time, now, params.cycle_minutes)
    if elapsed >= params.cycle_minutes:
        return TradeDecision.reject("market closed", elapsed=elapsed)
    if elapsed < params.min_elapsed_minutes:
        return TradeDecision.reject("too early", elapsed=elapsed)

    # 4. cooldown
    if risk.last_buy_at is not None and now - risk.last_buy_at < params.cooldown_seconds:
        return TradeDecision.reject("cooldown", since_last_buy=now - risk.last_buy_at)

    # 5-6. window state
    if window.locked:
        return TradeDecision.reject("profit locked", guaranteed=window.guaranteed_profit)
    remaining = params.max_window_spend - window.total_cost
    if remaining <= 0:
        return TradeDecision.reject("window spend cap", spent=window.total_cost)

    # 7. cheap threshold for this minute
    threshold = cheap_threshold(elapsed, params)

    # 8. fresh window needs a sane book
    holds_up = window.qty_up > 0
    holds_down = window.qty_down > 0
    if not holds_up and not holds_down and quote.sum_prices > params.max_entry_sum:
        return TradeDecision.reject("no edge", sum_prices=quote.sum_prices)

    # 9. branch on inventory
    if not holds_up and not holds_down:
        candidate = _entry(quote, momentum, risk, params, elapsed, threshold)
    elif holds_up != holds_down:
        candidate = _hedge(quote, window, params, execution, elapsed, threshold)
    else:
        candidate = _both_held(quote, window, risk, params, execution, threshold)
    if isinstance(candidate, TradeDecision):
        return candidate

    size_usd = min(candidate.size_usd, remaining)
    if candidate.strategy not in Strategy.PAIRING and risk.loss_streak >= params.loss_streak_discount_after:
        size_usd *= params.loss_streak_size_factor

    # 10. pair cost at the price and size the executor will actually use
    limit = limit_price_for(candidate.price, execution)
    shares = shares_for(size_usd, limit, execution)
    if shares * limit > remaining + EPS:
        # min_shares floor would overspend the window
        return TradeDecision.reject("min order exceeds window budget",
                                    remaining=remaining, min_cost=shares * limit)
    simulated = simulate_pair_cost(window, candidate.outcome, shares, shares * limit)
    current = pair_cost(window)
    if simulated is not None:
        if candidate.strategy == Strategy.LATE_HEDGE:
            if simulated >= 1.0:
                return TradeDecision.reject("pair cost too high", simulated=simulated)
        else:
            if simulated >= params.max_pair_cost:
                return TradeDecision.reject("pair cost too high", simulated=simulated)
            if current is not None and simulated > current + EPS:
                return TradeDecision.reject("pair cost would increase",
                                            simulated=simulated, current=current)

    # 11. streak bias
    if (candidate.strategy not in Strategy.PAIRING
            and risk.side_streak_len >= params.streak_block_count
            and candidate.outcome == risk.side_streak_outcome
            and candidate.price > params.streak_price_ceiling):
        return TradeDecision.reject("streak bias block", outcome=candidate.outcome,
                                    streak=risk.side_streak_len)

    # 12. emit
    return TradeDecision(
        trade=True,
        reason=f"{candidate.strategy} {candidate.outcome}",
        outcome=candidate.outcome,
        price=candidate.price,
        size_usd=size_usd,
        strategy=candidate.strategy,
        details={
            "elapsed": round(elapsed, 3),
            "threshold": threshold,
            "limit_price": limit,
            "shares": shares,
            "pair_cost": current,
            "simulated_pair_cost": simulated,
        },
    )
