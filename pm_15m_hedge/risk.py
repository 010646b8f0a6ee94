"""
Risk Governor
=============
Pause / stop decisions over the tracker's resolved history.

Rules:
- N consecutive losing markets -> pause for pause_minutes. The pause is
  lifted when it expires or as soon as a market resolves as a win.
- Cumulative P&L below pnl_floor, or win rate below min_win_rate after
  min_trades_for_win_rate positions -> halt. A halt is latched: it does
  not expire and is only cleared by an operator (clear_halt), which also
  re-bases the P&L / win-rate counters so the same history cannot
  re-trigger it.

Streaks are counted per market, not per position: a hedged window has one
winning and one losing leg, and its net P&L decides whether it counts as
a win or a loss.

The governor holds no state of its own; it reads and updates the
TrackerState it is handed.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import RiskLimits
from .events import EventBus, EventType

logger = logging.getLogger(__name__)


@dataclass
class RiskDecision:
    stop: bool
    reason: str = ""


def _market_results(recent_outcomes) -> List[dict]:
    """Collapse consecutive outcomes of the same market into one result (oldest first)."""
    results: List[dict] = []
    for entry in recent_outcomes:
        if results and results[-1]["market_id"] == entry["market_id"]:
            merged = results[-1]
            merged["pnl"] += entry.get("pnl") or 0.0
            if merged["winning_side"] is None:
                merged["winning_side"] = entry.get("winning_side")
            continue
        results.append({
            "market_id": entry["market_id"],
            "pnl": entry.get("pnl") or 0.0,
            "winning_side": entry.get("winning_side"),
        })
    return results


class RiskGovernor:
    """Stateless rules applied to a TrackerState."""

    def __init__(self, limits: RiskLimits, bus: Optional[EventBus] = None):
        self.limits = limits
        self.bus = bus

    def _publish(self, event_type: EventType, **data):
        if self.bus is not None:
            self.bus.publish(event_type, **data)

    # ------------------------------------------------------------------
    # Streaks
    # ------------------------------------------------------------------

    def loss_streak(self, state) -> int:
        """Consecutive losing markets, newest first."""
        streak = 0
        for result in reversed(_market_results(state.recent_outcomes)):
            if result["pnl"] < 0:
                streak += 1
            else:
                break
        return streak

    def side_streak(self, state) -> Tuple[Optional[str], int]:
        """Side that won the most recent markets and how many in a row."""
        side, count = None, 0
        for result in reversed(_market_results(state.recent_outcomes)):
            winner = result["winning_side"]
            if winner is None:
                break
            if side is None:
                side = winner
            elif winner != side:
                break
            count += 1
        return side, count

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def after_resolution(self, state, now: float) -> bool:
        """Update pause state after a batch of resolutions. True if it changed."""
        results = _market_results(state.recent_outcomes)
        if not results:
            return False
        last = results[-1]

        if last["pnl"] >= 0 and state.paused_at is not None:
            logger.info(f"Pause lifted by win in {last['market_id']}")
            state.paused_at = None
            state.pause_reason = None
            self._publish(EventType.RISK_RESUME, reason="win", market_id=last["market_id"])
            return True

        streak = self.loss_streak(state)
        if last["pnl"] < 0 and streak >= self.limits.loss_streak_pause:
            state.paused_at = now
            state.pause_reason = f"{streak} consecutive losses"
            logger.warning(f"RISK PAUSE: {state.pause_reason} ({self.limits.pause_minutes:.0f}m)")
            self._publish(EventType.RISK_PAUSE, reason=state.pause_reason,
                          pause_minutes=self.limits.pause_minutes)
            return True
        return False

    def counters(self, state) -> Tuple[float, int, int]:
        """P&L, wins and losses since the last halt was cleared."""
        base = state.halt_baseline or {}
        pnl = state.total_pnl - base.get("pnl", 0.0)
        wins = state.wins - base.get("wins", 0)
        losses = state.losses - base.get("losses", 0)
        return pnl, wins, losses

    def should_stop_trading(self, state, now: float) -> RiskDecision:
        if state.halted_reason:
            return RiskDecision(True, state.halted_reason)

        if state.paused_at is not None:
            if now - state.paused_at < self.limits.pause_minutes * 60:
                return RiskDecision(True, state.pause_reason or "paused")
            logger.info("Pause expired")
            state.paused_at = None
            state.pause_reason = None
            self._publish(EventType.RISK_RESUME, reason="expired")

        pnl, wins, losses = self.counters(state)
        trades = wins + losses
        reason = None
        if pnl < self.limits.pnl_floor:
            reason = f"P&L ${pnl:.2f} below floor ${self.limits.pnl_floor:.2f}"
        elif trades >= self.limits.min_trades_for_win_rate and wins / trades < self.limits.min_win_rate:
            reason = f"win rate {wins / trades:.0%} after {trades} trades"

        if reason:
            state.halted_reason = reason
            logger.error(f"RISK HALT: {reason} (clear with --clear-halt)")
            self._publish(EventType.RISK_HALT, reason=reason)
            return RiskDecision(True, reason)

        return RiskDecision(False)

    def clear_halt(self, state) -> bool:
        """Operator action: lift a halt and re-base the counters."""
        if not state.halted_reason and state.paused_at is None:
            return False
        logger.warning(f"Halt cleared by operator (was: {state.halted_reason or state.pause_reason})")
        state.halted_reason = None
        state.paused_at = None
        state.pause_reason = None
        state.halt_baseline = {"pnl": state.total_pnl, "wins": state.wins, "losses": state.losses}
        self._publish(EventType.RISK_CLEAR, baseline=state.halt_baseline)
        return True
