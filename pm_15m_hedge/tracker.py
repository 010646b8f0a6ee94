"""
Position Tracker
================
Lifecycle of every filled order: OPEN -> RESOLVED_WIN / RESOLVED_LOSS /
RESOLVED_STALE, with cumulative P&L, streaks and the risk governor.

Resolution rule (15m Up/Down):
    Up wins   iff resolution price >  price to beat
    Down wins iff resolution price <= price to beat
Missing data resolves as a loss (note NO_PRICE), logged separately from
ordinary losses.

Resolution is the only place aggregate P&L changes. State is persisted
after every mutation; a failed write is logged and trading continues.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import HedgeConfig
from .events import EventBus, EventType
from .models import UP, Position, PositionStatus, opposite
from .risk import RiskDecision, RiskGovernor
from .store import StateStore, TradeJournal

logger = logging.getLogger(__name__)

# Closed positions kept in the snapshot (totals are tracked separately)
MAX_CLOSED_HISTORY = 1000

NO_PRICE = "NO_PRICE"


@dataclass
class TrackerState:
    """Everything the tracker persists."""
    open_positions: List[Position] = field(default_factory=list)
    closed_positions: List[Position] = field(default_factory=list)
    total_pnl: float = 0.0
    wins: int = 0
    losses: int = 0
    total_cost: float = 0.0
    total_return: float = 0.0
    recent_outcomes: deque = field(default_factory=lambda: deque(maxlen=20))
    paused_at: Optional[float] = None
    pause_reason: Optional[str] = None
    halted_reason: Optional[str] = None
    halt_baseline: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "open_positions": [p.to_dict() for p in self.open_positions],
            "closed_positions": [p.to_dict() for p in self.closed_positions[-MAX_CLOSED_HISTORY:]],
            "total_pnl": self.total_pnl,
            "wins": self.wins,
            "losses": self.losses,
            "total_cost": self.total_cost,
            "total_return": self.total_return,
            "recent_outcomes": list(self.recent_outcomes),
            "paused_at": self.paused_at,
            "pause_reason": self.pause_reason,
            "halted_reason": self.halted_reason,
            "halt_baseline": self.halt_baseline,
            "saved_at": time.time(),
        }

    @classmethod
    def from_dict(cls, data: dict, recent_size: int = 20) -> "TrackerState":
        return cls(
            open_positions=[Position.from_dict(p) for p in data.get("open_positions", [])],
            closed_positions=[Position.from_dict(p) for p in data.get("closed_positions", [])],
            total_pnl=float(data.get("total_pnl", 0.0)),
            wins=int(data.get("wins", 0)),
            losses=int(data.get("losses", 0)),
            total_cost=float(data.get("total_cost", 0.0)),
            total_return=float(data.get("total_return", 0.0)),
            recent_outcomes=deque(data.get("recent_outcomes", []), maxlen=recent_size),
            paused_at=data.get("paused_at"),
            pause_reason=data.get("pause_reason"),
            halted_reason=data.get("halted_reason"),
            halt_baseline=data.get("halt_baseline"),
        )


class PositionTracker:
    """Owns positions, P&L counters and the risk governor."""

    def __init__(self, config: HedgeConfig, store: Optional[StateStore] = None,
                 bus: Optional[EventBus] = None, journal: Optional[TradeJournal] = None):
        self.config = config
        self.limits = config.risk
        self.store = store
        self.bus = bus
        self.journal = journal
        self.governor = RiskGovernor(config.risk, bus)
        self.state = TrackerState(recent_outcomes=deque(maxlen=config.risk.recent_outcomes_size))
        self._lock = threading.RLock()
        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self):
        if self.store is None:
            return
        data = self.store.load_tracker()
        if not data:
            return
        try:
            self.state = TrackerState.from_dict(data, self.limits.recent_outcomes_size)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Ignoring unreadable tracker state: {e}")
            return
        logger.info(
            f"Restored tracker: {len(self.state.open_positions)} open, "
            f"{self.state.wins}W/{self.state.losses}L, P&L ${self.state.total_pnl:.2f}"
        )

    def save(self) -> bool:
        if self.store is None:
            return True
        ok = self.store.save_tracker(self.state.to_dict())
        if not ok and self.bus is not None:
            self.bus.publish(EventType.PERSISTENCE_ERROR, target="tracker_state")
        return ok

    def _publish(self, event_type: EventType, **data):
        if self.bus is not None:
            self.bus.publish(event_type, **data)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def add_position(self, order_id: str, direction: str, outcome: str, entry_price: float,
                     size: float, cost: float, market_id: str, market_end_time: float,
                     price_to_beat: Optional[float] = None, opened_at: Optional[float] = None,
                     **context) -> Position:
        with self._lock:
            position = Position(
                order_id=order_id,
                direction=direction,
                outcome=outcome,
                entry_price=entry_price,
                size=size,
                cost=cost,
                market_id=market_id,
                market_end_time=market_end_time,
                price_to_beat=price_to_beat,
                opened_at=time.time() if opened_at is None else opened_at,
                **context,
            )
            self.state.open_positions.append(position)
            self.state.total_cost += cost
            logger.info(
                f"Position opened: {direction} {outcome} | {size:.0f} @ ${entry_price:.3f} "
                f"| cost ${cost:.2f} | {market_id}"
            )
            self._publish(EventType.POSITION_OPEN, order_id=order_id, outcome=outcome,
                          market_id=market_id, size=size, cost=cost, strategy=position.strategy)
            self.save()
            return position

    def _close(self, position: Position, status: PositionStatus, now: float,
               resolved_price: Optional[float], note: Optional[str] = None):
        won = status == PositionStatus.RESOLVED_WIN
        position.status = status
        position.return_amount = position.size * 1.0 if won else 0.0
        position.pnl = position.return_amount - position.cost
        position.resolved_at = now
        position.resolved_price = resolved_price
        position.resolution_note = note

        s = self.state
        s.total_pnl += position.pnl
        s.total_return += position.return_amount
        if won:
            s.wins += 1
        else:
            s.losses += 1

        if status == PositionStatus.RESOLVED_STALE or note == NO_PRICE:
            winning_side = None
        else:
            winning_side = position.outcome if won else opposite(position.outcome)
        s.recent_outcomes.append({
            "market_id": position.market_id,
            "outcome": position.outcome,
            "won": won,
            "winning_side": winning_side,
            "pnl": position.pnl,
            "resolved_at": now,
        })
        s.closed_positions.append(position)
        if len(s.closed_positions) > MAX_CLOSED_HISTORY:
            del s.closed_positions[:-MAX_CLOSED_HISTORY]

    def check_resolutions(self, current_price: Optional[float],
                          price_to_beat: Optional[float] = None,
                          now: Optional[float] = None,
                          market_id: Optional[str] = None) -> List[Position]:
        """
        Resolve every open position whose market has ended.

        price_to_beat is a fallback for positions recorded without one; when
        market_id is given the fallback only applies to that market.
        Already-resolved positions are never touched again.
        """
        now = time.time() if now is None else now
        resolved = []
        with self._lock:
            for position in list(self.state.open_positions):
                if not position.is_open or now < position.market_end_time:
                    continue
                ptb = position.price_to_beat
                if ptb is None and (market_id is None or market_id == position.market_id):
                    ptb = price_to_beat

                if ptb is None or current_price is None:
                    self._close(position, PositionStatus.RESOLVED_LOSS, now, current_price, NO_PRICE)
                    logger.warning(
                        f"Resolution ambiguous for {position.outcome} in {position.market_id} "
                        f"(price={current_price}, ptb={ptb}); counted as loss"
                    )
                else:
                    went_up = current_price > ptb
                    won = went_up if position.outcome == UP else not went_up
                    status = PositionStatus.RESOLVED_WIN if won else PositionStatus.RESOLVED_LOSS
                    self._close(position, status, now, current_price)
                    logger.info(
                        f"{'WIN' if won else 'LOSS'}: {position.direction} {position.outcome} "
                        f"| P&L ${position.pnl:+.2f} | total ${self.state.total_pnl:+.2f}"
                    )

                self.state.open_positions.remove(position)
                resolved.append(position)
                self._publish(EventType.RESOLUTION, order_id=position.order_id,
                              market_id=position.market_id, outcome=position.outcome,
                              status=position.status.value, pnl=position.pnl,
                              resolved_price=current_price, price_to_beat=ptb,
                              note=position.resolution_note)

            if resolved:
                self.governor.after_resolution(self.state, now)
                for position in resolved:
                    self._journal(position)
                self.save()
        return resolved

    def cleanup_stale_positions(self, now: Optional[float] = None) -> List[Position]:
        """Write off positions still open well past their market end."""
        now = time.time() if now is None else now
        stale = []
        with self._lock:
            for position in list(self.state.open_positions):
                if now - position.market_end_time <= self.limits.stale_after_seconds:
                    continue
                self._close(position, PositionStatus.RESOLVED_STALE, now, None)
                self.state.open_positions.remove(position)
                stale.append(position)
                logger.warning(
                    f"Stale position written off: {position.outcome} in {position.market_id} "
                    f"| P&L ${position.pnl:.2f}"
                )
                self._publish(EventType.STALE_RESOLUTION, order_id=position.order_id,
                              market_id=position.market_id, pnl=position.pnl)

            if stale:
                self.governor.after_resolution(self.state, now)
                for position in stale:
                    self._journal(position)
                self.save()
        return stale

    def check_stop_loss(self, up_price: Optional[float], down_price: Optional[float],
                        market_id: Optional[str] = None) -> List[dict]:
        """Advisory: open positions down stop_loss_pct or more at current prices."""
        alerts = []
        with self._lock:
            for position in self.state.open_positions:
                if market_id is not None and position.market_id != market_id:
                    continue
                price = up_price if position.outcome == UP else down_price
                if not price or price <= 0 or position.cost <= 0:
                    continue
                value = price * position.size
                loss_pct = (value - position.cost) / position.cost
                if loss_pct <= -self.limits.stop_loss_pct:
                    alerts.append({
                        "position": position,
                        "current_price": price,
                        "loss_pct": loss_pct,
                        "unrealized_pnl": value - position.cost,
                    })
        for alert in alerts:
            position = alert["position"]
            logger.info(
                f"Stop-loss advisory: {position.outcome} {position.entry_price:.3f} -> "
                f"{alert['current_price']:.3f} ({alert['loss_pct']:.0%})"
            )
            self._publish(EventType.STOP_LOSS_ALERT, order_id=position.order_id,
                          market_id=position.market_id, outcome=position.outcome,
                          current_price=alert["current_price"], loss_pct=alert["loss_pct"])
        return alerts

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def should_stop_trading(self, now: Optional[float] = None) -> RiskDecision:
        now = time.time() if now is None else now
        with self._lock:
            before = (self.state.paused_at, self.state.halted_reason)
            decision = self.governor.should_stop_trading(self.state, now)
            if (self.state.paused_at, self.state.halted_reason) != before:
                self.save()
            return decision

    def clear_halt(self) -> bool:
        with self._lock:
            changed = self.governor.clear_halt(self.state)
            if changed:
                self.save()
            return changed

    @property
    def open_exposure(self) -> float:
        return sum(p.cost for p in self.state.open_positions)

    def loss_streak(self) -> int:
        return self.governor.loss_streak(self.state)

    def side_streak(self) -> Tuple[Optional[str], int]:
        return self.governor.side_streak(self.state)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _streak(self) -> Tuple[int, Optional[str]]:
        streak, kind = 0, None
        for position in reversed(self.state.closed_positions):
            is_win = position.won
            if kind is None:
                kind = "WIN" if is_win else "LOSS"
                streak = 1
            elif (kind == "WIN") == is_win:
                streak += 1
            else:
                break
        return streak, kind

    def _journal(self, position: Position):
        if self.journal is None:
            return
        streak, kind = self._streak()
        combined = None
        if position.opposite_price is not None:
            combined = round(position.entry_price + position.opposite_price, 4)
        move_pct = None
        if position.resolved_price is not None and position.price_to_beat:
            move_pct = round((position.resolved_price - position.price_to_beat) / position.price_to_beat * 100, 4)
        ok = self.journal.append({
            "timestamp": position.resolved_at,
            "market_id": position.market_id,
            "direction": position.direction,
            "outcome": position.outcome,
            "result": "WIN" if position.won else "LOSS",
            "strategy": position.strategy,
            "entry_price": position.entry_price,
            "opposite_price": position.opposite_price,
            "combined_price": combined,
            "cost": round(position.cost, 4),
            "pnl": round(position.pnl, 4),
            "price_to_beat": position.price_to_beat,
            "resolved_price": position.resolved_price,
            "move_pct": move_pct,
            "overreaction": position.overreaction,
            "streak": f"{streak}{kind[0]}" if kind else "",
            "order_id": position.order_id,
            "note": position.resolution_note or position.status.value,
        })
        if not ok:
            self._publish(EventType.PERSISTENCE_ERROR, target="trades_csv")

    def get_stats(self) -> Dict:
        """Read-only performance summary."""
        with self._lock:
            s = self.state
            total_trades = s.wins + s.losses
            recent = s.closed_positions[-10:]
            recent_wins = sum(1 for p in recent if p.won)
            streak, kind = self._streak()
            side, side_len = self.side_streak()
            return {
                "open_positions": len(s.open_positions),
                "open_exposure": round(self.open_exposure, 4),
                "total_trades": total_trades,
                "wins": s.wins,
                "losses": s.losses,
                "win_rate": s.wins / total_trades * 100 if total_trades else 0.0,
                "total_pnl": s.total_pnl,
                "total_cost": s.total_cost,
                "total_return": s.total_return,
                "avg_pnl": s.total_pnl / total_trades if total_trades else 0.0,
                "roi": s.total_pnl / s.total_cost * 100 if s.total_cost > 0 else 0.0,
                "recent_win_rate": recent_wins / len(recent) * 100 if recent else 0.0,
                "recent_pnl": sum(p.pnl or 0.0 for p in recent),
                "current_streak": streak,
                "streak_type": kind,
                "loss_streak_markets": self.loss_streak(),
                "side_streak": {"outcome": side, "length": side_len},
                "paused_at": s.paused_at,
                "pause_reason": s.pause_reason,
                "halted_reason": s.halted_reason,
            }
