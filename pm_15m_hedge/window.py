"""
Window Manager
==============
Per-market accumulation state for the hedged pair.

One window per 15-minute market. When the market id changes the old
window is archived and a fresh one opened; archived windows are never
mutated again.

Key math:
    pair_cost = cost_up/qty_up + cost_down/qty_down
    locked    = min(qty_up, qty_down) * 1.0 > cost_up + cost_down

A locked window pays out more than it cost whichever side wins.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import List, Optional

from .models import UP, DOWN, BuyRecord

logger = logging.getLogger(__name__)

# Payout per winning share
PAYOUT = 1.0


def compute_pair_cost(qty_up: float, cost_up: float,
                      qty_down: float, cost_down: float) -> Optional[float]:
    """Average Up price + average Down price, None unless both sides held."""
    if qty_up <= 0 or qty_down <= 0:
        return None
    return cost_up / qty_up + cost_down / qty_down


def compute_locked(qty_up: float, cost_up: float,
                   qty_down: float, cost_down: float) -> bool:
    return min(qty_up, qty_down) * PAYOUT > cost_up + cost_down


@dataclass
class Window:
    """Accumulation state for one market."""
    market_id: str
    qty_up: float = 0.0
    cost_up: float = 0.0
    qty_down: float = 0.0
    cost_down: float = 0.0
    buys: List[BuyRecord] = field(default_factory=list)
    locked: bool = False
    start_pair_cost: Optional[float] = None
    created_at: float = 0.0
    archived: bool = False

    @property
    def total_cost(self) -> float:
        return self.cost_up + self.cost_down

    @property
    def min_qty(self) -> float:
        return min(self.qty_up, self.qty_down)

    @property
    def guaranteed_profit(self) -> float:
        """Payout of the weaker side minus everything spent."""
        return self.min_qty * PAYOUT - self.total_cost

    @property
    def last_buy_at(self) -> Optional[float]:
        return self.buys[-1].timestamp if self.buys else None

    def qty_of(self, outcome: str) -> float:
        return self.qty_up if outcome == UP else self.qty_down

    def cost_of(self, outcome: str) -> float:
        return self.cost_up if outcome == UP else self.cost_down

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "qty_up": self.qty_up,
            "cost_up": self.cost_up,
            "qty_down": self.qty_down,
            "cost_down": self.cost_down,
            "buys": [b.to_dict() for b in self.buys],
            "locked": self.locked,
            "start_pair_cost": self.start_pair_cost,
            "created_at": self.created_at,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Window":
        return cls(
            market_id=data["market_id"],
            qty_up=float(data.get("qty_up", 0.0)),
            cost_up=float(data.get("cost_up", 0.0)),
            qty_down=float(data.get("qty_down", 0.0)),
            cost_down=float(data.get("cost_down", 0.0)),
            buys=[BuyRecord.from_dict(b) for b in data.get("buys", [])],
            locked=bool(data.get("locked", False)),
            start_pair_cost=data.get("start_pair_cost"),
            created_at=float(data.get("created_at", 0.0)),
            archived=bool(data.get("archived", False)),
        )


def pair_cost(window: Window) -> Optional[float]:
    return compute_pair_cost(window.qty_up, window.cost_up, window.qty_down, window.cost_down)


def simulate_pair_cost(window: Window, outcome: str, size: float, cost: float) -> Optional[float]:
    """Pair cost as if a buy of `size` shares for `cost` were applied."""
    qty_up, cost_up = window.qty_up, window.cost_up
    qty_down, cost_down = window.qty_down, window.cost_down
    if outcome == UP:
        qty_up += size
        cost_up += cost
    else:
        qty_down += size
        cost_down += cost
    return compute_pair_cost(qty_up, cost_up, qty_down, cost_down)


class WindowManager:
    """Owns the active window and a bounded archive."""

    def __init__(self, history_size: int = 96):
        self.active: Optional[Window] = None
        self.history: deque = deque(maxlen=history_size)

    def get_or_create_window(self, market_id: str, now: Optional[float] = None,
                             start_pair_cost: Optional[float] = None) -> Window:
        """Return the window for market_id, rolling over if the market changed."""
        if self.active is not None and self.active.market_id == market_id:
            return self.active

        if self.active is not None:
            self.archive()

        self.active = Window(
            market_id=market_id,
            start_pair_cost=start_pair_cost,
            created_at=time.time() if now is None else now,
        )
        logger.info(f"Opened window {market_id} (start pair cost {start_pair_cost})")
        return self.active

    def archive(self) -> Optional[Window]:
        window = self.active
        if window is None:
            return None
        window.archived = True
        self.history.append(window)
        self.active = None
        logger.info(
            f"Archived window {window.market_id}: up {window.qty_up:.0f}@${window.cost_up:.2f} "
            f"down {window.qty_down:.0f}@${window.cost_down:.2f} locked={window.locked}"
        )
        return window

    def record_buy(self, window: Window, outcome: str, price: float, size: float,
                   cost: float, order_id: str, now: Optional[float] = None,
                   strategy: str = "") -> BuyRecord:
        """Fold a filled buy into the window and recompute the lock."""
        if window.archived:
            raise ValueError(f"window {window.market_id} is archived")
        if outcome not in (UP, DOWN):
            raise ValueError(f"unknown outcome: {outcome!r}")
        if size <= 0 or cost <= 0:
            raise ValueError(f"buy size and cost must be positive (size={size}, cost={cost})")

        record = BuyRecord(
            outcome=outcome,
            price=price,
            size=size,
            cost=cost,
            order_id=order_id,
            timestamp=time.time() if now is None else now,
            strategy=strategy,
        )
        window.buys.append(record)
        if outcome == UP:
            window.qty_up += size
            window.cost_up += cost
        else:
            window.qty_down += size
            window.cost_down += cost

        was_locked = window.locked
        window.locked = compute_locked(window.qty_up, window.cost_up, window.qty_down, window.cost_down)
        if window.locked and not was_locked:
            logger.info(
                f"Window {window.market_id} profit locked: "
                f"min qty {window.min_qty:.0f} > cost ${window.total_cost:.2f}"
            )
        return record

    def snapshot(self) -> Optional[dict]:
        """Read-only view of the active window."""
        window = self.active
        if window is None:
            return None
        return {
            "market_id": window.market_id,
            "qty_up": window.qty_up,
            "cost_up": round(window.cost_up, 4),
            "qty_down": window.qty_down,
            "cost_down": round(window.cost_down, 4),
            "total_cost": round(window.total_cost, 4),
            "pair_cost": pair_cost(window),
            "locked": window.locked,
            "guaranteed_profit": round(window.guaranteed_profit, 4),
            "buys": len(window.buys),
        }

    def to_dict(self) -> dict:
        return {"active": self.active.to_dict() if self.active else None}

    def load_dict(self, data: Optional[dict]):
        if not data or not data.get("active"):
            return
        self.active = Window.from_dict(data["active"])
        logger.info(f"Restored window {self.active.market_id} ({len(self.active.buys)} buys)")
