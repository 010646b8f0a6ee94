"""
Data model for the hedge engine.

Quotes and momentum hints are validated when they enter the engine;
everything downstream can assume well-typed values.
"""

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any


UP = "Up"
DOWN = "Down"
OUTCOMES = (UP, DOWN)


def opposite(outcome: str) -> str:
    if outcome == UP:
        return DOWN
    if outcome == DOWN:
        return UP
    raise ValueError(f"unknown outcome: {outcome!r}")


class InvalidPayload(ValueError):
    """Raised when an upstream payload cannot be turned into a model."""


def _opt_float(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidPayload(f"{key}: expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidPayload(f"{key}: expected a number, got {value!r}")
    if not math.isfinite(number):
        raise InvalidPayload(f"{key}: expected a finite number, got {value!r}")
    return number


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


class Strategy:
    """Buy tags emitted by the decision engine."""
    INITIAL = "INITIAL"
    HEDGE = "HEDGE"
    LATE_HEDGE = "LATE_HEDGE"
    REBALANCE = "REBALANCE"
    GROW = "GROW"

    # Buys that complete or balance a pair rather than add directional risk
    PAIRING = frozenset({HEDGE, LATE_HEDGE, REBALANCE})


@dataclass(frozen=True)
class Quote:
    """Paired Up/Down quote for one 15-minute market."""
    market_id: str
    up_price: Optional[float]
    down_price: Optional[float]
    market_end_time: Optional[float]
    price_to_beat: Optional[float] = None
    up_token_id: Optional[str] = None
    down_token_id: Optional[str] = None
    market_start_time: Optional[float] = None

    _FIELDS = (
        "market_id", "up_price", "down_price", "market_end_time", "price_to_beat",
        "up_token_id", "down_token_id", "market_start_time",
    )

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Quote":
        """Build from a feed payload. Raises InvalidPayload."""
        if not isinstance(data, dict):
            raise InvalidPayload(f"quote payload must be a dict, got {type(data).__name__}")
        unknown = set(data) - set(cls._FIELDS)
        if unknown:
            raise InvalidPayload(f"unknown quote fields: {sorted(unknown)}")
        market_id = _opt_str(data, "market_id")
        if not market_id:
            raise InvalidPayload("market_id is required")
        return cls(
            market_id=market_id,
            up_price=_opt_float(data, "up_price"),
            down_price=_opt_float(data, "down_price"),
            market_end_time=_opt_float(data, "market_end_time"),
            price_to_beat=_opt_float(data, "price_to_beat"),
            up_token_id=_opt_str(data, "up_token_id"),
            down_token_id=_opt_str(data, "down_token_id"),
            market_start_time=_opt_float(data, "market_start_time"),
        )

    @property
    def is_valid(self) -> bool:
        """Both prices finite and positive, end time finite."""
        return (
            _finite(self.up_price) and self.up_price > 0
            and _finite(self.down_price) and self.down_price > 0
            and _finite(self.market_end_time)
        )

    @property
    def sum_prices(self) -> Optional[float]:
        if self.up_price is None or self.down_price is None:
            return None
        return self.up_price + self.down_price

    def price_of(self, outcome: str) -> Optional[float]:
        return self.up_price if outcome == UP else self.down_price

    def token_of(self, outcome: str) -> Optional[str]:
        return self.up_token_id if outcome == UP else self.down_token_id

    def with_price_to_beat(self, price_to_beat: Optional[float]) -> "Quote":
        data = {k: getattr(self, k) for k in self._FIELDS}
        data["price_to_beat"] = price_to_beat
        return Quote(**data)


@dataclass(frozen=True)
class MomentumHint:
    """Recent change of the underlying in percent (+0.30 = +0.30%)."""
    delta_1m: Optional[float] = None
    delta_3m: Optional[float] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "MomentumHint":
        if not isinstance(data, dict):
            raise InvalidPayload(f"momentum payload must be a dict, got {type(data).__name__}")
        unknown = set(data) - {"delta_1m", "delta_3m"}
        if unknown:
            raise InvalidPayload(f"unknown momentum fields: {sorted(unknown)}")
        return cls(delta_1m=_opt_float(data, "delta_1m"), delta_3m=_opt_float(data, "delta_3m"))

    @property
    def signal(self) -> Optional[float]:
        """3m change when available, else 1m."""
        return self.delta_3m if self.delta_3m is not None else self.delta_1m


@dataclass(frozen=True)
class BuyRecord:
    """One filled buy inside a window."""
    outcome: str
    price: float
    size: float
    cost: float
    order_id: str
    timestamp: float
    strategy: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BuyRecord":
        return cls(
            outcome=data["outcome"],
            price=float(data["price"]),
            size=float(data["size"]),
            cost=float(data["cost"]),
            order_id=str(data["order_id"]),
            timestamp=float(data["timestamp"]),
            strategy=data.get("strategy", ""),
        )


class PositionStatus(Enum):
    OPEN = "OPEN"
    RESOLVED_WIN = "RESOLVED_WIN"
    RESOLVED_LOSS = "RESOLVED_LOSS"
    RESOLVED_STALE = "RESOLVED_STALE"


@dataclass
class Position:
    """A single filled order held until market resolution."""
    order_id: str
    direction: str          # LONG (Up) or SHORT (Down)
    outcome: str
    entry_price: float
    size: float
    cost: float
    market_id: str
    market_end_time: float
    price_to_beat: Optional[float] = None
    opened_at: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    pnl: Optional[float] = None
    return_amount: Optional[float] = None
    resolved_at: Optional[float] = None
    resolved_price: Optional[float] = None

    # Journal context
    strategy: str = ""
    opposite_price: Optional[float] = None
    momentum_pct: Optional[float] = None
    overreaction: bool = False
    resolution_note: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def won(self) -> bool:
        return self.status == PositionStatus.RESOLVED_WIN

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        data = dict(data)
        data["status"] = PositionStatus(data.get("status", "OPEN"))
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TradeDecision:
    """Outcome of one pass through the gate sequence."""
    trade: bool
    reason: str
    outcome: Optional[str] = None
    price: Optional[float] = None
    size_usd: Optional[float] = None
    strategy: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def reject(cls, reason: str, **details) -> "TradeDecision":
        return cls(trade=False, reason=reason, details=details)

    @property
    def is_hedge(self) -> bool:
        return self.strategy in Strategy.PAIRING

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RiskState:
    """Risk inputs the decision engine reads (built fresh every tick)."""
    open_exposure: float = 0.0
    last_buy_at: Optional[float] = None
    loss_streak: int = 0
    side_streak_outcome: Optional[str] = None
    side_streak_len: int = 0
    stop: bool = False
    stop_reason: str = ""
