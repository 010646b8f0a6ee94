"""
Market Data Feeds
=================
Quote, momentum and resolution-price sources for the 15m BTC market.

- PolymarketQuoteFeed: gamma slug btc-updown-15m-<start> -> tokens, CLOB /price -> asks
- BinanceMomentumFeed: 1m klines -> spot price and 1m / 3m change in percent
- ChainlinkPriceFeed: BTC/USD aggregator on Polygon (what the market resolves on)
- PriceToBeatLatch: first oracle price seen at/after market start, once per market

Each source runs in its own BackgroundPoller thread and publishes into a
LatestValue cell; the engine only ever reads the latest values, so a slow
feed never blocks a tick.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from web3 import Web3

from .config import ApiConfig
from .models import InvalidPayload, MomentumHint, Quote

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 900

AGGREGATOR_ABI = [
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class LatestValue:
    """Lock-protected cell holding the most recent value from one producer."""

    def __init__(self, value: Any = None):
        self._lock = threading.Lock()
        self._value = value
        self.updated_at: Optional[float] = None

    def set(self, value: Any, now: Optional[float] = None):
        with self._lock:
            self._value = value
            self.updated_at = time.time() if now is None else now

    def get(self) -> Any:
        with self._lock:
            return self._value

    def age(self, now: Optional[float] = None) -> Optional[float]:
        with self._lock:
            if self.updated_at is None:
                return None
            return (time.time() if now is None else now) - self.updated_at


def current_window(now: Optional[float] = None, prefix: str = "btc-updown-15m") -> Dict:
    """Current 15-min window: slug, start, end"""
    ts = int(time.time() if now is None else now)
    start = ts - (ts % WINDOW_SECONDS)
    end = start + WINDOW_SECONDS
    return {
        "slug": f"{prefix}-{start}",
        "start": start,
        "end": end,
        "secs_left": end - ts,
    }


def momentum_from_closes(closes: Sequence[float]) -> MomentumHint:
    """Percent change of the last close vs 1 and 3 candles earlier."""
    if not closes:
        return MomentumHint()
    last = closes[-1]
    delta_1m = None
    delta_3m = None
    if len(closes) >= 2 and closes[-2]:
        delta_1m = (last - closes[-2]) / closes[-2] * 100
    if len(closes) >= 4 and closes[-4]:
        delta_3m = (last - closes[-4]) / closes[-4] * 100
    return MomentumHint(delta_1m=delta_1m, delta_3m=delta_3m)


class PriceToBeatLatch:
    """
    Latches the reference price once per market.

    The value is taken from the first oracle price observed at or after the
    market start and never changes until the market id does.
    """

    def __init__(self):
        self.market_id: Optional[str] = None
        self.value: Optional[float] = None
        self.latched_at: Optional[float] = None

    def update(self, market_id: str, price: Optional[float], now: float,
               market_start_time: Optional[float] = None) -> Optional[float]:
        if market_id != self.market_id:
            self.market_id = market_id
            self.value = None
            self.latched_at = None

        if self.value is None and price is not None:
            if market_start_time is None or now >= market_start_time:
                self.value = price
                self.latched_at = now
                logger.info(f"Price to beat for {market_id}: {price:.2f}")
        return self.value

    def get(self, market_id: str) -> Optional[float]:
        return self.value if market_id == self.market_id else None


def _parse_list(value) -> List:
    if isinstance(value, str):
        return json.loads(value)
    return list(value or [])


class PolymarketQuoteFeed:
    """Resolve the current market by slug and read the Up/Down buy prices."""

    def __init__(self, api: ApiConfig, session: Optional[requests.Session] = None):
        self.api = api
        self.session = session or requests.Session()
        self._market_cache: Dict[str, Dict] = {}

    def resolve_market(self, slug: str) -> Optional[Dict]:
        """Gamma lookup: token ids per outcome (cached per slug)."""
        if slug in self._market_cache:
            return self._market_cache[slug]

        resp = self.session.get(f"{self.api.gamma_host}/markets", params={"slug": slug},
                                timeout=self.api.request_timeout)
        if resp.status_code != 200:
            logger.warning(f"Gamma returned {resp.status_code} for {slug}")
            return None
        markets = resp.json()
        if not markets:
            return None

        m = markets[0]
        tokens = _parse_list(m.get("clobTokenIds"))
        outcomes = _parse_list(m.get("outcomes"))
        prices = _parse_list(m.get("outcomePrices"))
        token_map = {str(o).lower(): str(t) for o, t in zip(outcomes, tokens)}
        price_map = {str(o).lower(): p for o, p in zip(outcomes, prices)}

        up_token = token_map.get("up") or token_map.get("yes")
        down_token = token_map.get("down") or token_map.get("no")
        if not up_token or not down_token:
            logger.warning(f"Could not map outcomes {outcomes} for {slug}")
            return None

        info = {
            "slug": slug,
            "up_token_id": up_token,
            "down_token_id": down_token,
            "gamma_up": price_map.get("up", price_map.get("yes")),
            "gamma_down": price_map.get("down", price_map.get("no")),
        }
        self._market_cache = {slug: info}
        return info

    def fetch_price(self, token_id: str) -> Optional[float]:
        resp = self.session.get(f"{self.api.clob_host}/price",
                                params={"token_id": token_id, "side": "buy"},
                                timeout=self.api.request_timeout)
        if resp.status_code != 200:
            return None
        price = resp.json().get("price")
        return float(price) if price is not None else None

    def fetch(self, now: Optional[float] = None) -> Optional[Quote]:
        window = current_window(now, self.api.slug_prefix)
        market = self.resolve_market(window["slug"])
        if market is None:
            return None

        up = self.fetch_price(market["up_token_id"])
        down = self.fetch_price(market["down_token_id"])
        return Quote.from_payload({
            "market_id": window["slug"],
            "up_price": up if up is not None else market["gamma_up"],
            "down_price": down if down is not None else market["gamma_down"],
            "market_end_time": window["end"],
            "market_start_time": window["start"],
            "up_token_id": market["up_token_id"],
            "down_token_id": market["down_token_id"],
        })


class BinanceMomentumFeed:
    """1m klines -> (spot, MomentumHint)."""

    def __init__(self, api: ApiConfig, session: Optional[requests.Session] = None):
        self.api = api
        self.session = session or requests.Session()

    def fetch(self) -> Optional[Tuple[float, MomentumHint]]:
        resp = self.session.get(
            f"{self.api.binance_host}/api/v3/klines",
            params={"symbol": self.api.binance_symbol, "interval": "1m", "limit": 5},
            timeout=self.api.request_timeout,
        )
        if resp.status_code != 200:
            logger.warning(f"Binance klines returned {resp.status_code}")
            return None
        klines = resp.json()
        closes = [float(k[4]) for k in klines]
        if not closes:
            return None
        return closes[-1], momentum_from_closes(closes)


class ChainlinkPriceFeed:
    """Reads latestRoundData from the BTC/USD aggregator."""

    def __init__(self, api: ApiConfig, w3: Optional[Web3] = None):
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            api.polygon_rpc_url, request_kwargs={"timeout": api.request_timeout}
        ))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(api.chainlink_aggregator),
            abi=AGGREGATOR_ABI,
        )
        self._decimals: Optional[int] = None

    def fetch(self) -> Optional[float]:
        if self._decimals is None:
            self._decimals = self.contract.functions.decimals().call()
        _, answer, _, _, _ = self.contract.functions.latestRoundData().call()
        if answer <= 0:
            return None
        return answer / (10 ** self._decimals)


class BackgroundPoller:
    """Calls fetch() every interval on a daemon thread and stores the result."""

    def __init__(self, name: str, fetch: Callable[[], Any], interval: float,
                 cell: Optional[LatestValue] = None):
        self.name = name
        self.fetch = fetch
        self.interval = interval
        self.cell = cell or LatestValue()
        self.errors = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self):
        try:
            value = self.fetch()
        except (requests.RequestException, InvalidPayload, ValueError, KeyError) as e:
            self.errors += 1
            logger.warning(f"[{self.name}] fetch failed: {e}")
            return
        except Exception as e:
            # provider errors from web3
            self.errors += 1
            logger.warning(f"[{self.name}] fetch failed: {type(e).__name__}: {e}")
            return
        if value is not None:
            self.cell.set(value)

    def _run(self):
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.interval)

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None


@dataclass
class MarketSnapshot:
    """What the engine sees on one tick."""
    quote: Optional[Quote]
    momentum: Optional[MomentumHint]
    resolution_price: Optional[float]
    taken_at: float


class MarketDataFeed:
    """Combines the pollers into one snapshot per tick."""

    def __init__(self, api: ApiConfig, interval: float = 1.0,
                 quotes: Optional[PolymarketQuoteFeed] = None,
                 momentum: Optional[BinanceMomentumFeed] = None,
                 oracle: Optional[ChainlinkPriceFeed] = None):
        self.api = api
        self.latch = PriceToBeatLatch()
        self.quote_poller = BackgroundPoller("quotes", (quotes or PolymarketQuoteFeed(api)).fetch, interval)
        self.momentum_poller = BackgroundPoller("binance", (momentum or BinanceMomentumFeed(api)).fetch, interval)
        self.oracle_poller = None
        if oracle is not None or api.use_chainlink:
            self.oracle_poller = BackgroundPoller("chainlink", (oracle or ChainlinkPriceFeed(api)).fetch, interval)

    @property
    def pollers(self) -> List[BackgroundPoller]:
        return [p for p in (self.quote_poller, self.momentum_poller, self.oracle_poller) if p is not None]

    def start(self):
        for poller in self.pollers:
            poller.start()

    def stop(self):
        for poller in self.pollers:
            poller.stop()

    def poll_once(self):
        """Synchronous refresh of every source (single-shot runs, tests)."""
        for poller in self.pollers:
            poller.poll_once()

    def snapshot(self, now: Optional[float] = None) -> MarketSnapshot:
        now = time.time() if now is None else now
        quote: Optional[Quote] = self.quote_poller.cell.get()
        spot_momentum = self.momentum_poller.cell.get()
        spot, momentum = spot_momentum if spot_momentum else (None, None)

        # Resolve on the oracle when we have it, else the spot price
        oracle_price = self.oracle_poller.cell.get() if self.oracle_poller else None
        resolution_price = oracle_price if oracle_price is not None else spot

        if quote is not None:
            ptb = self.latch.update(quote.market_id, resolution_price, now, quote.market_start_time)
            quote = quote.with_price_to_beat(ptb)
        return MarketSnapshot(quote=quote, momentum=momentum,
                              resolution_price=resolution_price, taken_at=now)
