"""Tests for market data feeds (HTTP and chain calls mocked)"""

import pytest
from unittest.mock import Mock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import requests

from pm_15m_hedge.config import ApiConfig
from pm_15m_hedge.feeds import (
    BackgroundPoller,
    BinanceMomentumFeed,
    ChainlinkPriceFeed,
    LatestValue,
    MarketDataFeed,
    PolymarketQuoteFeed,
    PriceToBeatLatch,
    current_window,
    momentum_from_closes,
)
from pm_15m_hedge.models import MomentumHint, Quote


NOW = 1_700_000_000
START = 1_699_999_200
SLUG = f"btc-updown-15m-{START}"


def response(status=200, payload=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = payload
    return resp


GAMMA_MARKET = [{
    "slug": SLUG,
    "outcomes": '["Up", "Down"]',
    "clobTokenIds": '["111", "222"]',
    "outcomePrices": '["0.48", "0.52"]',
}]


def quote_session(clob_status=200):
    session = Mock()

    def get(url, params=None, timeout=None):
        if url.endswith("/markets"):
            return response(200, GAMMA_MARKET)
        prices = {"111": "0.47", "222": "0.51"}
        return response(clob_status, {"price": prices[params["token_id"]]})

    session.get.side_effect = get
    return session


class TestWindowMath:
    def test_current_window(self):
        window = current_window(NOW)
        assert window["start"] == START
        assert window["end"] == START + 900
        assert window["secs_left"] == 100
        assert window["slug"] == SLUG

    def test_window_boundary(self):
        assert current_window(START)["start"] == START
        assert current_window(START + 899)["start"] == START
        assert current_window(START + 900)["start"] == START + 900


class TestMomentum:
    def test_percent_deltas(self):
        hint = momentum_from_closes([100.0, 100.0, 100.0, 101.0, 102.0])
        assert hint.delta_1m == pytest.approx((102 - 101) / 101 * 100)
        assert hint.delta_3m == pytest.approx(2.0)
        assert hint.signal == pytest.approx(2.0)

    def test_short_history(self):
        hint = momentum_from_closes([100.0, 99.0])
        assert hint.delta_1m == pytest.approx(-1.0)
        assert hint.delta_3m is None
        assert hint.signal == pytest.approx(-1.0)
        assert momentum_from_closes([]) == MomentumHint()


class TestLatestValueAndLatch:
    def test_latest_value(self):
        cell = LatestValue()
        assert cell.get() is None
        assert cell.age() is None
        cell.set(5, now=10.0)
        assert cell.get() == 5
        assert cell.age(now=12.5) == pytest.approx(2.5)

    def test_latch_waits_for_market_start(self):
        latch = PriceToBeatLatch()
        assert latch.update("m1", 65000.0, now=START - 1, market_start_time=START) is None
        assert latch.update("m1", 65010.0, now=START, market_start_time=START) == 65010.0

    def test_latch_fixed_until_market_changes(self):
        latch = PriceToBeatLatch()
        latch.update("m1", 65010.0, now=START, market_start_time=START)
        assert latch.update("m1", 66000.0, now=START + 300, market_start_time=START) == 65010.0
        assert latch.get("m1") == 65010.0
        assert latch.get("m2") is None

        assert latch.update("m2", 66000.0, now=START + 900, market_start_time=START + 900) == 66000.0
        assert latch.get("m1") is None


class TestPolymarketQuoteFeed:
    def test_fetch_quote(self):
        feed = PolymarketQuoteFeed(ApiConfig(), session=quote_session())
        quote = feed.fetch(now=NOW)

        assert quote.market_id == SLUG
        assert quote.up_price == pytest.approx(0.47)
        assert quote.down_price == pytest.approx(0.51)
        assert quote.market_end_time == START + 900
        assert quote.market_start_time == START
        assert quote.up_token_id == "111"
        assert quote.down_token_id == "222"
        assert quote.price_to_beat is None

    def test_falls_back_to_gamma_prices(self):
        feed = PolymarketQuoteFeed(ApiConfig(), session=quote_session(clob_status=500))
        quote = feed.fetch(now=NOW)
        assert quote.up_price == pytest.approx(0.48)
        assert quote.down_price == pytest.approx(0.52)

    def test_market_lookup_cached(self):
        session = quote_session()
        feed = PolymarketQuoteFeed(ApiConfig(), session=session)
        feed.fetch(now=NOW)
        feed.fetch(now=NOW + 1)
        gamma_calls = [c for c in session.get.call_args_list if c[0][0].endswith("/markets")]
        assert len(gamma_calls) == 1

    def test_unknown_market(self):
        session = Mock()
        session.get.return_value = response(200, [])
        feed = PolymarketQuoteFeed(ApiConfig(), session=session)
        assert feed.fetch(now=NOW) is None


class TestBinanceMomentumFeed:
    def test_fetch(self):
        klines = [[0, "0", "0", "0", str(c), "0"] for c in (100, 100, 100, 101, 102)]
        session = Mock()
        session.get.return_value = response(200, klines)
        spot, hint = BinanceMomentumFeed(ApiConfig(), session=session).fetch()

        assert spot == 102.0
        assert hint.delta_3m == pytest.approx(2.0)
        assert session.get.call_args[1]["params"]["interval"] == "1m"

    def test_http_error(self):
        session = Mock()
        session.get.return_value = response(429, None)
        assert BinanceMomentumFeed(ApiConfig(), session=session).fetch() is None


class TestChainlinkPriceFeed:
    def _feed(self, answer):
        contract = Mock()
        contract.functions.decimals.return_value.call.return_value = 8
        contract.functions.latestRoundData.return_value.call.return_value = (1, answer, 0, 0, 1)
        w3 = Mock()
        w3.eth.contract.return_value = contract
        return ChainlinkPriceFeed(ApiConfig(), w3=w3), contract

    def test_scales_by_decimals(self):
        feed, contract = self._feed(6_500_000_000_000)
        assert feed.fetch() == pytest.approx(65000.0)
        feed.fetch()
        assert contract.functions.decimals.return_value.call.call_count == 1

    def test_non_positive_answer(self):
        feed, _ = self._feed(0)
        assert feed.fetch() is None


class TestBackgroundPoller:
    def test_stores_value(self):
        poller = BackgroundPoller("test", lambda: 42, interval=1.0)
        poller.poll_once()
        assert poller.cell.get() == 42

    def test_request_errors_are_counted(self):
        def boom():
            raise requests.ConnectionError("down")

        poller = BackgroundPoller("test", boom, interval=1.0)
        poller.cell.set(7)
        poller.poll_once()
        assert poller.errors == 1
        assert poller.cell.get() == 7

    def test_none_keeps_previous(self):
        poller = BackgroundPoller("test", lambda: None, interval=1.0)
        poller.cell.set(7)
        poller.poll_once()
        assert poller.cell.get() == 7


class TestMarketDataFeed:
    def _quote(self):
        return Quote("m1", 0.45, 0.55, START + 900, up_token_id="111",
                     down_token_id="222", market_start_time=START)

    def test_snapshot_latches_price_to_beat_on_spot(self):
        spot = {"value": 65000.0}
        quotes = Mock()
        quotes.fetch.side_effect = self._quote
        momentum = Mock()
        momentum.fetch.side_effect = lambda: (spot["value"], MomentumHint(delta_3m=0.2))

        feed = MarketDataFeed(ApiConfig(use_chainlink=False), quotes=quotes, momentum=momentum)
        assert feed.oracle_poller is None
        feed.poll_once()

        snap = feed.snapshot(now=START + 60)
        assert snap.quote.price_to_beat == 65000.0
        assert snap.resolution_price == 65000.0
        assert snap.momentum.delta_3m == 0.2

        spot["value"] = 65100.0
        feed.poll_once()
        snap = feed.snapshot(now=START + 120)
        assert snap.quote.price_to_beat == 65000.0
        assert snap.resolution_price == 65100.0

    def test_oracle_preferred_for_resolution(self):
        quotes = Mock()
        quotes.fetch.side_effect = self._quote
        momentum = Mock()
        momentum.fetch.return_value = (65000.0, MomentumHint())
        oracle = Mock()
        oracle.fetch.return_value = 64990.0

        feed = MarketDataFeed(ApiConfig(), quotes=quotes, momentum=momentum, oracle=oracle)
        feed.poll_once()
        snap = feed.snapshot(now=START + 60)
        assert snap.resolution_price == 64990.0
        assert snap.quote.price_to_beat == 64990.0

    def test_empty_snapshot(self):
        quotes = Mock()
        quotes.fetch.return_value = None
        momentum = Mock()
        momentum.fetch.return_value = None
        feed = MarketDataFeed(ApiConfig(use_chainlink=False), quotes=quotes, momentum=momentum)
        feed.poll_once()
        snap = feed.snapshot(now=START)
        assert snap.quote is None
        assert snap.momentum is None
        assert snap.resolution_price is None
