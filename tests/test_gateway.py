"""Tests for order gateways - dry run ids and CLOB retry behaviour"""

import pytest
from unittest.mock import Mock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pm_15m_hedge.config import HedgeConfig
from pm_15m_hedge.gateway import BUY_SIDE, ClobOrderGateway, DryRunGateway


def make_gateway(post_side_effect=None, post_return=None):
    client = Mock()
    client.create_order.return_value = "SIGNED"
    if post_side_effect is not None:
        client.post_order.side_effect = post_side_effect
    else:
        client.post_order.return_value = post_return
    sleeps = []
    gateway = ClobOrderGateway(HedgeConfig(), client=client, sleep=sleeps.append)
    return gateway, client, sleeps


class TestDryRunGateway:
    def test_ids_are_unique_and_recorded(self):
        gateway = DryRunGateway()
        first = gateway.submit("UP_TOKEN_123456789", BUY_SIDE, 0.303, 9)
        second = gateway.submit("UP_TOKEN_123456789", BUY_SIDE, 0.303, 9)

        assert first.success and second.success
        assert first.order_id.startswith("DRYRUN_")
        assert first.order_id != second.order_id
        assert len(gateway.submitted) == 2
        assert gateway.submitted[0]["price"] == 0.303


class TestClobOrderGateway:
    """Sign once, retry the POST with backoff."""

    def test_success_first_attempt(self):
        gateway, client, sleeps = make_gateway(post_return={"success": True, "orderID": "0xabc", "status": "live"})
        result = gateway.submit("TOKEN", BUY_SIDE, 0.303, 9)

        assert result.success
        assert result.order_id == "0xabc"
        assert result.status == "live"
        assert result.attempts == 1
        assert sleeps == []

    def test_retries_post_with_same_signed_order(self):
        gateway, client, sleeps = make_gateway(post_side_effect=[
            ConnectionError("reset"),
            TimeoutError("timeout"),
            {"success": True, "orderID": "0xabc"},
        ])
        result = gateway.submit("TOKEN", BUY_SIDE, 0.303, 9)

        assert result.success
        assert result.attempts == 3
        assert sleeps == [2.0, 2.0]
        assert client.create_order.call_count == 1
        assert client.post_order.call_count == 3
        for call in client.post_order.call_args_list:
            assert call[0][0] == "SIGNED"

    def test_all_attempts_fail(self):
        gateway, client, sleeps = make_gateway(post_side_effect=ConnectionError("down"))
        result = gateway.submit("TOKEN", BUY_SIDE, 0.303, 9)

        assert not result.success
        assert result.attempts == 3
        assert "post failed after 3 attempts" in result.error
        assert sleeps == [2.0, 2.0]

    def test_response_without_order_id(self):
        gateway, _, _ = make_gateway(post_return={"success": False, "errorMsg": "not enough balance"})
        result = gateway.submit("TOKEN", BUY_SIDE, 0.303, 9)

        assert not result.success
        assert result.error == "not enough balance"

    def test_response_without_error_message(self):
        gateway, _, _ = make_gateway(post_return={})
        result = gateway.submit("TOKEN", BUY_SIDE, 0.303, 9)

        assert not result.success
        assert "no orderID" in result.error

    def test_sign_failure_never_posts(self):
        gateway, client, _ = make_gateway(post_return={"orderID": "x"})
        client.create_order.side_effect = ValueError("bad tick size")
        result = gateway.submit("TOKEN", BUY_SIDE, 0.303, 9)

        assert not result.success
        assert result.error.startswith("sign failed")
        client.post_order.assert_not_called()
