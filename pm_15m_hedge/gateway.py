"""
Order Gateways
==============
submit(token_id, side, price, size) -> OrderResult

ClobOrderGateway signs the order once and retries only the POST, so a
retry resubmits the same signed order and can never open a second one.
DryRunGateway hands out simulated order ids.
"""

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, OrderArgs, OrderType
from py_clob_client.order_builder.constants import BUY, SELL

from .config import HedgeConfig

logger = logging.getLogger(__name__)

BUY_SIDE = BUY
SELL_SIDE = SELL


@dataclass
class OrderResult:
    """Result of order placement"""
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None
    status: Optional[str] = None
    attempts: int = 0


class OrderGateway:
    """Venue-facing order submission."""

    def submit(self, token_id: str, side: str, price: float, size: float) -> OrderResult:
        raise NotImplementedError


class DryRunGateway(OrderGateway):
    """Accepts every order and returns a simulated id."""

    def __init__(self):
        self.submitted: List[dict] = []
        self._counter = itertools.count(1)

    def submit(self, token_id: str, side: str, price: float, size: float) -> OrderResult:
        order_id = f"DRYRUN_{int(time.time() * 1000)}_{next(self._counter)}"
        self.submitted.append({
            "order_id": order_id,
            "token_id": token_id,
            "side": side,
            "price": price,
            "size": size,
        })
        logger.info(f"[DRYRUN] {side} {size} @ {price:.3f} token {token_id[:12]}... -> {order_id}")
        return OrderResult(success=True, order_id=order_id, status="dryrun", attempts=1)


class ClobOrderGateway(OrderGateway):
    """Limit orders through py-clob-client."""

    def __init__(self, config: HedgeConfig, client: Optional[ClobClient] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.max_attempts = config.execution.max_attempts
        self.backoff = config.execution.retry_backoff_seconds
        self._sleep = sleep
        self.client = client if client is not None else self._init_client()

    def _init_client(self) -> ClobClient:
        """Create the client, then attach API creds (configured or derived)."""
        api = self.config.api
        client = ClobClient(
            host=api.clob_host,
            key=api.private_key,
            chain_id=api.chain_id,
            signature_type=api.signature_type,
            funder=api.proxy_address or None,
        )
        if api.api_key and api.api_secret and api.api_passphrase:
            creds = ApiCreds(
                api_key=api.api_key,
                api_secret=api.api_secret,
                api_passphrase=api.api_passphrase,
            )
        else:
            creds = client.create_or_derive_api_creds()
        client.set_api_creds(creds)
        logger.info(f"CLOB client ready ({api.clob_host})")
        return client

    def submit(self, token_id: str, side: str, price: float, size: float) -> OrderResult:
        try:
            signed = self.client.create_order(
                OrderArgs(token_id=token_id, price=price, size=size, side=side)
            )
        except Exception as e:
            logger.error(f"Order signing failed: {e}")
            return OrderResult(success=False, error=f"sign failed: {e}")

        response = None
        last_error = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            try:
                response = self.client.post_order(signed, OrderType.GTC)
                break
            except Exception as e:
                last_error = e
                logger.warning(f"Order post attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    self._sleep(self.backoff)

        if response is None:
            return OrderResult(success=False, attempts=attempts,
                               error=f"post failed after {attempts} attempts: {last_error}")

        order_id = response.get("orderID") if isinstance(response, dict) else None
        if order_id and response.get("success", True):
            return OrderResult(success=True, order_id=order_id,
                               status=response.get("status"), attempts=attempts)

        error = response.get("errorMsg") if isinstance(response, dict) else None
        return OrderResult(success=False, attempts=attempts,
                           error=error or f"no orderID in response: {response}")
