"""
cowtrader Core: Order Book Connector (CoW Protocol)

Thin client for the CoW Protocol order book API on Base.

Supports:
- Account order history (paginated), used for fills and open orders
- Signed order placement
- Signed order cancellation

Calls are made once with a fixed timeout; transient failures surface to the
caller, which skips the step for this cycle rather than retrying in place.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import OrderSubmissionError, SigningError
from core.ledger import TradeDirection
from core.order_state import CancelOutcome
from core.signing import OrderSigner
from infra.symbols import TokenPair, to_atoms

logger = logging.getLogger(__name__)

COW_API_BASE = "https://api.cow.fi/base/api/v1"
ZERO_APP_DATA = "0x" + "00" * 32


class CowExchange:
    """
    CoW Protocol order book connector.

    The signer supplies the account address and signatures; the connector
    never sees key material.
    """

    def __init__(
        self,
        pair: TokenPair,
        signer: OrderSigner,
        api_base: str = COW_API_BASE,
        timeout: float = 15.0,
        read_only: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.pair = pair
        self.signer = signer
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.read_only = read_only
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "cowtrader/1.0"})
        logger.info(f"Initialized CowExchange ({pair.label}, read_only={read_only}, api={self.api_base})")

    @property
    def owner(self) -> str:
        return self.signer.address

    def _req(self, method: str, endpoint: str, body: Optional[dict] = None,
             params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = self.api_base + endpoint
        response = self.session.request(method, url, json=body, params=params, timeout=self.timeout)
        if response.status_code >= 400 and response.status_code != 404:
            logger.error(f"Order book API error: {method} {endpoint} -> {response.status_code} {response.text[:300]}")
        return response

    # ─── Reads ─────────────────────────────────────────────────────────────

    def list_account_orders(self, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """One page of the account's orders, newest first."""
        response = self._req(
            "GET",
            f"/account/{self.owner}/orders",
            params={"limit": int(limit), "offset": int(offset)},
        )
        response.raise_for_status()
        orders = response.json()
        if not isinstance(orders, list):
            raise ValueError(f"Unexpected account orders payload: {type(orders).__name__}")
        logger.debug(f"Fetched {len(orders)} account orders (offset={offset})")
        return orders

    def list_trade_history(self, page_size: int = 20, max_pages: int = 1,
                           status: str = "fulfilled") -> List[Dict[str, Any]]:
        """
        Completed records on the configured pair, across up to ``max_pages`` pages.

        Paging stops early on a short page.
        """
        records: List[Dict[str, Any]] = []
        for page in range(max(1, max_pages)):
            batch = self.list_account_orders(limit=page_size, offset=page * page_size)
            records.extend(
                r for r in batch
                if r.get("status") == status and self.pair.matches(r.get("sellToken"), r.get("buyToken"))
            )
            if len(batch) < page_size:
                break
        return records

    def list_open_orders(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Raw open records on the configured pair (expiry filtering happens at parse time)."""
        return [
            r for r in self.list_account_orders(limit=limit)
            if r.get("status") == "open" and self.pair.matches(r.get("sellToken"), r.get("buyToken"))
        ]

    # ─── Writes ────────────────────────────────────────────────────────────

    def build_order(self, direction: TradeDirection, asset_amount: float, quote_amount: float,
                    validity_hours: float, now: Optional[float] = None) -> Dict[str, Any]:
        """
        Build a fill-or-kill sell-kind limit order.

        BUY sells ``quote_amount`` of the quote token for at least ``asset_amount``;
        SELL sells ``asset_amount`` for at least ``quote_amount``.
        """
        pair = self.pair
        valid_to = int((now if now is not None else time.time()) + validity_hours * 3600)

        if direction is TradeDirection.BUY:
            sell_token, buy_token = pair.quote_token, pair.asset_token
            sell_amount = to_atoms(quote_amount, pair.quote_decimals)
            buy_amount = to_atoms(asset_amount, pair.asset_decimals)
        else:
            sell_token, buy_token = pair.asset_token, pair.quote_token
            sell_amount = to_atoms(asset_amount, pair.asset_decimals)
            buy_amount = to_atoms(quote_amount, pair.quote_decimals)

        if sell_amount <= 0 or buy_amount <= 0:
            raise ValueError(f"Order amounts round to zero atoms (sell={sell_amount}, buy={buy_amount})")

        return {
            "sellToken": sell_token,
            "buyToken": buy_token,
            "receiver": self.owner,
            "sellAmount": str(sell_amount),
            "buyAmount": str(buy_amount),
            "validTo": valid_to,
            "appData": ZERO_APP_DATA,
            "feeAmount": "0",
            "kind": "sell",
            "partiallyFillable": False,
            "sellTokenBalance": "erc20",
            "buyTokenBalance": "erc20",
        }

    def place_order(self, order: Dict[str, Any]) -> str:
        """
        Sign and submit an order.

        Returns:
            Order uid assigned by the order book

        Raises:
            OrderSubmissionError: on a non-success response
        """
        if self.read_only:
            raise OrderSubmissionError("Connector is read-only; refusing to place order")

        signature = self.signer.sign_order(order)
        response = self._req(
            "POST",
            "/orders",
            body={**order, "from": self.owner, "signature": signature, "signingScheme": "eip712"},
        )
        if not response.ok:
            raise OrderSubmissionError(
                f"Order submission failed: {response.status_code} - {response.text[:300]}",
                status_code=response.status_code,
                body=response.text,
            )
        uid = response.text.strip().strip('"')
        logger.info(f"Order placed: {uid[:10]}...")
        return uid

    def cancel_order(self, order_id: str) -> CancelOutcome:
        """Cancel one order with a signed cancellation. Signing and HTTP failures return FAILED."""
        if self.read_only:
            logger.info(f"READ_ONLY: would cancel order {order_id[:10]}...")
            return CancelOutcome.FAILED

        try:
            signature = self.signer.sign_cancellation([order_id])
            response = self._req(
                "DELETE",
                "/orders",
                body={"orderUids": [order_id], "signature": signature, "signingScheme": "eip712"},
            )
        except (requests.RequestException, SigningError, ValueError) as e:
            logger.error(f"Cancel order {order_id[:10]}... failed: {e}")
            return CancelOutcome.FAILED

        if response.ok:
            logger.info(f"Cancelled order {order_id[:10]}...")
            return CancelOutcome.CANCELLED
        if response.status_code == 404:
            logger.info(f"Cancel order {order_id[:10]}... returned 404; treating as already closed")
            return CancelOutcome.ALREADY_GONE
        logger.warning(f"Cancel order {order_id[:10]}... failed: {response.status_code} {response.text[:200]}")
        return CancelOutcome.FAILED
