"""
cowtrader Core: Order Signing

EIP-712 signatures for CoW Protocol orders and cancellations, produced with
the account's private key through eth-account.
"""

import logging
from typing import Any, Dict, List

from eth_account import Account

from core.exceptions import SigningError

logger = logging.getLogger(__name__)

BASE_CHAIN_ID = 8453
SETTLEMENT_CONTRACT = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"

ORDER_TYPES = {
    "Order": [
        {"name": "sellToken", "type": "address"},
        {"name": "buyToken", "type": "address"},
        {"name": "receiver", "type": "address"},
        {"name": "sellAmount", "type": "uint256"},
        {"name": "buyAmount", "type": "uint256"},
        {"name": "validTo", "type": "uint32"},
        {"name": "appData", "type": "bytes32"},
        {"name": "feeAmount", "type": "uint256"},
        {"name": "kind", "type": "string"},
        {"name": "partiallyFillable", "type": "bool"},
        {"name": "sellTokenBalance", "type": "string"},
        {"name": "buyTokenBalance", "type": "string"},
    ]
}

CANCELLATION_TYPES = {
    "OrderCancellations": [
        {"name": "orderUids", "type": "bytes[]"},
    ]
}


def _hex_bytes(value: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(text)


class OrderSigner:
    """Signs order book messages for one account."""

    def __init__(self, private_key: str, chain_id: int = BASE_CHAIN_ID,
                 settlement_contract: str = SETTLEMENT_CONTRACT):
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            raise SigningError("Invalid private key") from exc
        self.domain = {
            "name": "Gnosis Protocol",
            "version": "v2",
            "chainId": int(chain_id),
            "verifyingContract": settlement_contract,
        }

    @property
    def address(self) -> str:
        return self._account.address

    def _sign(self, types: Dict[str, Any], message: Dict[str, Any]) -> str:
        try:
            signed = self._account.sign_typed_data(
                domain_data=self.domain,
                message_types=types,
                message_data=message,
            )
        except Exception as exc:
            raise SigningError(f"Typed-data signing failed: {exc}") from exc
        return "0x" + bytes(signed.signature).hex()

    def sign_order(self, order: Dict[str, Any]) -> str:
        message = {
            "sellToken": order["sellToken"],
            "buyToken": order["buyToken"],
            "receiver": order["receiver"],
            "sellAmount": int(order["sellAmount"]),
            "buyAmount": int(order["buyAmount"]),
            "validTo": int(order["validTo"]),
            "appData": _hex_bytes(order["appData"]),
            "feeAmount": int(order["feeAmount"]),
            "kind": order["kind"],
            "partiallyFillable": bool(order["partiallyFillable"]),
            "sellTokenBalance": order["sellTokenBalance"],
            "buyTokenBalance": order["buyTokenBalance"],
        }
        return self._sign(ORDER_TYPES, message)

    def sign_cancellation(self, order_uids: List[str]) -> str:
        return self._sign(CANCELLATION_TYPES, {"orderUids": [_hex_bytes(uid) for uid in order_uids]})
