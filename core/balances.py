"""
cowtrader Core: Wallet Balances

ERC-20 balances of the trading account read through JSON-RPC ``eth_call``.
"""

import logging
from dataclasses import dataclass
from itertools import count
from typing import Optional

import requests

from core.exceptions import CriticalDataUnavailable
from infra.symbols import TokenPair, from_atoms, normalize_address

logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass(frozen=True)
class WalletBalances:
    asset: float
    quote: float

    def total_value(self, price: float) -> float:
        return self.asset * price + self.quote

    def asset_share(self, price: float) -> float:
        total = self.total_value(price)
        return (self.asset * price) / total if total > 0 else 0.0


class ChainBalanceReader:
    """Reads the account's asset and quote balances from an RPC node."""

    def __init__(self, rpc_url: str, owner: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.owner = normalize_address(owner)
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = count(1)

    def balance_of(self, token: str) -> int:
        data = BALANCE_OF_SELECTOR + self.owner[2:].rjust(64, "0")
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": normalize_address(token), "data": data}, "latest"],
        }
        response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            raise ValueError(f"RPC error: {body['error']}")
        result = body.get("result") or "0x0"
        return int(result, 16) if result != "0x" else 0

    def get_balances(self, pair: TokenPair) -> WalletBalances:
        """
        Raises:
            CriticalDataUnavailable: if either balance cannot be read
        """
        try:
            asset_atoms = self.balance_of(pair.asset_token)
            quote_atoms = self.balance_of(pair.quote_token)
        except (requests.RequestException, ValueError, TypeError) as exc:
            logger.error(f"Balance read failed: {exc}")
            raise CriticalDataUnavailable("balances", exc) from exc

        return WalletBalances(
            asset=from_atoms(asset_atoms, pair.asset_decimals),
            quote=from_atoms(quote_atoms, pair.quote_decimals),
        )
