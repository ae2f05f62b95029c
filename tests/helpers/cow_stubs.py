"""
Test helpers for order book and price tests.

Builds order book records in the shape the CoW Protocol API returns
(raw token atoms as strings, ISO creation dates, epoch validTo) so tests
exercise the same parsing paths as production.
"""

from dataclasses import dataclass, field
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import yaml

from core.ledger import TradeDirection
from infra.symbols import TokenPair, to_atoms

WETH = "0x4200000000000000000000000000000000000006"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
OTHER_TOKEN = "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb"

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_pair() -> TokenPair:
    return TokenPair(
        asset_symbol="WETH",
        asset_token=WETH,
        asset_decimals=18,
        quote_symbol="USDC",
        quote_token=USDC,
        quote_decimals=6,
    )


def order_record(
    uid: str,
    direction: str,
    asset_amount: float,
    quote_amount: float,
    status: str = "fulfilled",
    created: Optional[datetime] = None,
    valid_to: Optional[datetime] = None,
    executed: Optional[tuple] = None,
) -> Dict[str, Any]:
    """An account-orders record on the WETH/USDC pair.

    ``executed`` is an optional (asset_amount, quote_amount) pair written to
    executedSellAmount/executedBuyAmount.
    """
    created = created or T0
    valid_to = valid_to or created + timedelta(hours=24)

    def legs(asset: float, quote: float):
        if direction == "BUY":
            return to_atoms(quote, 6), to_atoms(asset, 18)
        return to_atoms(asset, 18), to_atoms(quote, 6)

    sell_amount, buy_amount = legs(asset_amount, quote_amount)
    record = {
        "uid": uid,
        "sellToken": USDC if direction == "BUY" else WETH,
        "buyToken": WETH if direction == "BUY" else USDC,
        "sellAmount": str(sell_amount),
        "buyAmount": str(buy_amount),
        "status": status,
        "creationDate": created.isoformat().replace("+00:00", "Z"),
        "validTo": int(valid_to.timestamp()),
        "kind": "sell",
    }
    if executed is not None:
        exec_sell, exec_buy = legs(*executed)
        record["executedSellAmount"] = str(exec_sell)
        record["executedBuyAmount"] = str(exec_buy)
    return record


@dataclass
class FakeResponse:
    """Minimal stand-in for requests.Response."""
    status_code: int = 200
    payload: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    def raise_for_status(self):
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@dataclass
class FakeExchange:
    """In-memory order book: account records plus scripted cancel outcomes."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    cancel_outcomes: Dict[str, Any] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)
    placed: List[Dict[str, Any]] = field(default_factory=list)
    history_error: Optional[Exception] = None
    open_orders_error: Optional[Exception] = None
    place_error: Optional[Exception] = None

    def list_trade_history(self, page_size: int = 20, max_pages: int = 1, status: str = "fulfilled"):
        if self.history_error:
            raise self.history_error
        return [r for r in self.records if r.get("status") == status][: page_size * max_pages]

    def list_open_orders(self, limit: int = 50):
        if self.open_orders_error:
            raise self.open_orders_error
        return [r for r in self.records if r.get("status") == "open"][:limit]

    def build_order(self, direction: TradeDirection, asset_amount, quote_amount, validity_hours, now=None):
        return {
            "direction": direction.value,
            "asset_amount": asset_amount,
            "quote_amount": quote_amount,
            "validity_hours": validity_hours,
        }

    def place_order(self, order):
        if self.place_error:
            raise self.place_error
        self.placed.append(order)
        return f"0xplaced{len(self.placed):04d}"

    def cancel_order(self, order_id: str):
        from core.order_state import CancelOutcome

        self.cancelled.append(order_id)
        return self.cancel_outcomes.get(order_id, CancelOutcome.CANCELLED)


CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"

TEST_ENV = {
    "PRIVATE_KEY": "0x" + "11" * 32,
    "BASE_RPC_URL": "https://mainnet.base.org",
    "OPENROUTER_API_KEY": "sk-or-test",
}


def edit_yaml(config_dir: Path, name: str, mutate) -> None:
    """Load a YAML config file, apply ``mutate`` to the dict, write it back."""
    path = Path(config_dir) / name
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))
