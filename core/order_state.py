"""
cowtrader Core: Open Order Snapshot

Locally cached view of limit orders resting on the order book.

The venue owns order existence; the bot only keeps a snapshot refreshed once
per cycle and reasons about it (duplicate suppression, staleness). Orders
leave the snapshot when they fill, expire, or are cancelled, which the bot
observes on the next refresh.

Record statuses (order book API): open → (fulfilled | cancelled | expired)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.ledger import TradeDirection
from infra.symbols import TokenPair, from_atoms

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """Order record states as reported by the order book API"""
    PRESIGNATURE_PENDING = "presignaturePending"
    OPEN = "open"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CancelOutcome(Enum):
    """Result of a cancellation request"""
    CANCELLED = "cancelled"
    ALREADY_GONE = "already_gone"
    FAILED = "failed"

    @property
    def removed(self) -> bool:
        """True when the order is known to be off the book."""
        return self in (CancelOutcome.CANCELLED, CancelOutcome.ALREADY_GONE)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601 (with trailing Z) or epoch seconds into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class OpenOrder:
    """A resting limit order on the configured pair."""
    order_id: str
    direction: TradeDirection
    asset_amount: float
    quote_amount: float
    expiry: datetime

    def __post_init__(self):
        if not self.order_id:
            raise ValueError("Order id is required")
        if self.asset_amount <= 0 or self.quote_amount <= 0:
            raise ValueError("Order amounts must be positive")

    @property
    def limit_price(self) -> float:
        return self.quote_amount / self.asset_amount

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiry <= (now or datetime.now(timezone.utc))

    def distance_from(self, price: float) -> float:
        return abs(self.limit_price - price)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "direction": self.direction.value,
            "asset_amount": self.asset_amount,
            "quote_amount": self.quote_amount,
            "limit_price": self.limit_price,
            "expiry": self.expiry.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OpenOrder":
        return cls(
            order_id=str(data["order_id"]),
            direction=TradeDirection.from_string(data["direction"]),
            asset_amount=float(data["asset_amount"]),
            quote_amount=float(data["quote_amount"]),
            expiry=parse_timestamp(data["expiry"]),
        )


def parse_open_order(record: Dict[str, Any], pair: TokenPair,
                     now: Optional[datetime] = None) -> Optional[OpenOrder]:
    """
    Build an OpenOrder from an order book record.

    Returns None for records on another pair, not in "open" status, already
    past ``validTo``, or malformed.
    """
    try:
        sell_token = record["sellToken"]
        buy_token = record["buyToken"]
        if not pair.matches(sell_token, buy_token):
            return None
        if record.get("status") != OrderStatus.OPEN.value:
            return None

        expiry = parse_timestamp(int(record["validTo"]))
        if expiry <= (now or datetime.now(timezone.utc)):
            return None

        if pair.is_buy(sell_token):
            direction = TradeDirection.BUY
            quote_amount = from_atoms(record["sellAmount"], pair.quote_decimals)
            asset_amount = from_atoms(record["buyAmount"], pair.asset_decimals)
        else:
            direction = TradeDirection.SELL
            asset_amount = from_atoms(record["sellAmount"], pair.asset_decimals)
            quote_amount = from_atoms(record["buyAmount"], pair.quote_decimals)

        return OpenOrder(
            order_id=str(record["uid"]),
            direction=direction,
            asset_amount=asset_amount,
            quote_amount=quote_amount,
            expiry=expiry,
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Skipping malformed open order %s: %s", str(record.get("uid", "?"))[:10], exc)
        return None
