"""
cowtrader Core: Bot State

The canonical state record owned by the cycle: ledger, price feed state,
processed trade ids, cached open orders, and the decision-backend cursor.

Components read it and return new parts; only the cycle replaces it.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional, Tuple

from core.ledger import PositionLedger, Trade
from core.order_state import OpenOrder
from core.price_feed import PriceFeedState

logger = logging.getLogger(__name__)

PERSISTED_PRICE_POINTS = 100
STATE_VERSION = 1


@dataclass(frozen=True)
class BotState:
    ledger: PositionLedger = field(default_factory=PositionLedger)
    feed: PriceFeedState = field(default_factory=PriceFeedState)
    processed_trade_ids: FrozenSet[str] = frozenset()
    open_orders: Tuple[OpenOrder, ...] = ()
    model_cursor: int = 0
    current_price: Optional[float] = None

    @property
    def last_trade(self) -> Optional[Trade]:
        return self.ledger.last_trade

    def evolve(self, **changes) -> "BotState":
        return replace(self, **changes)

    def to_document(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Persisted JSON document (price history truncated)."""
        ledger = self.ledger
        doc = {
            "version": STATE_VERSION,
            "holdings": ledger.holdings,
            "total_cost": ledger.total_cost,
            "cost_basis": ledger.cost_basis,
            "last_trade": ledger.last_trade.to_dict() if ledger.last_trade else None,
            "processed_trade_ids": sorted(self.processed_trade_ids),
            "open_orders": [o.to_dict() for o in self.open_orders],
            "model_cursor": self.model_cursor,
            "current_price": self.current_price,
            "last_updated": (now or datetime.now(timezone.utc)).isoformat(),
        }
        doc.update(self.feed.to_dict(max_points=PERSISTED_PRICE_POINTS))
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "BotState":
        """
        Restore state from a persisted document.

        Raises:
            ValueError / KeyError / TypeError: if ledger fields are invalid;
                the caller treats the document as unreadable.
        """
        last_trade = Trade.from_dict(doc["last_trade"]) if doc.get("last_trade") else None
        ledger = PositionLedger(
            holdings=float(doc.get("holdings", 0.0)),
            total_cost=float(doc.get("total_cost", 0.0)),
            last_trade=last_trade,
        )

        open_orders = []
        for raw in doc.get("open_orders") or []:
            try:
                open_orders.append(OpenOrder.from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("Dropping malformed cached order: %s", exc)

        price = doc.get("current_price")
        return cls(
            ledger=ledger,
            feed=PriceFeedState.from_dict(doc),
            processed_trade_ids=frozenset(str(i) for i in doc.get("processed_trade_ids") or []),
            open_orders=tuple(open_orders),
            model_cursor=int(doc.get("model_cursor", 0) or 0),
            current_price=float(price) if price is not None else None,
        )
