"""
cowtrader Core: Position Ledger

Weighted-average cost accounting for the single traded asset.

The ledger is immutable: every mutation returns a new PositionLedger, so the
cycle owner decides when a new value becomes canonical.

Rules:
- BUY adds the asset amount to holdings and the quote amount to total cost
- SELL removes cost at the ledger's average cost (not the execution price)
- Holdings never go negative; oversells only consume what is held
- When holdings reach zero, total cost resets to exactly zero
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class TradeDirection(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def from_string(cls, value: str) -> "TradeDirection":
        return cls(str(value).strip().upper())


@dataclass(frozen=True)
class Trade:
    """A completed trade against the venue, parsed from a trade-history record."""
    direction: TradeDirection
    asset_amount: float
    quote_amount: float
    timestamp: datetime
    trade_id: str

    def __post_init__(self):
        if not self.trade_id:
            raise ValueError("Trade id is required")
        if self.asset_amount <= 0 or self.quote_amount <= 0:
            raise ValueError("Trade amounts must be positive")

    @property
    def execution_price(self) -> float:
        return self.quote_amount / self.asset_amount

    def sort_key(self):
        return (self.timestamp, self.trade_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "asset_amount": self.asset_amount,
            "quote_amount": self.quote_amount,
            "execution_price": self.execution_price,
            "timestamp": self.timestamp.isoformat(),
            "trade_id": self.trade_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            direction=TradeDirection.from_string(data["direction"]),
            asset_amount=float(data["asset_amount"]),
            quote_amount=float(data["quote_amount"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            trade_id=str(data["trade_id"]),
        )


@dataclass(frozen=True)
class PositionLedger:
    """Accumulated holdings and total cost of the asset."""
    holdings: float = 0.0
    total_cost: float = 0.0
    last_trade: Optional[Trade] = None

    def __post_init__(self):
        if self.holdings < 0:
            raise ValueError(f"Holdings cannot be negative: {self.holdings}")
        if self.total_cost < 0:
            raise ValueError(f"Total cost cannot be negative: {self.total_cost}")

    @property
    def cost_basis(self) -> float:
        if self.holdings > 0:
            return self.total_cost / self.holdings
        return 0.0

    def realized_pnl(self, trade: Trade) -> float:
        """P&L a SELL would realize against the current average cost (0 for BUYs)."""
        if trade.direction is not TradeDirection.SELL or self.holdings <= 0:
            return 0.0
        consumed = min(trade.asset_amount, self.holdings)
        return consumed * (trade.execution_price - self.cost_basis)

    def apply(self, trade: Trade) -> "PositionLedger":
        """Return the ledger that results from applying ``trade``."""
        holdings = self.holdings
        total_cost = self.total_cost

        if trade.direction is TradeDirection.BUY:
            holdings += trade.asset_amount
            total_cost += trade.quote_amount
        else:
            consumed = min(trade.asset_amount, holdings)
            if holdings > 0:
                total_cost -= consumed * self.cost_basis
                holdings -= consumed
            if trade.asset_amount > consumed:
                logger.warning(
                    "SELL %s of %.6f exceeds ledger holdings; only %.6f consumed",
                    trade.trade_id, trade.asset_amount, consumed,
                )

        if holdings <= 0:
            holdings = 0.0
            total_cost = 0.0
        else:
            # float residue from the average-cost removal can dip just below zero
            total_cost = max(total_cost, 0.0)

        return replace(self, holdings=holdings, total_cost=total_cost, last_trade=trade)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holdings": self.holdings,
            "total_cost": self.total_cost,
            "cost_basis": self.cost_basis,
            "last_trade": self.last_trade.to_dict() if self.last_trade else None,
        }


def bulk_rebuild(trades: Iterable[Trade]) -> PositionLedger:
    """
    Rebuild a ledger from scratch by folding trades in chronological order.

    Used at cold start. Produces the same ledger as applying the same trades
    one at a time through live reconciliation.
    """
    ledger = PositionLedger()
    ordered = sorted(trades, key=Trade.sort_key)
    for trade in ordered:
        ledger = ledger.apply(trade)
        logger.debug(
            "  %s %.6f @ %.2f -> holdings=%.6f basis=%.2f",
            trade.direction.value, trade.asset_amount, trade.execution_price,
            ledger.holdings, ledger.cost_basis,
        )
    logger.info(
        "Rebuilt ledger from %d trades: %.6f held @ %.2f avg (total cost %.2f)",
        len(ordered), ledger.holdings, ledger.cost_basis, ledger.total_cost,
    )
    return ledger
