"""
cowtrader Core: Order Lifecycle

Reasons about the cached open-order snapshot:
- duplicate suppression before placement
- staleness sweep (cancel orders drifted too far from market)
- cancel-all on CANCEL_ORDERS decisions

All methods take the snapshot and return a new one; nothing is cached here.
An order leaves the snapshot only on a confirmed cancel (or "already gone").
Failed cancels stay cached for the next sweep.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Tuple

import requests

from core.exceptions import OrderSubmissionError, SigningError
from core.ledger import TradeDirection
from core.order_state import CancelOutcome, OpenOrder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    remaining: Tuple[OpenOrder, ...]
    cancelled: int = 0
    failed: int = 0


@dataclass(frozen=True)
class PlacementResult:
    open_orders: Tuple[OpenOrder, ...]
    order_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def placed(self) -> bool:
        return self.order_id is not None


class OrderLifecycleManager:
    """Duplicate checks, staleness sweep and placement against the order book."""

    def __init__(self, exchange, duplicate_threshold: float = 10.0, dry_run: bool = True):
        self.exchange = exchange
        self.duplicate_threshold = duplicate_threshold
        self.dry_run = dry_run

    def is_duplicate(self, open_orders: Sequence[OpenOrder], direction: TradeDirection, price: float) -> bool:
        for order in open_orders:
            if order.direction is direction and abs(order.limit_price - price) < self.duplicate_threshold:
                logger.info(
                    "Duplicate %s at %.2f: open order %s at %.2f (threshold %.2f)",
                    direction.value, price, order.order_id[:10], order.limit_price, self.duplicate_threshold,
                )
                return True
        return False

    def _cancel(self, orders: Sequence[OpenOrder], targets: Sequence[OpenOrder], why: str) -> SweepResult:
        if not targets:
            return SweepResult(remaining=tuple(orders))

        if self.dry_run:
            for order in targets:
                logger.info("DRY_RUN: would cancel %s order %s (%s)", order.direction.value, order.order_id[:10], why)
            return SweepResult(remaining=tuple(orders))

        removed = set()
        failed = 0
        for order in targets:
            outcome = self.exchange.cancel_order(order.order_id)
            if outcome.removed:
                removed.add(order.order_id)
                if outcome is CancelOutcome.ALREADY_GONE:
                    logger.info("Order %s already off the book", order.order_id[:10])
            else:
                failed += 1
                logger.warning("Cancel of %s failed; keeping cached for next sweep", order.order_id[:10])

        remaining = tuple(o for o in orders if o.order_id not in removed)
        return SweepResult(remaining=remaining, cancelled=len(removed), failed=failed)

    def sweep_stale(self, open_orders: Sequence[OpenOrder], current_price: float,
                    max_distance: float) -> SweepResult:
        """Cancel every cached order whose limit price is more than ``max_distance`` from market."""
        stale = [o for o in open_orders if o.distance_from(current_price) > max_distance]
        for order in stale:
            logger.info(
                "Stale %s order %s: limit %.2f vs market %.2f",
                order.direction.value, order.order_id[:10], order.limit_price, current_price,
            )
        return self._cancel(open_orders, stale, "stale")

    def cancel_all(self, open_orders: Sequence[OpenOrder]) -> SweepResult:
        return self._cancel(open_orders, list(open_orders), "cancel all")

    def place(
        self,
        open_orders: Sequence[OpenOrder],
        direction: TradeDirection,
        limit_price: float,
        asset_amount: float,
        quote_amount: float,
        validity_hours: float = 24.0,
        now: Optional[datetime] = None,
    ) -> PlacementResult:
        """
        Place a limit order unless it duplicates a cached one.

        A placed order is appended to the returned snapshot so later checks in
        the same cycle see it.
        """
        orders = tuple(open_orders)
        if self.is_duplicate(orders, direction, limit_price):
            return PlacementResult(open_orders=orders, skipped_reason="duplicate order")

        if self.dry_run:
            logger.info(
                "DRY_RUN: would place %s %.6f @ %.2f (%.2f quote)",
                direction.value, asset_amount, limit_price, quote_amount,
            )
            return PlacementResult(open_orders=orders, skipped_reason="dry run")

        now = now or datetime.now(timezone.utc)
        try:
            order = self.exchange.build_order(
                direction, asset_amount, quote_amount, validity_hours, now=now.timestamp()
            )
            order_id = self.exchange.place_order(order)
        except (OrderSubmissionError, SigningError, requests.RequestException, ValueError) as exc:
            logger.error("Order placement failed: %s", exc)
            return PlacementResult(open_orders=orders, error=str(exc))

        placed = OpenOrder(
            order_id=order_id,
            direction=direction,
            asset_amount=asset_amount,
            quote_amount=quote_amount,
            expiry=now + timedelta(hours=validity_hours),
        )
        return PlacementResult(open_orders=orders + (placed,), order_id=order_id)
