"""
Tests for open-order lifecycle: duplicate suppression, staleness sweep,
cancel-all and placement.
"""

import pytest
import requests
from datetime import timedelta
from unittest.mock import Mock

from core.exceptions import OrderSubmissionError, SigningError
from core.exchange_cow import CowExchange
from core.ledger import TradeDirection
from core.order_lifecycle import OrderLifecycleManager
from core.order_state import CancelOutcome, OpenOrder
from tests.helpers import T0, FakeExchange, FakeResponse


def open_order(order_id, direction, price, asset=1.0):
    return OpenOrder(
        order_id=order_id,
        direction=TradeDirection(direction),
        asset_amount=asset,
        quote_amount=asset * price,
        expiry=T0 + timedelta(hours=24),
    )


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def live(exchange):
    return OrderLifecycleManager(exchange, duplicate_threshold=10.0, dry_run=False)


class TestDuplicateSuppression:

    def test_near_price_same_side_is_duplicate(self, live):
        orders = [open_order("0xa", "BUY", 2000.0)]
        assert live.is_duplicate(orders, TradeDirection.BUY, 2005.0)

    def test_outside_threshold_not_duplicate(self, live):
        orders = [open_order("0xa", "BUY", 2000.0)]
        assert not live.is_duplicate(orders, TradeDirection.BUY, 2020.0)

    def test_exact_threshold_not_duplicate(self, live):
        orders = [open_order("0xa", "BUY", 2000.0)]
        assert not live.is_duplicate(orders, TradeDirection.BUY, 2010.0)

    def test_other_side_not_duplicate(self, live):
        orders = [open_order("0xa", "SELL", 2000.0)]
        assert not live.is_duplicate(orders, TradeDirection.BUY, 2001.0)

    def test_duplicate_placement_skipped(self, live, exchange):
        orders = (open_order("0xa", "BUY", 2000.0),)
        result = live.place(orders, TradeDirection.BUY, 2005.0, 0.1, 200.5, now=T0)

        assert not result.placed
        assert result.skipped_reason == "duplicate order"
        assert result.open_orders == orders
        assert exchange.placed == []


class TestStalenessSweep:

    def test_far_order_cancelled_near_order_kept(self, live, exchange):
        far = open_order("0xfar", "SELL", 3250.0)
        near = open_order("0xnear", "BUY", 2850.0)

        result = live.sweep_stale((far, near), current_price=3000.0, max_distance=200.0)

        assert result.cancelled == 1
        assert result.remaining == (near,)
        assert exchange.cancelled == ["0xfar"]

    def test_exact_distance_not_stale(self, live, exchange):
        order = open_order("0xedge", "BUY", 2800.0)
        result = live.sweep_stale((order,), 3000.0, 200.0)
        assert result.remaining == (order,)
        assert exchange.cancelled == []

    def test_failed_cancel_stays_cached(self, live, exchange):
        order = open_order("0xstuck", "SELL", 3500.0)
        exchange.cancel_outcomes["0xstuck"] = CancelOutcome.FAILED

        result = live.sweep_stale((order,), 3000.0, 200.0)

        assert result.remaining == (order,)
        assert result.cancelled == 0
        assert result.failed == 1

    def test_signing_failure_keeps_order_and_earlier_cancels(self, pair):
        signer = Mock()
        signer.sign_cancellation.side_effect = ["0xcancelsig", SigningError("signer offline")]
        session = Mock()
        session.request.return_value = FakeResponse(200)
        manager = OrderLifecycleManager(CowExchange(pair, signer, read_only=False, session=session), dry_run=False)
        first = open_order("0xfirst", "SELL", 3250.0)
        second = open_order("0xsecond", "SELL", 3300.0)

        result = manager.sweep_stale((first, second), 3000.0, 200.0)

        assert result.cancelled == 1
        assert result.failed == 1
        assert result.remaining == (second,)

    def test_already_gone_removed(self, live, exchange):
        order = open_order("0xgone", "SELL", 3500.0)
        exchange.cancel_outcomes["0xgone"] = CancelOutcome.ALREADY_GONE

        result = live.sweep_stale((order,), 3000.0, 200.0)

        assert result.remaining == ()
        assert result.cancelled == 1

    def test_dry_run_keeps_cache(self, exchange):
        manager = OrderLifecycleManager(exchange, dry_run=True)
        order = open_order("0xfar", "SELL", 3500.0)

        result = manager.sweep_stale((order,), 3000.0, 200.0)

        assert result.remaining == (order,)
        assert exchange.cancelled == []


class TestCancelAll:

    def test_cancels_every_order(self, live, exchange):
        orders = (open_order("0xa", "BUY", 2000.0), open_order("0xb", "SELL", 2200.0))
        exchange.cancel_outcomes["0xb"] = CancelOutcome.FAILED

        result = live.cancel_all(orders)

        assert exchange.cancelled == ["0xa", "0xb"]
        assert result.cancelled == 1
        assert [o.order_id for o in result.remaining] == ["0xb"]

    def test_empty_snapshot(self, live, exchange):
        result = live.cancel_all(())
        assert result.remaining == ()
        assert exchange.cancelled == []


class TestPlacement:

    def test_placed_order_appended(self, live, exchange):
        result = live.place((), TradeDirection.BUY, 1950.0, 0.1, 195.0, validity_hours=12, now=T0)

        assert result.placed
        assert result.order_id == "0xplaced0001"
        assert len(result.open_orders) == 1
        placed = result.open_orders[0]
        assert placed.direction is TradeDirection.BUY
        assert placed.limit_price == pytest.approx(1950.0)
        assert placed.expiry == T0 + timedelta(hours=12)
        assert exchange.placed[0]["validity_hours"] == 12

    def test_second_identical_placement_is_duplicate(self, live, exchange):
        first = live.place((), TradeDirection.SELL, 2100.0, 0.1, 210.0, now=T0)
        second = live.place(first.open_orders, TradeDirection.SELL, 2100.0, 0.1, 210.0, now=T0)

        assert second.skipped_reason == "duplicate order"
        assert len(exchange.placed) == 1

    @pytest.mark.parametrize("error", [
        OrderSubmissionError("rejected", status_code=400),
        requests.Timeout("slow"),
        ValueError("zero atoms"),
    ])
    def test_placement_failure_reported(self, live, exchange, error):
        exchange.place_error = error
        result = live.place((), TradeDirection.BUY, 1950.0, 0.1, 195.0, now=T0)

        assert not result.placed
        assert result.error == str(error)
        assert result.open_orders == ()

    def test_dry_run_does_not_submit(self, exchange):
        manager = OrderLifecycleManager(exchange, dry_run=True)
        result = manager.place((), TradeDirection.BUY, 1950.0, 0.1, 195.0, now=T0)

        assert result.skipped_reason == "dry run"
        assert exchange.placed == []
