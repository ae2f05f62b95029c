"""
Tests for the open-order snapshot model and order book record parsing.
"""

import pytest
from datetime import timedelta

from core.ledger import TradeDirection
from core.order_state import CancelOutcome, OpenOrder, parse_open_order, parse_timestamp
from tests.helpers import OTHER_TOKEN, T0, order_record


class TestOpenOrder:

    def test_limit_price_and_distance(self):
        order = OpenOrder("0xa", TradeDirection.BUY, 0.5, 1000.0, T0)
        assert order.limit_price == pytest.approx(2000.0)
        assert order.distance_from(2150.0) == pytest.approx(150.0)

    def test_expiry(self):
        order = OpenOrder("0xa", TradeDirection.BUY, 0.5, 1000.0, T0)
        assert order.is_expired(T0)
        assert not order.is_expired(T0 - timedelta(seconds=1))

    def test_validation(self):
        with pytest.raises(ValueError, match="id is required"):
            OpenOrder("", TradeDirection.BUY, 0.5, 1000.0, T0)
        with pytest.raises(ValueError, match="positive"):
            OpenOrder("0xa", TradeDirection.SELL, 0.0, 1000.0, T0)

    def test_dict_round_trip(self):
        order = OpenOrder("0xa", TradeDirection.SELL, 0.25, 600.0, T0)
        assert OpenOrder.from_dict(order.to_dict()) == order


class TestCancelOutcome:

    def test_removed(self):
        assert CancelOutcome.CANCELLED.removed
        assert CancelOutcome.ALREADY_GONE.removed
        assert not CancelOutcome.FAILED.removed


class TestParseOpenOrder:

    def test_open_buy(self, pair):
        record = order_record("0xopen", "BUY", 0.1, 195.0, status="open")
        order = parse_open_order(record, pair, now=T0)

        assert order.order_id == "0xopen"
        assert order.direction is TradeDirection.BUY
        assert order.limit_price == pytest.approx(1950.0)
        assert order.expiry == T0 + timedelta(hours=24)

    def test_open_sell(self, pair):
        order = parse_open_order(order_record("0xs", "SELL", 0.2, 440.0, status="open"), pair, now=T0)
        assert order.direction is TradeDirection.SELL
        assert order.asset_amount == pytest.approx(0.2)

    def test_expired_dropped(self, pair):
        record = order_record("0xold", "BUY", 0.1, 195.0, status="open", valid_to=T0 - timedelta(minutes=1))
        assert parse_open_order(record, pair, now=T0) is None

    def test_non_open_status_dropped(self, pair):
        assert parse_open_order(order_record("0xf", "BUY", 0.1, 195.0, status="fulfilled"), pair, now=T0) is None

    def test_other_pair_dropped(self, pair):
        record = order_record("0xo", "SELL", 0.1, 195.0, status="open")
        record["sellToken"] = OTHER_TOKEN
        assert parse_open_order(record, pair, now=T0) is None

    def test_malformed_dropped(self, pair):
        record = order_record("0xm", "BUY", 0.1, 195.0, status="open")
        record["validTo"] = "soon"
        assert parse_open_order(record, pair, now=T0) is None


class TestParseTimestamp:

    def test_iso_with_z(self):
        assert parse_timestamp("2024-01-01T12:00:00Z") == T0

    def test_epoch_seconds(self):
        assert parse_timestamp(int(T0.timestamp())) == T0

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2024-01-01T12:00:00") == T0
