"""
Tests for price feed failover and watermark tracking.
"""

import pytest
import requests
from unittest.mock import Mock

from core.exceptions import AllSourcesUnavailable
from core.price_feed import JsonPriceSource, PriceFeed, PriceFeedState, PricePoint
from tests.helpers import FakeResponse, T0


def source(name, value=None, error=None):
    fn = Mock(name=name)
    fn.name = name
    if error is not None:
        fn.side_effect = error
    else:
        fn.return_value = value
    return fn


class TestPriceFeed:

    def test_failover_to_second_source(self):
        """First source times out, second returns 3000"""
        primary = source("coingecko", error=requests.Timeout("timed out"))
        secondary = source("binance", 3000.0)
        feed = PriceFeed([primary, secondary])

        price, state = feed.fetch_price(PriceFeedState())

        assert price == 3000.0
        assert state.latest.price == 3000.0
        assert state.high_water_mark == 3000.0
        assert state.low_water_mark == 3000.0
        primary.assert_called_once()
        secondary.assert_called_once()

    def test_first_valid_source_wins(self):
        primary = source("a", 2500.0)
        secondary = source("b", 9999.0)
        price, _ = PriceFeed([primary, secondary]).fetch_price(PriceFeedState())
        assert price == 2500.0
        secondary.assert_not_called()

    def test_non_positive_price_skipped(self):
        feed = PriceFeed([source("zero", 0.0), source("neg", -5.0), source("ok", 2100.0)])
        price, _ = feed.fetch_price(PriceFeedState())
        assert price == 2100.0

    def test_all_sources_fail(self):
        feed = PriceFeed([
            source("a", error=requests.ConnectionError("down")),
            source("b", error=KeyError("price")),
        ])
        state = PriceFeedState()
        with pytest.raises(AllSourcesUnavailable) as exc_info:
            feed.fetch_price(state)
        assert exc_info.value.attempted == ["a", "b"]
        assert "a, b" in str(exc_info.value)

    def test_requires_sources(self):
        with pytest.raises(ValueError):
            PriceFeed([])


class TestPriceFeedState:

    def test_watermarks_unset_until_first_price(self):
        state = PriceFeedState()
        assert state.high_water_mark is None
        assert state.low_water_mark is None
        assert state.latest is None
        assert state.recent_prices(5) == []

    def test_watermarks_track_extremes(self):
        state = PriceFeedState()
        for price in (3000.0, 3100.0, 2900.0, 3050.0):
            state = state.record(price, timestamp=T0)
        assert state.high_water_mark == 3100.0
        assert state.low_water_mark == 2900.0
        assert state.recent_prices(2) == [2900.0, 3050.0]

    def test_history_bounded(self):
        state = PriceFeedState()
        for i in range(1, 21):
            state = state.record(float(i), timestamp=T0, max_history=5)
        assert [p.price for p in state.history] == [16.0, 17.0, 18.0, 19.0, 20.0]
        # watermarks survive truncation
        assert state.low_water_mark == 1.0

    def test_record_rejects_non_positive(self):
        with pytest.raises(ValueError):
            PriceFeedState().record(0.0)

    def test_from_dict_drops_bad_points(self):
        state = PriceFeedState.from_dict({
            "price_history": [
                {"price": 3000.0, "timestamp": T0.isoformat()},
                {"price": "bad", "timestamp": T0.isoformat()},
                {"price": 3010.0, "timestamp": 1704110400000},
                {"price": -1.0, "timestamp": T0.isoformat()},
            ],
            "high_water_mark": 3200.0,
            "low_water_mark": None,
        })
        assert [p.price for p in state.history] == [3000.0, 3010.0]
        assert state.high_water_mark == 3200.0
        assert state.low_water_mark is None

    def test_epoch_millis_timestamp(self):
        point = PricePoint.from_dict({"price": 1.0, "timestamp": 1704110400000})
        assert point.timestamp == T0


class TestJsonPriceSource:

    def test_extracts_dotted_path(self):
        session = Mock()
        session.get.return_value = FakeResponse(payload={"ethereum": {"usd": 3012.5}})
        src = JsonPriceSource(name="coingecko", url="https://example.test/price", path="ethereum.usd", session=session)
        assert src() == 3012.5
        session.get.assert_called_once_with("https://example.test/price", timeout=10.0)

    def test_string_price_and_list_index(self):
        session = Mock()
        session.get.return_value = FakeResponse(payload={"data": [{"price": "2999.10"}]})
        src = JsonPriceSource(name="x", url="https://example.test", path="data.0.price", session=session)
        assert src() == pytest.approx(2999.10)

    def test_http_error_propagates(self):
        session = Mock()
        session.get.return_value = FakeResponse(status_code=503)
        src = JsonPriceSource(name="x", url="https://example.test", path="price", session=session)
        with pytest.raises(requests.HTTPError):
            src()

    def test_from_config(self):
        src = JsonPriceSource.from_config({
            "name": "binance",
            "url": "https://api.binance.com/api/v3/ticker/price?symbol=ETHUSDC",
            "path": "price",
            "timeout_seconds": 7,
        })
        assert src.name == "binance"
        assert src.timeout == 7.0
