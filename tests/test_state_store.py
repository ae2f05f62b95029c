"""
Tests for atomic state persistence and the persisted state document.
"""

import json
from datetime import timedelta

import pytest

from core.bot_state import PERSISTED_PRICE_POINTS, BotState
from core.ledger import PositionLedger, Trade, TradeDirection
from core.order_state import OpenOrder
from core.price_feed import PriceFeedState
from infra.state_store import StateStore
from tests.helpers import T0


class TestStateStore:

    def test_missing_file_is_cold_start(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        assert not store.exists()
        assert store.load() is None

    def test_save_and_load(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        assert store.save({"holdings": 1.5})
        assert store.load() == {"holdings": 1.5}

    def test_no_temp_files_left(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        store.save({"a": 1})
        store.save({"a": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_corrupt_file_treated_as_absent(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert StateStore(str(path)).load() is None

    def test_non_object_treated_as_absent(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2, 3]")
        assert StateStore(str(path)).load() is None

    def test_write_failure_reported(self, tmp_path):
        store = StateStore(str(tmp_path / "state.json"))
        store.state_file.mkdir()
        assert store.save({"a": 1}) is False

    def test_env_default_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STATE_FILE", str(tmp_path / "custom.json"))
        assert StateStore().state_file == tmp_path / "custom.json"


class TestBotStateDocument:

    def make_state(self):
        buy = Trade(TradeDirection.BUY, 1.0, 2000.0, T0, "0xb1")
        ledger = PositionLedger().apply(buy)
        feed = PriceFeedState()
        for i in range(150):
            feed = feed.record(2000.0 + i, timestamp=T0 + timedelta(minutes=i))
        order = OpenOrder("0xo1", TradeDirection.SELL, 0.5, 1100.0, T0 + timedelta(hours=24))
        return BotState(
            ledger=ledger,
            feed=feed,
            processed_trade_ids=frozenset({"0xb1", "0xa0"}),
            open_orders=(order,),
            model_cursor=2,
            current_price=2149.0,
        )

    def test_document_fields(self):
        doc = self.make_state().to_document(now=T0)
        assert doc["holdings"] == 1.0
        assert doc["total_cost"] == 2000.0
        assert doc["cost_basis"] == 2000.0
        assert doc["last_trade"]["trade_id"] == "0xb1"
        assert doc["processed_trade_ids"] == ["0xa0", "0xb1"]
        assert len(doc["price_history"]) == PERSISTED_PRICE_POINTS
        assert doc["high_water_mark"] == 2149.0
        assert doc["low_water_mark"] == 2000.0
        assert doc["last_updated"] == T0.isoformat()
        json.dumps(doc)

    def test_round_trip(self):
        state = self.make_state()
        restored = BotState.from_document(json.loads(json.dumps(state.to_document())))

        assert restored.ledger == state.ledger
        assert restored.processed_trade_ids == state.processed_trade_ids
        assert restored.open_orders == state.open_orders
        assert restored.model_cursor == 2
        assert restored.feed.high_water_mark == state.feed.high_water_mark
        assert len(restored.feed.history) == PERSISTED_PRICE_POINTS

    def test_minimal_document(self):
        restored = BotState.from_document({"holdings": 0, "total_cost": 0})
        assert restored.ledger == PositionLedger()
        assert restored.feed.high_water_mark is None
        assert restored.processed_trade_ids == frozenset()

    def test_invalid_ledger_raises(self):
        with pytest.raises(ValueError):
            BotState.from_document({"holdings": -1})
