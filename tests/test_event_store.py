"""Tests for the bounded diagnostic event store."""

from __future__ import annotations

import pytest

from src.app.events import EventRecord, EventSink, InMemoryEventStore


class TestInMemoryEventStore:
    def test_is_an_event_sink(self):
        assert isinstance(InMemoryEventStore(), EventSink)

    def test_store_returns_record(self):
        store = InMemoryEventStore()

        record = store.store({"id": 1001, "name": "#1001"}, topic="orders/create", request_id="r-1")

        assert isinstance(record, EventRecord)
        assert record.order_id == "1001"
        assert record.topic == "orders/create"
        assert record.request_id == "r-1"
        assert record.payload["name"] == "#1001"
        assert store.count() == 1

    def test_stored_payload_is_a_copy(self):
        store = InMemoryEventStore()
        payload = {"id": 1}

        store.store(payload)
        payload["id"] = 2

        assert store.latest().payload == {"id": 1}

    def test_all_events_dedups_by_order_newest_first(self):
        store = InMemoryEventStore()
        store.store({"id": 1, "v": "a"}, topic="orders/create")
        store.store({"id": 2, "v": "b"}, topic="orders/create")
        store.store({"id": 1, "v": "c"}, topic="orders/updated")

        events = store.all_events()

        assert [(e.order_id, e.payload["v"]) for e in events] == [("1", "c"), ("2", "b")]
        assert store.count() == 3

    def test_events_without_order_id_are_all_kept(self):
        store = InMemoryEventStore()
        store.store({"title": "x"})
        store.store({"title": "y"})

        assert len(store.all_events()) == 2

    def test_limit(self):
        store = InMemoryEventStore()
        for i in range(5):
            store.store({"id": i})

        assert [e.order_id for e in store.all_events(limit=2)] == ["4", "3"]

    def test_capacity_drops_oldest(self):
        store = InMemoryEventStore(max_events=3)
        for i in range(5):
            store.store({"id": i})

        assert store.count() == 3
        assert [e.order_id for e in store.all_events()] == ["4", "3", "2"]

    def test_latest_and_clear(self):
        store = InMemoryEventStore()
        assert store.latest() is None

        store.store({"id": 1})
        store.store({"id": 2})
        assert store.latest().order_id == "2"

        assert store.clear() == 2
        assert store.count() == 0
        assert store.all_events() == []

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            InMemoryEventStore(max_events=0)
