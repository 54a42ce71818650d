"""Tests for the SQLite capture store."""

import sqlite3
from unittest.mock import patch

import pytest

from capture.errors import StoreBusyError
from capture.store import CaptureStore
from capture.types import (
    CaptureInput,
    InputType,
    ItemDescriptor,
    ItemStatus,
    PlaceContext,
    ProcessedItem,
    Session,
)


class TestItems:
    """Item persistence."""

    def test_save_and_get(self, store):
        item = ProcessedItem(id="a", title="Foo", place=PlaceContext(name="Foo Cafe"))
        store.save_item(item)
        assert store.get_item("a") == item

    def test_missing_item_is_none(self, store):
        assert store.get_item("nope") is None

    def test_save_replaces(self, store):
        store.save_item(ProcessedItem(id="a", title="One"))
        store.save_item(ProcessedItem(id="a", title="Two"))
        assert store.get_item("a").title == "Two"
        assert store.count_items() == 1

    def test_delete_reports_existence(self, store):
        store.save_item(ProcessedItem(id="a"))
        assert store.delete_item("a") is True
        assert store.delete_item("a") is False

    def test_list_filters_and_order(self, store):
        """Filters combine; results come oldest first."""
        store.save_item(ProcessedItem(id="c", created_at="2024-03-01T00:00:00", status=ItemStatus.READY))
        store.save_item(ProcessedItem(id="a", created_at="2024-01-01T00:00:00", status=ItemStatus.READY))
        store.save_item(ProcessedItem(id="b", created_at="2024-02-01T00:00:00", status=ItemStatus.FAILED))

        assert [i.id for i in store.list_items()] == ["a", "b", "c"]
        assert [i.id for i in store.list_items(status=ItemStatus.READY)] == ["a", "c"]
        assert [i.id for i in store.list_items(created_after="2024-02-01")] == ["b", "c"]
        assert [i.id for i in store.list_items(limit=1)] == ["a"]

    def test_session_queries(self, store):
        store.save_item(ProcessedItem(id="a", session_id="s1"))
        store.save_item(ProcessedItem(id="b", session_id="s1"))
        store.save_item(ProcessedItem(id="c", session_id="s2"))
        store.save_item(ProcessedItem(id="d"))
        assert {i.id for i in store.items_in_session("s1")} == {"a", "b"}
        assert sorted(store.session_ids_in_use()) == ["s1", "s2"]

    def test_repoint_items(self, store):
        """Both the indexed column and the stored document change."""
        store.save_item(ProcessedItem(id="a", session_id="old"))
        store.save_item(ProcessedItem(id="b", session_id="old"))
        assert store.repoint_items("old", "new") == 2
        assert store.items_in_session("old") == []
        assert store.get_item("a").session_id == "new"


class TestSessions:
    def test_round_trip_and_order(self, store):
        store.save_session(Session(session_id="late", created_at="2024-01-02T00:00:00"))
        store.save_session(Session(session_id="early", created_at="2024-01-01T00:00:00", latitude=1.0, longitude=2.0))
        assert [s.session_id for s in store.list_sessions()] == ["early", "late"]
        assert store.get_session("early").has_coordinate

    def test_delete(self, store):
        store.save_session(Session(session_id="s"))
        assert store.delete_session("s") is True
        assert store.get_session("s") is None


class TestCaptures:
    """Raw captures are kept until processing succeeds."""

    def test_capture_with_payload_and_descriptor(self, store):
        capture = CaptureInput(payload=b"\xff\xd8jpeg", input_type=InputType.IMAGE)
        descriptor = ItemDescriptor(title="Photo", style_tags=("a",))
        store.save_capture(capture, descriptor)

        restored, restored_descriptor = store.get_capture(capture.id)
        assert restored == capture
        assert restored_descriptor == descriptor

    def test_capture_without_descriptor(self, store):
        capture = CaptureInput.from_url("https://a.example/")
        store.save_capture(capture)
        assert store.get_capture(capture.id) == (capture, None)

    def test_delete_missing_capture_is_not_an_error(self, store):
        assert store.delete_capture("missing") is False

    def test_list_oldest_first(self, store):
        second = CaptureInput.from_text("b", created_at="2024-01-02T00:00:00")
        first = CaptureInput.from_text("a", created_at="2024-01-01T00:00:00")
        store.save_capture(second)
        store.save_capture(first)
        assert [c.id for c, _ in store.list_captures()] == [first.id, second.id]


class TestBusyRetry:
    """Writers retry on a locked database before giving up."""

    def test_retries_then_succeeds(self, store):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "done"

        with patch("capture.store.time.sleep") as sleep:
            assert store._with_retry(op) == "done"
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]

    def test_gives_up_after_three_attempts(self, store):
        def op():
            raise sqlite3.OperationalError("database is busy")

        with patch("capture.store.time.sleep") as sleep:
            with pytest.raises(StoreBusyError):
                store._with_retry(op)
        # Bounded blocking time when called from the event loop
        assert sum(c.args[0] for c in sleep.call_args_list) == pytest.approx(0.3)

    def test_other_errors_are_not_retried(self, store):
        calls = []

        def op():
            calls.append(1)
            raise sqlite3.OperationalError("no such table: nope")

        with pytest.raises(sqlite3.OperationalError):
            store._with_retry(op)
        assert len(calls) == 1

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "capture.db"
        with CaptureStore(path) as s:
            s.save_item(ProcessedItem(id="persisted"))
        with CaptureStore(path) as s:
            assert s.get_item("persisted") is not None
