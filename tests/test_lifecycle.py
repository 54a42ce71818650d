"""Tests for the item status state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from capture.lifecycle import (
    STUCK_MESSAGE,
    InvalidTransition,
    can_transition,
    is_stale,
    mark_ready,
    record_failure,
    reset_stale,
    transition,
)
from capture.types import ItemStatus, ProcessedItem, format_utc

S = ItemStatus


class TestTransitions:
    @pytest.mark.parametrize("current,target", [
        (S.QUEUED, S.PROCESSING),
        (S.PROCESSING, S.READY),
        (S.PROCESSING, S.REVIEW_REQUIRED),
        (S.PROCESSING, S.FAILED),
        (S.READY, S.PROCESSING),
        (S.FAILED, S.QUEUED),
        (S.REVIEW_REQUIRED, S.READY),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.QUEUED, S.READY),
        (S.FAILED, S.READY),
        (S.READY, S.QUEUED),
    ])
    def test_forbidden(self, current, target):
        item = ProcessedItem(id="x", status=current)
        with pytest.raises(InvalidTransition):
            transition(item, target)
        assert item.status == current

    def test_self_transition_is_a_no_op(self):
        assert can_transition(S.READY, S.READY)

    def test_transition_logs_message(self):
        item = ProcessedItem(id="x")
        transition(item, S.PROCESSING, "Started")
        assert item.status == S.PROCESSING
        assert item.processing_log[-1].endswith("Started")


class TestFailures:
    """Repeated failures escalate to deletion."""

    def test_threshold(self):
        item = ProcessedItem(id="x", status=S.PROCESSING)
        assert record_failure(item, "boom", threshold=2) is False
        assert item.status == S.FAILED
        transition(item, S.PROCESSING)
        assert record_failure(item, "boom", threshold=2) is False
        transition(item, S.PROCESSING)
        assert record_failure(item, "boom", threshold=2) is True
        assert item.failure_count == 3
        assert item.processing_log[-1].endswith("boom (failure 3)")

    def test_review_required_status(self):
        item = ProcessedItem(id="x", status=S.PROCESSING)
        record_failure(item, "reasoning down", threshold=2, status=S.REVIEW_REQUIRED)
        assert item.status == S.REVIEW_REQUIRED

    def test_success_resets_count(self):
        item = ProcessedItem(id="x", status=S.PROCESSING, failure_count=2)
        mark_ready(item, "done")
        assert item.status == S.READY
        assert item.failure_count == 0
        assert item.last_processed_at is not None


class TestStaleDetection:
    def test_stale_processing_item(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        item = ProcessedItem(id="x", status=S.PROCESSING, updated_at=format_utc(now - timedelta(minutes=10)))
        assert is_stale(item, 300, now)
        assert not is_stale(item, 900, now)

    def test_only_processing_can_be_stale(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        item = ProcessedItem(id="x", status=S.READY, updated_at=format_utc(now - timedelta(days=1)))
        assert not is_stale(item, 300, now)

    def test_reset(self):
        item = ProcessedItem(id="x", status=S.PROCESSING)
        reset_stale(item)
        assert item.status == S.QUEUED
        assert item.processing_log[-1].endswith(STUCK_MESSAGE)
