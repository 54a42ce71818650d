"""Tests for the capture inbox queue."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from capture.queue import MAX_ATTEMPTS, CaptureQueue
from capture.types import CaptureInput, InputType, ItemDescriptor


@pytest.fixture
def queue(tmp_path):
    q = CaptureQueue(tmp_path / "queue.db")
    yield q
    q.close()


def text(n):
    return CaptureInput.from_text(f"note {n}", id=f"c{n}")


def make_due(queue, capture_id):
    """Clear the backoff so a failed entry can be dequeued again."""
    queue._conn.execute("UPDATE inbox SET retry_after = NULL WHERE id = ?", (capture_id,))


class TestCaptureQueue:
    """Tests for the SQLite-backed capture inbox."""

    def test_enqueue_and_count(self, queue):
        """Should enqueue captures and track count."""
        assert queue.count() == 0
        queue.enqueue(text(1))
        queue.enqueue(text(2))
        assert queue.count() == 2

    def test_dequeue_fifo_and_claims(self, queue):
        """Oldest first; claimed entries are not handed out twice."""
        for n in range(3):
            queue.enqueue(text(n))

        first = queue.dequeue(limit=2)
        assert [e.id for e in first] == ["c0", "c1"]
        assert [e.id for e in queue.dequeue(limit=2)] == ["c2"]
        assert queue.dequeue() == []
        assert queue.count() == 0

    def test_round_trips_payload_descriptor_and_attachments(self, queue):
        capture = CaptureInput(payload=b"\x89PNG", input_type=InputType.IMAGE, id="img")
        queue.enqueue(capture, ItemDescriptor(title="Photo", session_id="s"), [b"one", b"two"])

        entry = queue.dequeue()[0]
        assert entry.capture == capture
        assert entry.descriptor.title == "Photo"
        assert entry.attachments == [b"one", b"two"]
        assert entry.attempts == 1

    def test_complete_removes_entry_and_attachments(self, queue):
        queue.enqueue(text(1), attachments=[b"x"])
        queue.dequeue()
        queue.complete("c1")
        assert queue.stats()["total"] == 0
        assert queue._attachments("c1") == []

    def test_enqueue_replaces_and_resets(self, queue):
        """Re-enqueueing a claimed capture puts it back to pending."""
        queue.enqueue(text(1))
        queue.dequeue()
        queue.enqueue(text(1))
        assert queue.count() == 1
        assert queue.dequeue()[0].attempts == 1

    def test_fail_sets_backoff(self, queue):
        """A failed entry waits before it can be dequeued again."""
        queue.enqueue(text(1))
        queue.dequeue()
        assert queue.fail("c1", "network down") is False
        assert queue.count() == 1
        assert queue.dequeue() == []

        row = queue._conn.execute("SELECT retry_after, last_error FROM inbox WHERE id = 'c1'").fetchone()
        retry_after = datetime.fromisoformat(row[0])
        delay = (retry_after - datetime.now(timezone.utc)).total_seconds()
        assert 20 < delay <= 30
        assert row[1] == "network down"

    def test_backoff_doubles(self, queue):
        queue.enqueue(text(1))
        queue.dequeue()
        queue.fail("c1")
        make_due(queue, "c1")
        queue.dequeue()
        queue.fail("c1")
        row = queue._conn.execute("SELECT retry_after FROM inbox WHERE id = 'c1'").fetchone()
        delay = (datetime.fromisoformat(row[0]) - datetime.now(timezone.utc)).total_seconds()
        assert 50 < delay <= 60

    def test_dead_letter_after_max_attempts(self, queue):
        queue.enqueue(text(1))
        for attempt in range(1, MAX_ATTEMPTS + 1):
            entry = queue.dequeue()[0]
            assert entry.attempts == attempt
            abandoned = queue.fail("c1", "still broken")
            make_due(queue, "c1")
        assert abandoned is True
        assert queue.dequeue() == []
        assert queue.list_failed() == [
            {"id": "c1", "attempts": MAX_ATTEMPTS, "last_error": "still broken",
             "queued_at": queue.list_failed()[0]["queued_at"]},
        ]
        assert queue.stats()["failed"] == 1

    def test_retry_failed(self, queue):
        queue.enqueue(text(1))
        for _ in range(MAX_ATTEMPTS):
            queue.dequeue()
            queue.fail("c1")
            make_due(queue, "c1")
        assert queue.retry_failed() == 1
        entry = queue.dequeue()[0]
        assert entry.attempts == 1

    def test_release_does_not_count_attempt(self, queue):
        queue.enqueue(text(1))
        queue.dequeue()
        queue.release("c1")
        assert queue.count() == 1
        assert queue.dequeue()[0].attempts == 1

    def test_stale_claims_recovered(self, queue):
        """Claims left by a crashed processor go back to pending."""
        queue.enqueue(text(1))
        queue.dequeue()
        old = (datetime.now(timezone.utc) - timedelta(minutes=20)).isoformat()
        queue._conn.execute("UPDATE inbox SET claimed_at = ? WHERE id = 'c1'", (old,))
        assert [e.id for e in queue.dequeue()] == ["c1"]

    def test_stats(self, queue):
        queue.enqueue(text(1))
        queue.enqueue(text(2))
        queue.dequeue()
        stats = queue.stats()
        assert (stats["pending"], stats["processing"], stats["total"]) == (1, 1, 2)
        assert stats["queue_path"].endswith("queue.db")
        assert stats["oldest"] is not None

    def test_concurrent_dequeue_no_overlap(self, tmp_path):
        """Two queue handles on one file never claim the same capture."""
        path = tmp_path / "queue.db"
        q1, q2 = CaptureQueue(path), CaptureQueue(path)
        for n in range(20):
            q1.enqueue(text(n))

        claimed: list[str] = []
        guard = threading.Lock()

        def worker(q):
            while True:
                entries = q.dequeue(limit=1)
                if not entries:
                    return
                with guard:
                    claimed.extend(e.id for e in entries)

        threads = [threading.Thread(target=worker, args=(q,)) for q in (q1, q2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        q1.close()
        q2.close()
        assert sorted(claimed) == sorted(f"c{n}" for n in range(20))
