"""Tests for crash recovery, inbox draining and bulk reprocessing."""

import asyncio
import io

import pytest
from PIL import Image

from capture.lifecycle import STUCK_MESSAGE
from capture.processing import ProcessingManager, capture_for_item, place_conflict
from capture.queue import MAX_ATTEMPTS, CaptureQueue
from capture.types import (
    CaptureInput,
    InputType,
    ItemDescriptor,
    ItemStatus,
    LinkResult,
    PlaceContext,
    ProcessedItem,
    url_item_id,
)

from conftest import MockLinks, MockPlaces, hours_ago

URL = "https://foo.example/place/123"
FOO = PlaceContext(name="Foo Cafe", place_id="abc", latitude=47.6097, longitude=-122.3331)
BAR = PlaceContext(name="Bar Other", place_id="xyz", latitude=47.6098, longitude=-122.3332)


@pytest.fixture
def queue(tmp_path):
    q = CaptureQueue(tmp_path / "queue.db")
    yield q
    q.close()


@pytest.fixture
def make_manager(make_pipeline, queue):
    def factory(**providers):
        return ProcessingManager(make_pipeline(**providers), queue)
    return factory


def png():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8)).save(buf, "PNG")
    return buf.getvalue()


class TestHelpers:
    def test_place_conflict(self):
        assert not place_conflict(None, FOO)
        assert not place_conflict(FOO, FOO)
        assert place_conflict(FOO, BAR)
        assert place_conflict(FOO, None)
        assert place_conflict(PlaceContext(name="Foo Cafe"), PlaceContext(name="Other"))
        assert not place_conflict(PlaceContext(), BAR)

    def test_capture_for_item(self):
        item = ProcessedItem(id="x", input_id="cap", url=URL, modality="web",
                             created_at="2024-05-01T12:00:00", transcription="words")
        capture = capture_for_item(item)
        assert (capture.id, capture.url, capture.text) == ("cap", URL, "words")
        assert capture.created_at == "2024-05-01T12:00:00"
        assert capture.input_type == InputType.WEB


class TestResumeInterrupted:
    """Crash recovery picks up where processing stopped."""

    @pytest.mark.asyncio
    async def test_stale_processing_item_recovered(self, make_manager, store):
        manager = make_manager(links=MockLinks(default=LinkResult(title="Foo Cafe")))
        capture = CaptureInput.from_url(URL, created_at=hours_ago(1))
        store.save_capture(capture)
        store.save_item(ProcessedItem(id=url_item_id(URL), input_id=capture.id, url=URL,
                                      status=ItemStatus.PROCESSING, created_at=capture.created_at,
                                      updated_at=hours_ago(1)))

        stats = await manager.resume_interrupted()

        item = store.get_item(url_item_id(URL))
        assert item.status == ItemStatus.READY
        assert item.title == "Foo Cafe"
        assert any(line.endswith(STUCK_MESSAGE) for line in item.processing_log)
        assert store.get_capture(capture.id) is None
        assert stats["processed"] == 1

    @pytest.mark.asyncio
    async def test_fresh_processing_item_left_alone(self, make_manager, store):
        manager = make_manager()
        capture = CaptureInput.from_url(URL)
        store.save_capture(capture)
        store.save_item(ProcessedItem(id=url_item_id(URL), input_id=capture.id, url=URL,
                                      status=ItemStatus.PROCESSING))

        stats = await manager.resume_interrupted()

        assert store.get_item(url_item_id(URL)).status == ItemStatus.PROCESSING
        assert store.get_capture(capture.id) is not None
        assert stats["processed"] == 0

    @pytest.mark.asyncio
    async def test_orphaned_capture_processed(self, make_manager, store):
        """A capture saved before its record was created still becomes a record."""
        manager = make_manager()
        capture = CaptureInput.from_text("half-finished thought")
        store.save_capture(capture)
        await manager.resume_interrupted()
        assert store.get_item(capture.id).status == ItemStatus.READY

    @pytest.mark.asyncio
    async def test_queued_item_without_capture(self, make_manager, store):
        manager = make_manager(links=MockLinks(default=LinkResult(title="Foo Cafe")))
        store.save_item(ProcessedItem(id=url_item_id(URL), url=URL, modality="web", status=ItemStatus.QUEUED))
        stats = await manager.resume_interrupted()
        assert store.get_item(url_item_id(URL)).status == ItemStatus.READY
        assert stats["processed"] == 1


class TestDrain:
    @pytest.mark.asyncio
    async def test_drains_in_order(self, make_manager, queue, store):
        manager = make_manager()
        first = CaptureInput.from_text("first")
        second = CaptureInput.from_text("second")
        queue.enqueue(first)
        queue.enqueue(second)

        stats = await manager.drain_pending()

        assert stats["processed"] == 2
        assert queue.stats()["total"] == 0
        assert store.get_item(first.id).status == ItemStatus.READY
        assert store.get_item(second.id).status == ItemStatus.READY

    @pytest.mark.asyncio
    async def test_failure_isolated_per_capture(self, make_manager, queue, store, monkeypatch):
        """One broken capture does not stop the rest of the drain."""
        manager = make_manager()
        process = manager.pipeline.process

        async def flaky(capture, descriptor=None, *, background=True):
            if capture.id == "bad":
                raise RuntimeError("disk on fire")
            return await process(capture, descriptor, background=background)

        monkeypatch.setattr(manager.pipeline, "process", flaky)
        queue.enqueue(CaptureInput.from_text("broken", id="bad"))
        good = CaptureInput.from_text("fine")
        queue.enqueue(good)

        stats = await manager.drain_pending()

        assert stats["processed"] == 1
        assert stats["failed"] == 1
        assert stats["errors"] == ["bad: RuntimeError: disk on fire"]
        placeholder = store.get_item("bad")
        assert placeholder.title == "Processing Failed"
        assert placeholder.status == ItemStatus.FAILED
        assert store.get_item(good.id).status == ItemStatus.READY
        # Released for a later retry, with backoff
        assert queue.stats()["pending"] == 1

    @pytest.mark.asyncio
    async def test_attachments_become_session_children(self, make_manager, queue, store):
        manager = make_manager()
        parent = CaptureInput.from_text("at the game")
        queue.enqueue(parent, ItemDescriptor(session_id="s1"), [png(), png()])

        await manager.drain_pending()

        children = [i for i in store.list_items() if i.master_capture_id == parent.id]
        assert sorted(c.title for c in children) == ["Session Image 1", "Session Image 2"]
        assert all(c.session_id == "s1" for c in children)
        assert all(c.url.startswith("capture-asset://") for c in children)
        assert store.count_items() == 3

    @pytest.mark.asyncio
    async def test_dead_letter_after_repeated_failures(self, make_manager, queue, monkeypatch):
        manager = make_manager()

        async def broken(capture, descriptor=None, *, background=True):
            raise RuntimeError("nope")

        monkeypatch.setattr(manager.pipeline, "process", broken)
        queue.enqueue(CaptureInput.from_text("x", id="c1"))
        for _ in range(MAX_ATTEMPTS):
            await manager.drain_pending()
            queue._conn.execute("UPDATE inbox SET retry_after = NULL")
        assert queue.stats()["failed"] == 1


class TestProcessNow:
    @pytest.mark.asyncio
    async def test_supersedes_and_restarts_drain(self, make_manager, queue, store):
        manager = make_manager()
        queued = CaptureInput.from_text("queued")
        queue.enqueue(queued)
        manager.start_drain()
        assert manager.draining

        urgent = CaptureInput.from_text("urgent")
        item = await manager.process_now(urgent)

        assert item.status == ItemStatus.READY
        assert manager.draining
        await manager._drain_task
        assert store.get_item(queued.id).status == ItemStatus.READY
        assert queue.stats()["total"] == 0

    @pytest.mark.asyncio
    async def test_no_drain_when_idle(self, make_manager):
        manager = make_manager()
        await manager.process_now(CaptureInput.from_text("solo"))
        assert not manager.draining


class TestReprocess:
    async def _seed(self, manager, n, created_at):
        ids = []
        for k in range(n):
            capture = CaptureInput.from_url(f"https://foo.example/{k}", created_at=created_at)
            item = await manager.pipeline.process(capture, background=False)
            ids.append(item.id)
        return ids

    @pytest.mark.asyncio
    async def test_batches_and_progress(self, make_manager, store):
        manager = make_manager(links=MockLinks(default=LinkResult(title="Foo Cafe")))
        await self._seed(manager, 4, hours_ago(1))
        [old_id] = await self._seed_old(manager)
        old_log = list(store.get_item(old_id).processing_log)

        progress, lines = [], []
        stats = await manager.reprocess_since(hours_ago(24), progress=lambda d, t: progress.append((d, t)),
                                              log=lines.append)

        assert progress == [(3, 4), (4, 4)]
        assert lines[0].startswith("Reprocessing 4 items since ")
        assert "Reprocessed 3/4" in lines
        assert stats["processed"] == 4
        assert store.count_items() == 5
        assert store.get_item(old_id).processing_log == old_log

    async def _seed_old(self, manager):
        capture = CaptureInput.from_url("https://old.example/", created_at=hours_ago(48))
        item = await manager.pipeline.process(capture, background=False)
        return [item.id]

    @pytest.mark.asyncio
    async def test_place_conflict_flagged(self, make_manager, store):
        """A changed place identity is reverted and sent to review."""
        places = MockPlaces(nearby=FOO)
        manager = make_manager(places=places)
        capture = CaptureInput.from_url(URL, created_at=hours_ago(1))
        item = await manager.pipeline.process(capture, ItemDescriptor(location="47.6097,-122.3331"),
                                              background=False)
        assert item.place.place_id == "abc"

        places._nearby = BAR
        lines = []
        stats = await manager.reprocess_since(hours_ago(2), log=lines.append)

        current = store.get_item(item.id)
        assert stats["conflicts"] == 1
        assert current.status == ItemStatus.REVIEW_REQUIRED
        assert current.place.place_id == "abc"
        assert (current.latitude, current.longitude) == (FOO.latitude, FOO.longitude)
        assert current.processing_log[-1].endswith("Conflict: place changed from 'Foo Cafe' to 'Bar Other'")
        assert any("Conflict: place changed" in line for line in lines)

    @pytest.mark.asyncio
    async def test_cancel_between_batches(self, make_manager):
        manager = make_manager()
        await self._seed(manager, 4, hours_ago(1))
        cancel = asyncio.Event()
        lines = []
        stats = await manager.reprocess_since(hours_ago(2), progress=lambda d, t: cancel.set(),
                                              log=lines.append, cancel_event=cancel)
        assert stats["processed"] == 3
        assert lines[-1] == "Reprocess cancelled"


class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_resets_records_and_dead_letters(self, make_manager, queue, store):
        manager = make_manager()
        store.save_item(ProcessedItem(id="f", status=ItemStatus.FAILED))
        queue.enqueue(CaptureInput.from_text("x", id="dead"))
        for _ in range(MAX_ATTEMPTS):
            queue.dequeue()
            queue.fail("dead", "boom")
            queue._conn.execute("UPDATE inbox SET retry_after = NULL")

        assert await manager.retry_failed() == 2
        item = store.get_item("f")
        assert item.status == ItemStatus.QUEUED
        assert item.processing_log[-1].endswith("Retry requested")
        assert queue.count() == 1
