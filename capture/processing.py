"""
Queue and retry manager.

Drives the pipeline over work that is not a direct `process()` call:

- resume_interrupted: crash recovery. Stale processing records go back to
  queued, and every raw capture still in the store (processing started
  but never completed) is run through the pipeline again.
- drain_pending: works through the inbox one capture at a time,
  isolating failures per capture.
- reprocess_since: re-runs every record created since a cutoff in small
  concurrent batches, flagging place-identity conflicts for review.

A running drain can be superseded by `process_now`, which cancels the
drain, runs its capture to completion, then starts a fresh drain.
"""

import asyncio
import logging
from typing import Callable, Optional

from .config import Policy
from .errors import StoreBusyError
from .lifecycle import can_transition, is_stale, reset_stale, transition
from .pipeline import Pipeline
from .queue import CaptureQueue, QueuedCapture
from .store import CaptureStore
from .types import (
    ASSET_SCHEME,
    CaptureInput,
    InputType,
    ItemDescriptor,
    ItemStatus,
    PlaceContext,
    ProcessedItem,
    resolve_item_id,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
LogCallback = Callable[[str], None]


def new_stats() -> dict:
    return {"processed": 0, "failed": 0, "deleted": 0, "conflicts": 0, "errors": []}


def place_conflict(before: Optional[PlaceContext], after: Optional[PlaceContext]) -> bool:
    """True if a previously recorded place identity changed or was lost."""
    if before is None or not (before.place_id or before.name):
        return False
    if after is None:
        return True
    if before.place_id and after.place_id != before.place_id:
        return True
    return bool(before.name) and after.name != before.name


def capture_for_item(item: ProcessedItem) -> CaptureInput:
    """Rebuild a capture from a record whose raw input is gone."""
    kwargs = dict(
        created_at=item.created_at,
        url=item.url,
        text=item.transcription or (item.qr.payload if item.qr else None),
        source=item.source,
        input_type=InputType.parse(item.modality),
    )
    if item.input_id:
        kwargs["id"] = item.input_id
    return CaptureInput(**kwargs)


class ProcessingManager:
    """Runs queued, interrupted and bulk work through the pipeline."""

    def __init__(
        self,
        pipeline: Pipeline,
        queue: CaptureQueue,
        store: Optional[CaptureStore] = None,
        policy: Optional[Policy] = None,
    ):
        self.pipeline = pipeline
        self.queue = queue
        self.store = store or pipeline.store
        self.policy = policy or pipeline.policy
        self._drain_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _tally(self, stats: dict, item_id: str) -> None:
        item = self.store.get_item(item_id)
        if item is None:
            stats["deleted"] += 1
        elif item.status == ItemStatus.FAILED:
            stats["failed"] += 1
        else:
            stats["processed"] += 1

    def _stored_capture(self, item: ProcessedItem) -> tuple[CaptureInput, ItemDescriptor]:
        """The record's raw capture if still stored, else one rebuilt from it."""
        stored = self.store.get_capture(item.input_id) if item.input_id else None
        if stored is not None:
            capture, descriptor = stored
        else:
            capture, descriptor = capture_for_item(item), None
        # Pin the id so a rebuilt capture refreshes this record
        if descriptor is None or descriptor.id != item.id:
            data = descriptor.to_dict() if descriptor else {}
            data["id"] = item.id
            descriptor = ItemDescriptor.from_dict(data)
        return capture, descriptor

    async def _run(self, capture: CaptureInput, descriptor: Optional[ItemDescriptor], stats: dict) -> None:
        """Process one capture inline, recording an escaped failure on the record."""
        item_id = resolve_item_id(capture, descriptor)
        try:
            await self.pipeline.process(capture, descriptor, background=False)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Processing %s failed: %s", item_id, e)
            stats["errors"].append(f"{item_id}: {type(e).__name__}: {e}")
            try:
                await self.pipeline.mark_failed(capture, descriptor, e)
            except StoreBusyError as busy:
                logger.error("Could not record failure for %s: %s", item_id, busy)
        self._tally(stats, item_id)

    # -------------------------------------------------------------------------
    # Crash recovery
    # -------------------------------------------------------------------------

    async def resume_interrupted(self) -> dict:
        """
        Recover work interrupted by a crash or forced termination.

        Returns:
            Stats dict: processed, failed, deleted, conflicts, errors
        """
        stats = new_stats()
        async with self.pipeline.lock:
            for item in self.store.list_items(status=ItemStatus.PROCESSING):
                if is_stale(item, self.policy.stale_processing_seconds):
                    reset_stale(item)
                    self.store.save_item(item)
                    logger.info("Reset stuck item %s to queued", item.id)

        seen = set()
        for capture, descriptor in self.store.list_captures():
            item_id = resolve_item_id(capture, descriptor)
            if item_id in seen or self.pipeline.is_busy(item_id):
                continue
            item = self.store.get_item(item_id)
            if item is not None and item.status == ItemStatus.PROCESSING:
                # Still being worked on by a live process
                continue
            seen.add(item_id)
            logger.info("Resuming capture %s for %s", capture.id, item_id)
            await self._run(capture, descriptor, stats)

        # Queued records whose raw capture is already gone
        for item in self.store.list_items(status=ItemStatus.QUEUED):
            if item.id in seen or self.pipeline.is_busy(item.id):
                continue
            seen.add(item.id)
            capture, descriptor = self._stored_capture(item)
            await self._run(capture, descriptor, stats)

        if seen:
            logger.info("Resumed %d interrupted items", len(seen))
        return stats

    # -------------------------------------------------------------------------
    # Inbox drain
    # -------------------------------------------------------------------------

    async def _process_attachments(self, entry: QueuedCapture, parent_id: str) -> int:
        """Turn a capture's attachments into child records of the parent."""
        parent = self.store.get_item(parent_id)
        session_id = (parent.session_id if parent else None) or (
            entry.descriptor.session_id if entry.descriptor else None)
        for n, data in enumerate(entry.attachments, start=1):
            child = CaptureInput(
                created_at=entry.capture.created_at,
                source=entry.capture.source,
                payload=data,
                input_type=InputType.IMAGE,
            )
            descriptor = ItemDescriptor(
                title=f"Session Image {n}",
                url=f"{ASSET_SCHEME}://{child.id}",
                session_id=session_id,
                master_capture_id=parent_id,
            )
            await self.pipeline.process(child, descriptor, background=False)
        return len(entry.attachments)

    async def drain_pending(self) -> dict:
        """
        Process every capture waiting in the inbox, one at a time.

        Runs crash recovery first. A failing capture is recorded on its
        record (or a "Processing Failed" placeholder) and the drain moves
        on.

        Returns:
            Stats dict: processed, failed, deleted, conflicts, errors
        """
        stats = await self.resume_interrupted()
        while True:
            entries = self.queue.dequeue(limit=1)
            if not entries:
                break
            entry = entries[0]
            item_id = resolve_item_id(entry.capture, entry.descriptor)
            logger.info("Draining capture %s (attempt %d)", entry.id, entry.attempts)
            try:
                await self.pipeline.process(entry.capture, entry.descriptor, background=False)
                if entry.attachments:
                    await self._process_attachments(entry, item_id)
            except asyncio.CancelledError:
                self.queue.release(entry.id)
                raise
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.warning("Failed to drain capture %s: %s", entry.id, e)
                stats["errors"].append(f"{item_id}: {error}")
                try:
                    await self.pipeline.mark_failed(entry.capture, entry.descriptor, e)
                except StoreBusyError as busy:
                    logger.error("Could not record failure for %s: %s", item_id, busy)
                self.queue.fail(entry.id, error)
            else:
                self.queue.complete(entry.id)
            self._tally(stats, item_id)
        logger.info("Drain complete: %d processed, %d failed, %d deleted",
                    stats["processed"], stats["failed"], stats["deleted"])
        return stats

    def start_drain(self) -> asyncio.Task:
        """Start a background drain, cancelling any drain already running."""
        if self._drain_task is not None and not self._drain_task.done():
            logger.info("Cancelling running drain")
            self._drain_task.cancel()
        self._drain_task = asyncio.ensure_future(self.drain_pending())
        return self._drain_task

    async def cancel_drain(self) -> None:
        task, self._drain_task = self._drain_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def process_now(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor] = None,
    ) -> Optional[ProcessedItem]:
        """
        Process one capture ahead of the inbox.

        Supersedes a running drain, runs the capture to completion, then
        restarts the drain.
        """
        resume = self.draining
        await self.cancel_drain()
        try:
            await self.pipeline.process(capture, descriptor, background=False)
        finally:
            if resume or self.queue.count():
                self.start_drain()
        return self.store.get_item(resolve_item_id(capture, descriptor))

    # -------------------------------------------------------------------------
    # Bulk reprocessing
    # -------------------------------------------------------------------------

    async def _reprocess_one(self, item: ProcessedItem, stats: dict, log: Optional[LogCallback]) -> None:
        before = item.place
        capture, descriptor = self._stored_capture(item)
        await self._run(capture, descriptor, stats)
        if before is None:
            return

        async with self.pipeline.lock:
            current = self.store.get_item(item.id)
            if current is None or not place_conflict(before, current.place):
                return
            proposed = current.place.name if current.place else None
            message = f"Conflict: place changed from '{before.name}' to '{proposed}'"
            current.place = before
            if before.has_coordinate:
                current.latitude, current.longitude = before.latitude, before.longitude
            if can_transition(current.status, ItemStatus.REVIEW_REQUIRED):
                transition(current, ItemStatus.REVIEW_REQUIRED, message)
            else:
                current.log(message)
            self.store.save_item(current)
        stats["conflicts"] += 1
        logger.warning("%s: %s", item.id, message)
        if log is not None:
            log(f"{item.title or item.id}: {message}")

    async def reprocess_since(
        self,
        cutoff: str,
        progress: Optional[ProgressCallback] = None,
        log: Optional[LogCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        """
        Re-run every record created at or after `cutoff`.

        Records are processed in concurrent batches of
        `policy.reprocess_batch_size`. A record whose place identity
        changes keeps its previous place and is flagged for review.

        Args:
            cutoff: UTC timestamp (YYYY-MM-DDTHH:MM:SS or a date prefix)
            progress: Called after each batch with (done, total)
            log: Called with human-readable progress lines
            cancel_event: When set, stops before the next record

        Returns:
            Stats dict: processed, failed, deleted, conflicts, errors
        """
        stats = new_stats()
        items = self.store.list_items(created_after=cutoff)
        total = len(items)
        size = max(1, self.policy.reprocess_batch_size)
        if log is not None:
            log(f"Reprocessing {total} items since {cutoff}")

        done = 0
        for start in range(0, total, size):
            batch = []
            for item in items[start:start + size]:
                if cancel_event is not None and cancel_event.is_set():
                    break
                batch.append(item)
            if batch:
                await asyncio.gather(*(self._reprocess_one(item, stats, log) for item in batch))
                done += len(batch)
                if progress is not None:
                    progress(done, total)
                if log is not None:
                    log(f"Reprocessed {done}/{total}")
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Reprocess cancelled after %d of %d items", done, total)
                if log is not None:
                    log("Reprocess cancelled")
                break
        return stats

    # -------------------------------------------------------------------------
    # Retry
    # -------------------------------------------------------------------------

    async def retry_failed(self) -> int:
        """
        Move failed records back to queued, and dead-lettered inbox
        captures back to pending. The next drain picks them up.

        Returns:
            Number of records and captures reset
        """
        count = 0
        async with self.pipeline.lock:
            for item in self.store.list_items(status=ItemStatus.FAILED):
                transition(item, ItemStatus.QUEUED, "Retry requested")
                self.store.save_item(item)
                count += 1
        count += self.queue.retry_failed()
        if count:
            logger.info("Queued %d failed items for retry", count)
        return count
