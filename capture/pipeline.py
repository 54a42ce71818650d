"""
Upsert manager: turns one capture into one enriched record.

    process(capture, descriptor)
      ├─ resolve id (hash of canonical URL, else the capture id)
      ├─ create record (processing) or start a refresh of the existing one
      ├─ location chain -> provider fan-out -> merge -> ready (provisional)
      ├─ knowledge-graph index, session hand-off
      └─ reasoning pass -> merge -> ready; raw capture deleted

New records block until the provisional enrichment is saved; the
reasoning pass then runs as a background task. A refresh of an existing
record runs entirely in the background. With ``background=False`` every
step runs inline, which is what the queue manager uses.

All store mutation happens under a single asyncio lock; providers only
compute results, which are merged into a freshly read record while the
lock is held.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Optional

from .config import HomeConfig, Policy
from .enrichment import EnrichmentOrchestrator, EnrichmentOutcome, Providers
from .errors import ReasoningError, StoreBusyError
from .lifecycle import mark_ready, record_failure, transition
from .location import HomeLocator, LocationResolver
from .merge import apply_analysis, apply_results, finalize_title, seed_from_descriptor
from .providers.media import read_document_info
from .reasoning import ReasoningPass
from .sessions import SessionAggregator
from .store import CaptureStore
from .types import (
    CaptureInput,
    InputType,
    ItemDescriptor,
    ItemStatus,
    ProcessedItem,
    QRCodeContext,
    resolve_item_id,
)

logger = logging.getLogger(__name__)


def descriptor_from_item(item: ProcessedItem) -> ItemDescriptor:
    """Describe a record for the knowledge-graph index."""
    place = item.place
    return ItemDescriptor(
        id=item.id,
        url=item.url,
        title=item.title,
        description=item.summary,
        style_tags=tuple(item.tags),
        categories=tuple(item.categories),
        type=item.entity_type,
        location=item.location,
        latitude=item.latitude,
        longitude=item.longitude,
        place_id=place.place_id if place else None,
        price=item.price,
        cover_image_url=item.web.snapshot_url if item.web else None,
        session_id=item.session_id,
        attribution_id=item.attribution_id,
        master_capture_id=item.master_capture_id,
        purposes=tuple(item.purposes),
        created_at=item.created_at,
    )


class Pipeline:
    """
    Processes captures into ProcessedItems.

    Owns the writer lock, the home-location cache and the set of
    background tasks it has started.
    """

    def __init__(
        self,
        store: CaptureStore,
        providers: Optional[Providers] = None,
        policy: Optional[Policy] = None,
        home: Optional[HomeConfig] = None,
        thumbnails_dir: Optional[Path] = None,
    ):
        self.store = store
        self.providers = providers or Providers()
        self.policy = policy or Policy()
        self.lock = asyncio.Lock()
        self.home = HomeLocator(home or HomeConfig(), self.policy.home_radius_meters)
        self.locations = LocationResolver(
            self.policy,
            live_location=self.providers.live_location,
            media=self.providers.media,
            qr=self.providers.qr,
        )
        self.orchestrator = EnrichmentOrchestrator(
            self.providers, self.policy, self.home, thumbnails_dir,
        )
        self.reasoning = (
            ReasoningPass(self.providers.reasoning, self.policy)
            if self.providers.reasoning is not None else None
        )
        self.sessions = SessionAggregator(store, self.policy, self.providers.reasoning, self.lock)
        self._background: dict[asyncio.Task, str] = {}

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def process(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor] = None,
        *,
        background: bool = True,
    ) -> ProcessedItem:
        """
        Create or refresh the record for a capture.

        Args:
            capture: The raw capture
            descriptor: Optional caller hints
            background: Run refreshes and the reasoning pass as background
                tasks (True) or inline (False)

        Returns:
            The record as of when this call returns. A refresh returns
            while still processing; a failure returns the failed record.

        Raises:
            StoreBusyError: If the record could not be created at all
        """
        item_id = resolve_item_id(capture, descriptor)
        async with self.lock:
            self.store.save_capture(capture, descriptor)
            existing = self.store.get_item(item_id)
            if existing is not None:
                item = self._begin_refresh(existing, capture, descriptor)
            else:
                item = self._create(item_id, capture, descriptor)
            self.store.save_item(item)

        if existing is not None:
            logger.info("Refreshing %s", item_id)
            if background:
                self._spawn(self._run_to_completion(item_id, capture, descriptor), f"refresh:{item_id}", item_id)
                return item
            return await self._run_to_completion(item_id, capture, descriptor) or item

        logger.info("Processing new item %s", item_id)
        provisional = await self._provisional(item_id, capture, descriptor)
        if provisional is None:
            return self.store.get_item(item_id) or item
        item, outcome = provisional
        if background:
            self._spawn(self._reason(item_id, capture, outcome), f"reason:{item_id}", item_id)
            return item
        return await self._reason(item_id, capture, outcome) or item

    def _create(
        self,
        item_id: str,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> ProcessedItem:
        item = ProcessedItem(
            id=item_id,
            input_id=capture.id,
            url=capture.url,
            entity_type=(descriptor.type if descriptor and descriptor.type else capture.input_type.value),
            modality=capture.input_type.value,
            created_at=capture.created_at,
            source=capture.source,
        )
        if capture.text:
            if capture.input_type == InputType.QR_CODE:
                item.qr = QRCodeContext(payload=capture.text)
            else:
                item.transcription = capture.text
        if capture.payload and capture.input_type == InputType.DOCUMENT:
            item.document = read_document_info(capture.payload)
        seed_from_descriptor(item, descriptor)
        transition(item, ItemStatus.PROCESSING, f"Created from capture {capture.id}")
        return item

    def _begin_refresh(
        self,
        item: ProcessedItem,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> ProcessedItem:
        transition(item, ItemStatus.PROCESSING, f"Refresh from capture {capture.id}")
        item.input_id = capture.id
        if not item.url and capture.url:
            item.url = capture.url
        if capture.text and not item.transcription and capture.input_type != InputType.QR_CODE:
            item.transcription = capture.text
        seed_from_descriptor(item, descriptor)
        return item

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _run_to_completion(
        self,
        item_id: str,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> Optional[ProcessedItem]:
        provisional = await self._provisional(item_id, capture, descriptor)
        if provisional is None:
            return self.store.get_item(item_id)
        return await self._reason(item_id, capture, provisional[1])

    async def _provisional(
        self,
        item_id: str,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> Optional[tuple[ProcessedItem, EnrichmentOutcome]]:
        """Location chain, provider fan-out and merge. None on failure."""
        try:
            return await self._enrich(item_id, capture, descriptor)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Enrichment failed for %s", item_id)
            await self._fail(item_id, capture, f"Enrichment failed: {e}", ItemStatus.FAILED)
            return None

    async def _enrich(
        self,
        item_id: str,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
    ) -> Optional[tuple[ProcessedItem, EnrichmentOutcome]]:
        snapshot = self.store.get_item(item_id)
        if snapshot is None:
            return None
        session = self.store.get_session(snapshot.session_id) if snapshot.session_id else None
        location = await self.locations.resolve(snapshot, capture, session, descriptor)

        promoted = []
        if location.promoted_url:
            snapshot.url = location.promoted_url
            link = await self.orchestrator.fetch_link(location.promoted_url)
            if link is not None:
                promoted.append(link)
            logger.info("Promoted QR payload to URL for %s", item_id)

        outcome = await self.orchestrator.run(
            snapshot, capture, location, descriptor, skip_link=bool(location.promoted_url),
        )
        for result in promoted:
            outcome.add(result)

        async with self.lock:
            item = self.store.get_item(item_id)
            if item is None:
                logger.info("%s was deleted during enrichment", item_id)
                return None
            # Carry over what the location chain learned about the record
            item.url = item.url or snapshot.url
            item.qr = item.qr or snapshot.qr
            item.place_pinned = item.place_pinned or snapshot.place_pinned
            apply_results(item, outcome.results, preserve_identity=location.is_user_override)
            if location.coordinate is not None and not item.has_coordinate:
                item.latitude = location.coordinate.latitude
                item.longitude = location.coordinate.longitude
            finalize_title(item)
            transition(item, ItemStatus.READY,
                       f"Enriched from {len(outcome.results)} provider results")
            self.store.save_item(item)

        await self._index(item)
        await self.sessions.attach(item, descriptor)
        return item, outcome

    async def _index(self, item: ProcessedItem) -> None:
        index = self.providers.knowledge_graph
        if index is None:
            return
        try:
            await index.index(descriptor_from_item(item))
        except Exception as e:
            logger.warning("Knowledge-graph indexing failed for %s: %s", item.id, e)

    async def _reason(
        self,
        item_id: str,
        capture: CaptureInput,
        outcome: EnrichmentOutcome,
    ) -> Optional[ProcessedItem]:
        """Second pass; finalizes the record and releases the raw capture."""
        item = self.store.get_item(item_id)
        if item is None:
            return None

        analysis = None
        if self.reasoning is not None:
            session = self.store.get_session(item.session_id) if item.session_id else None
            siblings = self.store.items_in_session(item.session_id) if item.session_id else []
            try:
                analysis = await self.reasoning.run(item, outcome.context, siblings, session)
            except ReasoningError as e:
                return await self._fail(item_id, capture, str(e), ItemStatus.REVIEW_REQUIRED)

        async with self.lock:
            item = self.store.get_item(item_id)
            if item is None:
                return None
            if analysis is not None:
                apply_analysis(item, analysis)
                finalize_title(item)
            mark_ready(item, "Reasoning complete" if analysis is not None else "Processing complete")
            self.store.save_item(item)
            self.store.delete_capture(capture.id)
        logger.info("Completed %s: %s", item_id, item.title)

        if item.session_id:
            await self.sessions.refresh_summary(item.session_id)
        return item

    async def _fail(
        self,
        item_id: str,
        capture: CaptureInput,
        message: str,
        status: ItemStatus,
    ) -> Optional[ProcessedItem]:
        """Record a failure; delete the record once it exceeds the threshold."""
        try:
            async with self.lock:
                item = self.store.get_item(item_id)
                if item is None:
                    return None
                if record_failure(item, message, self.policy.failure_threshold, status):
                    self.store.delete_item(item_id)
                    self.store.delete_capture(capture.id)
                    logger.warning("Deleted %s after %d failures", item_id, item.failure_count)
                    return None
                self.store.save_item(item)
                return item
        except StoreBusyError as e:
            logger.error("Could not record failure for %s: %s", item_id, e)
            return None

    # -------------------------------------------------------------------------
    # Failure bookkeeping for callers outside a pass
    # -------------------------------------------------------------------------

    async def mark_failed(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor],
        error: Exception,
    ) -> Optional[ProcessedItem]:
        """
        Record a capture that could not be processed at all.

        Marks the existing record failed (deleting it past the threshold),
        or stores a "Processing Failed" placeholder so the failure is
        visible.
        """
        item_id = resolve_item_id(capture, descriptor)
        message = f"Failed to process: {error}"
        async with self.lock:
            item = self.store.get_item(item_id)
            if item is None:
                item = ProcessedItem(
                    id=item_id,
                    input_id=capture.id,
                    url=capture.url,
                    title="Processing Failed",
                    summary=message,
                    created_at=capture.created_at,
                    source=capture.source,
                    status=ItemStatus.FAILED,
                    failure_count=1,
                )
                item.log(message)
            elif record_failure(item, message, self.policy.failure_threshold, ItemStatus.FAILED):
                self.store.delete_item(item_id)
                self.store.delete_capture(capture.id)
                logger.warning("Deleted %s after %d failures", item_id, item.failure_count)
                return None
            self.store.save_item(item)
        return item

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Awaitable, name: str, item_id: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background[task] = item_id
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", task.get_name(), exc,
                         exc_info=(type(exc), exc, exc.__traceback__))

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    def is_busy(self, item_id: str) -> bool:
        """True while a background task of this pipeline is working on the item."""
        return item_id in self._background.values()

    async def wait_idle(self) -> None:
        """Wait for every background task, including ones started meanwhile."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding background work."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
