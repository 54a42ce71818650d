"""
Capture service: the public entry point.

Wires a store directory (config, item store, inbox queue) to the
pipeline and the processing manager.

Example:
    async def main():
        service = CaptureService()
        item = await service.add(CaptureInput.from_url("https://example.com/"))
        await service.wait_idle()
        service.close()
"""

import logging
from pathlib import Path
from typing import Optional

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .enrichment import Providers
from .pipeline import Pipeline
from .processing import LogCallback, ProcessingManager, ProgressCallback
from .providers import get_registry
from .queue import CaptureQueue
from .store import CaptureStore
from .types import CaptureInput, ItemDescriptor, ItemStatus, ProcessedItem, Session

logger = logging.getLogger(__name__)


class CaptureService:
    """
    A capture store and the machinery that processes into it.

    Providers not configured in the store (places, search, weather,
    activity, live location, QR, knowledge graph) are platform
    capabilities; pass them in through `providers`.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        providers: Optional[Providers] = None,
    ) -> None:
        """
        Open or create a capture store.

        Args:
            store_path: Store directory. Uses CAPTURE_STORE_PATH or
                ~/.capture if not specified.
            config: Pre-loaded StoreConfig (skips config discovery)
            providers: Injected providers; links, reasoning and media
                readers missing here are created from config.
        """
        if config is not None:
            self._config = config
            self._store_path = config.path
        else:
            self._store_path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(self._store_path)

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._store = CaptureStore(self._config.db_path)
        self._queue = CaptureQueue(self._config.queue_path)

        providers = providers or Providers()
        registry = get_registry()
        if providers.links is None:
            providers.links = registry.create("links", self._config.links.name, self._config.links.params)
        if providers.reasoning is None:
            providers.reasoning = registry.create(
                "reasoning", self._config.reasoning.name, self._config.reasoning.params,
            )
        if providers.media is None:
            providers.media = registry.create("media", "pillow")
        self._providers = providers

        self._pipeline = Pipeline(
            self._store,
            providers,
            self._config.policy,
            home=self._config.home,
            thumbnails_dir=self._store_path / "thumbnails",
        )
        self._manager = ProcessingManager(self._pipeline, self._queue)
        logger.debug("Opened capture store at %s", self._store_path)

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def pipeline(self) -> Pipeline:
        return self._pipeline

    @property
    def manager(self) -> ProcessingManager:
        return self._manager

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def add(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor] = None,
        *,
        wait: bool = False,
    ) -> Optional[ProcessedItem]:
        """
        Process a capture now, ahead of anything queued.

        With wait=True the reasoning pass is awaited too.
        """
        if wait:
            return await self._manager.process_now(capture, descriptor)
        return await self._pipeline.process(capture, descriptor)

    def enqueue(
        self,
        capture: CaptureInput,
        descriptor: Optional[ItemDescriptor] = None,
        attachments: Optional[list[bytes]] = None,
    ) -> None:
        """Queue a capture for the next drain."""
        self._queue.enqueue(capture, descriptor, attachments)

    async def drain(self) -> dict:
        return await self._manager.drain_pending()

    async def resume(self) -> dict:
        return await self._manager.resume_interrupted()

    async def reprocess_since(
        self,
        cutoff: str,
        progress: Optional[ProgressCallback] = None,
        log: Optional[LogCallback] = None,
    ) -> dict:
        return await self._manager.reprocess_since(cutoff, progress, log)

    async def retry_failed(self) -> int:
        return await self._manager.retry_failed()

    async def consolidate_sessions(self) -> dict:
        """Rebuild missing sessions, then merge fragmented ones."""
        regenerated = await self._pipeline.sessions.regenerate_missing()
        merged = await self._pipeline.sessions.consolidate()
        return {"regenerated": regenerated, "merged": merged}

    async def suggest_purposes(self, item_id: str) -> list[str]:
        """Short purpose suggestions for a record from the reasoning service."""
        item = self._store.get_item(item_id)
        if item is None:
            raise KeyError(item_id)
        context = "\n".join(p for p in (item.title, item.summary, item.transcription) if p)
        return await self._providers.reasoning.suggest_purposes(context)

    async def wait_idle(self) -> None:
        """Wait for background reasoning and refresh tasks."""
        await self._pipeline.wait_idle()

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def get(self, item_id: str) -> Optional[ProcessedItem]:
        return self._store.get_item(item_id)

    def list_items(
        self,
        status: Optional[ItemStatus] = None,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ProcessedItem]:
        return self._store.list_items(status=status, session_id=session_id, limit=limit)

    def list_sessions(self) -> list[Session]:
        return self._store.list_sessions()

    def queue_stats(self) -> dict:
        return self._queue.stats()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        """Cancel background work and close the stores."""
        await self._manager.cancel_drain()
        await self._pipeline.close()
        self.close()

    def close(self) -> None:
        """Close the stores and detach the ops log handler."""
        self._store.close()
        self._queue.close()
        if self._ops_log_handler is not None:
            logging.getLogger("capture").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None
