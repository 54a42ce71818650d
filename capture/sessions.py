"""
Session aggregation and consolidation.

Items carrying a session id are attached to a Session record, created on
first use. Sessions adopt the place identity of their items unless they
already have one.

Repeated processing can fragment one real-world event into several
sessions. Consolidation walks sessions in creation order and folds a
session into its predecessor when they were created within a few
seconds of each other at (nearly) the same coordinate. Items of the
folded session are re-pointed to the survivor and the folded session is
deleted.
"""

import asyncio
import logging
from typing import Optional

from .config import Policy
from .providers.base import ReasoningService
from .store import CaptureStore
from .types import ItemDescriptor, ProcessedItem, Session, parse_utc_timestamp, utc_now

logger = logging.getLogger(__name__)


def should_merge(a: Session, b: Session, policy: Policy) -> bool:
    """True if two sessions are fragments of the same event."""
    if not (a.has_coordinate and b.has_coordinate):
        return False
    delta = abs((parse_utc_timestamp(b.created_at) - parse_utc_timestamp(a.created_at)).total_seconds())
    if delta >= policy.consolidation_seconds:
        return False
    return (abs(a.latitude - b.latitude) < policy.consolidation_degrees
            and abs(a.longitude - b.longitude) < policy.consolidation_degrees)


def _absorb(survivor: Session, loser: Session) -> None:
    """Fill the survivor's empty fields from the session being folded in."""
    for attr in ("title", "summary", "place_id", "location_name"):
        if not getattr(survivor, attr) and getattr(loser, attr):
            setattr(survivor, attr, getattr(loser, attr))
    survivor.updated_at = max(survivor.updated_at, loser.updated_at)


def _adopt_place(session: Session, item: ProcessedItem) -> None:
    """Copy the item's place identity onto the session where unset."""
    place = item.place
    if not session.has_coordinate:
        if place is not None and place.has_coordinate:
            session.latitude, session.longitude = place.latitude, place.longitude
        elif item.has_coordinate:
            session.latitude, session.longitude = item.latitude, item.longitude
    if not session.place_id and place is not None and place.place_id:
        session.place_id = place.place_id
    if not session.location_name:
        session.location_name = (place.name if place is not None else None) or item.location


def build_summary_input(items: list[ProcessedItem]) -> str:
    blocks = []
    for item in items:
        blocks.append(
            f"Item: {item.title or 'Untitled'}\n"
            f"Description: {item.summary}\n"
            f"Intents: {', '.join(item.purposes)}\n"
            f"---"
        )
    return "\n".join(blocks)


class SessionAggregator:
    """Maintains Session records for the pipeline."""

    def __init__(
        self,
        store: CaptureStore,
        policy: Policy,
        reasoning: Optional[ReasoningService] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.store = store
        self.policy = policy
        self.reasoning = reasoning
        self._lock = lock or asyncio.Lock()

    async def attach(
        self,
        item: ProcessedItem,
        descriptor: Optional[ItemDescriptor] = None,
    ) -> Optional[Session]:
        """Attach an item to its session, creating the session if needed."""
        if not item.session_id:
            return None
        async with self._lock:
            session = self.store.get_session(item.session_id)
            if session is None:
                session = Session(session_id=item.session_id, created_at=item.created_at)
                logger.info("Created session %s", item.session_id)
            if descriptor is not None:
                # Explicit caller hints win over anything inferred
                if descriptor.latitude is not None and descriptor.longitude is not None:
                    session.latitude, session.longitude = descriptor.latitude, descriptor.longitude
                if descriptor.place_id:
                    session.place_id = descriptor.place_id
                if descriptor.location:
                    session.location_name = descriptor.location
            _adopt_place(session, item)
            if not session.title and item.title:
                session.title = item.title
            session.updated_at = utc_now()
            self.store.save_session(session)
            return session

    async def consolidate(self) -> int:
        """Merge near-duplicate sessions. Returns the number folded away."""
        merged = 0
        async with self._lock:
            sessions = self.store.list_sessions()
            if not sessions:
                return 0
            master = sessions[0]
            for session in sessions[1:]:
                if should_merge(master, session, self.policy):
                    moved = self.store.repoint_items(session.session_id, master.session_id)
                    _absorb(master, session)
                    self.store.save_session(master)
                    self.store.delete_session(session.session_id)
                    merged += 1
                    logger.info("Merged session %s into %s (%d items)",
                                session.session_id, master.session_id, moved)
                else:
                    master = session
        return merged

    async def regenerate_missing(self) -> int:
        """Rebuild sessions referenced by items but absent from the store."""
        created = 0
        async with self._lock:
            for session_id in self.store.session_ids_in_use():
                if self.store.get_session(session_id) is not None:
                    continue
                items = self.store.items_in_session(session_id)
                if not items:
                    continue
                session = Session(session_id=session_id, created_at=items[0].created_at)
                for item in items:
                    _adopt_place(session, item)
                    if not session.title and item.title:
                        session.title = item.title
                self.store.save_session(session)
                created += 1
                logger.info("Regenerated missing session %s from %d items", session_id, len(items))
        return created

    async def refresh_summary(self, session_id: str) -> Optional[str]:
        """Regenerate a session's rolling summary from its latest items."""
        if self.reasoning is None:
            return None
        items = self.store.items_in_session(session_id)[-self.policy.session_summary_items:]
        if not items:
            return None
        try:
            summary = await self.reasoning.summarize(build_summary_input(items))
        except Exception as e:
            logger.warning("Session summary failed for %s: %s", session_id, e)
            return None
        async with self._lock:
            session = self.store.get_session(session_id)
            if session is None:
                return None
            session.summary = summary.strip()
            session.updated_at = utc_now()
            self.store.save_session(session)
        return session.summary
