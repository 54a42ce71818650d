"""
Reasoning (second) pass.

Builds a context blob from the record, the accumulated provider output
and sibling items in the same session, condenses it when it is too
long, and asks the reasoning service for a summary, intent statements,
a purpose and tags.
"""

import asyncio
import logging
import re
from typing import Optional

from .config import Policy
from .errors import ReasoningError
from .providers.base import ReasoningService
from .types import ProcessedItem, ReasoningAnalysis, Session

logger = logging.getLogger(__name__)

_HOME_TOKEN = re.compile(r"\bhome\b", re.IGNORECASE)


def scrub_home(text: Optional[str]) -> str:
    """Remove "Home" tokens so the model doesn't lean on home-based guesses."""
    if not text:
        return ""
    scrubbed = _HOME_TOKEN.sub("", text)
    scrubbed = re.sub(r"(?<=:)\s*,", "", scrubbed)
    scrubbed = re.sub(r",\s*(?=,)", "", scrubbed)
    return re.sub(r"[ \t]{2,}", " ", scrubbed).strip(" ,:")


def chunk_text(text: str, size: int, overlap: int) -> list[str]:
    """Split text into chunks of `size` characters overlapping by `overlap`."""
    if size <= overlap:
        raise ValueError("chunk size must exceed overlap")
    chunks = []
    start = 0
    while start < len(text):
        chunks.append(text[start:start + size])
        if start + size >= len(text):
            break
        start += size - overlap
    return chunks


def build_session_context(siblings: list[ProcessedItem], limit: int) -> str:
    lines = [
        f"- {s.title or 'Untitled'}: {s.summary}" if s.summary else f"- {s.title or 'Untitled'}"
        for s in siblings[-limit:]
    ]
    if not lines:
        return ""
    return "=== Session Context ===\nDuring this session, the user also captured:\n" + "\n".join(lines)


def build_context(
    item: ProcessedItem,
    accumulated: str,
    siblings: list[ProcessedItem],
    session: Optional[Session],
    session_limit: int = 10,
) -> str:
    """The full text handed to the reasoning service."""
    location = (session.location_name if session and session.location_name else None) or item.location
    if not location and item.place is not None:
        location = item.place.name

    parts = [f"Title: {item.title}"]
    if item.categories:
        parts.append(f"Categories: {', '.join(item.categories)}")
    location = scrub_home(location)
    if location:
        parts.append(f"Location: {location}")
    if item.summary:
        parts.append(f"Description: {item.summary}")
    if item.transcription:
        parts.append(f"Transcription: {item.transcription}")
    if item.purposes:
        parts.append(f"User Context: {', '.join(item.purposes)}")

    text = "\n".join(parts)
    accumulated = "\n".join(
        line for line in (scrub_home(raw) for raw in accumulated.splitlines()) if line
    )
    if accumulated:
        text += "\n\n--- Context ---\n" + accumulated
    session_context = build_session_context(siblings, session_limit)
    if session_context:
        text += "\n\n" + session_context
    return text


class ReasoningPass:
    """Runs the reasoning service over one item's context."""

    def __init__(self, service: ReasoningService, policy: Policy):
        self.service = service
        self.policy = policy

    async def condense(self, context: str) -> str:
        """Summarize overlapping chunks concurrently when context is too long."""
        if len(context) <= self.policy.context_chunk_threshold:
            return context
        chunks = chunk_text(context, self.policy.context_chunk_size, self.policy.context_chunk_overlap)
        logger.info("Condensing %d chars of context in %d chunks", len(context), len(chunks))
        summaries = await asyncio.gather(*(self.service.summarize(c) for c in chunks))
        return "Condensed Context Summary:\n" + "\n---\n".join(s.strip() for s in summaries)

    async def run(
        self,
        item: ProcessedItem,
        accumulated: str,
        siblings: list[ProcessedItem],
        session: Optional[Session] = None,
    ) -> ReasoningAnalysis:
        """
        Analyze an item.

        Raises:
            ReasoningError: If condensing or analysis fails
        """
        context = build_context(
            item, accumulated, [s for s in siblings if s.id != item.id],
            session, self.policy.session_context_limit,
        )
        try:
            condensed = await self.condense(context)
            return await self.service.analyze(condensed)
        except Exception as e:
            raise ReasoningError(f"Reasoning failed for {item.id}: {e}") from e
