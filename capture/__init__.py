"""
Capture enrichment pipeline.

Turns raw captures (links, photos, scanned documents, shared text) into
enriched records by fanning out to independent providers, merging their
results under quality gates, and refining the result with a background
reasoning pass.

Quick start:
    from capture import CaptureService, CaptureInput

    svc = CaptureService()
    item = await svc.add(CaptureInput.from_url("https://example.com"))
"""

__version__ = "0.4.0"

from .api import CaptureService
from .types import (
    CaptureInput,
    ItemDescriptor,
    ItemStatus,
    ProcessedItem,
    Session,
)

__all__ = [
    "__version__",
    "CaptureService",
    "CaptureInput",
    "ItemDescriptor",
    "ItemStatus",
    "ProcessedItem",
    "Session",
]
