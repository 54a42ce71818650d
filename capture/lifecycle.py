"""
Item lifecycle state machine.

    queued ──> processing ──> ready
                  │  │
                  │  └──> reviewRequired   (reasoning failed, or place conflict)
                  └─────> failed ──> queued (retry)

Any item whose failure count exceeds the threshold is deleted rather
than kept in a broken state. A processing item untouched for longer than
the stale window was orphaned by a crash and goes back to queued.
"""

import logging
from datetime import datetime
from typing import Optional

from .types import ItemStatus, ProcessedItem, age_seconds, utc_now

logger = logging.getLogger(__name__)

S = ItemStatus

ALLOWED_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    S.QUEUED: frozenset({S.PROCESSING, S.FAILED}),
    S.PROCESSING: frozenset({S.READY, S.FAILED, S.REVIEW_REQUIRED, S.QUEUED}),
    # ready -> processing is a refresh; ready -> reviewRequired a reprocess conflict
    S.READY: frozenset({S.PROCESSING, S.REVIEW_REQUIRED, S.FAILED}),
    S.FAILED: frozenset({S.QUEUED, S.PROCESSING}),
    S.REVIEW_REQUIRED: frozenset({S.PROCESSING, S.READY, S.QUEUED, S.FAILED}),
}

STUCK_MESSAGE = "Detected stuck processing state; reset to queued."


class InvalidTransition(ValueError):
    """A status change the state machine does not allow."""


def can_transition(current: ItemStatus, target: ItemStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def transition(item: ProcessedItem, target: ItemStatus, message: Optional[str] = None) -> None:
    """
    Move an item to a new status, logging the change on the item.

    Raises:
        InvalidTransition: If the state machine forbids the move
    """
    if not can_transition(item.status, target):
        raise InvalidTransition(f"{item.id}: {item.status.value} -> {target.value} not allowed")
    if item.status != target:
        logger.debug("%s: %s -> %s", item.id, item.status.value, target.value)
    item.status = target
    item.touch()
    if message:
        item.log(message)


def record_failure(
    item: ProcessedItem,
    message: str,
    threshold: int,
    status: ItemStatus = S.FAILED,
) -> bool:
    """
    Count a failure against the item.

    Moves the item to `status` (failed or reviewRequired) and returns
    True when the failure count now exceeds the threshold, meaning the
    caller must delete the item.
    """
    item.failure_count += 1
    item.last_processed_at = utc_now()
    transition(item, status, f"{message} (failure {item.failure_count})")
    logger.warning("%s failed (%d): %s", item.id, item.failure_count, message)
    return item.failure_count > threshold


def mark_ready(item: ProcessedItem, message: Optional[str] = None) -> None:
    """Successful completion; clears the consecutive failure count."""
    transition(item, S.READY, message)
    item.failure_count = 0
    item.last_processed_at = utc_now()


def is_stale(item: ProcessedItem, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
    """True for a processing item that has not been touched within the window."""
    return item.status == S.PROCESSING and age_seconds(item.updated_at, now) > max_age_seconds


def reset_stale(item: ProcessedItem) -> None:
    transition(item, S.QUEUED, STUCK_MESSAGE)
