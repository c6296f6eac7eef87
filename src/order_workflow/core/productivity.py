"""Per-worker completed-task counter reconciliation."""

import logging
import sqlite3

from order_workflow.core.workers import adjust_completed_count

logger = logging.getLogger(__name__)


def counter_delta(previous_status: str | None, new_status: str | None) -> int:
    if previous_status != "completed" and new_status == "completed":
        return 1
    if previous_status == "completed" and new_status != "completed":
        return -1
    return 0


def reconcile(
    db: sqlite3.Connection,
    previous_status: str | None,
    new_status: str | None,
    worker_id: str,
) -> int:
    """Apply the counter change for one committed transition. Returns the delta."""
    delta = counter_delta(previous_status, new_status)
    if delta:
        adjust_completed_count(db, worker_id, delta)
        logger.debug("Completed counter for %s adjusted by %+d", worker_id, delta)
    return delta
