"""In-memory open-task counts per worker."""

import logging
import sqlite3
import time
from collections import Counter

from order_workflow.core import workers as workers_mod
from order_workflow.core.store import TaskStore
from order_workflow.db.models import (
    DELIVERY_SUPERVISOR,
    GRAPHIC_DESIGNER,
    OPEN_STATUSES,
    PRINTING_TECHNICIAN,
    ChangeEvent,
    Task,
    Worker,
)

logger = logging.getLogger(__name__)

STAGE_ROLES = {
    "designing": GRAPHIC_DESIGNER,
    "printing": PRINTING_TECHNICIAN,
    "delivery": DELIVERY_SUPERVISOR,
}


class WorkloadIndex:
    """Counts of pending and in-progress tasks per worker identity.

    The snapshot is rebuilt from a full store listing when it is older than
    max_age seconds. Change events keep it current in between; each task's
    last seen (assignee, type, status) is remembered so replaying an event
    has no further effect.
    """

    def __init__(
        self,
        store: TaskStore,
        db: sqlite3.Connection | None = None,
        max_age: float = 60.0,
        clock=time.monotonic,
    ):
        self.store = store
        self.db = db if db is not None else store.db
        self.max_age = max_age
        self._clock = clock
        self._rows: dict[str, tuple[str, str | None, str]] = {}
        self._loaded_at: float | None = None

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._clock() - self._loaded_at > self.max_age

    def rebuild(self):
        """Reload the snapshot from a full listing."""
        tasks = self.store.list()
        self._rows = {t.id: _key(t) for t in tasks}
        self._loaded_at = self._clock()
        logger.debug("Workload index rebuilt from %d tasks", len(tasks))

    def ensure_fresh(self):
        if self.is_stale:
            self.rebuild()

    def invalidate(self):
        self._loaded_at = None

    def apply_event(self, event: ChangeEvent):
        """Fold a change-feed event into the snapshot."""
        if self._loaded_at is None:
            return
        if event.kind == "delete":
            self._rows.pop(event.task_id, None)
        elif event.after is not None:
            self._rows[event.after.id] = _key(event.after)

    def open_count_for(self, worker_id: str, task_type: str | None = None) -> int:
        self.ensure_fresh()
        return self._counts(task_type)[worker_id]

    def open_counts(self, task_type: str | None = None) -> Counter:
        self.ensure_fresh()
        return self._counts(task_type)

    def eligible_workers_for(self, task_type: str | None) -> list[Worker]:
        """Workers whose role may hold tasks of this type, in auth_id order."""
        role = STAGE_ROLES.get(task_type) if task_type else None
        return workers_mod.list_workers(self.db, role=role)

    def _counts(self, task_type: str | None) -> Counter:
        counts: Counter = Counter()
        for assignee_id, row_type, status in self._rows.values():
            if status not in OPEN_STATUSES:
                continue
            if task_type is not None and row_type != task_type:
                continue
            counts[assignee_id] += 1
        return counts


def _key(task: Task) -> tuple[str, str | None, str]:
    return (task.assignee_id, task.task_type, task.status)
