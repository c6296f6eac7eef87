"""Status state machine for workflow tasks.

pending, in-progress and completed are reachable from one another, so a
task can be reopened. A delivery task may leave completed for delivered,
which consumes the record, or not-delivered, which is kept as history.
"""

import logging
import sqlite3
from dataclasses import replace

from order_workflow.core import productivity
from order_workflow.core.errors import (
    CollaboratorUnavailable,
    IllegalTransition,
    NotFound,
    PermissionDenied,
    ProgressionFailed,
    ValidationError,
)
from order_workflow.core.progression import ProgressionOrchestrator
from order_workflow.core.store import TaskStore
from order_workflow.db.models import STATUSES, TERMINAL_STATUSES, Actor, Task

logger = logging.getLogger(__name__)

WORKING_STATUSES = frozenset({"pending", "in-progress", "completed"})


def legal_successors(task_type: str | None, current: str) -> frozenset[str]:
    if current in TERMINAL_STATUSES:
        return frozenset()
    successors = set(WORKING_STATUSES - {current})
    if task_type == "delivery" and current == "completed":
        successors.update(TERMINAL_STATUSES)
    return frozenset(successors)


def check_actor(task: Task, actor: Actor):
    """Supervisors may move any task; everyone else only their own."""
    if actor.is_supervisor or task.assignee_id == actor.id:
        return
    raise PermissionDenied(f"Task {task.id} is not assigned to {actor.name or actor.id}")


class StageMachine:
    def __init__(self, store: TaskStore, orchestrator: ProgressionOrchestrator):
        self.store = store
        self.orchestrator = orchestrator

    def apply(self, task_id: str, new_status: str, actor: Actor) -> Task:
        """Validate and apply a status change, then run its side effects.

        Re-applying the status a task already has is a no-op, so a retried
        call never counts or hands off twice.
        """
        if new_status not in STATUSES:
            raise ValidationError(f"Invalid status: {new_status}")

        task = self.store.get(task_id)
        if not task:
            raise NotFound(f"Task not found: {task_id}")
        check_actor(task, actor)

        previous = task.status
        if previous == new_status:
            return task
        if new_status in TERMINAL_STATUSES and task.task_type != "delivery":
            raise IllegalTransition(f"Only delivery tasks can be marked {new_status}")
        if new_status not in legal_successors(task.task_type, previous):
            raise IllegalTransition(f"Cannot move task {task_id} from {previous} to {new_status}")

        if task.task_type == "delivery" and new_status == "delivered":
            self.store.delete(task_id)
            logger.info("Delivery task %s confirmed by %s and removed", task_id, actor.id)
            return replace(task, status="delivered")

        if not self.store.compare_and_set_status(task_id, previous, new_status):
            logger.info("Task %s changed concurrently; %s -> %s not reapplied", task_id, previous, new_status)
            current = self.store.get(task_id)
            if current is None:
                raise NotFound(f"Task not found: {task_id}")
            return current

        try:
            productivity.reconcile(self.store.db, previous, new_status, task.assignee_id)
        except sqlite3.Error as e:
            logger.exception("Counter update failed for task %s (%s -> %s)", task_id, previous, new_status)
            raise CollaboratorUnavailable(f"Counter update failed: {e}") from e

        updated = self.store.get(task_id) or replace(task, status=new_status)
        if new_status == "completed" and task.task_type == "printing":
            self._progress(updated, actor)
        return updated

    def _progress(self, task: Task, actor: Actor):
        try:
            self.orchestrator.progress_completed_printing(task, created_by=actor.name or actor.id)
        except Exception as e:
            logger.exception("Hand-off failed for completed printing task %s", task.id)
            try:
                self.store.log_event(task.id, "progression_failed", None, str(e))
            except CollaboratorUnavailable:
                logger.error("Could not record failed hand-off for task %s", task.id)
            raise ProgressionFailed(
                f"Task {task.id} is completed but its delivery stage was not created: {e}",
                task=task,
            ) from e
