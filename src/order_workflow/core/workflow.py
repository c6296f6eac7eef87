"""Public workflow operations consumed by the CLI, web API and MCP server."""

import logging
import sqlite3
from datetime import date, time

from order_workflow.config import Config
from order_workflow.core import productivity
from order_workflow.core.assignment import AssignmentResolver, check_creation_rights
from order_workflow.core.errors import NotFound, PermissionDenied, ValidationError
from order_workflow.core.notifications import NotificationCenter
from order_workflow.core.progression import (
    ProgressionOrchestrator,
    order_roles,
    provenance_chain,
)
from order_workflow.core.store import TaskStore
from order_workflow.core.transitions import StageMachine
from order_workflow.core.workload import WorkloadIndex
from order_workflow.db.engine import get_db
from order_workflow.db.models import GRAPHIC_DESIGNER, TERMINAL_STATUSES, Actor, Task

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "title", "description", "order_no", "priority", "due_date", "due_time",
    "file_url", "customer_phone", "printing_type", "task_type", "assignee_id",
}
TEXT_FIELDS = {"title", "description", "order_no", "file_url", "customer_phone", "printing_type", "assignee_id"}


class WorkflowEngine:
    """Wires the store, workload index, resolver, orchestrator and state machine."""

    def __init__(self, store: TaskStore, workload_max_age: float = 60.0):
        self.store = store
        self.workload = WorkloadIndex(store, max_age=workload_max_age)
        self.resolver = AssignmentResolver(self.workload)
        self.orchestrator = ProgressionOrchestrator(store, self.resolver)
        self.machine = StageMachine(store, self.orchestrator)
        store.subscribe(self.workload.apply_event)

    @classmethod
    def from_db(cls, db: sqlite3.Connection, config: Config | None = None) -> "WorkflowEngine":
        config = config or Config()
        store = TaskStore(db, read_retries=config.read_retries, retry_delay=config.retry_delay)
        return cls(store, workload_max_age=config.workload_max_age)

    # ── Operations ──────────────────────────────────────────────────────────

    def create_task(
        self,
        actor: Actor,
        title: str,
        due_date: date | None,
        assignee_id: str,
        task_type: str | None = None,
        description: str = "",
        priority: str = "medium",
        due_time: time | None = None,
        order_no: str | None = None,
        file_url: str | None = None,
        customer_phone: str | None = None,
        printing_type: str | None = None,
    ) -> Task:
        """Create a brand-new task after the role gate and assignment checks."""
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Task title is required")
        if due_date is None:
            raise ValidationError("Due date is required")
        check_creation_rights(actor, task_type, assignee_id)
        worker = self.resolver.resolve_manual(task_type, assignee_id)

        task = Task(
            id="",
            title=title.strip(),
            description=description,
            order_no=order_no or None,
            task_type=task_type,
            workflow_stage=task_type,
            assignee_id=worker.auth_id,
            assignee_name=worker.name,
            created_by=actor.name or actor.id,
            due_date=due_date,
            due_time=due_time,
            status="pending",
            priority=priority,
            file_url=file_url,
            customer_phone=customer_phone,
            printing_type=printing_type if task_type in (None, "printing") else None,
        )
        if actor.role == GRAPHIC_DESIGNER and task_type == "printing":
            task.external_id = actor.id
        created = self.store.create(task)
        logger.info("Task %s created by %s for %s", created.id, actor.id, worker.auth_id)
        return created

    def update_task_fields(self, task_id: str, actor: Actor, **changes) -> Task:
        """Edit task details. Status changes go through apply_transition."""
        if not actor.is_supervisor:
            raise PermissionDenied(f"Role '{actor.role}' may not edit tasks")
        rejected = set(changes) - EDITABLE_FIELDS
        if rejected:
            raise ValidationError(f"Fields cannot be edited directly: {', '.join(sorted(rejected))}")
        malformed = [k for k in TEXT_FIELDS & set(changes) if changes[k] is not None and not isinstance(changes[k], str)]
        if malformed:
            raise ValidationError(f"Fields must be text: {', '.join(sorted(malformed))}")

        task = self.get_task(task_id)
        changes = {k: v for k, v in changes.items() if getattr(task, k) != v}
        if not changes:
            return task

        task_type = changes.get("task_type", task.task_type)
        if "task_type" in changes:
            if task.status in TERMINAL_STATUSES:
                raise ValidationError(f"Task type of a {task.status} task cannot change")
            changes["workflow_stage"] = task_type

        reassigned = "assignee_id" in changes
        if reassigned or "task_type" in changes:
            worker = self.resolver.resolve_manual(task_type, changes.get("assignee_id", task.assignee_id))
            changes["assignee_name"] = worker.name
        if reassigned and task.status != "pending":
            if task.status in TERMINAL_STATUSES:
                raise ValidationError(f"A {task.status} task cannot be reassigned")
            changes["status"] = "pending"

        updated = self.store.update(task_id, changes)
        if "status" in changes:
            productivity.reconcile(self.store.db, task.status, "pending", task.assignee_id)
        return updated

    def apply_transition(self, task_id: str, new_status: str, actor: Actor) -> Task:
        return self.machine.apply(task_id, new_status, actor)

    def assign_next_stage(
        self,
        task_id: str,
        assignee_id: str,
        actor: Actor,
        due_date: date | None = None,
        due_time: time | None = None,
    ) -> Task:
        """Manually hand a completed designing or printing task to the next stage."""
        source = self.get_task(task_id)
        if not actor.is_supervisor and source.assignee_id != actor.id:
            raise PermissionDenied(f"Task {task_id} is not assigned to {actor.name or actor.id}")
        return self.orchestrator.assign_next_stage(source, assignee_id, actor, due_date, due_time)

    def delete_task(self, task_id: str, actor: Actor) -> None:
        if not actor.is_supervisor:
            raise PermissionDenied(f"Role '{actor.role}' may not delete tasks")
        self.store.delete(task_id)
        logger.info("Task %s deleted by %s", task_id, actor.id)

    def list_visible_tasks(
        self,
        actor: Actor,
        status: str | None = None,
        task_type: str | None = None,
        search: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        """Supervisors see every task; workers see the tasks assigned to them."""
        return self.store.list(
            assignee_id=None if actor.is_supervisor else actor.id,
            status=status,
            task_type=task_type,
            search=search,
            limit=limit,
            offset=offset,
        )

    # ── Supplementary operations ────────────────────────────────────────────

    def get_task(self, task_id: str) -> Task:
        task = self.store.get(task_id)
        if not task:
            raise NotFound(f"Task not found: {task_id}")
        return task

    def resume_progression(self, task_id: str, actor: Actor) -> Task | None:
        """Retry the delivery hand-off of a completed printing task."""
        task = self.get_task(task_id)
        if not actor.is_supervisor and task.assignee_id != actor.id:
            raise PermissionDenied(f"Task {task_id} is not assigned to {actor.name or actor.id}")
        return self.orchestrator.progress_completed_printing(task, created_by=actor.name or actor.id)

    def stalled_handoffs(self) -> list[Task]:
        """Completed printing tasks that have no delivery stage yet."""
        completed = self.store.list(status="completed", task_type="printing")
        return [t for t in completed if self.orchestrator.existing_successor(t) is None]

    def reconcile_handoffs(self, actor: Actor) -> list[Task]:
        """Create the missing delivery stage for every stalled printing task."""
        if not actor.is_supervisor:
            raise PermissionDenied(f"Role '{actor.role}' may not run reconciliation")
        created = []
        for task in self.stalled_handoffs():
            delivery = self.orchestrator.progress_completed_printing(task, created_by=actor.name or actor.id)
            if delivery is not None:
                created.append(delivery)
        return created

    def get_visible_task(self, task_id: str, actor: Actor) -> Task:
        """get_task restricted to what list_visible_tasks would show the actor."""
        task = self.get_task(task_id)
        if not actor.is_supervisor and task.assignee_id != actor.id:
            raise PermissionDenied(f"Task {task_id} is not assigned to {actor.name or actor.id}")
        return task

    def provenance(self, task_id: str, actor: Actor) -> dict:
        self.get_visible_task(task_id, actor)
        chain = provenance_chain(self.store, task_id)
        return {"chain": chain, "roles": order_roles(chain)}

    def watch(self, viewer: Actor, dedupe_window: float = 30.0, max_queue: int = 1000) -> NotificationCenter:
        """Notification state for viewer, fed by this engine's change stream.

        The workload index already follows the stream directly, so the center
        is not given it; replaying a queued event into the index later could
        overwrite a newer snapshot.
        """
        center = NotificationCenter(viewer, dedupe_window=dedupe_window, max_queue=max_queue)
        self.store.subscribe(center.enqueue)
        return center


def load_visible_tasks(config: Config, actor: Actor) -> list[Task]:
    """Full reload on a private connection, for use from monitor threads."""
    with get_db(config.db_path) as db:
        return WorkflowEngine.from_db(db, config).list_visible_tasks(actor)
