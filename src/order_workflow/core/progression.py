"""Stage hand-off: spawning the next stage's task and walking the provenance chain."""

import logging
from datetime import date, time

from order_workflow.core.assignment import AssignmentResolver
from order_workflow.core.errors import IllegalTransition, NoEligibleWorker
from order_workflow.core.store import TaskStore
from order_workflow.db.models import Actor, Task, Worker

logger = logging.getLogger(__name__)

NEXT_STAGE = {"designing": "printing", "printing": "delivery"}
STAGE_TITLES = {"printing": "Printing", "delivery": "Delivery"}
MAX_CHAIN_DEPTH = 5


def build_next_stage(source: Task, next_type: str, worker: Worker, created_by: str) -> Task:
    """Copy the order fields of source into a fresh task for next_type."""
    task = Task(
        id="",
        title=f"{STAGE_TITLES[next_type]} - {source.title}",
        description=source.description,
        order_no=source.order_no,
        task_type=next_type,
        workflow_stage=next_type,
        assignee_id=worker.auth_id,
        assignee_name=worker.name,
        created_by=created_by,
        due_date=source.due_date,
        due_time=source.due_time,
        status="pending",
        priority=source.priority,
        parent_task_id=source.id,
        original_order_id=source.original_order_id or source.id,
        external_id=source.external_id,
        external_parent_id=source.external_parent_id,
        file_url=source.file_url,
        customer_phone=source.customer_phone,
        printing_type=source.printing_type,
    )
    if source.task_type == "designing":
        task.external_id = source.external_id or source.assignee_id
    elif source.task_type == "printing":
        task.external_parent_id = source.assignee_id or source.id
    return task


class ProgressionOrchestrator:
    def __init__(self, store: TaskStore, resolver: AssignmentResolver):
        self.store = store
        self.resolver = resolver

    def existing_successor(self, source: Task) -> Task | None:
        next_type = NEXT_STAGE.get(source.task_type)
        if next_type is None:
            return None
        children = self.store.list(parent_task_id=source.id, task_type=next_type)
        return children[0] if children else None

    def progress_completed_printing(self, source: Task, created_by: str = "System") -> Task | None:
        """Create the delivery task for a just-completed printing task.

        Returns None when no delivery supervisor exists; the order then has
        no further stage.
        """
        if source.task_type != "printing" or source.status != "completed":
            return None

        existing = self.existing_successor(source)
        if existing:
            logger.info("Task %s already handed off to %s", source.id, existing.id)
            return existing

        try:
            worker = self.resolver.resolve_automatic("delivery")
        except NoEligibleWorker:
            logger.warning("No delivery supervisor for completed printing task %s; chain ends here", source.id)
            return None

        delivery = self.store.create(build_next_stage(source, "delivery", worker, created_by))
        self.store.log_event(source.id, "handed_off", None, delivery.id)
        logger.info("Delivery task %s auto-assigned to %s", delivery.id, worker.name)
        return delivery

    def assign_next_stage(
        self,
        source: Task,
        assignee_id: str,
        actor: Actor,
        due_date: date | None = None,
        due_time: time | None = None,
    ) -> Task:
        """Hand a completed task to an explicitly chosen worker of the next stage."""
        next_type = NEXT_STAGE.get(source.task_type)
        if next_type is None:
            raise IllegalTransition(f"{source.task_type or 'Generic'} tasks have no next stage")
        if source.status != "completed":
            raise IllegalTransition(f"Task {source.id} must be completed before hand-off")
        existing = self.existing_successor(source)
        if existing:
            raise IllegalTransition(f"Task {source.id} was already handed off to {existing.id}")

        worker = self.resolver.resolve_manual(next_type, assignee_id)
        task = build_next_stage(source, next_type, worker, actor.name or actor.id)
        task.due_date = source.due_date or due_date
        task.due_time = source.due_time or due_time

        created = self.store.create(task)
        self.store.log_event(source.id, "handed_off", None, created.id)
        logger.info("Task %s handed off to %s as %s", source.id, worker.name, created.id)
        return created


def provenance_chain(store: TaskStore, task_id: str, max_depth: int = MAX_CHAIN_DEPTH) -> list[Task]:
    """Walk parent links from task_id back towards the order root.

    Stops after max_depth hops, at a deleted parent, or on a cycle.
    """
    chain: list[Task] = []
    seen: set[str] = set()
    current = store.get(task_id)
    while current is not None and current.id not in seen:
        chain.append(current)
        seen.add(current.id)
        if len(chain) > max_depth or not current.parent_task_id:
            break
        current = store.get(current.parent_task_id)
    return chain


def order_roles(chain: list[Task]) -> dict[str, str | None]:
    """Who designed, printed and delivered the order the chain belongs to."""
    roles: dict[str, str | None] = {"designer": None, "printer": None, "deliverer": None}
    for task in chain:
        if task.task_type == "designing":
            roles["designer"] = roles["designer"] or task.assignee_id
        elif task.task_type == "printing":
            roles["printer"] = roles["printer"] or task.assignee_id
            roles["designer"] = roles["designer"] or task.external_id
        elif task.task_type == "delivery":
            roles["deliverer"] = roles["deliverer"] or task.assignee_id
            roles["printer"] = roles["printer"] or task.external_parent_id
            roles["designer"] = roles["designer"] or task.external_id
    return roles
