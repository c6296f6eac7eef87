"""Choosing the worker for a task: role eligibility, creation rights and load balancing."""

import logging
from collections.abc import Mapping, Sequence

from order_workflow.core import workers as workers_mod
from order_workflow.core.errors import InvalidAssignee, NoEligibleWorker, PermissionDenied
from order_workflow.core.workload import STAGE_ROLES, WorkloadIndex
from order_workflow.db.models import ADMIN, GRAPHIC_DESIGNER, MANAGER, Actor, Worker

logger = logging.getLogger(__name__)

CREATOR_ROLES = (ADMIN, MANAGER, GRAPHIC_DESIGNER)


def is_eligible(worker: Worker, task_type: str | None) -> bool:
    """A generic task accepts anyone; a staged task needs the stage's role."""
    if task_type is None:
        return True
    return worker.role == STAGE_ROLES.get(task_type)


def pick_least_loaded(workers: Sequence[Worker], counts: Mapping[str, int]) -> Worker:
    """Minimum open count wins; the first worker in iteration order wins a tie."""
    if not workers:
        raise NoEligibleWorker("No candidates to choose from")
    best = workers[0]
    best_count = counts.get(best.auth_id, 0)
    for worker in workers[1:]:
        count = counts.get(worker.auth_id, 0)
        if count < best_count:
            best, best_count = worker, count
    return best


def check_creation_rights(actor: Actor, task_type: str | None, assignee_id: str):
    """Gate brand-new task creation by the actor's role.

    Admin and Manager may create any task. A Graphic Designer may create a
    designing task for themselves, or originate a printing task.
    """
    if actor.role not in CREATOR_ROLES:
        raise PermissionDenied(f"Role '{actor.role}' may not create tasks")
    if actor.role != GRAPHIC_DESIGNER:
        return
    if task_type == "designing":
        if assignee_id != actor.id:
            raise PermissionDenied("Graphic designers may only assign designing tasks to themselves")
        return
    if task_type == "printing":
        return
    raise PermissionDenied("Graphic designers may only create designing or printing tasks")


class AssignmentResolver:
    def __init__(self, workload: WorkloadIndex):
        self.workload = workload

    def resolve_manual(self, task_type: str | None, assignee_id: str) -> Worker:
        """Validate an explicitly chosen worker."""
        worker = workers_mod.get_worker_by_auth_id(self.workload.db, assignee_id)
        if not worker:
            raise InvalidAssignee(f"Unknown worker: {assignee_id}")
        if not is_eligible(worker, task_type):
            raise InvalidAssignee(
                f"{worker.name} ({worker.role}) cannot be assigned {task_type} tasks"
            )
        return worker

    def resolve_automatic(self, task_type: str) -> Worker:
        """Pick the least-loaded eligible worker for the stage."""
        candidates = self.workload.eligible_workers_for(task_type)
        if not candidates:
            raise NoEligibleWorker(f"No {STAGE_ROLES.get(task_type, 'eligible worker')} available")
        if len(candidates) == 1:
            return candidates[0]
        counts = self.workload.open_counts()
        chosen = pick_least_loaded(candidates, counts)
        logger.debug(
            "Auto-assigned %s stage to %s (%d open) among %d candidates",
            task_type, chosen.auth_id, counts.get(chosen.auth_id, 0), len(candidates),
        )
        return chosen
