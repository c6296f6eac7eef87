"""Plain-dict views of the models for JSON surfaces."""

from datetime import date, time

from order_workflow.core.errors import ValidationError
from order_workflow.db.models import Notification, Task, TaskEvent, Worker


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "order_no": t.display_order_no,
        "title": t.title,
        "description": t.description,
        "task_type": t.task_type,
        "workflow_stage": t.workflow_stage,
        "assignee_id": t.assignee_id,
        "assignee_name": t.assignee_name,
        "created_by": t.created_by,
        "due_date": t.due_date.isoformat() if t.due_date else None,
        "due_time": t.due_time.strftime("%H:%M") if t.due_time else None,
        "status": t.status,
        "priority": t.priority,
        "parent_task_id": t.parent_task_id,
        "original_order_id": t.original_order_id,
        "external_id": t.external_id,
        "external_parent_id": t.external_parent_id,
        "file_url": t.file_url,
        "customer_phone": t.customer_phone,
        "printing_type": t.printing_type,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "last_updated": t.last_updated.isoformat() if t.last_updated else None,
    }


def worker_dict(w: Worker) -> dict:
    return {
        "id": w.id,
        "auth_id": w.auth_id,
        "name": w.name,
        "role": w.role,
        "email": w.email,
        "completed_tasks": w.completed_tasks,
    }


def notification_dict(n: Notification) -> dict:
    return {
        "task_id": n.task_id,
        "kind": n.kind,
        "title": n.title,
        "assignee_name": n.assignee_name,
        "task_type": n.task_type,
        "due_date": n.due_date.isoformat() if n.due_date else None,
        "priority": n.priority,
        "created_at": n.created_at.isoformat(),
    }


def event_dict(e: TaskEvent) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date (expected YYYY-MM-DD): {value}")


def parse_time(value: str | None) -> time | None:
    if not value:
        return None
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid time (expected HH:MM): {value}")
