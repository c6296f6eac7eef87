"""Data models for the order workflow engine."""

from dataclasses import dataclass, field
from datetime import date, datetime, time

STAGES = ("designing", "printing", "delivery")
STATUSES = ("pending", "in-progress", "completed", "delivered", "not-delivered")
OPEN_STATUSES = ("pending", "in-progress")
TERMINAL_STATUSES = ("delivered", "not-delivered")
PRIORITIES = ("low", "medium", "high")

ADMIN = "Admin"
MANAGER = "Manager"
GRAPHIC_DESIGNER = "Graphic Designer"
PRINTING_TECHNICIAN = "Printing Technician"
DELIVERY_SUPERVISOR = "Delivery Supervisor"
ROLES = (ADMIN, MANAGER, GRAPHIC_DESIGNER, PRINTING_TECHNICIAN, DELIVERY_SUPERVISOR)
SUPERVISOR_ROLES = (ADMIN, MANAGER)


@dataclass
class Task:
    id: str
    title: str
    assignee_id: str
    due_date: date
    description: str = ""
    order_no: str | None = None
    task_type: str | None = None
    workflow_stage: str | None = None
    assignee_name: str = ""
    created_by: str = ""
    due_time: time | None = None
    status: str = "pending"
    priority: str = "medium"
    parent_task_id: str | None = None
    original_order_id: str | None = None
    external_id: str | None = None
    external_parent_id: str | None = None
    file_url: str | None = None
    customer_phone: str | None = None
    printing_type: str | None = None
    created_at: datetime | None = None
    last_updated: datetime | None = None

    @property
    def display_order_no(self) -> str:
        return self.order_no or self.id[:8]


@dataclass
class Worker:
    id: str
    auth_id: str
    name: str
    role: str
    email: str | None = None
    completed_tasks: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Actor:
    """The identity a workflow operation runs as."""

    id: str
    role: str
    name: str = ""

    @property
    def is_supervisor(self) -> bool:
        return self.role in SUPERVISOR_ROLES


@dataclass
class ChangeEvent:
    kind: str  # insert | update | delete
    before: Task | None = None
    after: Task | None = None

    @property
    def task_id(self) -> str:
        row = self.after or self.before
        return row.id if row else ""


@dataclass
class Notification:
    task_id: str
    kind: str  # new_task | overdue
    title: str = ""
    assignee_name: str = ""
    task_type: str | None = None
    due_date: date | None = None
    priority: str = "medium"
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None
