"""Task store adapter: typed reads and writes over the SQLite tasks table.

Every committed write is published to subscribers as a ChangeEvent. The
adapter enforces field presence and domain values only; workflow rules live
in the state machine and the orchestrator.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from datetime import date, datetime
from datetime import time as dt_time

from order_workflow.core.errors import CollaboratorUnavailable, NotFound, ValidationError
from order_workflow.db.models import PRIORITIES, STAGES, STATUSES, ChangeEvent, Task, TaskEvent

logger = logging.getLogger(__name__)

COLUMNS = (
    "id", "order_no", "title", "description", "task_type", "workflow_stage",
    "assignee_id", "assignee_name", "created_by", "due_date", "due_time",
    "status", "priority", "parent_task_id", "original_order_id", "external_id",
    "external_parent_id", "file_url", "customer_phone", "printing_type",
    "created_at", "last_updated",
)
REQUIRED = ("title", "assignee_id", "due_date")
READ_ONLY = ("id", "created_at", "last_updated")

ChangeHandler = Callable[[ChangeEvent], None]


class TaskStore:
    """Read/write/query façade with a change feed."""

    def __init__(
        self,
        db: sqlite3.Connection,
        read_retries: int = 1,
        retry_delay: float = 0.0,
    ):
        self.db = db
        self.read_retries = max(1, read_retries)
        self.retry_delay = retry_delay
        self._handlers: list[ChangeHandler] = []

    # ── Change feed ─────────────────────────────────────────────────────────

    def subscribe(self, handler: ChangeHandler) -> Callable[[], None]:
        """Register a change handler. Returns a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _publish(self, event: ChangeEvent):
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Change handler failed for %s on task %s", event.kind, event.task_id)

    # ── Writes ──────────────────────────────────────────────────────────────

    def create(self, task: Task) -> Task:
        """Insert a new task row."""
        _check_required({c: getattr(task, c) for c in REQUIRED})
        _check_domains(task.status, task.priority, task.task_type)

        now = datetime.now()
        task.id = task.id or str(uuid.uuid4())
        task.created_at = task.created_at or now
        task.last_updated = now
        row = _task_to_row(task)

        with self._guard("create"):
            self.db.execute(
                f"INSERT INTO tasks ({', '.join(COLUMNS)}) VALUES ({', '.join('?' for _ in COLUMNS)})",
                [row[c] for c in COLUMNS],
            )
            _log_event(self.db, task.id, "created", None, task.status)
            self.db.commit()

        created = self.get(task.id)
        self._publish(ChangeEvent("insert", before=None, after=created))
        return created

    def update(self, task_id: str, changes: dict) -> Task:
        """Write a partial update. last_updated is always refreshed."""
        unknown = [k for k in changes if k not in COLUMNS or k in READ_ONLY]
        if unknown:
            raise ValidationError(f"Unknown or read-only fields: {', '.join(sorted(unknown))}")
        _check_required({k: v for k, v in changes.items() if k in REQUIRED})
        _check_domains(changes.get("status"), changes.get("priority"), changes.get("task_type"))

        before = self.get(task_id)
        if not before:
            raise NotFound(f"Task not found: {task_id}")

        staged = Task(**{**before.__dict__, **changes})
        staged.last_updated = datetime.now()
        values = _task_to_row(staged)
        fields = list(changes) + ["last_updated"]

        with self._guard("update"):
            self.db.execute(
                f"UPDATE tasks SET {', '.join(f'{k} = ?' for k in fields)} WHERE id = ?",
                [values[k] for k in fields] + [task_id],
            )
            _log_changes(self.db, before, staged, list(changes))
            self.db.commit()

        after = self.get(task_id)
        self._publish(ChangeEvent("update", before=before, after=after))
        return after

    def compare_and_set_status(self, task_id: str, expected: str, new: str) -> bool:
        """Write status only if the stored status still equals expected."""
        _check_domains(new, None, None)
        before = self.get(task_id)
        if not before:
            raise NotFound(f"Task not found: {task_id}")

        with self._guard("update status"):
            cur = self.db.execute(
                "UPDATE tasks SET status = ?, last_updated = ? WHERE id = ? AND status = ?",
                (new, datetime.now().isoformat(), task_id, expected),
            )
            if cur.rowcount == 0:
                self.db.rollback()
                return False
            _log_event(self.db, task_id, "status_changed", expected, new)
            self.db.commit()

        after = self.get(task_id)
        self._publish(ChangeEvent("update", before=before, after=after))
        return True

    def delete(self, task_id: str) -> None:
        """Hard-delete a task row and its history."""
        before = self.get(task_id)
        if not before:
            raise NotFound(f"Task not found: {task_id}")

        with self._guard("delete"):
            self.db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
            self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            self.db.commit()

        self._publish(ChangeEvent("delete", before=before, after=None))

    def log_event(self, task_id: str, event_type: str, old_value: str | None, new_value: str | None):
        """Append an audit entry that is not tied to a row write."""
        with self._guard("log event"):
            _log_event(self.db, task_id, event_type, old_value, new_value)
            self.db.commit()

    # ── Reads ───────────────────────────────────────────────────────────────

    def get(self, task_id: str) -> Task | None:
        with self._guard("get"):
            row = self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return _row_to_task(row)

    def list(
        self,
        assignee_id: str | None = None,
        status: str | None = None,
        task_type: str | None = None,
        parent_task_id: str | None = None,
        search: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        """List tasks newest first with optional filters."""
        query = "SELECT * FROM tasks WHERE 1=1"
        params: list = []

        if assignee_id is not None:
            query += " AND assignee_id = ?"
            params.append(assignee_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        if task_type:
            query += " AND task_type = ?"
            params.append(task_type)
        if parent_task_id is not None:
            query += " AND parent_task_id = ?"
            params.append(parent_task_id)
        if search:
            query += " AND (title LIKE ? OR description LIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])

        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        rows = self._with_retry(lambda: self.db.execute(query, params).fetchall())
        return [_row_to_task(r) for r in rows]

    def list_by_assignee(self, worker_id: str) -> list[Task]:
        return self.list(assignee_id=worker_id)

    def get_events(self, task_id: str) -> list[TaskEvent]:
        """Get the audit history for a task."""
        with self._guard("get events"):
            rows = self.db.execute(
                "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
                (task_id,),
            ).fetchall()
        return [
            TaskEvent(
                id=r["id"],
                task_id=r["task_id"],
                event_type=r["event_type"],
                old_value=r["old_value"],
                new_value=r["new_value"],
                created_at=_parse_dt(r["created_at"]),
            )
            for r in rows
        ]

    # ── Collaborator failure handling ───────────────────────────────────────

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except sqlite3.Error as e:
            raise CollaboratorUnavailable(f"Task store {operation} failed: {e}") from e

    def _with_retry(self, fn):
        last_error = None
        for attempt in range(self.read_retries):
            try:
                return fn()
            except sqlite3.Error as e:
                last_error = e
                logger.warning("Read attempt %d failed: %s", attempt + 1, e)
                if attempt < self.read_retries - 1:
                    time.sleep(self.retry_delay * (attempt + 1))
        raise CollaboratorUnavailable(f"Task store read failed: {last_error}") from last_error


# ── Row helpers ─────────────────────────────────────────────────────────────


def _check_required(values: dict):
    missing = [k for k, v in values.items() if v is None or (isinstance(v, str) and not v.strip())]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _check_domains(status: str | None, priority: str | None, task_type: str | None):
    if status is not None and status not in STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    if priority is not None and priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}")
    if task_type is not None and task_type not in STAGES:
        raise ValidationError(f"Invalid task type: {task_type}")


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _log_changes(db: sqlite3.Connection, before: Task, after: Task, fields: list[str]):
    if "status" in fields and before.status != after.status:
        _log_event(db, before.id, "status_changed", before.status, after.status)
    if "assignee_id" in fields and before.assignee_id != after.assignee_id:
        _log_event(db, before.id, "reassigned", before.assignee_id, after.assignee_id)
    rest = sorted(f for f in fields if f not in ("status", "assignee_id"))
    if rest:
        _log_event(db, before.id, "fields_updated", None, ", ".join(rest))


def _task_to_row(task: Task) -> dict:
    row = dict(task.__dict__)
    row["due_date"] = task.due_date.isoformat() if task.due_date else None
    row["due_time"] = task.due_time.strftime("%H:%M") if task.due_time else None
    row["created_at"] = task.created_at.isoformat() if task.created_at else None
    row["last_updated"] = task.last_updated.isoformat() if task.last_updated else None
    return row


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        order_no=row["order_no"],
        title=row["title"],
        description=row["description"] or "",
        task_type=row["task_type"],
        workflow_stage=row["workflow_stage"],
        assignee_id=row["assignee_id"],
        assignee_name=row["assignee_name"] or "",
        created_by=row["created_by"] or "",
        due_date=date.fromisoformat(row["due_date"]),
        due_time=dt_time.fromisoformat(row["due_time"]) if row["due_time"] else None,
        status=row["status"],
        priority=row["priority"] or "medium",
        parent_task_id=row["parent_task_id"],
        original_order_id=row["original_order_id"],
        external_id=row["external_id"],
        external_parent_id=row["external_parent_id"],
        file_url=row["file_url"],
        customer_phone=row["customer_phone"],
        printing_type=row["printing_type"],
        created_at=_parse_dt(row["created_at"]),
        last_updated=_parse_dt(row["last_updated"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
