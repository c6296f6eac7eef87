"""Worker directory operations."""

import sqlite3
import uuid
from datetime import datetime

from order_workflow.core.errors import NotFound, ValidationError
from order_workflow.db.models import ROLES, Actor, Worker


def create_worker(
    db: sqlite3.Connection,
    name: str,
    role: str,
    auth_id: str | None = None,
    email: str | None = None,
    worker_id: str | None = None,
) -> Worker:
    """Create a new directory record."""
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    if not name or not name.strip():
        raise ValidationError("Worker name is required")

    worker_id = worker_id or str(uuid.uuid4())
    try:
        db.execute(
            """INSERT INTO workers (id, auth_id, name, role, email)
               VALUES (?, ?, ?, ?, ?)""",
            (worker_id, auth_id or worker_id, name.strip(), role, email),
        )
    except sqlite3.IntegrityError as e:
        raise ValidationError(f"Worker identity already exists: {auth_id or worker_id}") from e
    db.commit()
    return get_worker(db, worker_id)


def get_worker(db: sqlite3.Connection, worker_id: str) -> Worker | None:
    """Get a worker by directory record ID."""
    row = db.execute("SELECT * FROM workers WHERE id = ?", (worker_id,)).fetchone()
    if not row:
        return None
    return _row_to_worker(row)


def get_worker_by_auth_id(db: sqlite3.Connection, auth_id: str) -> Worker | None:
    """Get a worker by the stable identity tasks are assigned to."""
    row = db.execute("SELECT * FROM workers WHERE auth_id = ?", (auth_id,)).fetchone()
    if not row:
        return None
    return _row_to_worker(row)


def list_workers(db: sqlite3.Connection, role: str | None = None) -> list[Worker]:
    """List workers ordered by auth identity, optionally filtered by role."""
    query = "SELECT * FROM workers"
    params: list = []
    if role:
        query += " WHERE role = ?"
        params.append(role)
    query += " ORDER BY auth_id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_worker(r) for r in rows]


def adjust_completed_count(db: sqlite3.Connection, auth_id: str, delta: int) -> Worker | None:
    """Add delta to a worker's completed-task counter, never going below zero."""
    if delta == 0:
        return get_worker_by_auth_id(db, auth_id)
    db.execute(
        """UPDATE workers
           SET completed_tasks = MAX(completed_tasks + ?, 0), updated_at = datetime('now')
           WHERE auth_id = ?""",
        (delta, auth_id),
    )
    db.commit()
    return get_worker_by_auth_id(db, auth_id)


def resolve_actor(db: sqlite3.Connection, auth_id: str) -> Actor:
    """Build the Actor for a directory identity."""
    worker = get_worker_by_auth_id(db, auth_id)
    if not worker:
        raise NotFound(f"Worker not found: {auth_id}")
    return Actor(id=worker.auth_id, role=worker.role, name=worker.name)


def _row_to_worker(row: sqlite3.Row) -> Worker:
    return Worker(
        id=row["id"],
        auth_id=row["auth_id"],
        name=row["name"],
        role=row["role"],
        email=row["email"],
        completed_tasks=row["completed_tasks"] or 0,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
