"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS workers (
    id TEXT PRIMARY KEY,
    auth_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    role TEXT NOT NULL,
    email TEXT,
    completed_tasks INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    order_no TEXT,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    task_type TEXT CHECK (task_type IS NULL OR task_type IN ('designing', 'printing', 'delivery')),
    workflow_stage TEXT,
    assignee_id TEXT NOT NULL,
    assignee_name TEXT DEFAULT '',
    created_by TEXT DEFAULT '',
    due_date TEXT NOT NULL,
    due_time TEXT,
    status TEXT DEFAULT 'pending'
        CHECK (status IN ('pending', 'in-progress', 'completed', 'delivered', 'not-delivered')),
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
    parent_task_id TEXT,
    original_order_id TEXT,
    external_id TEXT,
    external_parent_id TEXT,
    file_url TEXT,
    customer_phone TEXT,
    printing_type TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    last_updated TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks(assignee_id);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


def init_db(db_path: Path, check_same_thread: bool = True) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
