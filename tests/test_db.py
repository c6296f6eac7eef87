"""Tests for database initialization."""

import tempfile
from pathlib import Path

from order_workflow.db.engine import init_db


def _columns(conn, table):
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}


class TestInitDb:
    def test_creates_schema(self):
        with tempfile.TemporaryDirectory() as tmp:
            conn = init_db(Path(tmp) / "nested" / "test.db")
            tasks = _columns(conn, "tasks")
            assert {"printing_type", "external_id", "external_parent_id", "original_order_id"} <= tasks
            assert "completed_tasks" in _columns(conn, "workers")
            assert "event_type" in _columns(conn, "task_events")
            conn.close()

    def test_reopen_existing_database(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "test.db"
            conn = init_db(path)
            conn.execute(
                "INSERT INTO workers (id, auth_id, name, role) VALUES ('w1', 'pt-1', 'Pete', 'Printing Technician')"
            )
            conn.commit()
            conn.close()

            conn = init_db(path)
            assert conn.execute("SELECT COUNT(*) FROM workers").fetchone()[0] == 1
            assert "printing_type" in _columns(conn, "tasks")
            conn.close()
