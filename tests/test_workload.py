"""Tests for the workload index."""

import tempfile
from datetime import date
from pathlib import Path

import pytest

from order_workflow.core import workers as workers_mod
from order_workflow.core.store import TaskStore
from order_workflow.core.workload import WorkloadIndex
from order_workflow.db.engine import init_db
from order_workflow.db.models import ChangeEvent, Task


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        workers_mod.create_worker(conn, "Pete", "Printing Technician", auth_id="pt-1")
        workers_mod.create_worker(conn, "Paula", "Printing Technician", auth_id="pt-2")
        workers_mod.create_worker(conn, "Gina", "Graphic Designer", auth_id="gd-1")
        yield conn
        conn.close()


@pytest.fixture
def store(db):
    return TaskStore(db)


def _task(store, assignee="pt-1", task_type="printing", status="pending"):
    return store.create(Task(id="", title="Job", assignee_id=assignee,
                             due_date=date(2030, 1, 1), task_type=task_type, status=status))


class TestCounts:
    def test_counts_open_only(self, store):
        _task(store)
        _task(store, status="in-progress")
        _task(store, status="completed")
        index = WorkloadIndex(store)
        assert index.open_count_for("pt-1") == 2
        assert index.open_count_for("pt-2") == 0

    def test_counts_by_type(self, store):
        _task(store)
        _task(store, task_type="designing")
        index = WorkloadIndex(store)
        assert index.open_count_for("pt-1", "printing") == 1
        assert index.open_counts()["pt-1"] == 2

    def test_eligible_workers_by_stage(self, store):
        index = WorkloadIndex(store)
        assert [w.auth_id for w in index.eligible_workers_for("printing")] == ["pt-1", "pt-2"]
        assert [w.auth_id for w in index.eligible_workers_for("delivery")] == []
        assert len(index.eligible_workers_for(None)) == 3


class TestFreshness:
    def test_rebuilds_when_stale(self, db, store):
        clock = FakeClock()
        index = WorkloadIndex(store, max_age=60, clock=clock)
        assert index.open_count_for("pt-1") == 0

        # Written behind the index's back, so only a rebuild sees it.
        db.execute(
            "INSERT INTO tasks (id, title, assignee_id, due_date, task_type) VALUES (?, ?, ?, ?, ?)",
            ("raw-1", "Raw", "pt-1", "2030-01-01", "printing"),
        )
        db.commit()
        clock.now = 30
        assert index.open_count_for("pt-1") == 0
        clock.now = 61
        assert index.open_count_for("pt-1") == 1

    def test_invalidate(self, db, store):
        index = WorkloadIndex(store)
        index.rebuild()
        assert not index.is_stale
        index.invalidate()
        assert index.is_stale


class TestApplyEvent:
    def test_follows_change_feed(self, store):
        index = WorkloadIndex(store, max_age=3600)
        store.subscribe(index.apply_event)
        index.rebuild()

        task = _task(store)
        assert index.open_count_for("pt-1") == 1
        store.update(task.id, {"assignee_id": "pt-2"})
        assert index.open_count_for("pt-1") == 0
        assert index.open_count_for("pt-2") == 1
        store.compare_and_set_status(task.id, "pending", "completed")
        assert index.open_count_for("pt-2") == 0

    def test_replayed_event_has_no_effect(self, store):
        index = WorkloadIndex(store, max_age=3600)
        index.rebuild()
        task = _task(store)
        event = ChangeEvent("insert", after=task)
        index.apply_event(event)
        index.apply_event(event)
        assert index.open_count_for("pt-1") == 1

    def test_delete_event(self, store):
        index = WorkloadIndex(store, max_age=3600)
        store.subscribe(index.apply_event)
        index.rebuild()
        task = _task(store)
        store.delete(task.id)
        assert index.open_count_for("pt-1") == 0

    def test_ignored_before_first_load(self, store):
        index = WorkloadIndex(store)
        task = _task(store)
        index.apply_event(ChangeEvent("insert", after=task))
        assert index.is_stale
