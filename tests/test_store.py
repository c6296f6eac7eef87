"""Tests for the task store adapter."""

import sqlite3
import tempfile
import typing
from datetime import date, time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from order_workflow.core.errors import CollaboratorUnavailable, NotFound, ValidationError
from order_workflow.core.store import TaskStore
from order_workflow.db.engine import init_db
from order_workflow.db.models import Task


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def store(db):
    return TaskStore(db)


def _task(title="Business cards", assignee="gd-1", **kwargs) -> Task:
    return Task(id="", title=title, assignee_id=assignee, due_date=date(2030, 1, 15), **kwargs)


class TestCreate:
    def test_create_assigns_id_and_timestamps(self, store):
        task = store.create(_task(task_type="designing", due_time=time(14, 30)))
        assert task.id
        assert task.created_at is not None
        assert task.last_updated is not None
        assert task.status == "pending"
        assert task.due_time == time(14, 30)

    def test_create_persists(self, store):
        task = store.create(_task(order_no="ORD-7", customer_phone="555-0100"))
        fetched = store.get(task.id)
        assert fetched.title == "Business cards"
        assert fetched.order_no == "ORD-7"
        assert fetched.customer_phone == "555-0100"

    def test_missing_title(self, store):
        with pytest.raises(ValidationError, match="title"):
            store.create(_task(title="  "))

    def test_missing_assignee(self, store):
        with pytest.raises(ValidationError, match="assignee_id"):
            store.create(_task(assignee=""))

    def test_invalid_status(self, store):
        with pytest.raises(ValidationError, match="status"):
            store.create(_task(status="archived"))

    def test_invalid_task_type(self, store):
        with pytest.raises(ValidationError, match="task type"):
            store.create(_task(task_type="packing"))

    def test_created_event_logged(self, store):
        task = store.create(_task())
        events = store.get_events(task.id)
        assert [e.event_type for e in events] == ["created"]

    def test_display_order_no_falls_back_to_id(self, store):
        task = store.create(_task())
        assert task.display_order_no == task.id[:8]


class TestUpdate:
    def test_update_fields(self, store):
        task = store.create(_task())
        updated = store.update(task.id, {"title": "Flyers", "priority": "high"})
        assert updated.title == "Flyers"
        assert updated.priority == "high"
        assert updated.last_updated >= task.last_updated

    def test_update_missing_task(self, store):
        with pytest.raises(NotFound):
            store.update("nope", {"title": "x"})

    def test_update_read_only_field(self, store):
        task = store.create(_task())
        with pytest.raises(ValidationError, match="read-only"):
            store.update(task.id, {"id": "other"})

    def test_update_unknown_field(self, store):
        task = store.create(_task())
        with pytest.raises(ValidationError):
            store.update(task.id, {"colour": "red"})

    def test_clearing_required_field(self, store):
        task = store.create(_task())
        with pytest.raises(ValidationError):
            store.update(task.id, {"title": ""})

    def test_reassignment_logged(self, store):
        task = store.create(_task())
        store.update(task.id, {"assignee_id": "gd-2"})
        events = store.get_events(task.id)
        assert events[-1].event_type == "reassigned"
        assert events[-1].old_value == "gd-1"
        assert events[-1].new_value == "gd-2"


class TestCompareAndSet:
    def test_applies_when_expected_matches(self, store):
        task = store.create(_task())
        assert store.compare_and_set_status(task.id, "pending", "in-progress") is True
        assert store.get(task.id).status == "in-progress"

    def test_rejects_stale_expectation(self, store):
        task = store.create(_task())
        store.compare_and_set_status(task.id, "pending", "in-progress")
        assert store.compare_and_set_status(task.id, "pending", "completed") is False
        assert store.get(task.id).status == "in-progress"

    def test_missing_task(self, store):
        with pytest.raises(NotFound):
            store.compare_and_set_status("nope", "pending", "completed")


class TestDelete:
    def test_delete(self, store):
        task = store.create(_task())
        store.delete(task.id)
        assert store.get(task.id) is None
        assert store.get_events(task.id) == []

    def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            store.delete("nope")


class TestList:
    def test_newest_first(self, store):
        first = store.create(_task(title="First"))
        second = store.create(_task(title="Second"))
        ids = [t.id for t in store.list()]
        assert ids == [second.id, first.id]

    def test_filters(self, store):
        store.create(_task(title="Design", task_type="designing"))
        store.create(_task(title="Print", assignee="pt-1", task_type="printing"))
        assert [t.title for t in store.list(task_type="printing")] == ["Print"]
        assert [t.title for t in store.list_by_assignee("gd-1")] == ["Design"]

    def test_list_annotations_resolve(self):
        hints = typing.get_type_hints(TaskStore.list_by_assignee)
        assert hints["return"] == list[Task]

    def test_search(self, store):
        store.create(_task(title="Wedding invites", description="gold foil"))
        store.create(_task(title="Menu cards"))
        assert [t.title for t in store.list(search="foil")] == ["Wedding invites"]
        assert [t.title for t in store.list(search="Menu")] == ["Menu cards"]

    def test_limit_offset(self, store):
        for i in range(5):
            store.create(_task(title=f"Task {i}"))
        page = store.list(limit=2, offset=1)
        assert [t.title for t in page] == ["Task 3", "Task 2"]

    def test_read_retries_then_fails(self, db):
        broken = MagicMock(wraps=db)
        broken.execute.side_effect = sqlite3.OperationalError("database is locked")
        store = TaskStore(broken, read_retries=3, retry_delay=0.0)
        with pytest.raises(CollaboratorUnavailable):
            store.list()
        assert broken.execute.call_count == 3


class TestChangeFeed:
    def test_insert_update_delete_events(self, store):
        events = []
        store.subscribe(events.append)
        task = store.create(_task())
        store.update(task.id, {"priority": "low"})
        store.delete(task.id)

        assert [e.kind for e in events] == ["insert", "update", "delete"]
        assert events[0].after.id == task.id
        assert events[1].before.priority == "medium"
        assert events[1].after.priority == "low"
        assert events[2].before.id == task.id
        assert events[2].after is None

    def test_unsubscribe(self, store):
        events = []
        unsubscribe = store.subscribe(events.append)
        unsubscribe()
        store.create(_task())
        assert events == []

    def test_failing_handler_does_not_break_write(self, store):
        def boom(event):
            raise RuntimeError("handler down")

        store.subscribe(boom)
        task = store.create(_task())
        assert store.get(task.id) is not None
