"""Tests for the status state machine and counter reconciliation."""

import tempfile
from datetime import date
from pathlib import Path
from unittest.mock import patch

import pytest

from order_workflow.core import workers as workers_mod
from order_workflow.core.errors import (
    IllegalTransition,
    NotFound,
    PermissionDenied,
    ProgressionFailed,
    ValidationError,
)
from order_workflow.core.productivity import counter_delta
from order_workflow.core.transitions import legal_successors
from order_workflow.core.workflow import WorkflowEngine
from order_workflow.db.engine import init_db
from order_workflow.db.models import Actor

ADMIN = Actor(id="admin", role="Admin", name="Ada")
DESIGNER = Actor(id="gd-1", role="Graphic Designer", name="Gina")
PRINTER = Actor(id="pt-1", role="Printing Technician", name="Pete")
SUPERVISOR = Actor(id="ds-1", role="Delivery Supervisor", name="Dana")


@pytest.fixture
def db():
    """Create a temporary SQLite database with one worker per role."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        for actor in (ADMIN, DESIGNER, PRINTER, SUPERVISOR):
            workers_mod.create_worker(conn, actor.name, actor.role, auth_id=actor.id)
        yield conn
        conn.close()


@pytest.fixture
def engine(db):
    return WorkflowEngine.from_db(db)


def _completed(db, auth_id) -> int:
    return workers_mod.get_worker_by_auth_id(db, auth_id).completed_tasks


def _create(engine, task_type, assignee):
    return engine.create_task(ADMIN, f"{task_type} job", date(2030, 1, 1), assignee, task_type=task_type)


class TestLegalSuccessors:
    def test_working_states_connect(self):
        assert legal_successors("designing", "pending") == {"in-progress", "completed"}
        assert legal_successors("designing", "completed") == {"pending", "in-progress"}

    def test_terminal_only_from_completed_delivery(self):
        assert "delivered" in legal_successors("delivery", "completed")
        assert "delivered" not in legal_successors("delivery", "in-progress")
        assert "delivered" not in legal_successors("printing", "completed")

    def test_terminal_has_no_successors(self):
        assert legal_successors("delivery", "delivered") == frozenset()
        assert legal_successors("delivery", "not-delivered") == frozenset()


class TestCounterDelta:
    def test_into_completed(self):
        assert counter_delta("in-progress", "completed") == 1

    def test_out_of_completed(self):
        assert counter_delta("completed", "pending") == -1
        assert counter_delta("completed", "not-delivered") == -1

    def test_unrelated(self):
        assert counter_delta("pending", "in-progress") == 0
        assert counter_delta("completed", "completed") == 0


class TestApply:
    def test_completion_increments_counter(self, db, engine):
        task = _create(engine, "designing", "gd-1")
        engine.apply_transition(task.id, "in-progress", DESIGNER)
        updated = engine.apply_transition(task.id, "completed", DESIGNER)
        assert updated.status == "completed"
        assert _completed(db, "gd-1") == 1

    def test_reopen_decrements_counter(self, db, engine):
        task = _create(engine, "designing", "gd-1")
        engine.apply_transition(task.id, "completed", DESIGNER)
        engine.apply_transition(task.id, "pending", DESIGNER)
        assert _completed(db, "gd-1") == 0

    def test_reapplying_same_status_is_noop(self, db, engine):
        task = _create(engine, "designing", "gd-1")
        engine.apply_transition(task.id, "completed", DESIGNER)
        engine.apply_transition(task.id, "completed", DESIGNER)
        assert _completed(db, "gd-1") == 1

    def test_lost_race_does_not_count(self, db, engine):
        task = _create(engine, "designing", "gd-1")
        with patch.object(engine.store, "compare_and_set_status", return_value=False):
            result = engine.apply_transition(task.id, "completed", DESIGNER)
        assert result.status == "pending"
        assert _completed(db, "gd-1") == 0

    def test_terminal_status_on_non_delivery_task(self, engine):
        task = _create(engine, "printing", "pt-1")
        engine.apply_transition(task.id, "in-progress", PRINTER)
        with pytest.raises(IllegalTransition):
            engine.apply_transition(task.id, "delivered", PRINTER)
        with pytest.raises(IllegalTransition):
            engine.apply_transition(task.id, "not-delivered", PRINTER)

    def test_delivered_requires_completed(self, engine):
        task = _create(engine, "delivery", "ds-1")
        with pytest.raises(IllegalTransition):
            engine.apply_transition(task.id, "delivered", SUPERVISOR)

    def test_delivered_removes_task(self, db, engine):
        task = _create(engine, "delivery", "ds-1")
        engine.apply_transition(task.id, "completed", SUPERVISOR)
        result = engine.apply_transition(task.id, "delivered", SUPERVISOR)
        assert result.status == "delivered"
        assert engine.store.get(task.id) is None
        assert _completed(db, "ds-1") == 1

    def test_not_delivered_decrements_and_is_final(self, db, engine):
        task = _create(engine, "delivery", "ds-1")
        engine.apply_transition(task.id, "completed", SUPERVISOR)
        engine.apply_transition(task.id, "not-delivered", SUPERVISOR)
        assert engine.store.get(task.id).status == "not-delivered"
        assert _completed(db, "ds-1") == 0
        with pytest.raises(IllegalTransition):
            engine.apply_transition(task.id, "pending", SUPERVISOR)

    def test_counter_never_negative(self, db, engine):
        task = _create(engine, "designing", "gd-1")
        engine.apply_transition(task.id, "completed", DESIGNER)
        workers_mod.adjust_completed_count(db, "gd-1", -5)
        engine.apply_transition(task.id, "in-progress", DESIGNER)
        assert _completed(db, "gd-1") == 0

    def test_invalid_status(self, engine):
        task = _create(engine, "designing", "gd-1")
        with pytest.raises(ValidationError):
            engine.apply_transition(task.id, "archived", DESIGNER)

    def test_missing_task(self, engine):
        with pytest.raises(NotFound):
            engine.apply_transition("nope", "completed", ADMIN)

    def test_other_worker_denied(self, engine):
        task = _create(engine, "designing", "gd-1")
        with pytest.raises(PermissionDenied):
            engine.apply_transition(task.id, "completed", PRINTER)

    def test_supervisor_may_move_any_task(self, db, engine):
        task = _create(engine, "designing", "gd-1")
        engine.apply_transition(task.id, "completed", ADMIN)
        assert _completed(db, "gd-1") == 1
        assert _completed(db, "admin") == 0


class TestProgressionFailure:
    def test_status_kept_and_failure_reported(self, db, engine):
        task = _create(engine, "printing", "pt-1")
        with patch.object(
            engine.orchestrator, "progress_completed_printing", side_effect=RuntimeError("store offline")
        ):
            with pytest.raises(ProgressionFailed) as exc_info:
                engine.apply_transition(task.id, "completed", PRINTER)

        assert exc_info.value.task.id == task.id
        assert engine.store.get(task.id).status == "completed"
        assert _completed(db, "pt-1") == 1
        events = [e.event_type for e in engine.store.get_events(task.id)]
        assert "progression_failed" in events

    def test_resume_after_failure(self, engine):
        task = _create(engine, "printing", "pt-1")
        with patch.object(
            engine.orchestrator, "progress_completed_printing", side_effect=RuntimeError("store offline")
        ):
            with pytest.raises(ProgressionFailed):
                engine.apply_transition(task.id, "completed", PRINTER)

        delivery = engine.resume_progression(task.id, PRINTER)
        assert delivery.parent_task_id == task.id
        assert delivery.assignee_id == "ds-1"
