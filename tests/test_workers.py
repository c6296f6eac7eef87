"""Tests for the worker directory."""

import tempfile
from pathlib import Path

import pytest

from order_workflow.core import workers as workers_mod
from order_workflow.core.errors import NotFound, ValidationError
from order_workflow.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestCreateWorker:
    def test_create(self, db):
        worker = workers_mod.create_worker(db, " Pete ", "Printing Technician", auth_id="pt-1")
        assert worker.name == "Pete"
        assert worker.auth_id == "pt-1"
        assert worker.completed_tasks == 0

    def test_auth_id_defaults_to_record_id(self, db):
        worker = workers_mod.create_worker(db, "Pete", "Printing Technician")
        assert worker.auth_id == worker.id

    def test_duplicate_identity(self, db):
        workers_mod.create_worker(db, "Pete", "Printing Technician", auth_id="pt-1")
        with pytest.raises(ValidationError, match="already exists"):
            workers_mod.create_worker(db, "Paula", "Printing Technician", auth_id="pt-1")
        assert [w.name for w in workers_mod.list_workers(db)] == ["Pete"]

    def test_unknown_role(self, db):
        with pytest.raises(ValidationError):
            workers_mod.create_worker(db, "Pete", "Janitor")

    def test_blank_name(self, db):
        with pytest.raises(ValidationError):
            workers_mod.create_worker(db, "  ", "Admin")


class TestDirectory:
    def test_resolve_actor(self, db):
        workers_mod.create_worker(db, "Dana", "Delivery Supervisor", auth_id="ds-1")
        actor = workers_mod.resolve_actor(db, "ds-1")
        assert (actor.id, actor.role, actor.name) == ("ds-1", "Delivery Supervisor", "Dana")

    def test_resolve_unknown(self, db):
        with pytest.raises(NotFound):
            workers_mod.resolve_actor(db, "ghost")

    def test_list_by_role(self, db):
        workers_mod.create_worker(db, "Pete", "Printing Technician", auth_id="pt-1")
        workers_mod.create_worker(db, "Dana", "Delivery Supervisor", auth_id="ds-1")
        assert [w.auth_id for w in workers_mod.list_workers(db, role="Delivery Supervisor")] == ["ds-1"]

    def test_completed_count_floor(self, db):
        workers_mod.create_worker(db, "Pete", "Printing Technician", auth_id="pt-1")
        assert workers_mod.adjust_completed_count(db, "pt-1", 1).completed_tasks == 1
        assert workers_mod.adjust_completed_count(db, "pt-1", -3).completed_tasks == 0
