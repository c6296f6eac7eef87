"""MCP server exposing the workflow operations as tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from mcp.server.fastmcp import Context, FastMCP

from order_workflow.config import Config, get_config
from order_workflow.core import serialize
from order_workflow.core import workers as workers_mod
from order_workflow.core.errors import ProgressionFailed, WorkflowError
from order_workflow.core.notifications import ReconcileMonitor
from order_workflow.core.workflow import WorkflowEngine
from order_workflow.db.engine import init_db
from order_workflow.db.models import Actor
from order_workflow.integrations import slack as slack_mod


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    engine: WorkflowEngine
    monitors: dict[str, ReconcileMonitor] = field(default_factory=dict)


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path, check_same_thread=False)
    try:
        yield AppContext(db=db, config=config, engine=WorkflowEngine.from_db(db, config))
    finally:
        db.close()


mcp = FastMCP("order-workflow", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: WorkflowError) -> dict:
    result = {"error": str(e), "type": type(e).__name__}
    if isinstance(e, ProgressionFailed) and e.task is not None:
        result["task"] = serialize.task_dict(e.task)
    return result


def _monitor(app: AppContext, actor: Actor) -> ReconcileMonitor:
    """The actor's notification session, created on first use and fed by the store's change stream."""
    monitor = app.monitors.get(actor.id)
    if monitor is None:
        center = app.engine.watch(
            actor,
            dedupe_window=app.config.dedupe_window,
            max_queue=app.config.event_queue_size,
        )
        if app.config.slack_channel:
            center.add_sink(slack_mod.make_sink(app.config.slack_bot_token, app.config.slack_channel))
        monitor = ReconcileMonitor(
            center,
            lambda: app.engine.list_visible_tasks(actor),
            reload_interval=app.config.reload_interval,
        )
        app.monitors[actor.id] = monitor
    return monitor


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    actor_id: str,
    title: str,
    due_date: str,
    assignee_id: str,
    task_type: str | None = None,
    description: str = "",
    priority: str = "medium",
    due_time: str | None = None,
    order_no: str | None = None,
    customer_phone: str | None = None,
) -> dict:
    """Create a task. task_type: designing, printing or delivery (omit for a general task).
    Dates are YYYY-MM-DD, times HH:MM. Priority: low, medium, high."""
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        task = app.engine.create_task(
            actor, title, serialize.parse_date(due_date), assignee_id,
            task_type=task_type, description=description, priority=priority,
            due_time=serialize.parse_time(due_time), order_no=order_no,
            customer_phone=customer_phone,
        )
        return serialize.task_dict(task)
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def list_tasks(
    ctx: Context,
    actor_id: str,
    status: str | None = None,
    task_type: str | None = None,
    search: str | None = None,
) -> list[dict] | dict:
    """List the tasks visible to an actor, optionally filtered."""
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        tasks = app.engine.list_visible_tasks(actor, status=status, task_type=task_type, search=search)
        return [serialize.task_dict(t) for t in tasks]
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def get_task(ctx: Context, actor_id: str, task_id: str) -> dict:
    """Get full details of a task, its history and who worked on its order."""
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        task = app.engine.get_visible_task(task_id, actor)
        result = serialize.task_dict(task)
        result["events"] = [serialize.event_dict(e) for e in app.engine.store.get_events(task_id)]
        result["order_roles"] = app.engine.provenance(task_id, actor)["roles"]
        return result
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def update_task_status(ctx: Context, actor_id: str, task_id: str, status: str) -> dict:
    """Change a task's status: pending, in-progress, completed, delivered, not-delivered.

    Completing a printing task creates its delivery task automatically.
    Marking a delivery task delivered removes it.
    """
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        task = app.engine.apply_transition(task_id, status, actor)
        result = serialize.task_dict(task)
        result["deleted"] = task.status == "delivered"
        return result
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def update_task(
    ctx: Context,
    actor_id: str,
    task_id: str,
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    due_date: str | None = None,
    assignee_id: str | None = None,
) -> dict:
    """Edit task fields. Reassigning resets the task to pending."""
    app = _ctx(ctx)
    changes = {
        "title": title,
        "description": description,
        "priority": priority,
        "assignee_id": assignee_id,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    try:
        if due_date:
            changes["due_date"] = serialize.parse_date(due_date)
        actor = workers_mod.resolve_actor(app.db, actor_id)
        task = app.engine.update_task_fields(task_id, actor, **changes)
        return serialize.task_dict(task)
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def assign_next_stage(ctx: Context, actor_id: str, task_id: str, assignee_id: str) -> dict:
    """Hand a completed designing or printing task to a worker of the next stage."""
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        task = app.engine.assign_next_stage(task_id, assignee_id, actor)
        return serialize.task_dict(task)
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def delete_task(ctx: Context, actor_id: str, task_id: str) -> dict:
    """Delete a task."""
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        app.engine.delete_task(task_id, actor)
        return {"deleted": True, "task_id": task_id}
    except WorkflowError as e:
        return _error(e)


@mcp.tool()
def reconcile_handoffs(ctx: Context, actor_id: str) -> list[dict] | dict:
    """Create the missing delivery task for every completed printing task that has none."""
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        return [serialize.task_dict(t) for t in app.engine.reconcile_handoffs(actor)]
    except WorkflowError as e:
        return _error(e)


# ── Worker Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def list_workers(ctx: Context, role: str | None = None) -> list[dict]:
    """List workers with their open-task counts."""
    app = _ctx(ctx)
    counts = app.engine.workload.open_counts()
    result = []
    for w in workers_mod.list_workers(app.db, role=role):
        wd = serialize.worker_dict(w)
        wd["open_tasks"] = counts[w.auth_id]
        result.append(wd)
    return result


# ── Notification Tools ────────────────────────────────────────────────────────


@mcp.tool()
def notifications(ctx: Context, actor_id: str, dismiss_task_id: str | None = None) -> list[dict] | dict:
    """Outstanding new-task and overdue alerts for an actor.

    Alerts follow task changes made through this server as they happen, with a
    periodic full reload. Pass dismiss_task_id to clear the alerts of one task.
    """
    app = _ctx(ctx)
    try:
        actor = workers_mod.resolve_actor(app.db, actor_id)
        monitor = _monitor(app, actor)
        monitor.run_once()
        if dismiss_task_id:
            monitor.center.dismiss(dismiss_task_id)
        return [serialize.notification_dict(n) for n in monitor.center.notifications]
    except WorkflowError as e:
        return _error(e)
