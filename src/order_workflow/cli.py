"""CLI entry point for the order workflow engine."""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime

import click

from order_workflow.config import get_config
from order_workflow.core import serialize
from order_workflow.core import workers as workers_mod
from order_workflow.core.errors import ProgressionFailed, WorkflowError
from order_workflow.core.notifications import NotificationCenter, ReconcileMonitor, is_overdue
from order_workflow.core.workflow import WorkflowEngine, load_visible_tasks
from order_workflow.db.engine import get_db
from order_workflow.db.models import PRIORITIES, ROLES, STAGES, STATUSES
from order_workflow.integrations import slack as slack_mod


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _engine(db) -> WorkflowEngine:
    return WorkflowEngine.from_db(db, get_config())


@contextmanager
def _errors():
    try:
        yield
    except ProgressionFailed as e:
        click.echo(f"Status saved, but hand-off failed: {e}", err=True)
        click.echo("  Retry with: owf task resume " + (e.task.id if e.task else "<task-id>"), err=True)
        sys.exit(1)
    except WorkflowError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


actor_option = click.option(
    "--actor", "actor_id", envvar="OW_ACTOR", required=True,
    help="Identity (auth id) of the worker performing the action",
)


@click.group()
def main():
    """owf - Order Workflow CLI"""
    logging.basicConfig(
        level=get_config().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Worker Commands ───────────────────────────────────────────────────────────


@main.group("worker")
def worker_group():
    """Manage the worker directory."""
    pass


@worker_group.command("add")
@click.argument("name")
@click.option("--role", required=True, type=click.Choice(ROLES), help="Worker role")
@click.option("--auth-id", default=None, help="Stable identity tasks are assigned to")
@click.option("--email", default=None, help="Contact email")
def worker_add(name, role, auth_id, email):
    """Add a worker."""
    with _get_db() as db, _errors():
        worker = workers_mod.create_worker(db, name, role, auth_id=auth_id, email=email)
        click.echo(f"Worker created: {worker.auth_id} ({worker.name}, {worker.role})")


@worker_group.command("list")
@click.option("--role", default=None, type=click.Choice(ROLES), help="Filter by role")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def worker_list(role, json_output):
    """List workers with their open and completed task counts."""
    with _get_db() as db:
        workers = workers_mod.list_workers(db, role=role)
        if json_output:
            click.echo(json.dumps([serialize.worker_dict(w) for w in workers], indent=2))
            return
        if not workers:
            click.echo("No workers found.")
            return
        counts = _engine(db).workload.open_counts()
        for w in workers:
            click.echo(
                f"  {w.auth_id}: {w.name} ({w.role}) "
                f"open={counts[w.auth_id]} completed={w.completed_tasks}"
            )


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--due", "due_date", required=True, help="Due date (YYYY-MM-DD)")
@click.option("--assignee", required=True, help="Auth id of the assigned worker")
@click.option("--type", "task_type", default=None, type=click.Choice(STAGES), help="Workflow stage")
@click.option("--priority", "-p", default="medium", type=click.Choice(PRIORITIES), help="Priority")
@click.option("--due-time", default=None, help="Due time (HH:MM)")
@click.option("--order-no", default=None, help="Order number")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--file-url", default=None, help="Attachment reference")
@click.option("--customer-phone", default=None, help="Customer contact")
@click.option("--printing-type", default=None, help="Printing type (printing tasks)")
@actor_option
def task_add(title, due_date, assignee, task_type, priority, due_time, order_no,
             description, file_url, customer_phone, printing_type, actor_id):
    """Create a new task."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        task = _engine(db).create_task(
            actor,
            title,
            serialize.parse_date(due_date),
            assignee,
            task_type=task_type,
            description=description,
            priority=priority,
            due_time=serialize.parse_time(due_time),
            order_no=order_no,
            file_url=file_url,
            customer_phone=customer_phone,
            printing_type=printing_type,
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Order: {task.display_order_no}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Assignee: {task.assignee_name} ({task.assignee_id})")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--status", default=None, type=click.Choice(STATUSES), help="Filter by status")
@click.option("--type", "task_type", default=None, type=click.Choice(STAGES), help="Filter by stage")
@click.option("--search", default=None, help="Search title and description")
@click.option("--limit", default=None, type=int, help="Maximum number of tasks")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@actor_option
def task_list(status, task_type, search, limit, json_output, actor_id):
    """List the tasks visible to the actor."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        tasks = _engine(db).list_visible_tasks(
            actor, status=status, task_type=task_type, search=search, limit=limit
        )

        if json_output:
            click.echo(json.dumps([serialize.task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "pending": "○",
            "in-progress": "●",
            "completed": "✓",
            "delivered": "✓",
            "not-delivered": "✗",
        }
        now = datetime.now()
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            overdue = " [overdue]" if is_overdue(task, now) else ""
            stage = task.task_type or "general"
            click.echo(
                f"  {icon} {task.display_order_no} {task.title} ({stage}, {task.status}) "
                f"-> {task.assignee_name or task.assignee_id} due {task.due_date}{overdue}"
            )


@task_group.command("show")
@click.argument("task_id")
@actor_option
def task_show(task_id, actor_id):
    """Show task details, history and provenance."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        engine = _engine(db)
        task = engine.get_visible_task(task_id, actor)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Order: {task.display_order_no}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Stage: {task.task_type or 'general'}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Assignee: {task.assignee_name} ({task.assignee_id})")
        due = f"{task.due_date} {task.due_time.strftime('%H:%M')}" if task.due_time else str(task.due_date)
        click.echo(f"  Due: {due}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.customer_phone:
            click.echo(f"  Customer: {task.customer_phone}")
        if task.printing_type:
            click.echo(f"  Printing type: {task.printing_type}")
        if task.parent_task_id:
            click.echo(f"  Parent: {task.parent_task_id}")
        if task.original_order_id:
            click.echo(f"  Original order: {task.original_order_id}")

        roles = engine.provenance(task_id, actor)["roles"]
        click.echo(
            f"  Chain: designer={roles['designer'] or '-'} printer={roles['printer'] or '-'} "
            f"deliverer={roles['deliverer'] or '-'}"
        )

        events = engine.store.get_events(task_id)
        if events:
            click.echo(f"  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(STATUSES))
@actor_option
def task_status(task_id, status, actor_id):
    """Change a task's status."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        engine = _engine(db)
        task = engine.apply_transition(task_id, status, actor)
        if status == "delivered":
            click.echo(f"Delivery confirmed; task {task_id} removed")
            return
        click.echo(f"Task {task.id} is now {task.status}")
        if status == "completed" and task.task_type == "printing":
            delivery = engine.orchestrator.existing_successor(task)
            if delivery:
                click.echo(f"  Delivery task {delivery.id} assigned to {delivery.assignee_name}")
            else:
                click.echo("  No delivery supervisor available; order has no further stage")


@task_group.command("next-stage")
@click.argument("task_id")
@click.argument("assignee")
@click.option("--due", "due_date", default=None, help="Due date if the source has none")
@click.option("--due-time", default=None, help="Due time if the source has none")
@actor_option
def task_next_stage(task_id, assignee, due_date, due_time, actor_id):
    """Hand a completed task to a worker of the next stage."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        task = _engine(db).assign_next_stage(
            task_id, assignee, actor,
            due_date=serialize.parse_date(due_date),
            due_time=serialize.parse_time(due_time),
        )
        click.echo(f"Created {task.task_type} task: {task.id}")
        click.echo(f"  Assignee: {task.assignee_name} ({task.assignee_id})")


@task_group.command("resume")
@click.argument("task_id")
@actor_option
def task_resume(task_id, actor_id):
    """Retry the delivery hand-off of a completed printing task."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        delivery = _engine(db).resume_progression(task_id, actor)
        if delivery is None:
            click.echo("No delivery task created.")
            return
        click.echo(f"Delivery task {delivery.id} assigned to {delivery.assignee_name}")


@task_group.command("edit")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--order-no", default=None)
@click.option("--priority", default=None, type=click.Choice(PRIORITIES))
@click.option("--due", "due_date", default=None, help="Due date (YYYY-MM-DD)")
@click.option("--due-time", default=None, help="Due time (HH:MM)")
@click.option("--assignee", "assignee_id", default=None, help="Reassign to this auth id")
@click.option("--type", "task_type", default=None, type=click.Choice(STAGES))
@actor_option
def task_edit(task_id, title, description, order_no, priority, due_date, due_time,
              assignee_id, task_type, actor_id):
    """Edit task fields."""
    changes = {
        "title": title,
        "description": description,
        "order_no": order_no,
        "priority": priority,
        "assignee_id": assignee_id,
        "task_type": task_type,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    with _get_db() as db, _errors():
        if due_date:
            changes["due_date"] = serialize.parse_date(due_date)
        if due_time:
            changes["due_time"] = serialize.parse_time(due_time)
        actor = workers_mod.resolve_actor(db, actor_id)
        task = _engine(db).update_task_fields(task_id, actor, **changes)
        click.echo(f"Updated task {task.id} ({task.status})")


@task_group.command("delete")
@click.argument("task_id")
@actor_option
def task_delete(task_id, actor_id):
    """Delete a task."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        _engine(db).delete_task(task_id, actor)
        click.echo(f"Deleted task: {task_id}")


# ── Reconciliation & Notifications ───────────────────────────────────────────


@main.command("reconcile")
@actor_option
def reconcile_command(actor_id):
    """Create missing delivery stages for completed printing tasks."""
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)
        created = _engine(db).reconcile_handoffs(actor)
        if not created:
            click.echo("Nothing to reconcile.")
            return
        for task in created:
            click.echo(f"  Created delivery task {task.id} for {task.parent_task_id} -> {task.assignee_name}")


@main.command("notifications")
@click.option("--watch", is_flag=True, help="Keep polling and print new alerts")
@click.option("--slack-channel", default=None, help="Also post alerts to this Slack channel")
@actor_option
def notifications_command(watch, slack_channel, actor_id):
    """Show notifications for the actor."""
    config = get_config()
    with _get_db() as db, _errors():
        actor = workers_mod.resolve_actor(db, actor_id)

    center = NotificationCenter(
        actor,
        dedupe_window=config.dedupe_window,
        max_queue=config.event_queue_size,
    )
    channel = slack_channel or config.slack_channel
    if channel:
        center.add_sink(slack_mod.make_sink(config.slack_bot_token, channel))

    monitor = ReconcileMonitor(
        center,
        lambda: load_visible_tasks(config, actor),
        reload_interval=config.reload_interval,
    )
    monitor.run_once()
    notes = center.notifications
    if not notes:
        click.echo("No notifications.")
    for note in notes:
        click.echo(f"  [{note.kind}] {note.title} ({note.task_id[:8]}) due {note.due_date}")

    if not watch:
        return
    center.add_sink(lambda note: click.echo(f"  [{note.kind}] {note.title} ({note.task_id[:8]})"))
    monitor.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        monitor.stop()


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the JSON API."""
    from order_workflow.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from order_workflow.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
