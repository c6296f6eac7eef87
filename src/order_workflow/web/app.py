"""JSON API over the workflow engine."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from order_workflow.config import get_config
from order_workflow.core import serialize
from order_workflow.core import workers as workers_mod
from order_workflow.core.errors import (
    CollaboratorUnavailable,
    IllegalTransition,
    InvalidAssignee,
    NotFound,
    PermissionDenied,
    ProgressionFailed,
    ValidationError,
    WorkflowError,
)
from order_workflow.core.workflow import WorkflowEngine
from order_workflow.db.engine import init_db

ERROR_STATUS = {
    ValidationError: 400,
    InvalidAssignee: 400,
    PermissionDenied: 403,
    NotFound: 404,
    IllegalTransition: 409,
    ProgressionFailed: 502,
    CollaboratorUnavailable: 503,
}


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _error(e: WorkflowError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(e, cls)), 400)
    body = {"error": str(e), "type": type(e).__name__}
    if isinstance(e, ProgressionFailed) and e.task is not None:
        body["task"] = serialize.task_dict(e.task)
    return JSONResponse(body, status_code=status)


def _actor(request: Request, db):
    actor_id = request.headers.get("x-actor-id")
    if not actor_id:
        raise PermissionDenied("Missing X-Actor-Id header")
    try:
        return workers_mod.resolve_actor(db, actor_id)
    except NotFound:
        raise PermissionDenied(f"Unknown actor: {actor_id}")


async def _json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    db = _get_db()
    try:
        actor = _actor(request, db)
        params = request.query_params
        limit = params.get("limit", "")
        offset = params.get("offset", "")
        tasks = WorkflowEngine.from_db(db, get_config()).list_visible_tasks(
            actor,
            status=params.get("status"),
            task_type=params.get("task_type"),
            search=params.get("search"),
            limit=int(limit) if limit.isdigit() else None,
            offset=int(offset) if offset.isdigit() else 0,
        )
        return JSONResponse([serialize.task_dict(t) for t in tasks])
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_create_task(request: Request):
    db = _get_db()
    try:
        actor = _actor(request, db)
        body = await _json(request)
        task = WorkflowEngine.from_db(db, get_config()).create_task(
            actor,
            body.get("title", ""),
            serialize.parse_date(body.get("due_date")),
            body.get("assignee_id", ""),
            task_type=body.get("task_type"),
            description=body.get("description", ""),
            priority=body.get("priority", "medium"),
            due_time=serialize.parse_time(body.get("due_time")),
            order_no=body.get("order_no"),
            file_url=body.get("file_url"),
            customer_phone=body.get("customer_phone"),
            printing_type=body.get("printing_type"),
        )
        return JSONResponse(serialize.task_dict(task), status_code=201)
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        actor = _actor(request, db)
        engine = WorkflowEngine.from_db(db, get_config())
        task = engine.get_visible_task(task_id, actor)
        td = serialize.task_dict(task)
        td["events"] = [serialize.event_dict(e) for e in engine.store.get_events(task_id)]
        return JSONResponse(td)
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        actor = _actor(request, db)
        changes = await _json(request)
        if "due_date" in changes:
            changes["due_date"] = serialize.parse_date(changes["due_date"])
        if "due_time" in changes:
            changes["due_time"] = serialize.parse_time(changes["due_time"])
        task = WorkflowEngine.from_db(db, get_config()).update_task_fields(task_id, actor, **changes)
        return JSONResponse(serialize.task_dict(task))
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        actor = _actor(request, db)
        WorkflowEngine.from_db(db, get_config()).delete_task(task_id, actor)
        return Response(status_code=204)
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_transition(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        actor = _actor(request, db)
        body = await _json(request)
        engine = WorkflowEngine.from_db(db, get_config())
        task = engine.apply_transition(task_id, body.get("status", ""), actor)
        result = serialize.task_dict(task)
        result["deleted"] = task.status == "delivered"
        if task.status == "completed" and task.task_type == "printing":
            delivery = engine.orchestrator.existing_successor(task)
            result["next_stage"] = serialize.task_dict(delivery) if delivery else None
        return JSONResponse(result)
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_next_stage(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        actor = _actor(request, db)
        body = await _json(request)
        task = WorkflowEngine.from_db(db, get_config()).assign_next_stage(
            task_id,
            body.get("assignee_id", ""),
            actor,
            due_date=serialize.parse_date(body.get("due_date")),
            due_time=serialize.parse_time(body.get("due_time")),
        )
        return JSONResponse(serialize.task_dict(task), status_code=201)
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_provenance(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        actor = _actor(request, db)
        result = WorkflowEngine.from_db(db, get_config()).provenance(task_id, actor)
        return JSONResponse({
            "chain": [serialize.task_dict(t) for t in result["chain"]],
            "roles": result["roles"],
        })
    except WorkflowError as e:
        return _error(e)
    finally:
        db.close()


async def api_list_workers(request: Request):
    db = _get_db()
    try:
        workers = workers_mod.list_workers(db, role=request.query_params.get("role"))
        return JSONResponse([serialize.worker_dict(w) for w in workers])
    finally:
        db.close()


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/status", api_transition, methods=["POST"]),
        Route("/api/tasks/{task_id}/next-stage", api_next_stage, methods=["POST"]),
        Route("/api/tasks/{task_id}/provenance", api_provenance, methods=["GET"]),
        Route("/api/workers", api_list_workers, methods=["GET"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
