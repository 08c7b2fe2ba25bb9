"""HTTP API for the operator hub."""

import contextlib
from datetime import datetime, timezone

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from operator_hub.config import Config, get_config
from operator_hub.core import agents as agents_mod
from operator_hub.core import assignment
from operator_hub.core import notifications as notifications_mod
from operator_hub.core import router
from operator_hub.core import tasks as tasks_mod
from operator_hub.core.delivery import NotificationDelivery, make_channels
from operator_hub.core.housekeeping import Housekeeper
from operator_hub.core.workers import list_heartbeats
from operator_hub.db.engine import Database, init_db

# Request body key -> keyword argument, for create and update
TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "lane": "lane",
    "assignedTo": "assigned_to",
    "assigned_to": "assigned_to",
    "projectId": "project_id",
    "project_id": "project_id",
    "tags": "tags",
    "dependsOn": "depends_on",
    "depends_on": "depends_on",
    "estimatedHours": "estimated_hours",
    "estimated_hours": "estimated_hours",
    "problem": "problem",
    "scope": "scope",
    "acceptanceCriteria": "acceptance_criteria",
    "acceptance_criteria": "acceptance_criteria",
    "workingDir": "working_dir",
    "working_dir": "working_dir",
    "timeoutSeconds": "timeout_seconds",
    "timeout_seconds": "timeout_seconds",
    "blockedReason": "blocked_reason",
    "blocked_reason": "blocked_reason",
    "metadata": "metadata",
}


# ── Request helpers ───────────────────────────────────────────────────────────


def _db(request: Request) -> Database:
    return request.app.state.db


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw.strip():
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _pick(data: dict, *names, default=None):
    """First non-None value among camelCase/snake_case spellings of a key."""
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return default


def _task_fields(data: dict) -> dict:
    return {kwarg: data[key] for key, kwarg in TASK_FIELDS.items() if key in data}


def _parse_time(value) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    return t.to_dict()


def _agent_dict(a) -> dict:
    return {**a.to_dict(), "workload": a.workload}


# ── Error handlers ────────────────────────────────────────────────────────────


async def _not_found(request: Request, exc: LookupError):
    return JSONResponse({"error": str(exc).strip("'\"")}, status_code=404)


async def _bad_request(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _conflict(request: Request, exc: router.TaskConflictError):
    return JSONResponse(exc.to_dict(), status_code=409)


# ── Handlers: tasks ───────────────────────────────────────────────────────────


async def health(request: Request):
    db = _db(request)
    return JSONResponse({
        "status": "ok",
        "tasks": len(db.tasks.load()),
        "agents": len(db.agents.load()),
        "workers": len(db.heartbeats.load()),
    })


async def api_list_tasks(request: Request):
    q = request.query_params
    tags = q.getlist("tag") or None
    tasks = tasks_mod.list_tasks(
        _db(request),
        lane=q.get("lane"),
        assigned_to=q.get("assignedTo") or q.get("assigned_to"),
        priority=q.get("priority"),
        tags=tags,
        project_id=q.get("project") or q.get("projectId"),
    )
    return JSONResponse([_task_dict(t) for t in tasks])


async def api_create_task(request: Request):
    data = await _body(request)
    fields = _task_fields(data)
    fields.pop("blocked_reason", None)
    fields.pop("metadata", None)
    task = tasks_mod.create_task(
        _db(request),
        title=fields.pop("title", ""),
        task_id=data.get("id"),
        created_by=_pick(data, "createdBy", "created_by"),
        **fields,
    )
    return JSONResponse(_task_dict(task), status_code=201)


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    task = tasks_mod.get_task(_db(request), task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    return JSONResponse(_task_dict(task))


async def api_update_task(request: Request):
    data = await _body(request)
    task = tasks_mod.update_task(
        _db(request),
        request.path_params["task_id"],
        updated_by=_pick(data, "updatedBy", "updated_by", "agentId", "agent_id"),
        note=data.get("note"),
        **_task_fields(data),
    )
    return JSONResponse(_task_dict(task))


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    if not tasks_mod.delete_task(_db(request), task_id):
        return JSONResponse({"error": "Task not found"}, status_code=404)
    return JSONResponse({"deleted": True, "id": task_id})


async def api_claim_task(request: Request):
    data = await _body(request)
    task = router.claim_task(_db(request), request.path_params["task_id"], _pick(data, "agentId", "agent_id"))
    return JSONResponse({"success": True, "task": _task_dict(task)})


async def api_complete_task(request: Request):
    data = await _body(request)
    task = router.complete_task(
        _db(request),
        request.path_params["task_id"],
        agent_id=_pick(data, "agentId", "agent_id"),
        session_id=_pick(data, "sessionId", "session_id"),
    )
    return JSONResponse({"success": True, "task": _task_dict(task)})


async def api_block_task(request: Request):
    data = await _body(request)
    task = router.block_task(
        _db(request),
        request.path_params["task_id"],
        agent_id=_pick(data, "agentId", "agent_id"),
        reason=data.get("reason"),
        session_id=_pick(data, "sessionId", "session_id"),
    )
    return JSONResponse({"success": True, "task": _task_dict(task)})


async def api_release_task(request: Request):
    data = await _body(request)
    kwargs = {"note": data["note"]} if data.get("note") else {}
    task = router.release_task(_db(request), request.path_params["task_id"], **kwargs)
    return JSONResponse({"success": True, "task": _task_dict(task)})


async def api_record_work(request: Request):
    data = await _body(request)
    work = router.record_work(
        _db(request),
        request.path_params["task_id"],
        commits=data.get("commits"),
        test_results=_pick(data, "testResults", "test_results"),
        artifacts=data.get("artifacts"),
        notes=data.get("notes"),
        agent_id=_pick(data, "agentId", "agent_id"),
    )
    return JSONResponse({"success": True, "work": work.to_dict()})


async def api_log_time(request: Request):
    data = await _body(request)
    if data.get("hours") is None:
        raise ValueError("hours is required")
    task = tasks_mod.log_time(
        _db(request),
        request.path_params["task_id"],
        agent_id=_pick(data, "agentId", "agent_id", default="unknown"),
        hours=data["hours"],
        start=_parse_time(data.get("start")),
        end=_parse_time(data.get("end")),
        note=data.get("note"),
    )
    return JSONResponse(_task_dict(task), status_code=201)


async def api_add_comment(request: Request):
    data = await _body(request)
    task = tasks_mod.add_comment(
        _db(request),
        request.path_params["task_id"],
        text=data.get("text") or "",
        by=_pick(data, "by", "agentId", "agent_id", default="unknown"),
    )
    return JSONResponse(_task_dict(task), status_code=201)


async def api_task_history(request: Request):
    history = tasks_mod.get_task_history(_db(request), request.path_params["task_id"])
    return JSONResponse([h.to_dict() for h in history])


async def api_add_dependency(request: Request):
    data = await _body(request)
    dep_id = _pick(data, "dependsOn", "depends_on", "taskId", "task_id")
    if not dep_id:
        raise ValueError("dependsOn is required")
    task = tasks_mod.add_dependency(_db(request), request.path_params["task_id"], dep_id)
    return JSONResponse(_task_dict(task))


async def api_remove_dependency(request: Request):
    task = tasks_mod.remove_dependency(
        _db(request), request.path_params["task_id"], request.path_params["dep_id"]
    )
    return JSONResponse(_task_dict(task))


# ── Handlers: assignment ──────────────────────────────────────────────────────


def _assign_result(result: dict) -> dict:
    return {**result, "task": _task_dict(result["task"])}


async def api_auto_assign(request: Request):
    result = router.auto_assign_task(
        _db(request),
        request.path_params["task_id"],
        stale_after=request.app.state.config.agent_stale_after,
    )
    return JSONResponse(_assign_result(result))


async def api_task_suggestion(request: Request):
    db = _db(request)
    task = tasks_mod.get_task(db, request.path_params["task_id"])
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    agents = agents_mod.list_agents(db, stale_after=request.app.state.config.agent_stale_after)
    [suggestion] = assignment.suggest_assignments([task], agents)
    return JSONResponse(suggestion.to_dict())


async def api_auto_unblock(request: Request):
    unblocked = router.auto_unblock(_db(request))
    return JSONResponse({"unblocked": [t.id for t in unblocked]})


async def api_suggestions(request: Request):
    db = _db(request)
    pending = [t for t in tasks_mod.list_tasks(db, lane="queued") if not t.assigned_to]
    agents = agents_mod.list_agents(db, stale_after=request.app.state.config.agent_stale_after)
    return JSONResponse([s.to_dict() for s in assignment.suggest_assignments(pending, agents)])


# ── Handlers: agents ──────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    q = request.query_params
    agents = agents_mod.list_agents(
        _db(request),
        role=q.get("role"),
        status=q.get("status"),
        stale_after=request.app.state.config.agent_stale_after,
    )
    return JSONResponse([_agent_dict(a) for a in agents])


async def api_register_agent(request: Request):
    data = await _body(request)
    agent = agents_mod.register_agent(
        _db(request),
        _pick(data, "id", "agentId", "agent_id"),
        name=data.get("name"),
        roles=data.get("roles"),
        status=data.get("status") or "online",
        instance_id=_pick(data, "instanceId", "instance_id"),
        model=data.get("model"),
        metadata=data.get("metadata"),
    )
    return JSONResponse(_agent_dict(agent), status_code=201)


async def api_get_agent(request: Request):
    agent = agents_mod.get_agent(
        _db(request), request.path_params["agent_id"], stale_after=request.app.state.config.agent_stale_after
    )
    if not agent:
        return JSONResponse({"error": "Agent not found"}, status_code=404)
    return JSONResponse(_agent_dict(agent))


async def api_agent_status(request: Request):
    data = await _body(request)
    if not data.get("status"):
        raise ValueError("status is required")
    agent = agents_mod.update_agent_status(
        _db(request),
        request.path_params["agent_id"],
        data["status"],
        current_task=_pick(data, "currentTask", "current_task"),
    )
    return JSONResponse(_agent_dict(agent))


async def api_agent_heartbeat(request: Request):
    agent = agents_mod.heartbeat(_db(request), request.path_params["agent_id"])
    return JSONResponse(_agent_dict(agent))


async def api_delete_agent(request: Request):
    agent_id = request.path_params["agent_id"]
    if not agents_mod.delete_agent(_db(request), agent_id):
        return JSONResponse({"error": "Agent not found"}, status_code=404)
    return JSONResponse({"deleted": True, "id": agent_id})


# ── Handlers: notifications, workers ──────────────────────────────────────────


async def api_list_notifications(request: Request):
    q = request.query_params
    items = notifications_mod.list_notifications(
        _db(request),
        agent_id=q.get("agentId") or q.get("agent_id"),
        unread=q.get("unread") in ("1", "true"),
        type=q.get("type"),
    )
    return JSONResponse([n.to_dict() for n in items])


async def api_read_notification(request: Request):
    notification = notifications_mod.mark_read(_db(request), request.path_params["notification_id"])
    return JSONResponse(notification.to_dict())


async def api_read_all_notifications(request: Request):
    data = await _body(request)
    agent_id = _pick(data, "agentId", "agent_id")
    if not agent_id:
        raise ValueError("agentId is required")
    count = notifications_mod.mark_all_read(_db(request), agent_id)
    return JSONResponse({"marked": count})


async def api_list_workers(request: Request):
    return JSONResponse([b.to_dict() for b in list_heartbeats(_db(request).heartbeats)])


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(db: Database | None = None, config: Config | None = None) -> Starlette:
    config = config or get_config()
    db = db or init_db(config.data_dir)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        housekeeper = Housekeeper(db, config)
        delivery = NotificationDelivery(db, make_channels(config))
        housekeeper.start()
        delivery.start()
        try:
            yield
        finally:
            delivery.stop()
            housekeeper.stop()

    routes = [
        Route("/api/health", health),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/auto-unblock", api_auto_unblock, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PUT", "PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/claim", api_claim_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/complete", api_complete_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/blocked", api_block_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/release", api_release_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/work", api_record_work, methods=["PUT"]),
        Route("/api/tasks/{task_id}/time", api_log_time, methods=["POST"]),
        Route("/api/tasks/{task_id}/comments", api_add_comment, methods=["POST"]),
        Route("/api/tasks/{task_id}/history", api_task_history, methods=["GET"]),
        Route("/api/tasks/{task_id}/dependencies", api_add_dependency, methods=["POST"]),
        Route("/api/tasks/{task_id}/dependencies/{dep_id}", api_remove_dependency, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/auto-assign", api_auto_assign, methods=["POST"]),
        Route("/api/tasks/{task_id}/suggestion", api_task_suggestion, methods=["GET"]),
        Route("/api/assignments/suggestions", api_suggestions, methods=["GET"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
        Route("/api/agents/register", api_register_agent, methods=["POST"]),
        Route("/api/agents/{agent_id}", api_get_agent, methods=["GET"]),
        Route("/api/agents/{agent_id}", api_delete_agent, methods=["DELETE"]),
        Route("/api/agents/{agent_id}/status", api_agent_status, methods=["PUT"]),
        Route("/api/agents/{agent_id}/heartbeat", api_agent_heartbeat, methods=["POST"]),
        Route("/api/notifications", api_list_notifications, methods=["GET"]),
        Route("/api/notifications/read-all", api_read_all_notifications, methods=["POST"]),
        Route("/api/notifications/{notification_id}/read", api_read_notification, methods=["POST"]),
        Route("/api/workers", api_list_workers, methods=["GET"]),
    ]
    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            router.TaskConflictError: _conflict,
            LookupError: _not_found,
            ValueError: _bad_request,
        },
    )
    app.state.db = db
    app.state.config = config
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
