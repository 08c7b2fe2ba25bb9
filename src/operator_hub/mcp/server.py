"""MCP server exposing the hub's task tools to agent sessions."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from operator_hub.config import Config, get_config
from operator_hub.core import agents as agents_mod
from operator_hub.core import assignment
from operator_hub.core import notifications as notifications_mod
from operator_hub.core import router
from operator_hub.core import tasks as tasks_mod
from operator_hub.db.engine import Database, init_db


@dataclass
class AppContext:
    db: Database
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the stores on startup."""
    config = get_config()
    yield AppContext(db=init_db(config.data_dir), config=config)


mcp = FastMCP("operator-hub", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(
    ctx: Context,
    lane: str | None = None,
    assigned_to: str | None = None,
    priority: str | None = None,
) -> list[dict]:
    """List tasks, highest priority first. Lanes: queued, development, review, blocked, done."""
    tasks = tasks_mod.list_tasks(_ctx(ctx).db, lane=lane, assigned_to=assigned_to, priority=priority)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including work evidence and history."""
    task = tasks_mod.get_task(_ctx(ctx).db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task.to_dict()


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    priority: str = "P2",
    depends_on: list[str] | None = None,
    acceptance_criteria: list[str] | None = None,
    assigned_to: str | None = None,
) -> dict:
    """Create a new task in the queue. Priority: P0 (highest) to P3 (lowest), default P2."""
    try:
        task = tasks_mod.create_task(
            _ctx(ctx).db,
            title,
            description=description,
            priority=priority,
            depends_on=depends_on,
            acceptance_criteria=acceptance_criteria,
            assigned_to=assigned_to,
            created_by="mcp",
        )
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def claim_task(ctx: Context, task_id: str, agent_id: str) -> dict:
    """Claim a queued task for an agent. Fails if someone else already has it."""
    try:
        task = router.claim_task(_ctx(ctx).db, task_id, agent_id)
    except router.TaskConflictError as e:
        return e.to_dict()
    except (LookupError, ValueError) as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def complete_task(ctx: Context, task_id: str, agent_id: str | None = None) -> dict:
    """Report a task finished. It moves to review for a human to accept."""
    try:
        task = router.complete_task(_ctx(ctx).db, task_id, agent_id=agent_id)
    except LookupError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def block_task(ctx: Context, task_id: str, reason: str, agent_id: str | None = None) -> dict:
    """Report that a task cannot proceed, with the reason."""
    try:
        task = router.block_task(_ctx(ctx).db, task_id, agent_id=agent_id, reason=reason)
    except LookupError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def record_work(
    ctx: Context,
    task_id: str,
    commits: list[str] | None = None,
    artifacts: list[str] | None = None,
    notes: str | None = None,
    test_results: dict | None = None,
    agent_id: str | None = None,
) -> dict:
    """Attach work evidence (commit hashes, artifacts, notes, test results) to a task."""
    try:
        work = router.record_work(
            _ctx(ctx).db,
            task_id,
            commits=commits,
            test_results=test_results,
            artifacts=artifacts,
            notes=notes,
            agent_id=agent_id,
        )
    except LookupError as e:
        return {"error": str(e)}
    return work.to_dict()


@mcp.tool()
def log_time(ctx: Context, task_id: str, hours: float, agent_id: str, note: str | None = None) -> dict:
    """Log hours spent on a task."""
    try:
        task = tasks_mod.log_time(_ctx(ctx).db, task_id, agent_id, hours, note=note)
    except (LookupError, ValueError) as e:
        return {"error": str(e)}
    return {"task_id": task.id, "actual_hours": task.actual_hours, "entries": len(task.time_entries)}


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def suggest_assignment(ctx: Context, task_id: str) -> dict:
    """Suggest the best online agent for a task without assigning it."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    agents = agents_mod.list_agents(app.db, stale_after=app.config.agent_stale_after)
    [suggestion] = assignment.suggest_assignments([task], agents)
    return suggestion.to_dict()


@mcp.tool()
def list_agents(ctx: Context, role: str | None = None, status: str | None = None) -> list[dict]:
    """List registered agents with their effective status and workload."""
    app = _ctx(ctx)
    agents = agents_mod.list_agents(app.db, role=role, status=status, stale_after=app.config.agent_stale_after)
    return [{**a.to_dict(), "workload": a.workload} for a in agents]


@mcp.tool()
def list_notifications(ctx: Context, agent_id: str, unread: bool = True) -> list[dict]:
    """List notifications for an agent, newest first."""
    items = notifications_mod.list_notifications(_ctx(ctx).db, agent_id=agent_id, unread=unread)
    return [n.to_dict() for n in items]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "lane": task.lane,
        "priority": task.priority,
        "assigned_to": task.assigned_to,
        "depends_on": task.depends_on,
        "blocked_reason": task.blocked_reason,
        "actual_hours": task.actual_hours,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }
