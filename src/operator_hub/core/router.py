"""Task lane transitions: claim, complete, block, release, work evidence.

Lane machine::

    queued --claim--> development --complete--> review
                          |  \\--blocked--> blocked --auto-unblock--> queued
                          \\--release--> queued

``complete`` and ``blocked`` are accepted from any lane because they are
agent-reported facts. ``claim`` is the one guarded transition: the lane
check and the write happen inside a single store transaction, so of two
racing claims exactly one succeeds.
"""

import logging
from datetime import timedelta

from operator_hub.core import agents as agents_mod
from operator_hub.core import assignment
from operator_hub.core import notifications as notifications_mod
from operator_hub.core import tasks as tasks_mod
from operator_hub.db.engine import Database
from operator_hub.db.models import Task, WorkRecord, utcnow

logger = logging.getLogger(__name__)

DEFAULT_COMPLETE_ACTOR = "agent"
DEFAULT_BLOCK_ACTOR = "unknown"


class TaskConflictError(Exception):
    """The task is not in the lane the transition requires."""

    def __init__(self, task_id: str, current_lane: str, current_agent: str | None):
        super().__init__(
            f"Task {task_id} already claimed or no longer queued "
            f"(lane={current_lane}, agent={current_agent})"
        )
        self.task_id = task_id
        self.current_lane = current_lane
        self.current_agent = current_agent

    def to_dict(self) -> dict:
        return {
            "error": "Task already claimed or no longer queued",
            "current_lane": self.current_lane,
            "current_agent": self.current_agent,
        }


# ── Side effects ────────────────────────────────────────────────────────────


def _set_agent_status(db: Database, agent_id: str | None, status: str, current_task: str | None = None):
    if not agent_id:
        return
    try:
        agents_mod.update_agent_status(
            db, agent_id, status, current_task=current_task, clear_task=current_task is None
        )
    except agents_mod.AgentNotFoundError:
        logger.debug("Agent %s is not registered; skipping status update", agent_id)


def _free_agent(db: Database, agent_id: str | None):
    """Return an agent to online once it has nothing left in development."""
    if not agent_id:
        return
    still_working = tasks_mod.list_tasks(db, lane="development", assigned_to=agent_id)
    if still_working:
        _set_agent_status(db, agent_id, "busy", current_task=still_working[0].id)
    else:
        _set_agent_status(db, agent_id, "online")


def _notify(db: Database, agent_id: str | None, type: str, title: str, text: str, task: Task):
    if not agent_id:
        return
    notifications_mod.create_notification(
        db, agent_id=agent_id, type=type, title=title, text=text, task_id=task.id, source="router"
    )


# ── Transitions ─────────────────────────────────────────────────────────────


def claim_task(db: Database, task_id: str, agent_id: str) -> Task:
    """Atomically take ownership of a queued task.

    Raises TaskConflictError with the current lane and agent when the task
    is not queued.
    """
    if not agent_id:
        raise ValueError("agentId required")

    with tasks_mod.editing(db) as board:
        task = tasks_mod.require(board, task_id)
        if task.lane != "queued":
            logger.info(
                "Claim conflict on %s by %s (lane=%s, agent=%s)",
                task_id, agent_id, task.lane, task.assigned_to,
            )
            raise TaskConflictError(task.id, task.lane, task.assigned_to)
        applied = tasks_mod.set_lane(board, task, "development", by=agent_id, note="claimed")
        if applied == "development":
            task.assigned_to = agent_id
            task.claimed_at = utcnow()
            task.claimed_by = agent_id

    if applied != "development":
        # The dependency gate moved it to blocked, and that move is stored
        logger.info("Claim of %s by %s diverted to %s by dependencies", task_id, agent_id, applied)
        raise TaskConflictError(task.id, task.lane, task.assigned_to)

    logger.info("Task %s claimed by %s", task_id, agent_id)
    _set_agent_status(db, agent_id, "busy", current_task=task_id)
    _notify(db, agent_id, "task-assigned", "New task assigned", f"You've been assigned: {task.title}", task)
    return task


def complete_task(
    db: Database,
    task_id: str,
    agent_id: str | None = None,
    session_id: str | None = None,
) -> Task:
    """Agent-reported completion: move the task to review."""
    actor = agent_id or DEFAULT_COMPLETE_ACTOR
    with tasks_mod.editing(db) as board:
        task = tasks_mod.require(board, task_id)
        tasks_mod.set_lane(board, task, "review", by=actor, note="Task completed by agent, moved to review")
        task.completed_at = utcnow()
        if session_id:
            task.metadata["last_session_id"] = session_id
        task.metadata.pop("last_error", None)

    owner = agent_id or task.assigned_to
    _free_agent(db, owner)
    _notify(db, owner, "task-completed", "Task completed", f"Ready for review: {task.title}", task)
    return task


def block_task(
    db: Database,
    task_id: str,
    agent_id: str | None = None,
    reason: str | None = None,
    session_id: str | None = None,
) -> Task:
    """Agent-reported blocker: move the task to blocked with a reason."""
    actor = agent_id or DEFAULT_BLOCK_ACTOR
    reason = reason or "No reason provided"
    with tasks_mod.editing(db) as board:
        task = tasks_mod.require(board, task_id)
        tasks_mod.set_lane(board, task, "blocked", by=actor, note=f"Blocked: {reason}")
        task.blocked_at = utcnow()
        task.blocked_reason = reason
        task.blocked_by = actor
        if session_id:
            task.metadata["last_session_id"] = session_id

    owner = agent_id or task.assigned_to
    _free_agent(db, owner)
    _notify(db, owner, "task-blocked", "Task blocked", f"{task.title}: {reason}", task)
    return task


def release_task(db: Database, task_id: str, note: str = "Released by health monitor") -> Task:
    """Send a claimed task back to queued, clearing the claim."""
    with tasks_mod.editing(db) as board:
        task = tasks_mod.require(board, task_id)
        previous = task.claimed_by
        task.claimed_at = None
        task.claimed_by = None
        tasks_mod.set_lane(board, task, "queued", by="system", note=note)

    logger.info("Task %s released (was claimed by %s)", task_id, previous)
    _free_agent(db, previous)
    _notify(db, previous, "task-released", "Task released", f"{task.title} went back to the queue", task)
    return task


def record_work(
    db: Database,
    task_id: str,
    commits: list[str] | None = None,
    test_results: dict | None = None,
    artifacts: list[str] | None = None,
    notes: str | None = None,
    agent_id: str | None = None,
) -> WorkRecord:
    """Merge work evidence into a task. Commits and artifacts are de-duplicated, order kept."""
    with tasks_mod.editing(db) as board:
        task = tasks_mod.require(board, task_id)
        work = task.work or WorkRecord()
        for commit in commits or []:
            if commit not in work.commits:
                work.commits.append(commit)
        for artifact in artifacts or []:
            if artifact not in work.artifacts:
                work.artifacts.append(artifact)
        if test_results is not None:
            work.test_results = test_results
        if notes is not None:
            work.notes = notes
        work.updated_at = utcnow()
        work.updated_by = agent_id or "unknown"
        task.work = work
        task.updated_at = work.updated_at
    return work


def auto_unblock(db: Database) -> list[Task]:
    """Requeue blocked tasks whose dependencies are all done. Idempotent."""
    with tasks_mod.editing(db) as board:
        unblocked = tasks_mod.unblock_ready(board)
    for task in unblocked:
        logger.info("Auto-unblocked task %s", task.id)
        _notify(db, task.assigned_to, "task-unblocked", "Task unblocked", f"{task.title} is ready again", task)
    return unblocked


# ── Assignment ──────────────────────────────────────────────────────────────


def auto_assign_task(
    db: Database,
    task_id: str,
    stale_after: float = agents_mod.DEFAULT_STALE_AFTER,
) -> dict:
    """Pick the best online agent for a queued task and claim it on their behalf."""
    task = tasks_mod.get_task(db, task_id)
    if task is None:
        raise tasks_mod.TaskNotFoundError(task_id)
    roles = assignment.analyze_task_roles(task)
    if task.lane != "queued":
        return {"assigned": False, "reason": "not-queued", "roles": roles, "task": task}
    if task.assigned_to:
        return {"assigned": False, "reason": "already-assigned", "roles": roles, "task": task}

    agents = agents_mod.list_agents(db, stale_after=stale_after)
    agent_id = assignment.select_best_agent(task, agents)
    if agent_id is None:
        return {"assigned": False, "reason": "no-available-agents", "roles": roles, "task": task}

    try:
        task = claim_task(db, task_id, agent_id)
    except TaskConflictError as e:
        return {"assigned": False, "reason": "conflict", "roles": roles, "conflict": e.to_dict(), "task": task}
    return {"assigned": True, "agent": agent_id, "roles": roles, "task": task}


def auto_assign_tasks(db: Database, task_ids: list[str] | None = None) -> list[dict]:
    """Auto-assign several tasks (all unassigned queued tasks by default)."""
    if task_ids is None:
        task_ids = [t.id for t in tasks_mod.list_tasks(db, lane="queued") if not t.assigned_to]
    results = []
    for task_id in task_ids:
        result = auto_assign_task(db, task_id)
        result["task_id"] = task_id
        results.append(result)
    return results


# ── Orphaned claims ─────────────────────────────────────────────────────────


def find_orphaned_claims(db: Database, stale_after: float = agents_mod.DEFAULT_STALE_AFTER) -> list[Task]:
    """Development tasks whose claimant has stopped or gone silent.

    A claimant with a worker heartbeat is judged by it; otherwise by its
    agent registry status. Claims younger than ``stale_after`` are left
    alone so a worker has time to pick up an auto-assigned task.
    """
    now = utcnow()
    window = timedelta(seconds=stale_after)
    from operator_hub.core.workers import list_heartbeats

    heartbeats = {b.slot: b for b in list_heartbeats(db.heartbeats)}
    agents = {a.id: a for a in agents_mod.list_agents(db, stale_after=stale_after)}

    orphaned = []
    for task in tasks_mod.list_tasks(db, lane="development"):
        claimant = task.claimed_by
        if not claimant or (task.claimed_at and now - task.claimed_at < window):
            continue
        beat = heartbeats.get(claimant)
        if beat is not None:
            silent = beat.last_beat_at is None or now - beat.last_beat_at > window
            if beat.status == "stopped" or silent:
                orphaned.append(task)
        elif claimant in agents and agents[claimant].status == "offline":
            orphaned.append(task)
    return orphaned


def release_orphaned_claims(db: Database, stale_after: float = agents_mod.DEFAULT_STALE_AFTER) -> list[Task]:
    released = []
    for task in find_orphaned_claims(db, stale_after):
        logger.warning("Releasing orphaned claim on %s (claimant %s)", task.id, task.claimed_by)
        released.append(release_task(db, task.id, note="Released by health monitor - claimant went silent"))
    return released
