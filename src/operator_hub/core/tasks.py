"""Task board operations."""

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from operator_hub.db.engine import Database
from operator_hub.db.models import (
    LANE_ALIASES,
    LANES,
    PRIORITIES,
    Comment,
    StatusChange,
    Task,
    TimeEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

# Lanes a task may not sit in while a dependency is unfinished
GATED_LANES = ("queued", "development")
GATE_ACTOR = "system"

UPDATABLE_FIELDS = {
    "title", "description", "priority", "lane", "assigned_to", "project_id", "tags",
    "depends_on", "estimated_hours", "problem", "scope", "acceptance_criteria",
    "working_dir", "timeout_seconds", "blocked_reason", "metadata",
}


class TaskNotFoundError(LookupError):
    """Raised when a mutation references a task id that does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(board: dict[str, Task], base_slug: str) -> str:
    if base_slug not in board:
        return base_slug
    i = 2
    while f"{base_slug}-{i}" in board:
        i += 1
    return f"{base_slug}-{i}"


def normalize_lane(lane: str) -> str:
    """Map a lane name (including the in_progress alias) to its canonical form."""
    value = str(lane or "").strip().lower()
    value = LANE_ALIASES.get(value, value)
    if value not in LANES:
        raise ValueError(f"Unknown lane: {lane!r}")
    return value


def normalize_priority(priority: str | int | None) -> str:
    if priority is None or priority == "":
        return "P2"
    value = str(priority).strip().upper()
    if not value.startswith("P"):
        value = f"P{value}"
    if value not in PRIORITIES:
        raise ValueError(f"Unknown priority: {priority!r}")
    return value


def priority_rank(priority: str | None) -> int:
    try:
        return PRIORITIES.index(str(priority).upper())
    except ValueError:
        return len(PRIORITIES)


# ── Board transactions ──────────────────────────────────────────────────────


def _decode(records: list[dict]) -> dict[str, Task]:
    board: dict[str, Task] = {}
    for record in records:
        try:
            task = Task.from_dict(record)
        except (ValueError, TypeError) as e:
            logger.warning("Dropping malformed task record %r: %s", record.get("id"), e)
            continue
        try:
            task.lane = normalize_lane(task.lane)
        except ValueError:
            logger.warning("Task %s has unknown lane %r; treating as queued", task.id, task.lane)
            task.lane = "queued"
        board[task.id] = task
    return board


def load_board(db: Database) -> dict[str, Task]:
    """Read-only snapshot of every task keyed by id."""
    return _decode(db.tasks.load())


@contextmanager
def editing(db: Database) -> Iterator[dict[str, Task]]:
    """Yield the whole board for mutation; it is written back atomically on clean exit."""
    with db.tasks.transaction() as records:
        board = _decode(records)
        yield board
        records[:] = [t.to_dict() for t in board.values()]


def unmet_dependencies(board: dict[str, Task], task: Task) -> list[str]:
    """Dependency ids that are not done. Ids no longer on the board count as met."""
    return [
        dep_id for dep_id in task.depends_on
        if dep_id in board and board[dep_id].lane != "done"
    ]


def set_lane(
    board: dict[str, Task],
    task: Task,
    lane: str,
    by: str | None = None,
    note: str | None = None,
) -> str:
    """Move a task to a lane, recording history. Returns the lane actually applied.

    A task headed for a gated lane with unfinished dependencies lands in
    ``blocked`` instead.
    """
    lane = normalize_lane(lane)
    now = utcnow()

    if lane in GATED_LANES:
        waiting = unmet_dependencies(board, task)
        if waiting:
            lane = "blocked"
            task.blocked_at = now
            task.blocked_by = GATE_ACTOR
            task.blocked_reason = f"waiting on dependencies: {', '.join(waiting)}"
            note = "dependencies not done"

    old_lane = task.lane
    task.updated_at = now
    if lane == old_lane:
        return lane

    task.status_history.append(
        StatusChange(at=now, from_lane=old_lane, to_lane=lane, note=note or "updated", by=by)
    )
    task.lane = lane
    logger.info("Task %s: %s -> %s (%s)", task.id, old_lane, lane, note or "updated")

    if lane == "done":
        task.completed_at = task.completed_at or now
        unblock_ready(board, by="system")
    elif old_lane == "done":
        _reblock_dependents(board, task.id)
    return lane


def _reblock_dependents(board: dict[str, Task], task_id: str):
    for other in board.values():
        if task_id in other.depends_on and other.lane in GATED_LANES:
            set_lane(board, other, other.lane, by="system", note="dependency reopened")


def unblock_ready(board: dict[str, Task], by: str = "system") -> list[Task]:
    """Move blocked tasks whose dependencies are all done back to queued.

    Only tasks held back by the dependency gate qualify. A task blocked by
    its agent stays blocked until someone releases it, even when it also
    has dependencies.
    """
    unblocked = []
    for task in board.values():
        if task.lane != "blocked" or task.blocked_by != GATE_ACTOR:
            continue
        if all(dep_id not in board or board[dep_id].lane == "done" for dep_id in task.depends_on):
            set_lane(board, task, "queued", by=by, note="auto-unblocked")
            task.blocked_at = None
            task.blocked_by = None
            task.blocked_reason = None
            unblocked.append(task)
    return unblocked


def require(board: dict[str, Task], task_id: str) -> Task:
    task = board.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _check_dependencies(board: dict[str, Task], task_id: str, depends_on: list[str]) -> list[str]:
    deps: list[str] = []
    for dep_id in depends_on:
        if dep_id == task_id:
            raise ValueError(f"Task {task_id} cannot depend on itself")
        if dep_id not in board:
            raise ValueError(f"Dependency task not found: {dep_id}")
        if dep_id not in deps:
            deps.append(dep_id)
    return deps


# ── CRUD ────────────────────────────────────────────────────────────────────


def create_task(
    db: Database,
    title: str,
    description: str = "",
    priority: str | int | None = "P2",
    lane: str = "queued",
    assigned_to: str | None = None,
    project_id: str | None = None,
    tags: list[str] | None = None,
    depends_on: list[str] | None = None,
    estimated_hours: float | None = None,
    problem: str | None = None,
    scope: str | None = None,
    acceptance_criteria: list[str] | None = None,
    working_dir: str | None = None,
    timeout_seconds: float | None = None,
    created_by: str | None = None,
    task_id: str | None = None,
) -> Task:
    """Create a new task. It starts in ``queued`` unless its dependencies hold it in ``blocked``."""
    if not title or not title.strip():
        raise ValueError("Task title is required")
    lane = normalize_lane(lane)
    priority = normalize_priority(priority)
    now = utcnow()

    with editing(db) as board:
        if task_id:
            if task_id in board:
                raise ValueError(f"Task already exists: {task_id}")
            new_id = task_id
        else:
            new_id = _unique_id(board, slugify(title))
        task = Task(
            id=new_id,
            title=title.strip(),
            description=description or "",
            priority=priority,
            lane=lane,
            assigned_to=assigned_to,
            project_id=project_id,
            tags=list(dict.fromkeys(tags or [])),
            depends_on=_check_dependencies(board, new_id, depends_on or []),
            estimated_hours=estimated_hours,
            problem=problem,
            scope=scope,
            acceptance_criteria=list(acceptance_criteria or []),
            working_dir=working_dir,
            timeout_seconds=timeout_seconds,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            status_history=[StatusChange(at=now, to_lane=lane, note="created", by=created_by)],
        )
        board[task.id] = task
        # Re-apply the lane so the dependency gate sees the stored task
        set_lane(board, task, lane, by=created_by, note="created")

    logger.info("Created task %s (%s) in %s", task.id, task.priority, task.lane)
    return task


def get_task(db: Database, task_id: str) -> Task | None:
    """Get a task by ID."""
    return load_board(db).get(task_id)


def list_tasks(
    db: Database,
    lane: str | None = None,
    assigned_to: str | None = None,
    priority: str | None = None,
    tags: list[str] | None = None,
    project_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, highest priority first then oldest first."""
    tasks = list(load_board(db).values())
    if lane:
        lane = normalize_lane(lane)
        tasks = [t for t in tasks if t.lane == lane]
    if assigned_to:
        tasks = [t for t in tasks if t.assigned_to == assigned_to]
    if priority:
        priority = normalize_priority(priority)
        tasks = [t for t in tasks if t.priority == priority]
    if tags:
        tasks = [t for t in tasks if any(tag in t.tags for tag in tags)]
    if project_id:
        tasks = [t for t in tasks if t.project_id == project_id]
    tasks.sort(key=lambda t: (priority_rank(t.priority), _sort_time(t)))
    return tasks


def _sort_time(task: Task) -> str:
    return task.created_at.isoformat() if task.created_at else ""


def update_task(
    db: Database,
    task_id: str,
    updated_by: str | None = None,
    note: str | None = None,
    **fields,
) -> Task:
    """Update task fields. A lane change goes through the dependency gate."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

    with editing(db) as board:
        task = require(board, task_id)
        if "priority" in fields:
            fields["priority"] = normalize_priority(fields["priority"])
        if "depends_on" in fields:
            deps = _check_dependencies(board, task_id, fields["depends_on"] or [])
            for dep_id in deps:
                if dep_id not in task.depends_on and _reaches(board, dep_id, task_id):
                    raise ValueError(f"Dependency {dep_id} would create a cycle")
            fields["depends_on"] = deps
        if "tags" in fields:
            fields["tags"] = list(dict.fromkeys(fields["tags"] or []))
        lane = fields.pop("lane", None)

        for key, value in fields.items():
            setattr(task, key, value)
        task.updated_at = utcnow()

        if lane is not None:
            set_lane(board, task, lane, by=updated_by, note=note)
        elif "depends_on" in fields and task.lane in GATED_LANES:
            set_lane(board, task, task.lane, by=updated_by)
    return task


def delete_task(db: Database, task_id: str) -> bool:
    """Delete a task irreversibly and drop it from other tasks' dependencies."""
    with editing(db) as board:
        if task_id not in board:
            return False
        del board[task_id]
        for other in board.values():
            if task_id in other.depends_on:
                other.depends_on.remove(task_id)
                other.updated_at = utcnow()
        unblock_ready(board)
    logger.info("Deleted task %s", task_id)
    return True


# ── Time, comments, history ─────────────────────────────────────────────────


def log_time(
    db: Database,
    task_id: str,
    agent_id: str,
    hours: float,
    start: datetime | None = None,
    end: datetime | None = None,
    note: str | None = None,
) -> Task:
    """Append a time entry. ``actual_hours`` is always the sum of entries."""
    hours = float(hours)
    if hours <= 0:
        raise ValueError("hours must be positive")
    now = utcnow()
    with editing(db) as board:
        task = require(board, task_id)
        task.time_entries.append(
            TimeEntry(agent_id=agent_id or "unknown", hours=hours, start=start or now, end=end or now, note=note)
        )
        task.updated_at = now
    return task


def add_comment(db: Database, task_id: str, text: str, by: str) -> Task:
    if not text or not text.strip():
        raise ValueError("Comment text is required")
    with editing(db) as board:
        task = require(board, task_id)
        task.comments.append(Comment(at=utcnow(), by=by or "unknown", text=text.strip()))
        task.updated_at = utcnow()
    return task


def get_task_history(db: Database, task_id: str) -> list[StatusChange]:
    """Get the lane history for a task."""
    task = get_task(db, task_id)
    if not task:
        raise TaskNotFoundError(task_id)
    return list(task.status_history)


# ── Dependencies ────────────────────────────────────────────────────────────


def add_dependency(db: Database, task_id: str, depends_on_id: str) -> Task:
    """Add a dependency to an existing task."""
    with editing(db) as board:
        task = require(board, task_id)
        _check_dependencies(board, task_id, [depends_on_id])
        if depends_on_id in task.depends_on:
            return task
        if _reaches(board, depends_on_id, task_id):
            raise ValueError(f"Dependency {depends_on_id} would create a cycle")
        task.depends_on.append(depends_on_id)
        set_lane(board, task, task.lane, note="dependency added")
    return task


def remove_dependency(db: Database, task_id: str, depends_on_id: str) -> Task:
    """Remove a dependency from a task."""
    with editing(db) as board:
        task = require(board, task_id)
        if depends_on_id in task.depends_on:
            task.depends_on.remove(depends_on_id)
            task.updated_at = utcnow()
            unblock_ready(board)
    return task


def _reaches(board: dict[str, Task], start: str, target: str) -> bool:
    seen = set()
    stack = [start]
    while stack:
        current = stack.pop()
        if current == target:
            return True
        if current in seen or current not in board:
            continue
        seen.add(current)
        stack.extend(board[current].depends_on)
    return False


def get_dependencies(db: Database, task_id: str) -> list[Task]:
    """Tasks this task depends on."""
    board = load_board(db)
    task = board.get(task_id)
    if not task:
        return []
    return [board[d] for d in task.depends_on if d in board]


def get_dependents(db: Database, task_id: str) -> list[Task]:
    """Tasks that depend on this task."""
    return [t for t in load_board(db).values() if task_id in t.depends_on]


def get_ready_tasks(db: Database) -> list[Task]:
    """Queued tasks with every dependency done."""
    board = load_board(db)
    ready = [t for t in board.values() if t.lane == "queued" and not unmet_dependencies(board, t)]
    ready.sort(key=lambda t: (priority_rank(t.priority), _sort_time(t)))
    return ready
