"""Data models for the operator hub."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

LANES = ("queued", "development", "review", "blocked", "done")
LANE_ALIASES = {"in_progress": "development", "in-progress": "development"}
PRIORITIES = ("P0", "P1", "P2", "P3")
AGENT_STATUSES = ("online", "offline", "busy")
WORKER_STATUSES = ("idle", "working", "stopped")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(val) -> datetime | None:
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val
    if isinstance(val, (int, float)):
        # Millisecond epoch values written by older bridge versions
        return datetime.fromtimestamp(val / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(val))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


@dataclass
class TimeEntry:
    agent_id: str
    hours: float
    start: datetime | None = None
    end: datetime | None = None
    note: str | None = None

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "hours": self.hours,
            "start": _iso(self.start),
            "end": _iso(self.end),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TimeEntry":
        return cls(
            agent_id=data.get("agent_id") or data.get("agentId") or "unknown",
            hours=float(data.get("hours") or 0),
            start=_dt(data.get("start")),
            end=_dt(data.get("end")),
            note=data.get("note"),
        )


@dataclass
class WorkRecord:
    commits: list[str] = field(default_factory=list)
    test_results: dict | None = None
    artifacts: list[str] = field(default_factory=list)
    notes: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "commits": list(self.commits),
            "test_results": self.test_results,
            "artifacts": list(self.artifacts),
            "notes": self.notes,
            "updated_at": _iso(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkRecord":
        return cls(
            commits=list(data.get("commits") or []),
            test_results=data.get("test_results", data.get("testResults")),
            artifacts=list(data.get("artifacts") or []),
            notes=data.get("notes"),
            updated_at=_dt(data.get("updated_at", data.get("updatedAt"))),
            updated_by=data.get("updated_by", data.get("updatedBy")),
        )


@dataclass
class StatusChange:
    at: datetime
    to_lane: str
    from_lane: str | None = None
    note: str | None = None
    by: str | None = None

    def to_dict(self) -> dict:
        return {
            "at": _iso(self.at),
            "from_lane": self.from_lane,
            "to_lane": self.to_lane,
            "note": self.note,
            "by": self.by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StatusChange":
        return cls(
            at=_dt(data.get("at")) or utcnow(),
            from_lane=data.get("from_lane", data.get("from")),
            to_lane=data.get("to_lane", data.get("to")) or "queued",
            note=data.get("note"),
            by=data.get("by"),
        )


@dataclass
class Comment:
    at: datetime
    by: str
    text: str

    def to_dict(self) -> dict:
        return {"at": _iso(self.at), "by": self.by, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict) -> "Comment":
        return cls(at=_dt(data.get("at")) or utcnow(), by=data.get("by") or "unknown", text=data.get("text") or "")


_TASK_FIELDS = {
    "id", "title", "description", "priority", "lane", "assigned_to", "project_id",
    "tags", "depends_on", "estimated_hours", "actual_hours", "time_entries", "work",
    "problem", "scope", "acceptance_criteria", "working_dir", "timeout_seconds",
    "claimed_at", "claimed_by", "blocked_at", "blocked_reason", "blocked_by",
    "completed_at", "created_by", "created_at", "updated_at", "status_history",
    "comments", "metadata",
}


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    priority: str = "P2"
    lane: str = "queued"
    assigned_to: str | None = None
    project_id: str | None = None
    tags: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    estimated_hours: float | None = None
    time_entries: list[TimeEntry] = field(default_factory=list)
    work: WorkRecord | None = None
    problem: str | None = None
    scope: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    working_dir: str | None = None
    timeout_seconds: float | None = None
    claimed_at: datetime | None = None
    claimed_by: str | None = None
    blocked_at: datetime | None = None
    blocked_reason: str | None = None
    blocked_by: str | None = None
    completed_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    status_history: list[StatusChange] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def actual_hours(self) -> float:
        return round(sum(e.hours for e in self.time_entries), 6)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "lane": self.lane,
            "assigned_to": self.assigned_to,
            "project_id": self.project_id,
            "tags": list(self.tags),
            "depends_on": list(self.depends_on),
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "time_entries": [e.to_dict() for e in self.time_entries],
            "work": self.work.to_dict() if self.work else None,
            "problem": self.problem,
            "scope": self.scope,
            "acceptance_criteria": list(self.acceptance_criteria),
            "working_dir": self.working_dir,
            "timeout_seconds": self.timeout_seconds,
            "claimed_at": _iso(self.claimed_at),
            "claimed_by": self.claimed_by,
            "blocked_at": _iso(self.blocked_at),
            "blocked_reason": self.blocked_reason,
            "blocked_by": self.blocked_by,
            "completed_at": _iso(self.completed_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "status_history": [s.to_dict() for s in self.status_history],
            "comments": [c.to_dict() for c in self.comments],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        if not data.get("id"):
            raise ValueError("task record without id")
        metadata = dict(data.get("metadata") or {})
        for key, value in data.items():
            if key not in _TASK_FIELDS:
                metadata.setdefault(key, value)
        work = data.get("work")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "Untitled task",
            description=data.get("description") or "",
            priority=data.get("priority") or "P2",
            lane=data.get("lane") or "queued",
            assigned_to=data.get("assigned_to"),
            project_id=data.get("project_id"),
            tags=list(data.get("tags") or []),
            depends_on=list(data.get("depends_on") or []),
            estimated_hours=data.get("estimated_hours"),
            time_entries=[TimeEntry.from_dict(e) for e in data.get("time_entries") or []],
            work=WorkRecord.from_dict(work) if work else None,
            problem=data.get("problem"),
            scope=data.get("scope"),
            acceptance_criteria=list(data.get("acceptance_criteria") or []),
            working_dir=data.get("working_dir"),
            timeout_seconds=data.get("timeout_seconds"),
            claimed_at=_dt(data.get("claimed_at")),
            claimed_by=data.get("claimed_by"),
            blocked_at=_dt(data.get("blocked_at")),
            blocked_reason=data.get("blocked_reason"),
            blocked_by=data.get("blocked_by"),
            completed_at=_dt(data.get("completed_at")),
            created_by=data.get("created_by"),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
            status_history=[StatusChange.from_dict(s) for s in data.get("status_history") or []],
            comments=[Comment.from_dict(c) for c in data.get("comments") or []],
            metadata=metadata,
        )


@dataclass
class Agent:
    id: str
    name: str = ""
    roles: list[str] = field(default_factory=list)
    status: str = "offline"
    current_task: str | None = None
    instance_id: str | None = None
    model: str | None = None
    last_heartbeat_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict = field(default_factory=dict)
    # Derived from the task store on read, never persisted
    workload: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "roles": list(self.roles),
            "status": self.status,
            "current_task": self.current_task,
            "instance_id": self.instance_id,
            "model": self.model,
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Agent":
        if not data.get("id"):
            raise ValueError("agent record without id")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            roles=list(data.get("roles") or []),
            status=data.get("status") or "offline",
            current_task=data.get("current_task"),
            instance_id=data.get("instance_id"),
            model=data.get("model"),
            last_heartbeat_at=_dt(data.get("last_heartbeat_at")),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Notification:
    id: str
    agent_id: str
    type: str = "info"
    title: str = ""
    text: str = ""
    task_id: str | None = None
    source: str | None = None
    read: bool = False
    delivered: bool = False
    delivered_at: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "type": self.type,
            "title": self.title,
            "text": self.text,
            "task_id": self.task_id,
            "source": self.source,
            "read": self.read,
            "delivered": self.delivered,
            "delivered_at": _iso(self.delivered_at),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        if not data.get("id"):
            raise ValueError("notification record without id")
        return cls(
            id=str(data["id"]),
            agent_id=data.get("agent_id") or "unknown",
            type=data.get("type") or "info",
            title=data.get("title") or "",
            text=data.get("text") or "",
            task_id=data.get("task_id"),
            source=data.get("source"),
            read=bool(data.get("read")),
            delivered=bool(data.get("delivered")),
            delivered_at=_dt(data.get("delivered_at")),
            created_at=_dt(data.get("created_at")),
        )


@dataclass
class WorkerHeartbeat:
    slot: str
    status: str = "idle"
    task: str | None = None
    task_title: str | None = None
    session_id: str | None = None
    last_beat_at: datetime | None = None
    started_at: datetime | None = None
    pid: int | None = None
    version: str | None = None

    def to_dict(self) -> dict:
        return {
            "slot": self.slot,
            "status": self.status,
            "task": self.task,
            "task_title": self.task_title,
            "session_id": self.session_id,
            "last_beat_at": _iso(self.last_beat_at),
            "started_at": _iso(self.started_at),
            "pid": self.pid,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkerHeartbeat":
        if not data.get("slot"):
            raise ValueError("heartbeat record without slot")
        return cls(
            slot=str(data["slot"]),
            status=data.get("status") or "idle",
            task=data.get("task"),
            task_title=data.get("task_title"),
            session_id=data.get("session_id"),
            last_beat_at=_dt(data.get("last_beat_at")),
            started_at=_dt(data.get("started_at")),
            pid=data.get("pid"),
            version=data.get("version"),
        )
