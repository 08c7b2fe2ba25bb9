"""Agent registry: registration, liveness, and derived workload."""

import logging
from datetime import timedelta

from operator_hub.db.engine import Database
from operator_hub.db.models import AGENT_STATUSES, Agent, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 5 * 60
DEFAULT_RETENTION = 24 * 60 * 60

REGISTRATION_FIELDS = {"name", "roles", "status", "instance_id", "model", "metadata"}


class AgentNotFoundError(LookupError):
    """Raised when a mutation references an unknown agent id."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


def _validate_status(status: str) -> str:
    if status not in AGENT_STATUSES:
        raise ValueError(f"Unknown agent status: {status!r}")
    return status


def _workloads(db: Database) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in db.tasks.load():
        agent_id = record.get("assigned_to")
        if agent_id and record.get("lane") != "done":
            counts[agent_id] = counts.get(agent_id, 0) + 1
    return counts


def _hydrate(record: dict, workloads: dict[str, int], stale_after: float) -> Agent:
    agent = Agent.from_dict(record)
    agent.workload = workloads.get(agent.id, 0)
    if agent.status != "offline":
        beat = agent.last_heartbeat_at
        if beat is None or utcnow() - beat > timedelta(seconds=stale_after):
            agent.status = "offline"
    return agent


def register_agent(
    db: Database,
    agent_id: str,
    name: str | None = None,
    roles: list[str] | None = None,
    status: str = "online",
    instance_id: str | None = None,
    model: str | None = None,
    metadata: dict | None = None,
) -> Agent:
    """Register or update an agent. Registration counts as a heartbeat."""
    if not agent_id:
        raise ValueError("agent id is required")
    _validate_status(status)
    now = utcnow()

    with db.agents.transaction() as records:
        record = db.agents.find(records, agent_id)
        if record is None:
            record = {"id": agent_id, "created_at": now.isoformat(), "roles": [], "metadata": {}}
            records.append(record)
            logger.info("Registered agent %s", agent_id)
        updates = {
            "name": name,
            "roles": list(dict.fromkeys(roles)) if roles is not None else None,
            "instance_id": instance_id,
            "model": model,
        }
        record.update({k: v for k, v in updates.items() if v is not None})
        if metadata:
            record["metadata"] = {**(record.get("metadata") or {}), **metadata}
        record.setdefault("name", agent_id)
        record["status"] = status
        record["last_heartbeat_at"] = now.isoformat()
        record["updated_at"] = now.isoformat()

    return get_agent(db, agent_id)


def get_agent(db: Database, agent_id: str, stale_after: float = DEFAULT_STALE_AFTER) -> Agent | None:
    """Get an agent by ID with derived workload and effective status."""
    record = db.agents.find(db.agents.load(), agent_id)
    if record is None:
        return None
    return _hydrate(record, _workloads(db), stale_after)


def list_agents(
    db: Database,
    role: str | None = None,
    status: str | None = None,
    stale_after: float = DEFAULT_STALE_AFTER,
) -> list[Agent]:
    """List agents sorted by id, optionally filtered by role and effective status."""
    workloads = _workloads(db)
    agents = []
    for record in db.agents.load():
        try:
            agents.append(_hydrate(record, workloads, stale_after))
        except ValueError as e:
            logger.warning("Skipping malformed agent record: %s", e)
    if role:
        agents = [a for a in agents if role in a.roles]
    if status:
        agents = [a for a in agents if a.status == status]
    agents.sort(key=lambda a: a.id)
    return agents


def available_agents(db: Database, stale_after: float = DEFAULT_STALE_AFTER) -> list[Agent]:
    """Agents that are online right now."""
    return list_agents(db, status="online", stale_after=stale_after)


def get_workload(db: Database, agent_id: str) -> int:
    """Count of tasks assigned to the agent that are not done."""
    return _workloads(db).get(agent_id, 0)


def update_agent_status(
    db: Database,
    agent_id: str,
    status: str,
    current_task: str | None = None,
    clear_task: bool = False,
) -> Agent:
    """Set an agent's status. Counts as a heartbeat."""
    _validate_status(status)
    now = utcnow()
    with db.agents.transaction() as records:
        record = db.agents.find(records, agent_id)
        if record is None:
            raise AgentNotFoundError(agent_id)
        old = record.get("status")
        record["status"] = status
        if current_task is not None:
            record["current_task"] = current_task
        elif clear_task:
            record["current_task"] = None
        record["last_heartbeat_at"] = now.isoformat()
        record["updated_at"] = now.isoformat()
    if old != status:
        logger.info("Agent %s: %s -> %s", agent_id, old, status)
    return get_agent(db, agent_id)


def heartbeat(db: Database, agent_id: str) -> Agent:
    """Refresh an agent's liveness; an offline agent comes back online."""
    now = utcnow()
    with db.agents.transaction() as records:
        record = db.agents.find(records, agent_id)
        if record is None:
            raise AgentNotFoundError(agent_id)
        if record.get("status") in (None, "offline"):
            record["status"] = "online"
        record["last_heartbeat_at"] = now.isoformat()
    return get_agent(db, agent_id)


def prune_stale(db: Database, retention: float = DEFAULT_RETENTION) -> int:
    """Remove agents with no heartbeat within the retention window. Returns number removed."""
    cutoff = utcnow() - timedelta(seconds=retention)
    removed = []
    with db.agents.transaction() as records:
        kept = []
        for record in records:
            try:
                agent = Agent.from_dict(record)
            except ValueError:
                removed.append(record.get("id"))
                continue
            if agent.last_heartbeat_at is not None and agent.last_heartbeat_at < cutoff:
                removed.append(agent.id)
            else:
                kept.append(record)
        records[:] = kept
    if removed:
        logger.info("Pruned %d stale agent(s): %s", len(removed), ", ".join(map(str, removed)))
    return len(removed)


def delete_agent(db: Database, agent_id: str) -> bool:
    with db.agents.transaction() as records:
        before = len(records)
        records[:] = [r for r in records if r.get("id") != agent_id]
        return len(records) != before
