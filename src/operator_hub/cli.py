"""CLI entry point for the operator hub."""

import json
import logging
import signal
import sys

import click

from operator_hub.config import get_config
from operator_hub.core import agents as agents_mod
from operator_hub.core import assignment
from operator_hub.core import notifications as notifications_mod
from operator_hub.core import router
from operator_hub.core import tasks as tasks_mod
from operator_hub.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.data_dir)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """hub - Operator Hub CLI"""
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Task Commands ─────────────────────────────────────────────────────────────


LANE_ICONS = {
    "queued": "○",
    "development": "●",
    "review": "◐",
    "blocked": "✗",
    "done": "✓",
}


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default="P2", help="Priority P0 (highest) to P3 (lowest)")
@click.option("--assign", "assigned_to", default=None, help="Agent or worker slot to assign")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--criterion", "criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--working-dir", default=None, help="Directory the session runs in")
@click.option("--timeout", "timeout_seconds", default=None, type=float, help="Session timeout in seconds")
@click.option("--id", "task_id", default=None, help="Explicit task ID")
def task_add(title, description, priority, assigned_to, depends_on, tags, criteria, working_dir, timeout_seconds, task_id):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, title, description,
                priority=priority,
                assigned_to=assigned_to,
                depends_on=deps,
                tags=list(tags),
                acceptance_criteria=list(criteria),
                working_dir=working_dir,
                timeout_seconds=timeout_seconds,
                created_by="cli",
                task_id=task_id,
            )
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Lane: {task.lane}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.blocked_reason:
            click.echo(f"  Blocked: {task.blocked_reason}")


@task_group.command("list")
@click.option("--lane", default=None, help="Filter by lane")
@click.option("--assigned-to", default=None, help="Filter by assignee")
@click.option("--priority", default=None, help="Filter by priority")
@click.option("--tag", "tags", multiple=True, help="Filter by tag")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(lane, assigned_to, priority, tags, json_output):
    """List tasks."""
    with _get_db() as db:
        try:
            tasks = tasks_mod.list_tasks(
                db, lane=lane, assigned_to=assigned_to, priority=priority, tags=list(tags) or None
            )
        except ValueError as e:
            _fail(str(e))

        if json_output:
            click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = LANE_ICONS.get(task.lane, "?")
            who = f" @{task.assigned_to}" if task.assigned_to else ""
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            click.echo(f"  {icon} {task.priority} {task.id}: {task.title} ({task.lane}){who}{deps}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Lane: {task.lane}")
        if task.assigned_to:
            click.echo(f"  Assigned to: {task.assigned_to}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.acceptance_criteria:
            click.echo("  Acceptance criteria:")
            for criterion in task.acceptance_criteria:
                click.echo(f"    - {criterion}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.blocked_reason:
            click.echo(f"  Blocked: {task.blocked_reason} (by {task.blocked_by})")
        if task.time_entries:
            click.echo(f"  Hours: {task.actual_hours} ({len(task.time_entries)} entries)")
        if task.work and task.work.commits:
            click.echo(f"  Commits: {', '.join(task.work.commits)}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")


@task_group.command("update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--priority", "-p", default=None)
@click.option("--lane", default=None)
@click.option("--assign", "assigned_to", default=None, help="Agent or worker slot to assign")
@click.option("--note", default=None, help="Note recorded with a lane change")
def task_update(task_id, title, description, priority, lane, assigned_to, note):
    """Update task fields."""
    fields = {
        k: v for k, v in {
            "title": title,
            "description": description,
            "priority": priority,
            "lane": lane,
            "assigned_to": assigned_to,
        }.items() if v is not None
    }
    if not fields:
        _fail("Nothing to update.")
    with _get_db() as db:
        try:
            task = tasks_mod.update_task(db, task_id, updated_by="cli", note=note, **fields)
        except (LookupError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Task '{task.id}' updated ({task.lane})")


@task_group.command("claim")
@click.argument("task_id")
@click.argument("agent_id")
def task_claim(task_id, agent_id):
    """Claim a queued task for an agent."""
    with _get_db() as db:
        try:
            task = router.claim_task(db, task_id, agent_id)
        except router.TaskConflictError as e:
            _fail(f"Conflict: task is in {e.current_lane} (agent: {e.current_agent})")
        except (LookupError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Task '{task.id}' claimed by {agent_id}")


@task_group.command("complete")
@click.argument("task_id")
@click.option("--agent", "agent_id", default=None)
def task_complete(task_id, agent_id):
    """Report a task complete (moves it to review)."""
    with _get_db() as db:
        try:
            task = router.complete_task(db, task_id, agent_id=agent_id)
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Task '{task.id}' moved to {task.lane}")


@task_group.command("block")
@click.argument("task_id")
@click.option("--reason", "-r", default=None, help="Why the task cannot proceed")
@click.option("--agent", "agent_id", default=None)
def task_block(task_id, reason, agent_id):
    """Mark a task blocked."""
    with _get_db() as db:
        try:
            task = router.block_task(db, task_id, agent_id=agent_id, reason=reason)
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Task '{task.id}' blocked: {task.blocked_reason}")


@task_group.command("release")
@click.argument("task_id")
def task_release(task_id):
    """Send a claimed task back to the queue."""
    with _get_db() as db:
        try:
            task = router.release_task(db, task_id, note="Released from CLI")
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Task '{task.id}' released ({task.lane})")


@task_group.command("log-time")
@click.argument("task_id")
@click.argument("hours", type=float)
@click.option("--agent", "agent_id", default="cli")
@click.option("--note", default=None)
def task_log_time(task_id, hours, agent_id, note):
    """Log hours against a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.log_time(db, task_id, agent_id, hours, note=note)
        except (LookupError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Logged {hours}h on '{task.id}' (total {task.actual_hours}h)")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency: TASK_ID depends on DEPENDS_ON_ID."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except (LookupError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Task '{task.id}' now depends on: {', '.join(task.depends_on)} ({task.lane})")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency."""
    with _get_db() as db:
        try:
            task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Removed dependency '{depends_on_id}' from '{task.id}' ({task.lane})")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task irreversibly."""
    with _get_db() as db:
        if not tasks_mod.delete_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        click.echo(f"Task '{task_id}' deleted")


@task_group.command("assign")
@click.argument("task_id")
def task_assign(task_id):
    """Auto-assign a queued task to the best online agent."""
    config = get_config()
    with _get_db() as db:
        try:
            result = router.auto_assign_task(db, task_id, stale_after=config.agent_stale_after)
        except LookupError as e:
            _fail(str(e))
        roles = ", ".join(result["roles"])
        if not result["assigned"]:
            _fail(f"Not assigned: {result['reason']} (roles: {roles})")
        click.echo(f"Task '{task_id}' assigned to {result['agent']} (roles: {roles})")


@task_group.command("suggest")
@click.argument("task_id", required=False)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_suggest(task_id, json_output):
    """Preview agent suggestions for one task, or for every unassigned queued task."""
    config = get_config()
    with _get_db() as db:
        if task_id:
            task = tasks_mod.get_task(db, task_id)
            if not task:
                _fail(f"Task not found: {task_id}")
            tasks = [task]
        else:
            tasks = [t for t in tasks_mod.list_tasks(db, lane="queued") if not t.assigned_to]
        agents = agents_mod.list_agents(db, stale_after=config.agent_stale_after)
        suggestions = assignment.suggest_assignments(tasks, agents)

        if json_output:
            click.echo(json.dumps([s.to_dict() for s in suggestions], indent=2))
            return
        if not suggestions:
            click.echo("No unassigned queued tasks.")
            return
        for s in suggestions:
            who = f"{s.agent_id} (score {s.score})" if s.agent_id else "no online agent"
            click.echo(f"  {s.task_id}: {who} [roles: {', '.join(s.roles)}]")


@task_group.command("history")
@click.argument("task_id")
def task_history(task_id):
    """Show the lane history of a task."""
    with _get_db() as db:
        try:
            history = tasks_mod.get_task_history(db, task_id)
        except LookupError as e:
            _fail(str(e))
        for change in history:
            by = f" by {change.by}" if change.by else ""
            click.echo(f"  [{change.at}] {change.from_lane or '-'} -> {change.to_lane}{by}: {change.note}")


@main.command("unblock")
def unblock_command():
    """Requeue blocked tasks whose dependencies are all done."""
    with _get_db() as db:
        unblocked = router.auto_unblock(db)
        if not unblocked:
            click.echo("Nothing to unblock.")
            return
        for task in unblocked:
            click.echo(f"  Unblocked: {task.id}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage the agent registry."""
    pass


@agent_group.command("register")
@click.argument("agent_id")
@click.option("--name", default=None)
@click.option("--role", "roles", multiple=True, help="Role (repeatable), e.g. designer, backend-dev")
@click.option("--model", default=None)
def agent_register(agent_id, name, roles, model):
    """Register or update an agent."""
    with _get_db() as db:
        agent = agents_mod.register_agent(db, agent_id, name=name, roles=list(roles) or None, model=model)
        click.echo(f"Agent registered: {agent.id} [{', '.join(agent.roles) or 'no roles'}]")


@agent_group.command("list")
@click.option("--role", default=None)
@click.option("--status", default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(role, status, json_output):
    """List agents."""
    config = get_config()
    with _get_db() as db:
        agents = agents_mod.list_agents(db, role=role, status=status, stale_after=config.agent_stale_after)
        if json_output:
            click.echo(json.dumps([{**a.to_dict(), "workload": a.workload} for a in agents], indent=2))
            return
        if not agents:
            click.echo("No agents registered.")
            return
        for a in agents:
            current = f" on {a.current_task}" if a.current_task else ""
            click.echo(f"  {a.id} ({a.status}{current}) [{', '.join(a.roles)}] workload={a.workload}")


@agent_group.command("status")
@click.argument("agent_id")
@click.argument("status", type=click.Choice(["online", "offline", "busy"]))
def agent_status(agent_id, status):
    """Set an agent's status."""
    with _get_db() as db:
        try:
            agent = agents_mod.update_agent_status(db, agent_id, status)
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Agent '{agent.id}' is {agent.status}")


@agent_group.command("heartbeat")
@click.argument("agent_id")
def agent_heartbeat(agent_id):
    """Mark an agent as alive now."""
    with _get_db() as db:
        try:
            agent = agents_mod.heartbeat(db, agent_id)
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Agent '{agent.id}' is {agent.status}")


@agent_group.command("prune")
@click.option("--retention", default=None, type=float, help="Seconds without heartbeat before removal")
def agent_prune(retention):
    """Remove agents with no recent heartbeat."""
    config = get_config()
    with _get_db() as db:
        removed = agents_mod.prune_stale(db, retention=retention or config.agent_retention)
        click.echo(f"Pruned {removed} agent(s)")


@agent_group.command("delete")
@click.argument("agent_id")
def agent_delete(agent_id):
    """Remove an agent from the registry."""
    with _get_db() as db:
        if not agents_mod.delete_agent(db, agent_id):
            _fail(f"Agent not found: {agent_id}")
        click.echo(f"Agent '{agent_id}' deleted")


# ── Notification Commands ─────────────────────────────────────────────────────


@main.group("notify")
def notify_group():
    """Inspect and deliver notifications."""
    pass


@notify_group.command("list")
@click.option("--agent", "agent_id", default=None)
@click.option("--unread", is_flag=True)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def notify_list(agent_id, unread, json_output):
    """List notifications, newest first."""
    with _get_db() as db:
        items = notifications_mod.list_notifications(db, agent_id=agent_id, unread=unread)
        if json_output:
            click.echo(json.dumps([n.to_dict() for n in items], indent=2))
            return
        if not items:
            click.echo("No notifications.")
            return
        for n in items:
            mark = " " if n.read else "*"
            click.echo(f" {mark} {n.id} [{n.type}] {n.agent_id}: {n.title} {n.text}".rstrip())


@notify_group.command("read")
@click.argument("notification_id", required=False)
@click.option("--all", "all_for", default=None, help="Mark every notification of this agent read")
def notify_read(notification_id, all_for):
    """Mark a notification (or all of an agent's) read."""
    with _get_db() as db:
        if all_for:
            count = notifications_mod.mark_all_read(db, all_for)
            click.echo(f"Marked {count} notification(s) read")
            return
        if not notification_id:
            _fail("Give a notification ID or --all AGENT_ID")
        try:
            notifications_mod.mark_read(db, notification_id)
        except LookupError as e:
            _fail(str(e))
        click.echo(f"Notification '{notification_id}' read")


@notify_group.command("prune")
@click.option("--retention", default=None, type=float, help="Age in seconds of delivered notifications to drop")
def notify_prune(retention):
    """Drop old delivered notifications."""
    config = get_config()
    with _get_db() as db:
        removed = notifications_mod.prune_old(db, retention=retention or config.notification_retention)
        click.echo(f"Pruned {removed} notification(s)")


@notify_group.command("deliver")
def notify_deliver():
    """Deliver pending notifications once to the configured channels."""
    from operator_hub.core.delivery import deliver_pending, make_channels

    config = get_config()
    channels = make_channels(config)
    with _get_db() as db:
        count = deliver_pending(db, channels)
        names = ", ".join(c.name for c in channels) or "no channels configured"
        click.echo(f"Delivered {count} notification(s) ({names})")


# ── Worker Commands ───────────────────────────────────────────────────────────


@main.group("worker")
def worker_group():
    """Run and inspect task workers."""
    pass


@worker_group.command("run")
@click.argument("slot")
@click.option("--local", is_flag=True, help="Use the data directory directly instead of the HTTP API")
def worker_run(slot, local):
    """Run a worker for SLOT until interrupted."""
    from operator_hub.core.client import HttpTaskApi, LocalTaskApi
    from operator_hub.core.sessions import make_backend
    from operator_hub.core.workers import WorkerSupervisor

    config = get_config()
    with _get_db() as db:
        api = LocalTaskApi(db) if local else HttpTaskApi(config.api_url)
        supervisor = WorkerSupervisor(slot, api, make_backend(config), db.heartbeats, config)

        def shutdown(signum, frame):
            click.echo(f"Received signal {signum}, stopping worker {slot}...")
            supervisor.stop()

        signal.signal(signal.SIGINT, shutdown)
        signal.signal(signal.SIGTERM, shutdown)

        supervisor.start()
        click.echo(f"Worker {slot} running ({'local' if local else config.api_url}, {config.session_backend})")
        supervisor.wait()
        if isinstance(api, HttpTaskApi):
            api.close()


@worker_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def worker_list(json_output):
    """Show the last heartbeat of every worker."""
    from operator_hub.core.workers import list_heartbeats

    with _get_db() as db:
        beats = list_heartbeats(db.heartbeats)
        if json_output:
            click.echo(json.dumps([b.to_dict() for b in beats], indent=2))
            return
        if not beats:
            click.echo("No workers have reported.")
            return
        for b in beats:
            task = f" on {b.task} ({b.task_title})" if b.task else ""
            click.echo(f"  {b.slot}: {b.status}{task} last beat {b.last_beat_at}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API with background housekeeping and delivery."""
    from operator_hub.web.app import run_server

    click.echo(f"Starting operator hub at http://{host}:{port}/api")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from operator_hub.mcp.server import mcp
    from operator_hub.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
