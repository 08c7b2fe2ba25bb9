"""MCP prompt templates for common workflows."""

from operator_hub.mcp.server import mcp


@mcp.prompt()
def report_progress(task_id: str, agent_id: str) -> str:
    """Generate a prompt for an agent to report where a task stands."""
    return (
        f"You are {agent_id}, working on task '{task_id}'.\n\n"
        f"Use get_task to re-read the task and its acceptance criteria. Then:\n"
        f"1. Record your commits, artifacts and test results with record_work\n"
        f"2. Log the time you spent with log_time\n"
        f"3. If every acceptance criterion is met, call complete_task\n"
        f"4. If something outside your control stops you, call block_task with a clear reason\n\n"
        f"Do not claim other tasks while this one is open."
    )


@mcp.prompt()
def triage_board() -> str:
    """Generate a prompt to triage the task board."""
    return (
        "Please triage the task board.\n\n"
        "Use list_tasks to get every lane, and list_agents to see who is online. Then provide:\n"
        "1. Blocked tasks and what each one is waiting on\n"
        "2. Queued tasks with no assignee, with a suggest_assignment result for each\n"
        "3. Tasks in review that look ready to close\n"
        "4. Agents that are offline while holding tasks in development\n"
        "5. Anything that looks stuck or risky"
    )
