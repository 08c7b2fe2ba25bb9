"""Role-based task-to-agent matching.

A task's title and description are matched against a table of keyword
patterns per role. Each online agent is scored on the roles it holds:

* +3 when the role's own keyword (``backend`` for ``backend-dev``) appears
  in the task text;
* +2 for every pattern of that role that matches the task text.

The highest score wins; ties go to the lower workload and then to the
lower agent id, so the same inputs always select the same agent. When no
agent scores, the least-loaded online agent is chosen.

Everything here is a pure function of its arguments.
"""

import re
from dataclasses import dataclass

from operator_hub.db.models import Agent, Task

ROLE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "designer": (
        "design", "ui", "ux", "mockup", "wireframe", "prototype",
        "visual", "style", "theme", "color", "layout", "sketch",
    ),
    "frontend-dev": (
        "frontend", "react", "vue", "angular", "ui component", "tailwind",
        "css", "html", "javascript", "typescript", "responsive", "web page", "dashboard",
    ),
    "backend-dev": (
        "backend", "api", "endpoint", "database", "server", "auth",
        "authentication", "authorization", "node", "graphql", "rest", "sql",
    ),
    "fullstack-dev": ("fullstack", "full stack", "end-to-end", "end to end", "integration"),
    "qa": (
        "test", "qa", "e2e", "integration test", "unit test", "verify",
        "validation", "quality", "bug", "regression",
    ),
    "content": (
        "documentation", "readme", "docs", "content", "copy",
        "write", "blog", "article", "guide", "tutorial",
    ),
    "devops": (
        "deploy", "devops", "ci/cd", "cicd", "docker", "kubernetes",
        "infrastructure", "pipeline", "monitoring", "hosting",
    ),
    "architect": (
        "architecture", "design system", "technical design", "system design",
        "planning", "blueprint", "strategy",
    ),
    "pm": ("planning", "project", "coordination", "epic", "roadmap", "prioritize", "organize", "manage"),
}

DEFAULT_ROLES = ("fullstack-dev", "backend-dev", "frontend-dev")

ROLE_KEYWORD_SCORE = 3
PATTERN_SCORE = 2


def _compile(keyword: str) -> re.Pattern:
    # Word-start match so "ui" does not fire inside "build"
    return re.compile(r"\b" + re.escape(keyword), re.IGNORECASE)


ROLE_PATTERNS: dict[str, list[re.Pattern]] = {
    role: [_compile(k) for k in keywords] for role, keywords in ROLE_KEYWORDS.items()
}


@dataclass
class Suggestion:
    task_id: str
    roles: list[str]
    agent_id: str | None
    score: int = 0
    workload: int | None = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "suggested_roles": self.roles,
            "agent_id": self.agent_id,
            "score": self.score,
            "workload": self.workload,
        }


def task_text(task: Task) -> str:
    return f"{task.title} {task.description or ''}".lower()


def role_keyword(role: str) -> str:
    """The bare keyword of a role name, e.g. ``backend`` for ``backend-dev``."""
    return re.sub(r"-dev$", "", role.lower())


def analyze_task_roles(task: Task) -> list[str]:
    """Roles whose patterns match the task text, or the default development roles."""
    text = task_text(task)
    matches = [
        role for role, patterns in ROLE_PATTERNS.items()
        if any(p.search(text) for p in patterns)
    ]
    return matches or list(DEFAULT_ROLES)


def score_agent(task: Task, agent: Agent) -> int:
    text = task_text(task)
    required = analyze_task_roles(task)
    score = 0
    for role in agent.roles:
        if role not in required:
            continue
        if _compile(role_keyword(role)).search(text):
            score += ROLE_KEYWORD_SCORE
        score += PATTERN_SCORE * sum(1 for p in ROLE_PATTERNS.get(role, []) if p.search(text))
    return score


def rank_agents(task: Task, agents: list[Agent]) -> list[tuple[int, Agent]]:
    """Online agents with their scores, best first."""
    scored = [(score_agent(task, a), a) for a in agents if a.status == "online"]
    scored.sort(key=lambda pair: (-pair[0], pair[1].workload, pair[1].id))
    return scored


def select_best_agent(task: Task, agents: list[Agent]) -> str | None:
    """Pick the best online agent id for a task, or None if nobody is online."""
    ranked = rank_agents(task, agents)
    if not ranked:
        return None
    return ranked[0][1].id


def suggest_assignments(tasks: list[Task], agents: list[Agent]) -> list[Suggestion]:
    """Preview the selection for several tasks without assigning anything."""
    suggestions = []
    for task in tasks:
        ranked = rank_agents(task, agents)
        best = ranked[0] if ranked else None
        suggestions.append(
            Suggestion(
                task_id=task.id,
                roles=analyze_task_roles(task),
                agent_id=best[1].id if best else None,
                score=best[0] if best else 0,
                workload=best[1].workload if best else None,
            )
        )
    return suggestions
