"""Task API clients used by workers: over HTTP, or in-process against a Database."""

import logging

import httpx

from operator_hub.core import agents as agents_mod
from operator_hub.core import router
from operator_hub.core import tasks as tasks_mod
from operator_hub.db.engine import Database
from operator_hub.db.models import Task

logger = logging.getLogger(__name__)


class TransientApiError(Exception):
    """The task API could not be reached or failed server-side. Safe to retry."""


class ApiRejectedError(Exception):
    """The task API refused the request. Retrying will not help."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class HttpTaskApi:
    """Client for the hub's HTTP API (``Config.api_url``)."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.debug("%s %s transport error: %s", method, path, e)
            raise TransientApiError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 500:
            raise TransientApiError(f"{method} {path} returned {response.status_code}")
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error") or response.text
        except ValueError:
            return response.text

    def _check(self, response: httpx.Response) -> dict | list:
        if response.status_code >= 400:
            raise ApiRejectedError(response.status_code, self._error_message(response))
        return response.json()

    def list_tasks(self, lane: str | None = None, assigned_to: str | None = None) -> list[Task]:
        params = {}
        if lane:
            params["lane"] = lane
        if assigned_to:
            params["assignedTo"] = assigned_to
        data = self._check(self._request("GET", "/tasks", params=params))
        return [Task.from_dict(item) for item in data]

    def claim(self, task_id: str, agent_id: str) -> Task:
        response = self._request("POST", f"/tasks/{task_id}/claim", json={"agentId": agent_id})
        if response.status_code == 409:
            body = response.json()
            raise router.TaskConflictError(task_id, body.get("current_lane"), body.get("current_agent"))
        return Task.from_dict(self._check(response)["task"])

    def complete(self, task_id: str, agent_id: str | None = None, session_id: str | None = None) -> Task:
        body = {"agentId": agent_id, "sessionId": session_id}
        response = self._request("POST", f"/tasks/{task_id}/complete", json=body)
        return Task.from_dict(self._check(response)["task"])

    def blocked(
        self,
        task_id: str,
        agent_id: str | None = None,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> Task:
        body = {"agentId": agent_id, "reason": reason, "sessionId": session_id}
        response = self._request("POST", f"/tasks/{task_id}/blocked", json=body)
        return Task.from_dict(self._check(response)["task"])

    def heartbeat(self, agent_id: str) -> dict:
        response = self._request("POST", f"/agents/{agent_id}/heartbeat")
        if response.status_code == 404:
            raise agents_mod.AgentNotFoundError(agent_id)
        return self._check(response)


class LocalTaskApi:
    """Same interface as HttpTaskApi, calling the router directly."""

    def __init__(self, db: Database):
        self.db = db

    def list_tasks(self, lane: str | None = None, assigned_to: str | None = None) -> list[Task]:
        return tasks_mod.list_tasks(self.db, lane=lane, assigned_to=assigned_to)

    def claim(self, task_id: str, agent_id: str) -> Task:
        return router.claim_task(self.db, task_id, agent_id)

    def complete(self, task_id: str, agent_id: str | None = None, session_id: str | None = None) -> Task:
        return router.complete_task(self.db, task_id, agent_id=agent_id, session_id=session_id)

    def blocked(
        self,
        task_id: str,
        agent_id: str | None = None,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> Task:
        return router.block_task(self.db, task_id, agent_id=agent_id, reason=reason, session_id=session_id)

    def heartbeat(self, agent_id: str) -> dict:
        return agents_mod.heartbeat(self.db, agent_id).to_dict()
