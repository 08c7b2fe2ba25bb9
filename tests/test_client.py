"""Tests for the HTTP task API client."""

import json

import httpx
import pytest

from operator_hub.core.agents import AgentNotFoundError
from operator_hub.core.client import ApiRejectedError, HttpTaskApi, TransientApiError
from operator_hub.core.router import TaskConflictError

TASK = {"id": "t1", "title": "Work", "lane": "development", "priority": "P1", "claimed_by": "w1"}


def _api(handler):
    return HttpTaskApi("http://hub.test/api/", transport=httpx.MockTransport(handler))


class TestHttpTaskApi:
    def test_list_tasks_sends_filters(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=[TASK])

        tasks = _api(handler).list_tasks(lane="queued", assigned_to="w1")
        assert seen == {"path": "/api/tasks", "params": {"lane": "queued", "assignedTo": "w1"}}
        assert [t.id for t in tasks] == ["t1"]

    def test_claim(self):
        def handler(request):
            assert request.url.path == "/api/tasks/t1/claim"
            assert json.loads(request.content) == {"agentId": "w1"}
            return httpx.Response(200, json={"success": True, "task": TASK})

        assert _api(handler).claim("t1", "w1").claimed_by == "w1"

    def test_claim_conflict(self):
        body = {"error": "Task already claimed or no longer queued", "current_lane": "development", "current_agent": "w2"}
        api = _api(lambda request: httpx.Response(409, json=body))
        with pytest.raises(TaskConflictError) as exc:
            api.claim("t1", "w1")
        assert exc.value.current_agent == "w2"

    def test_blocked_sends_reason(self):
        def handler(request):
            assert json.loads(request.content)["reason"] == "tests failed"
            return httpx.Response(200, json={"success": True, "task": {**TASK, "lane": "blocked"}})

        assert _api(handler).blocked("t1", agent_id="w1", reason="tests failed").lane == "blocked"

    def test_server_error_is_transient(self):
        with pytest.raises(TransientApiError):
            _api(lambda request: httpx.Response(503)).complete("t1")

    def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientApiError):
            _api(handler).list_tasks()

    def test_not_found_is_rejected(self):
        api = _api(lambda request: httpx.Response(404, json={"error": "Task not found: t1"}))
        with pytest.raises(ApiRejectedError) as exc:
            api.complete("t1")
        assert exc.value.status_code == 404
        assert exc.value.message == "Task not found: t1"

    def test_heartbeat(self):
        def handler(request):
            assert request.method == "POST"
            assert request.url.path == "/api/agents/w1/heartbeat"
            return httpx.Response(200, json={"id": "w1", "status": "online"})

        assert _api(handler).heartbeat("w1")["status"] == "online"

    def test_heartbeat_unknown_agent(self):
        api = _api(lambda request: httpx.Response(404, json={"error": "Agent not found: w1"}))
        with pytest.raises(AgentNotFoundError):
            api.heartbeat("w1")
