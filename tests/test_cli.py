"""Tests for the CLI."""

import json
import os
import tempfile

import pytest
from click.testing import CliRunner

from operator_hub.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {"HUB_DATA_DIR": tmp, "HUB_SESSION_BACKEND": "fake"}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner()

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Operator Hub" in result.output

    def test_task_flow(self, cli_env):
        runner = cli_env

        result = runner.invoke(main, ["task", "add", "Test task", "-p", "P1", "--criterion", "It works"])
        assert result.exit_code == 0
        assert "test-task" in result.output

        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "test-task" in result.output
        assert "queued" in result.output

        result = runner.invoke(main, ["task", "claim", "test-task", "agent-a"])
        assert result.exit_code == 0

        result = runner.invoke(main, ["task", "claim", "test-task", "agent-b"])
        assert result.exit_code == 1
        assert "agent-a" in result.output

        result = runner.invoke(main, ["task", "log-time", "test-task", "1.5", "--agent", "agent-a"])
        assert result.exit_code == 0
        assert "total 1.5h" in result.output

        result = runner.invoke(main, ["task", "complete", "test-task", "--agent", "agent-a"])
        assert result.exit_code == 0
        assert "review" in result.output

        result = runner.invoke(main, ["task", "show", "test-task"])
        assert result.exit_code == 0
        assert "Lane: review" in result.output
        assert "- It works" in result.output

        result = runner.invoke(main, ["task", "history", "test-task"])
        assert "queued -> development by agent-a" in result.output

    def test_list_json(self, cli_env):
        cli_env.invoke(main, ["task", "add", "One"])
        result = cli_env.invoke(main, ["task", "list", "--json"])
        assert result.exit_code == 0
        assert [t["id"] for t in json.loads(result.output)] == ["one"]

    def test_list_bad_lane(self, cli_env):
        result = cli_env.invoke(main, ["task", "list", "--lane", "doing"])
        assert result.exit_code == 1

    def test_show_missing(self, cli_env):
        result = cli_env.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_dependencies_and_unblock(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["task", "add", "Base"])
        result = runner.invoke(main, ["task", "add", "Child", "--depends-on", "base"])
        assert "Lane: blocked" in result.output

        result = runner.invoke(main, ["task", "update", "base", "--lane", "done"])
        assert result.exit_code == 0

        result = runner.invoke(main, ["task", "show", "child"])
        assert "Lane: queued" in result.output

        result = runner.invoke(main, ["unblock"])
        assert "Nothing to unblock." in result.output

    def test_block_and_release(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["task", "add", "Work"])
        runner.invoke(main, ["task", "claim", "work", "agent-a"])
        result = runner.invoke(main, ["task", "block", "work", "-r", "Need access", "--agent", "agent-a"])
        assert "blocked: Need access" in result.output
        result = runner.invoke(main, ["task", "release", "work"])
        assert "released (queued)" in result.output

    def test_assign(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["agent", "register", "d1", "--role", "designer"])
        runner.invoke(main, ["agent", "register", "b1", "--role", "backend-dev"])
        runner.invoke(main, ["task", "add", "Design the login form"])

        result = runner.invoke(main, ["task", "suggest"])
        assert "design-the-login-form: d1" in result.output

        result = runner.invoke(main, ["task", "assign", "design-the-login-form"])
        assert result.exit_code == 0
        assert "assigned to d1" in result.output

        result = runner.invoke(main, ["task", "assign", "design-the-login-form"])
        assert result.exit_code == 1
        assert "not-queued" in result.output

    def test_agents(self, cli_env):
        runner = cli_env
        result = runner.invoke(main, ["agent", "register", "q1", "--role", "qa", "--role", "content"])
        assert "q1 [qa, content]" in result.output

        result = runner.invoke(main, ["agent", "status", "q1", "busy"])
        assert "is busy" in result.output

        result = runner.invoke(main, ["agent", "list"])
        assert "q1 (busy)" in result.output

        result = runner.invoke(main, ["agent", "status", "ghost", "online"])
        assert result.exit_code == 1

        runner.invoke(main, ["agent", "status", "q1", "offline"])
        result = runner.invoke(main, ["agent", "heartbeat", "q1"])
        assert result.exit_code == 0
        assert "is online" in result.output
        assert runner.invoke(main, ["agent", "heartbeat", "ghost"]).exit_code == 1

        result = runner.invoke(main, ["agent", "delete", "q1"])
        assert result.exit_code == 0
        assert "No agents registered." in runner.invoke(main, ["agent", "list"]).output

    def test_notifications(self, cli_env):
        runner = cli_env
        runner.invoke(main, ["task", "add", "Work"])
        runner.invoke(main, ["task", "claim", "work", "agent-a"])

        result = runner.invoke(main, ["notify", "list", "--agent", "agent-a", "--json"])
        items = json.loads(result.output)
        assert [n["type"] for n in items] == ["task-assigned"]

        result = runner.invoke(main, ["notify", "read", "--all", "agent-a"])
        assert "Marked 1" in result.output

        result = runner.invoke(main, ["notify", "deliver"])
        assert "Delivered 1 notification(s) (no channels configured)" in result.output

    def test_workers_empty(self, cli_env):
        result = cli_env.invoke(main, ["worker", "list"])
        assert result.exit_code == 0
        assert "No workers have reported." in result.output
