"""Tests for the periodic maintenance sweep."""

import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from operator_hub.config import Config
from operator_hub.core import agents as agents_mod
from operator_hub.core import router
from operator_hub.core import tasks as tasks_mod
from operator_hub.core.housekeeping import sweep
from operator_hub.db.engine import init_db
from operator_hub.db.models import utcnow


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        yield init_db(Path(tmp))


class TestSweep:
    def test_quiet_board(self, db):
        result = sweep(db, Config(data_dir=db.data_dir))
        assert result == {"unblocked": 0, "released": 0, "agents_pruned": 0, "notifications_pruned": 0}

    def test_releases_orphans_and_unblocks(self, db):
        agents_mod.register_agent(db, "agentA")
        tasks_mod.create_task(db, "Base", task_id="base")
        tasks_mod.create_task(db, "Child", task_id="child", depends_on=["base"])
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "agentA")

        old = (utcnow() - timedelta(hours=1)).isoformat()
        with db.tasks.transaction() as records:
            db.tasks.find(records, "base")["lane"] = "done"
            db.tasks.find(records, "t1")["claimed_at"] = old
        with db.agents.transaction() as records:
            db.agents.find(records, "agentA")["last_heartbeat_at"] = old

        result = sweep(db, Config(data_dir=db.data_dir))
        assert result["unblocked"] == 1
        assert result["released"] == 1
        assert tasks_mod.get_task(db, "t1").lane == "queued"
        assert tasks_mod.get_task(db, "child").lane == "queued"
