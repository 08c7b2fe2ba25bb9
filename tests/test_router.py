"""Tests for claim/complete/block/release transitions and auto-assignment."""

import tempfile
import threading
from datetime import timedelta
from pathlib import Path

import pytest

from operator_hub.core import agents as agents_mod
from operator_hub.core import notifications as notif_mod
from operator_hub.core import router
from operator_hub.core import tasks as tasks_mod
from operator_hub.db.engine import init_db
from operator_hub.db.models import utcnow


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        yield init_db(Path(tmp))


def _age_claim(db, task_id, seconds):
    with db.tasks.transaction() as records:
        record = db.tasks.find(records, task_id)
        record["claimed_at"] = (utcnow() - timedelta(seconds=seconds)).isoformat()


class TestClaim:
    def test_claim_moves_to_development(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        agents_mod.register_agent(db, "agentA")
        task = router.claim_task(db, "t1", "agentA")
        assert task.lane == "development"
        assert task.assigned_to == "agentA"
        assert task.claimed_by == "agentA"
        assert task.claimed_at is not None
        agent = agents_mod.get_agent(db, "agentA")
        assert agent.status == "busy"
        assert agent.current_task == "t1"
        assert [n.type for n in notif_mod.list_notifications(db, agent_id="agentA")] == ["task-assigned"]

    def test_second_claim_conflicts(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "agentA")
        with pytest.raises(router.TaskConflictError) as exc:
            router.claim_task(db, "t1", "agentB")
        assert exc.value.current_lane == "development"
        assert exc.value.current_agent == "agentA"
        assert exc.value.to_dict()["current_agent"] == "agentA"
        assert tasks_mod.get_task(db, "t1").claimed_by == "agentA"

    def test_concurrent_claims_have_one_winner(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        barrier = threading.Barrier(8)
        wins, conflicts = [], []

        def claim(agent_id):
            barrier.wait()
            try:
                wins.append(router.claim_task(db, "t1", agent_id).claimed_by)
            except router.TaskConflictError as e:
                conflicts.append(e)

        threads = [threading.Thread(target=claim, args=(f"agent{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(conflicts) == 7
        assert {e.current_agent for e in conflicts} == {wins[0]}
        assert {e.current_lane for e in conflicts} == {"development"}
        assert tasks_mod.get_task(db, "t1").claimed_by == wins[0]

    def test_claim_with_open_dependency_stores_blocked(self, db):
        tasks_mod.create_task(db, "Base", task_id="base")
        tasks_mod.create_task(db, "Work", task_id="t1")
        # Dependency written behind the gate's back, so t1 still reads queued
        with db.tasks.transaction() as records:
            db.tasks.find(records, "t1")["depends_on"] = ["base"]

        with pytest.raises(router.TaskConflictError) as exc:
            router.claim_task(db, "t1", "agentA")
        assert exc.value.current_lane == "blocked"
        task = tasks_mod.get_task(db, "t1")
        assert task.lane == "blocked"
        assert task.blocked_by == tasks_mod.GATE_ACTOR
        assert task.claimed_by is None

    def test_claim_requires_agent(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        with pytest.raises(ValueError):
            router.claim_task(db, "t1", "")

    def test_claim_unknown_task(self, db):
        with pytest.raises(tasks_mod.TaskNotFoundError):
            router.claim_task(db, "ghost", "agentA")

    def test_claim_blocked_task_conflicts(self, db):
        tasks_mod.create_task(db, "Base", task_id="base")
        tasks_mod.create_task(db, "Child", task_id="child", depends_on=["base"])
        with pytest.raises(router.TaskConflictError) as exc:
            router.claim_task(db, "child", "agentA")
        assert exc.value.current_lane == "blocked"

    def test_unregistered_agent_can_claim(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        assert router.claim_task(db, "t1", "worker-1").claimed_by == "worker-1"


class TestComplete:
    def test_complete_moves_to_review(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        agents_mod.register_agent(db, "agentA")
        router.claim_task(db, "t1", "agentA")
        task = router.complete_task(db, "t1", "agentA", session_id="s-1")
        assert task.lane == "review"
        assert task.completed_at is not None
        assert task.metadata["last_session_id"] == "s-1"
        assert task.status_history[-1].by == "agentA"
        assert agents_mod.get_agent(db, "agentA").status == "online"

    def test_agent_stays_busy_with_other_work(self, db):
        agents_mod.register_agent(db, "agentA")
        tasks_mod.create_task(db, "One", task_id="t1")
        tasks_mod.create_task(db, "Two", task_id="t2")
        router.claim_task(db, "t1", "agentA")
        router.claim_task(db, "t2", "agentA")
        router.complete_task(db, "t1", "agentA")
        agent = agents_mod.get_agent(db, "agentA")
        assert agent.status == "busy"
        assert agent.current_task == "t2"

    def test_complete_without_agent(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        task = router.complete_task(db, "t1")
        assert task.lane == "review"
        assert task.status_history[-1].by == "agent"


class TestBlock:
    def test_block_records_reason(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "agentA")
        task = router.block_task(db, "t1", "agentA", reason="Need credentials")
        assert task.lane == "blocked"
        assert task.blocked_reason == "Need credentials"
        assert task.blocked_by == "agentA"
        assert task.blocked_at is not None

    def test_block_defaults(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        task = router.block_task(db, "t1")
        assert task.blocked_reason == "No reason provided"
        assert task.blocked_by == "unknown"

    def test_agent_blocked_task_is_not_auto_unblocked(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.block_task(db, "t1", "agentA", reason="Waiting on design")
        assert router.auto_unblock(db) == []
        assert tasks_mod.get_task(db, "t1").lane == "blocked"


class TestRelease:
    def test_release_clears_claim(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "agentA")
        task = router.release_task(db, "t1")
        assert task.lane == "queued"
        assert task.claimed_by is None
        assert task.claimed_at is None
        types = [n.type for n in notif_mod.list_notifications(db, agent_id="agentA")]
        assert "task-released" in types
        assert router.claim_task(db, "t1", "agentB").claimed_by == "agentB"


class TestRecordWork:
    def test_merges_and_dedupes(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.record_work(db, "t1", commits=["abc", "def"], artifacts=["out.txt"], agent_id="a")
        work = router.record_work(
            db, "t1", commits=["def", "123"], test_results={"passed": 3}, notes="done", agent_id="a"
        )
        assert work.commits == ["abc", "def", "123"]
        assert work.artifacts == ["out.txt"]
        assert work.test_results == {"passed": 3}
        assert tasks_mod.get_task(db, "t1").work.notes == "done"


class TestAutoUnblock:
    def test_unblocks_once(self, db):
        tasks_mod.create_task(db, "Base", task_id="base")
        tasks_mod.create_task(db, "Child", task_id="child", depends_on=["base"], assigned_to="agentA")
        # Mark base done directly so the child is still blocked
        with db.tasks.transaction() as records:
            db.tasks.find(records, "base")["lane"] = "done"
        assert [t.id for t in router.auto_unblock(db)] == ["child"]
        assert router.auto_unblock(db) == []
        assert tasks_mod.get_task(db, "child").lane == "queued"
        assert [n.type for n in notif_mod.list_notifications(db, agent_id="agentA")] == ["task-unblocked"]

    def test_agent_block_on_task_with_done_dependencies_sticks(self, db):
        tasks_mod.create_task(db, "Base", task_id="base")
        tasks_mod.update_task(db, "base", lane="done")
        tasks_mod.create_task(db, "Child", task_id="child", depends_on=["base"], assigned_to="w1")
        router.claim_task(db, "child", "w1")
        router.block_task(db, "child", "w1", reason="Session failed")

        assert router.auto_unblock(db) == []
        task = tasks_mod.get_task(db, "child")
        assert task.lane == "blocked"
        assert task.blocked_by == "w1"


class TestAutoAssign:
    def test_assigns_best_agent(self, db):
        agents_mod.register_agent(db, "d1", roles=["designer"])
        agents_mod.register_agent(db, "b1", roles=["backend-dev"])
        tasks_mod.create_task(db, "Design the login form", task_id="t1")
        result = router.auto_assign_task(db, "t1")
        assert result["assigned"] is True
        assert result["agent"] == "d1"
        assert "designer" in result["roles"]
        task = tasks_mod.get_task(db, "t1")
        assert (task.lane, task.claimed_by) == ("development", "d1")

    def test_no_agents(self, db):
        tasks_mod.create_task(db, "Design the login form", task_id="t1")
        result = router.auto_assign_task(db, "t1")
        assert result == {
            "assigned": False,
            "reason": "no-available-agents",
            "roles": result["roles"],
            "task": result["task"],
        }
        assert tasks_mod.get_task(db, "t1").lane == "queued"

    def test_skips_assigned_and_non_queued(self, db):
        agents_mod.register_agent(db, "d1", roles=["designer"])
        tasks_mod.create_task(db, "Mine", task_id="t1", assigned_to="someone")
        tasks_mod.create_task(db, "Done", task_id="t2")
        tasks_mod.update_task(db, "t2", lane="done")
        assert router.auto_assign_task(db, "t1")["reason"] == "already-assigned"
        assert router.auto_assign_task(db, "t2")["reason"] == "not-queued"

    def test_missing_task(self, db):
        with pytest.raises(tasks_mod.TaskNotFoundError):
            router.auto_assign_task(db, "ghost")

    def test_assign_all_unassigned(self, db):
        agents_mod.register_agent(db, "d1", roles=["designer"])
        tasks_mod.create_task(db, "Design the login form", task_id="t1")
        tasks_mod.create_task(db, "Taken", task_id="t2", assigned_to="x")
        results = router.auto_assign_tasks(db)
        assert [(r["task_id"], r["assigned"]) for r in results] == [("t1", True)]


class TestOrphanedClaims:
    def test_offline_agent_claim_is_released(self, db):
        agents_mod.register_agent(db, "agentA")
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "agentA")
        agents_mod.update_agent_status(db, "agentA", "offline")
        _age_claim(db, "t1", 3600)
        released = router.release_orphaned_claims(db)
        assert [t.id for t in released] == ["t1"]
        assert tasks_mod.get_task(db, "t1").lane == "queued"

    def test_fresh_claim_is_left_alone(self, db):
        agents_mod.register_agent(db, "agentA")
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "agentA")
        agents_mod.update_agent_status(db, "agentA", "offline")
        assert router.find_orphaned_claims(db) == []

    def test_stopped_worker_claim_is_orphaned(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "worker-1")
        _age_claim(db, "t1", 3600)
        with db.heartbeats.transaction() as records:
            records.append({"slot": "worker-1", "status": "stopped", "last_beat_at": utcnow().isoformat()})
        assert [t.id for t in router.find_orphaned_claims(db)] == ["t1"]

    def test_live_worker_claim_is_kept(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "worker-1")
        _age_claim(db, "t1", 3600)
        with db.heartbeats.transaction() as records:
            records.append({"slot": "worker-1", "status": "working", "last_beat_at": utcnow().isoformat()})
        assert router.find_orphaned_claims(db) == []

    def test_unknown_claimant_is_left_alone(self, db):
        tasks_mod.create_task(db, "Work", task_id="t1")
        router.claim_task(db, "t1", "mystery")
        _age_claim(db, "t1", 3600)
        assert router.find_orphaned_claims(db) == []
