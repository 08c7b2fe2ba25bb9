"""Tests for task board operations."""

import tempfile
from pathlib import Path

import pytest

from operator_hub.core import tasks as tasks_mod
from operator_hub.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary store bundle for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        yield init_db(Path(tmp))


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60

    def test_empty_falls_back(self):
        assert tasks_mod.slugify("!!!") == "task"


class TestNormalize:
    def test_lane_aliases(self):
        assert tasks_mod.normalize_lane("in_progress") == "development"
        assert tasks_mod.normalize_lane("in-progress") == "development"
        assert tasks_mod.normalize_lane("Review") == "review"

    def test_unknown_lane(self):
        with pytest.raises(ValueError):
            tasks_mod.normalize_lane("doing")

    def test_priority_forms(self):
        assert tasks_mod.normalize_priority(None) == "P2"
        assert tasks_mod.normalize_priority(0) == "P0"
        assert tasks_mod.normalize_priority("p1") == "P1"

    def test_unknown_priority(self):
        with pytest.raises(ValueError):
            tasks_mod.normalize_priority("P9")


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page")
        assert task.id == "build-login-page"
        assert task.lane == "queued"
        assert task.priority == "P2"
        assert task.status_history[0].note == "created"

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page")
        t2 = tasks_mod.create_task(db, "Build login page")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_explicit_id(self, db):
        task = tasks_mod.create_task(db, "Anything", task_id="t1")
        assert task.id == "t1"
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "Again", task_id="t1")

    def test_title_required(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "   ")

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nope") is None

    def test_list_orders_by_priority_then_age(self, db):
        tasks_mod.create_task(db, "Low", priority="P3")
        tasks_mod.create_task(db, "Urgent", priority="P0")
        tasks_mod.create_task(db, "Normal")
        tasks_mod.create_task(db, "Also urgent", priority="P0")
        ids = [t.id for t in tasks_mod.list_tasks(db)]
        assert ids == ["urgent", "also-urgent", "normal", "low"]

    def test_list_filters(self, db):
        tasks_mod.create_task(db, "A", assigned_to="w1", tags=["ui"])
        tasks_mod.create_task(db, "B", assigned_to="w2")
        assert [t.id for t in tasks_mod.list_tasks(db, assigned_to="w1")] == ["a"]
        assert [t.id for t in tasks_mod.list_tasks(db, tags=["ui"])] == ["a"]
        assert tasks_mod.list_tasks(db, lane="done") == []

    def test_update_fields_and_lane(self, db):
        tasks_mod.create_task(db, "Fix bug")
        task = tasks_mod.update_task(db, "fix-bug", updated_by="me", priority="p1", lane="in_progress")
        assert task.priority == "P1"
        assert task.lane == "development"
        last = task.status_history[-1]
        assert (last.from_lane, last.to_lane, last.by) == ("queued", "development", "me")

    def test_update_rejects_unknown_field(self, db):
        tasks_mod.create_task(db, "Fix bug")
        with pytest.raises(ValueError):
            tasks_mod.update_task(db, "fix-bug", actual_hours=3)

    def test_update_missing_task(self, db):
        with pytest.raises(tasks_mod.TaskNotFoundError):
            tasks_mod.update_task(db, "nope", title="x")

    def test_delete_removes_from_dependents(self, db):
        tasks_mod.create_task(db, "Base")
        tasks_mod.create_task(db, "Child", depends_on=["base"])
        assert tasks_mod.get_task(db, "child").lane == "blocked"
        assert tasks_mod.delete_task(db, "base") is True
        child = tasks_mod.get_task(db, "child")
        assert child.depends_on == []
        assert child.lane == "queued"
        assert tasks_mod.delete_task(db, "base") is False


class TestTimeTracking:
    def test_actual_hours_is_sum_of_entries(self, db):
        tasks_mod.create_task(db, "Work")
        for hours in (1.5, 0.25, 2):
            task = tasks_mod.log_time(db, "work", "agent-a", hours)
        assert task.actual_hours == 3.75
        assert [e.hours for e in task.time_entries] == [1.5, 0.25, 2.0]

    def test_rejects_non_positive_hours(self, db):
        tasks_mod.create_task(db, "Work")
        with pytest.raises(ValueError):
            tasks_mod.log_time(db, "work", "agent-a", 0)

    def test_persisted_record_round_trips(self, db):
        tasks_mod.create_task(db, "Work", acceptance_criteria=["It works"], tags=["x"])
        for hours in (3, 1, 2):
            tasks_mod.log_time(db, "work", "agent-a", hours, note=f"{hours}h")
        before = tasks_mod.get_task(db, "work").to_dict()

        reopened = init_db(db.data_dir)
        after = tasks_mod.get_task(reopened, "work").to_dict()
        assert after == before
        assert [e["note"] for e in after["time_entries"]] == ["3h", "1h", "2h"]


class TestComments:
    def test_add_comment(self, db):
        tasks_mod.create_task(db, "Work")
        task = tasks_mod.add_comment(db, "work", " looks good ", by="rev")
        assert task.comments[-1].text == "looks good"
        assert task.comments[-1].by == "rev"


class TestDependencies:
    def test_dependency_gate_blocks_creation(self, db):
        tasks_mod.create_task(db, "Setup database")
        task = tasks_mod.create_task(db, "Build API", depends_on=["setup-database"])
        assert task.lane == "blocked"
        assert "setup-database" in task.blocked_reason

    def test_cannot_move_to_development_with_open_dependency(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        task = tasks_mod.update_task(db, "b", lane="queued")
        assert task.lane == "blocked"
        task = tasks_mod.update_task(db, "b", lane="development")
        assert task.lane == "blocked"

    def test_done_dependency_unblocks(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        tasks_mod.update_task(db, "a", lane="done")
        b = tasks_mod.get_task(db, "b")
        assert b.lane == "queued"
        assert b.blocked_reason is None

    def test_reopened_dependency_reblocks(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        tasks_mod.update_task(db, "a", lane="done")
        tasks_mod.update_task(db, "a", lane="review")
        assert tasks_mod.get_task(db, "b").lane == "blocked"

    def test_add_dependency_gates_existing_task(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B")
        task = tasks_mod.add_dependency(db, "b", "a")
        assert task.depends_on == ["a"]
        assert task.lane == "blocked"

    def test_self_and_unknown_dependency(self, db):
        tasks_mod.create_task(db, "A")
        with pytest.raises(ValueError):
            tasks_mod.add_dependency(db, "a", "a")
        with pytest.raises(ValueError):
            tasks_mod.add_dependency(db, "a", "ghost")

    def test_cycle_rejected(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        with pytest.raises(ValueError):
            tasks_mod.add_dependency(db, "a", "b")

    def test_cycle_rejected_on_update(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        with pytest.raises(ValueError, match="cycle"):
            tasks_mod.update_task(db, "a", depends_on=["b"])
        assert tasks_mod.get_task(db, "a").depends_on == []
        assert tasks_mod.get_task(db, "a").lane == "queued"

    def test_update_replaces_dependencies(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B")
        tasks_mod.create_task(db, "C", depends_on=["a"])
        task = tasks_mod.update_task(db, "c", depends_on=["a", "b"])
        assert task.depends_on == ["a", "b"]

    def test_remove_dependency_unblocks(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        task = tasks_mod.remove_dependency(db, "b", "a")
        assert task.depends_on == []
        assert tasks_mod.get_task(db, "b").lane == "queued"

    def test_dependencies_and_dependents(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        assert [t.id for t in tasks_mod.get_dependencies(db, "b")] == ["a"]
        assert [t.id for t in tasks_mod.get_dependents(db, "a")] == ["b"]

    def test_ready_tasks(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.create_task(db, "B", depends_on=["a"])
        assert [t.id for t in tasks_mod.get_ready_tasks(db)] == ["a"]

    def test_history(self, db):
        tasks_mod.create_task(db, "A")
        tasks_mod.update_task(db, "a", lane="review", note="ready")
        history = tasks_mod.get_task_history(db, "a")
        assert [h.to_lane for h in history] == ["queued", "review"]
        with pytest.raises(tasks_mod.TaskNotFoundError):
            tasks_mod.get_task_history(db, "ghost")
