"""Tests for the state store and its persistence."""

import json
import re

from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.db.ids import issue_id
from agent_orchestrator.db.models import RoleKind, TaskRunMeta
from agent_orchestrator.core.roles import make_profile
from agent_orchestrator.db.store import ACTIVITY_LIMIT, Store


class TestIds:
    def test_format(self):
        assert re.fullmatch(r"task_[0-9a-z]+_[0-9a-z]{6}", issue_id("task"))

    def test_unique(self):
        assert len({issue_id("evt") for _ in range(200)}) == 200


class TestActivityLog:
    def test_memory_capped_file_complete(self, tmp_dir):
        log_file = tmp_dir / "logs" / "activity.ndjson"
        store = Store(activity_log_file=log_file)
        for i in range(ACTIVITY_LIMIT + 25):
            store.add_event("system", "tick", f"event {i}")

        assert len(store.activity) == ACTIVITY_LIMIT
        assert store.activity[0].detail == "event 25"
        lines = log_file.read_text().splitlines()
        assert len(lines) == ACTIVITY_LIMIT + 25
        assert json.loads(lines[0])["detail"] == "event 0"

    def test_write_failure_counted(self, tmp_dir):
        blocker = tmp_dir / "not-a-dir"
        blocker.write_text("")
        store = Store(activity_log_file=blocker / "activity.ndjson")
        store.add_event("system", "tick", "x")
        assert store.activity_write_failures == 1
        assert len(store.activity) == 1


class TestSnapshot:
    def test_round_trip(self, tmp_dir):
        state_file = tmp_dir / "state.json"
        store = Store(state_file=state_file)
        task = tasks_mod.enqueue_task(store, "Persist me", "desc", assignee="W1")
        store.roles["TL"] = make_profile("TL", "tech lead")
        store.run_meta[task.id] = TaskRunMeta(
            task_id=task.id, agent_id="W1", worktree_path="/x", branch="b", base_branch="main",
            provenance_ok=True,
        )
        assert store.save()

        restored = Store(state_file=state_file)
        assert restored.load()
        assert restored.find_task(task.id).title == "Persist me"
        assert restored.roles["TL"].kind == RoleKind.TECH_LEAD
        assert restored.run_meta[task.id].provenance_ok is True
        assert [e.action for e in restored.activity] == ["task_enqueued"]

    def test_snapshot_keys(self, store):
        assert set(store.snapshot()) == {
            "tasks", "last_command", "agent_roles", "workflows", "activity_log", "run_meta",
        }

    def test_save_failure_counted_not_raised(self, tmp_dir):
        blocker = tmp_dir / "file"
        blocker.write_text("")
        store = Store(state_file=blocker / "state.json")
        task = tasks_mod.enqueue_task(store, "Still created")
        assert store.find_task(task.id) is task
        assert store.persistence_failures >= 1

    def test_load_missing_file(self, tmp_dir):
        assert Store(state_file=tmp_dir / "missing.json").load() is False

    def test_load_corrupt_file(self, tmp_dir):
        state_file = tmp_dir / "state.json"
        state_file.write_text("{not json")
        store = Store(state_file=state_file)
        assert store.load() is False
        assert store.persistence_failures == 1

    def test_no_state_file(self, store):
        assert store.save() is False
        assert store.persistence_failures == 0
