"""Tests for the auto-claim and auto-execute loops."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.acceptance import accept_task_with_policy
from agent_orchestrator.core.loops import SKIP_GIT_CHECK, AutoClaimLoop, AutoExecuteLoop
from agent_orchestrator.core.reviews import find_open_review
from agent_orchestrator.core.runs import agent_env
from agent_orchestrator.core.workers import register_worker
from agent_orchestrator.db.models import CommandResult, now_iso

from conftest import write_policy


def _result(ok=True, exit_code=0):
    now = now_iso()
    return CommandResult(
        ok=ok, command="codex", cwd=".", exit_code=exit_code, signal=None,
        stdout="", stderr="", started_at=now, finished_at=now, duration_ms=1,
    )


def _writes_file(command, cwd, timeout_ms=None, env=None):
    (Path(cwd) / "change.txt").write_text("agent output\n")
    return _result()


def _doing(store, agent_id="W1"):
    task = tasks_mod.enqueue_task(store, "Feature", assignee=agent_id)
    assert tasks_mod.claim_task(store, task.id, agent_id)["ok"]
    return task


@pytest.fixture
def execute_loop(store):
    loop = AutoExecuteLoop(store, interval_ms=50, heartbeat_ms=10_000)
    yield loop
    loop.stop()


class TestAutoClaim:
    def test_priority_order(self, store, worker):
        loop = AutoClaimLoop(store)
        unassigned = tasks_mod.enqueue_task(store, "Unassigned")
        assert loop.next_task_for("W1") is unassigned

        mine = tasks_mod.enqueue_task(store, "Mine", assignee="W1")
        assert loop.next_task_for("W1") is mine

        rework = tasks_mod.enqueue_task(store, "Rework", assignee="W1")
        rework.status = "rejected"
        rework.rework_requested = True
        assert loop.next_task_for("W1") is rework

    def test_skips_other_agents_and_reviews(self, store, worker):
        loop = AutoClaimLoop(store)
        tasks_mod.enqueue_task(store, "Theirs", assignee="W2")
        review = tasks_mod.enqueue_task(store, "Review", assignee="W1")
        review.task_type = "tl_review"
        assert loop.next_task_for("W1") is None

    def test_tick_respects_doing_cap(self, store, worker):
        loop = AutoClaimLoop(store, max_doing_per_agent=1)
        first = tasks_mod.enqueue_task(store, "First", assignee="W1")
        second = tasks_mod.enqueue_task(store, "Second", assignee="W1")

        loop.tick()
        assert first.status == "doing"
        assert second.status == "todo"
        loop.tick()
        assert second.status == "todo"

    def test_tick_records_claim_failure(self, store, tmp_dir):
        (tmp_dir / "plain").mkdir()
        register_worker(store, "W1", str(tmp_dir / "plain"))
        task = tasks_mod.enqueue_task(store, "Feature", assignee="W1")
        AutoClaimLoop(store).tick()
        assert task.status == "blocked"
        assert store.activity[-1].action == "auto_claim_failed"

    def test_start_stop(self, store):
        loop = AutoClaimLoop(store, interval_ms=20)
        loop.start()
        assert loop.running
        loop.stop()
        assert not loop.running
        assert store.activity[0].action == "auto_claim_loop_started"


class TestImplementationStage:
    def test_runs_agent_with_env_and_submits(self, store, worker, execute_loop):
        task = _doing(store)
        with patch("agent_orchestrator.core.loops.run_command", side_effect=_writes_file) as run:
            execute_loop.process_task(task.id)

        command, cwd = run.call_args.args[:2]
        assert command.endswith(SKIP_GIT_CHECK)
        assert command.startswith(f"{worker.codex_cmd} exec ")
        assert run.call_args.kwargs["env"] == agent_env(worker)
        assert cwd.endswith(f"W1__{task.id}")
        assert task.status == "in_review"
        assert store.run_meta[task.id].provenance_ok
        assert "worker_execution_succeeded" in [e.action for e in store.activity]

    def test_command_failure_blocks(self, store, worker, execute_loop):
        task = _doing(store)
        with patch("agent_orchestrator.core.loops.run_command", return_value=_result(False, 2)):
            execute_loop.process_task(task.id)
        assert task.status == "blocked"
        assert store.activity[-1].action == "worker_execution_failed"

    def test_no_changes_blocks(self, store, worker, execute_loop):
        task = _doing(store)
        with patch("agent_orchestrator.core.loops.run_command", return_value=_result()):
            execute_loop.process_task(task.id)
        assert task.status == "blocked"
        assert task.rework_reason == "no changes produced"

    def test_invalid_worktree_blocks(self, store, worker, execute_loop):
        task = _doing(store)
        invalid = {"ok": False, "error": "WORKTREE_BRANCH_MISMATCH", "worktree_path": "/x", "branch": "b"}
        with patch("agent_orchestrator.core.loops.validate_task_worktree", return_value=invalid), \
                patch("agent_orchestrator.core.loops.run_command") as run:
            execute_loop.process_task(task.id)
        run.assert_not_called()
        assert task.status == "blocked"

    def test_verify_key_missing_blocks(self, store, worker):
        loop = AutoExecuteLoop(store, auto_verify=True)
        task = _doing(store)
        with patch("agent_orchestrator.core.loops.run_command", side_effect=_writes_file):
            loop.process_task(task.id)
        assert task.status == "blocked"
        assert task.rework_reason == "verify command key not found"

    def test_verify_failure_rejects(self, store, git_repo):
        write_policy(git_repo)
        register_worker(store, "W1", str(git_repo), role="developer", verify_command_key="fail")
        loop = AutoExecuteLoop(store, auto_verify=True)
        task = _doing(store)

        def fake(command, cwd, timeout_ms=None, env=None):
            if command == "exit 3":
                return _result(False, 3)
            return _writes_file(command, cwd)

        with patch("agent_orchestrator.core.loops.run_command", side_effect=fake):
            loop.process_task(task.id)
        assert task.status == "rejected"
        assert task.rework_count == 1
        assert "worker_verify_failed" in [e.action for e in store.activity]

    def test_auto_accept_integrates(self, store, worker, git_repo):
        loop = AutoExecuteLoop(store, auto_accept=True)
        task = _doing(store)
        with patch("agent_orchestrator.core.loops.run_command", side_effect=_writes_file):
            loop.process_task(task.id)
        assert task.status == "done"
        assert (git_repo / "change.txt").exists()


class TestReviewStage:
    def _in_review(self, team):
        task = _doing(team)
        tasks_mod.submit_task(team, task.id, "W1")
        return task

    def test_missing_decision_rejects(self, team):
        loop = AutoExecuteLoop(team)
        task = self._in_review(team)
        with patch("agent_orchestrator.core.loops.run_command", return_value=_result()) as run:
            loop.process_task(task.id)
        assert run.call_args.args[1].endswith(f"W1__{task.id}")
        assert task.status == "rejected"
        actions = [e.action for e in team.activity]
        assert "review_execution_started" in actions
        assert "review_decision_missing" in actions

    def test_decision_recorded_by_reviewer(self, team):
        loop = AutoExecuteLoop(team)
        task = self._in_review(team)

        def reviewer_accepts(command, cwd, timeout_ms=None, env=None):
            accept_task_with_policy(team, task.id, agent_id="TL")
            return _result()

        with patch("agent_orchestrator.core.loops.run_command", side_effect=reviewer_accepts):
            loop.process_task(task.id)
        assert task.status == "wait_accept"
        assert "review_decision_missing" not in [e.action for e in team.activity]

    def _reviewer_records(self, task, status, **fields):
        def run(command, cwd, timeout_ms=None, env=None):
            state_file = Path(env["AO_STATE_FILE"])
            state_file.parent.mkdir(parents=True, exist_ok=True)
            state_file.write_text(json.dumps({"tasks": [{"id": task.id, "status": status, **fields}]}))
            return _result()

        return run

    def test_decision_from_reviewer_state_file(self, team):
        loop = AutoExecuteLoop(team)
        task = self._in_review(team)
        fake = self._reviewer_records(task, "wait_accept")
        with patch("agent_orchestrator.core.loops.run_command", side_effect=fake):
            loop.process_task(task.id)
        assert task.status == "wait_accept"
        assert find_open_review(team, task.id, "pm_review").assignee == "PM"
        actions = [e.action for e in team.activity]
        assert "review_decision_synced" in actions
        assert "review_decision_missing" not in actions

    def test_rejection_from_reviewer_state_file(self, team):
        loop = AutoExecuteLoop(team)
        task = self._in_review(team)
        fake = self._reviewer_records(task, "rejected", rework_reason="missing tests")
        with patch("agent_orchestrator.core.loops.run_command", side_effect=fake):
            loop.process_task(task.id)
        assert task.status == "rejected"
        assert task.rework_reason == "missing tests"
        assert "review_decision_missing" not in [e.action for e in team.activity]

    def test_pm_reviews_wait_accept(self, team):
        loop = AutoExecuteLoop(team)
        task = self._in_review(team)
        accept_task_with_policy(team, task.id)
        with patch("agent_orchestrator.core.loops.run_command", return_value=_result()):
            loop.process_task(task.id)
        started = next(e for e in team.activity if e.action == "review_execution_started")
        assert started.agent_id == "PM"


class TestDispatch:
    def test_each_state_dispatched_once(self, store, execute_loop):
        task = tasks_mod.enqueue_task(store, "Feature", assignee="W1")
        task.status = "doing"
        with patch.object(execute_loop, "process_task") as process:
            execute_loop.tick()
            execute_loop.wait_idle(timeout=5)
            execute_loop.tick()
            execute_loop.wait_idle(timeout=5)
            assert process.call_count == 1

            task.updated_at = "later"
            execute_loop.tick()
            execute_loop.wait_idle(timeout=5)
            assert process.call_count == 2

    def test_skips_todo_and_reviews(self, store, execute_loop):
        tasks_mod.enqueue_task(store, "Todo")
        review = tasks_mod.enqueue_task(store, "Review")
        review.task_type = "tl_review"
        review.status = "doing"
        with patch.object(execute_loop, "process_task") as process:
            execute_loop.tick()
            execute_loop.wait_idle(timeout=5)
        process.assert_not_called()

    def test_dispatches_after_restart(self, store, execute_loop):
        task = tasks_mod.enqueue_task(store, "Feature", assignee="W1")
        task.status = "doing"
        with patch.object(execute_loop, "process_task") as process:
            execute_loop.tick()
            execute_loop.wait_idle(timeout=5)
            execute_loop.stop()

            execute_loop.start()
            assert execute_loop.running
            execute_loop.stop()

            task.updated_at = "later"
            execute_loop.tick()
            execute_loop.wait_idle(timeout=5)
            assert process.call_count == 2
