"""Tests for the task lifecycle and review queueing."""

from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.acceptance import accept_task_with_policy
from agent_orchestrator.core.reviews import find_open_review
from agent_orchestrator.db.models import TaskRunMeta


def _claimed(store, title="Feature", agent_id="W1"):
    task = tasks_mod.enqueue_task(store, title, assignee=agent_id)
    result = tasks_mod.claim_task(store, task.id, agent_id)
    assert result["ok"], result
    return task


def _actions(store):
    return [e.action for e in store.activity]


class TestEnqueueAndQuery:
    def test_enqueue(self, store):
        task = tasks_mod.enqueue_task(store, "Add login", "OAuth flow")
        assert task.status == "todo"
        assert task.id.startswith("task_")
        assert task.task_type == "implementation"
        assert tasks_mod.get_task(store, task.id) is task
        assert _actions(store) == ["task_enqueued"]

    def test_list_filters(self, store):
        a = tasks_mod.enqueue_task(store, "A", assignee="W1")
        tasks_mod.enqueue_task(store, "B", assignee="W2")
        assert tasks_mod.list_tasks(store, assignee="W1") == [a]
        assert len(tasks_mod.list_tasks(store, status="todo")) == 2
        assert tasks_mod.list_tasks(store, status="done") == []

    def test_status_summary(self, store):
        tasks_mod.enqueue_task(store, "A")
        summary = tasks_mod.status_summary(store)
        assert summary["counts"]["todo"] == 1
        assert summary["total"] == 1
        assert set(summary["counts"]) >= {"todo", "doing", "wait_accept", "done"}

    def test_activity_log_filters_and_text(self, store):
        tasks_mod.enqueue_task(store, "A", assignee="W1", workflow_id="wf_1")
        tasks_mod.enqueue_task(store, "B", assignee="W2")
        log = tasks_mod.activity_log(store, workflow_id="wf_1", fmt="text")
        assert log["count"] == 1
        assert "task_enqueued" in log["text"]
        assert tasks_mod.activity_log(store, limit=0)["count"] == 1

    def test_assign(self, store):
        task = tasks_mod.enqueue_task(store, "A")
        assert tasks_mod.assign_task(store, task.id, "W9")["task"].assignee == "W9"
        assert tasks_mod.assign_task(store, "nope", "W9")["error"] == "TASK_NOT_FOUND"


class TestClaim:
    def test_claim_creates_worktree(self, store, worker):
        task = tasks_mod.enqueue_task(store, "Feature")
        result = tasks_mod.claim_task(store, task.id, "W1")
        assert result["ok"]
        assert task.status == "doing"
        assert task.assignee == "W1"
        assert result["branch"] == f"agent/W1/{task.id}"

    def test_not_found(self, store, worker):
        assert tasks_mod.claim_task(store, "missing", "W1")["error"] == "TASK_NOT_FOUND"

    def test_unknown_worker(self, store):
        task = tasks_mod.enqueue_task(store, "Feature")
        assert tasks_mod.claim_task(store, task.id, "ghost")["error"] == "WORKER_NOT_FOUND"

    def test_assignee_mismatch(self, store, worker):
        task = tasks_mod.enqueue_task(store, "Feature", assignee="W2")
        result = tasks_mod.claim_task(store, task.id, "W1")
        assert result["error"] == "ASSIGNEE_MISMATCH"
        assert task.status == "todo"

    def test_invalid_state(self, store, worker):
        task = _claimed(store)
        assert tasks_mod.claim_task(store, task.id, "W1")["error"] == "INVALID_STATE"

    def test_rework_priority(self, store, worker):
        rework = _claimed(store, "Rework me")
        tasks_mod.mark_rejected(store, rework, "needs tests")
        fresh = tasks_mod.enqueue_task(store, "Fresh", assignee="W1")

        result = tasks_mod.claim_task(store, fresh.id, "W1")
        assert result["error"] == "REWORK_PRIORITY_REQUIRED"
        assert result["prioritized_task_id"] == rework.id

        assert tasks_mod.claim_task(store, rework.id, "W1")["ok"]
        assert not rework.rework_requested
        assert rework.rework_count == 1

    def test_multiple_rework_items_claimable(self, store, worker):
        first = _claimed(store, "First")
        second = _claimed(store, "Second")
        tasks_mod.mark_rejected(store, first, "needs tests")
        tasks_mod.mark_rejected(store, second, "needs docs")
        fresh = tasks_mod.enqueue_task(store, "Fresh", assignee="W1")

        assert tasks_mod.claim_task(store, fresh.id, "W1")["error"] == "REWORK_PRIORITY_REQUIRED"
        assert tasks_mod.claim_task(store, second.id, "W1")["ok"]
        assert tasks_mod.claim_task(store, first.id, "W1")["ok"]
        assert first.status == second.status == "doing"

    def test_not_a_repo_blocks(self, store, tmp_dir):
        from agent_orchestrator.core.workers import register_worker

        (tmp_dir / "plain").mkdir()
        register_worker(store, "W1", str(tmp_dir / "plain"))
        task = tasks_mod.enqueue_task(store, "Feature")
        result = tasks_mod.claim_task(store, task.id, "W1")
        assert result["error"] == "WORKTREE_SETUP_FAILED"
        assert task.status == "blocked"


class TestSubmit:
    def test_submit_queues_tl_review(self, team):
        task = _claimed(team)
        result = tasks_mod.submit_task(team, task.id, "W1", "done with it")
        assert result["ok"]
        assert task.status == "in_review"
        review = find_open_review(team, task.id, "tl_review")
        assert review.assignee == "TL"
        assert review.title == f"[TL Review] {task.title}"
        assert "tl_review_queued" in _actions(team)

    def test_submit_without_tech_lead_skips_review(self, store, worker):
        task = _claimed(store)
        tasks_mod.submit_task(store, task.id, "W1")
        assert "tl_review_queue_skipped" in _actions(store)
        assert len(store.tasks) == 1

    def test_submit_wrong_agent(self, store, worker):
        task = _claimed(store)
        assert tasks_mod.submit_task(store, task.id, "W2")["error"] == "ASSIGNEE_MISMATCH"

    def test_submit_requires_doing(self, store, worker):
        task = tasks_mod.enqueue_task(store, "Feature", assignee="W1")
        assert tasks_mod.submit_task(store, task.id, "W1")["error"] == "INVALID_STATE"

    def test_submit_requires_worktree(self, store, worker):
        task = _claimed(store)
        from agent_orchestrator.core.worktrees import cleanup_worktree

        cleanup_worktree(store, "W1", task.id, force=True, archive_before_force=False)
        result = tasks_mod.submit_task(store, task.id, "W1")
        assert result["error"] == "WORKTREE_REQUIRED"
        assert result["reason"] == "WORKTREE_NOT_FOUND"
        assert task.status == "doing"

    def test_review_tasks_never_chain(self, team):
        task = _claimed(team)
        tasks_mod.submit_task(team, task.id, "W1")
        review = find_open_review(team, task.id, "tl_review")
        tasks_mod.mark_submitted(team, review, "TL")
        assert len(team.tasks) == 2


class TestReject:
    def test_reject_from_wait_accept(self, team):
        task = _claimed(team)
        tasks_mod.submit_task(team, task.id, "W1")
        accept_task_with_policy(team, task.id)
        assert task.status == "wait_accept"
        pm_review = find_open_review(team, task.id, "pm_review")
        assert pm_review.assignee == "PM"

        result = tasks_mod.reject_task(team, task.id, "missing edge case")
        assert result["ok"]
        assert task.status == "rejected"
        assert task.rework_requested
        assert task.rework_count == 1
        assert task.rework_reason == "missing edge case"
        assert pm_review.status == "done"
        assert "planning_reject_task" in _actions(team)

    def test_reject_todo_is_invalid(self, store):
        task = tasks_mod.enqueue_task(store, "A")
        assert tasks_mod.reject_task(store, task.id, "no")["error"] == "INVALID_STATE"


class TestSetStatus:
    def _wait_accept(self, store):
        task = tasks_mod.enqueue_task(store, "A")
        task.status = "wait_accept"
        return task

    def test_done_requires_wait_accept(self, store):
        task = tasks_mod.enqueue_task(store, "A")
        result = tasks_mod.set_task_status(store, task.id, "done")
        assert result["error"] == "INVALID_TRANSITION"
        assert task.status == "todo"

    def test_done_without_run_meta(self, store):
        task = self._wait_accept(store)
        result = tasks_mod.set_task_status(store, task.id, "done")
        assert result["ok"]
        assert result["previous_status"] == "wait_accept"

    def test_provenance_required(self, store):
        task = self._wait_accept(store)
        store.run_meta[task.id] = TaskRunMeta(task.id, "W1", "/wt", "b", "main", provenance_ok=False)
        assert tasks_mod.set_task_status(store, task.id, "done")["error"] == "PROVENANCE_REQUIRED"

    def test_verify_required(self, store):
        task = self._wait_accept(store)
        store.run_meta[task.id] = TaskRunMeta(
            task.id, "W1", "/wt", "b", "main", provenance_ok=True, verify_required=True, verified=False
        )
        assert tasks_mod.set_task_status(store, task.id, "done")["error"] == "VERIFY_REQUIRED"

    def test_other_status_unrestricted(self, store):
        task = tasks_mod.enqueue_task(store, "A")
        assert tasks_mod.set_task_status(store, task.id, "blocked")["ok"]
        assert task.status == "blocked"
        assert "task_status_set" in _actions(store)

    def test_invalid_status(self, store):
        task = tasks_mod.enqueue_task(store, "A")
        assert tasks_mod.set_task_status(store, task.id, "finished")["error"] == "INVALID_STATUS"


class TestReportProgress:
    def test_report(self, store, worker):
        task = _claimed(store)
        result = tasks_mod.report_progress(store, task.id, "W1", "  halfway there  ")
        assert result["ok"]
        assert result["event"].action == "worker_progress_reported"
        assert result["event"].detail.endswith("halfway there")

    def test_empty_and_too_long(self, store, worker):
        task = _claimed(store)
        assert tasks_mod.report_progress(store, task.id, "W1", "   ")["error"] == "INVALID_MESSAGE"
        assert tasks_mod.report_progress(store, task.id, "W1", "x" * 501)["error"] == "INVALID_MESSAGE"

    def test_wrong_agent_or_state(self, store, worker):
        task = _claimed(store)
        assert tasks_mod.report_progress(store, task.id, "W2", "hi")["error"] == "ASSIGNEE_MISMATCH"
        todo = tasks_mod.enqueue_task(store, "B")
        assert tasks_mod.report_progress(store, todo.id, "W1", "hi")["error"] == "INVALID_STATE"
