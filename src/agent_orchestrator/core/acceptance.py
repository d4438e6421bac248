"""Stage-driven acceptance and cherry-pick integration onto the target branch.

``accept_task_with_policy`` advances a task one stage per call:

    in_review   -> wait_accept   tech-lead accept, queues PM review
    wait_accept -> accepted      PM accept, queues tech-lead merge
    accepted    -> done          integrates the worktree commit

Integration never leaves the task half-advanced: on any failure the task
stays ``accepted`` and the call can be retried after a manual fix.
"""

from dataclasses import dataclass
from enum import Enum

from agent_orchestrator.core.reviews import close_review_tasks, queue_review_task
from agent_orchestrator.core.tasks import check_done_gate
from agent_orchestrator.core.worktrees import validate_task_worktree
from agent_orchestrator.db.models import Worker
from agent_orchestrator.integrations.git import (
    GitError,
    cherry_pick,
    commit_all,
    get_current_branch,
    get_head_commit,
    get_status,
    is_ancestor,
    is_patch_applied,
)

DEFAULT_TARGET_BRANCH = "main"


class IntegrationStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    CONFLICT = "conflict"
    REFUSED = "refused"


@dataclass
class IntegrationOutcome:
    status: IntegrationStatus
    commit: str | None = None
    reason: str | None = None
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (IntegrationStatus.APPLIED, IntegrationStatus.ALREADY_APPLIED)


def commit_message(task_id: str) -> str:
    return f"agent-orchestrator: apply {task_id}"


def _refused(reason: str, detail: str | None = None, commit: str | None = None) -> IntegrationOutcome:
    return IntegrationOutcome(IntegrationStatus.REFUSED, commit=commit, reason=reason, detail=detail)


def integrate_task(worker: Worker, agent_id: str, task_id: str, target_branch: str) -> IntegrationOutcome:
    """Commit pending worktree changes and cherry-pick them onto the target branch."""
    check = validate_task_worktree(worker, agent_id, task_id)
    if not check["ok"]:
        return _refused("worktree_invalid", check["error"])
    worktree = check["worktree_path"]

    try:
        if get_status(worktree):
            commit_all(worktree, commit_message(task_id))
        commit = get_head_commit(worktree)
    except GitError as e:
        return _refused("commit_failed", str(e))

    repo = worker.repo_path
    try:
        current = get_current_branch(repo)
        dirty = get_status(repo, untracked=False)
    except GitError as e:
        return _refused("target_check_failed", str(e), commit)
    if current != target_branch:
        return _refused("target_branch_mismatch", f"expected {target_branch}, found {current}", commit)
    if dirty:
        return _refused("target_dirty", dirty, commit)

    try:
        if is_ancestor(repo, commit) or is_patch_applied(repo, commit):
            return IntegrationOutcome(IntegrationStatus.ALREADY_APPLIED, commit=commit)
    except GitError as e:
        return _refused("ancestry_check_failed", str(e), commit)

    try:
        cherry_pick(repo, commit)
    except GitError as e:
        return IntegrationOutcome(
            IntegrationStatus.CONFLICT, commit=commit, reason="cherry_pick_failed", detail=str(e)
        )
    return IntegrationOutcome(IntegrationStatus.APPLIED, commit=commit)


def _integration_dict(enabled: bool, status: str, target_branch: str, commit: str | None = None) -> dict:
    return {"enabled": enabled, "status": status, "target_branch": target_branch, "commit": commit}


def _advance(store, task, expected: str, new_status: str) -> bool:
    with store.lock:
        if task.status != expected:
            return False
        task.status = new_status
        store.touch(task)
        return True


def accept_task_with_policy(
    store,
    task_id: str,
    target_branch: str = DEFAULT_TARGET_BRANCH,
    agent_id: str | None = None,
) -> dict:
    """Advance a task by one acceptance stage."""
    task = store.find_task(task_id)
    if not task:
        return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
    stage = task.status

    if stage == "in_review":
        if not _advance(store, task, "in_review", "wait_accept"):
            return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
        store.add_event(
            "workflow",
            "techlead_accept_task",
            f"{task_id} accepted by tech lead",
            agent_id=agent_id,
            workflow_id=task.workflow_id,
        )
        close_review_tasks(store, task_id, "tl_review")
        queue_review_task(store, task, "pm_review")
        return {"ok": True, "task": task, "integration": _integration_dict(False, "pending", target_branch)}

    if stage == "wait_accept":
        if not _advance(store, task, "wait_accept", "accepted"):
            return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
        store.add_event(
            "workflow",
            "planning_accept_task",
            f"{task_id} accepted by planning",
            agent_id=agent_id,
            workflow_id=task.workflow_id,
        )
        close_review_tasks(store, task_id, "pm_review")
        queue_review_task(store, task, "tl_merge")
        return {"ok": True, "task": task, "integration": _integration_dict(False, "pending", target_branch)}

    if stage == "accepted":
        return _integrate_accepted(store, task, target_branch, agent_id)

    if stage == "done":
        return {
            "ok": True,
            "task": task,
            "integration": _integration_dict(True, IntegrationStatus.ALREADY_APPLIED.value, target_branch),
        }

    return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": stage}


def _integrate_accepted(store, task, target_branch: str, agent_id: str | None) -> dict:
    if gate := check_done_gate(store, task.id):
        return gate

    def failed(reason: str, detail: str | None, outcome: IntegrationOutcome | None = None) -> dict:
        store.add_event(
            "workflow",
            "task_auto_integrate_failed",
            f"{task.id} {reason}: {detail or ''}".strip(),
            agent_id=agent_id,
            workflow_id=task.workflow_id,
        )
        status = outcome.status.value if outcome else IntegrationStatus.REFUSED.value
        return {
            "ok": False,
            "error": "AUTO_INTEGRATE_FAILED",
            "task_id": task.id,
            "reason": reason,
            "detail": detail,
            "task": task,
            "integration": _integration_dict(True, status, target_branch, outcome.commit if outcome else None),
        }

    worker = store.workers.get(task.assignee) if task.assignee else None
    if worker is None:
        return failed("worker_not_found", f"assignee={task.assignee}")

    outcome = integrate_task(worker, task.assignee, task.id, target_branch)
    if not outcome.succeeded:
        return failed(outcome.reason or outcome.status.value, outcome.detail, outcome)

    if not _advance(store, task, "accepted", "done"):
        return failed("state_changed", f"status is {task.status}", outcome)

    store.add_event(
        "workflow",
        "task_auto_integrated",
        f"{task.id} {outcome.status.value} commit={outcome.commit} onto {target_branch}",
        agent_id=agent_id,
        workflow_id=task.workflow_id,
    )
    close_review_tasks(store, task.id, "tl_merge")
    store.add_event("workflow", "task_done", f"{task.id} done", agent_id=agent_id, workflow_id=task.workflow_id)
    return {
        "ok": True,
        "task": task,
        "integration": _integration_dict(True, outcome.status.value, target_branch, outcome.commit),
    }
