"""Task lifecycle: enqueue, claim, submit, reject, status changes and queries."""

from agent_orchestrator.core.reviews import close_review_tasks, queue_review_task
from agent_orchestrator.core.worktrees import ensure_task_worktree, validate_task_worktree
from agent_orchestrator.db.ids import issue_id
from agent_orchestrator.db.models import TASK_STATUSES, Task

CLAIMABLE_STATUSES = ("todo", "rejected")
REJECTABLE_STATUSES = ("in_review", "wait_accept", "accepted")
MAX_PROGRESS_MESSAGE = 500
MAX_ACTIVITY_LIMIT = 200


# ── Queries ──────────────────────────────────────────────────────────────────


def get_task(store, task_id: str) -> Task | None:
    return store.find_task(task_id)


def list_tasks(
    store,
    status: str | None = None,
    assignee: str | None = None,
    workflow_id: str | None = None,
    task_type: str | None = None,
) -> list[Task]:
    """List tasks in creation order, optionally filtered."""
    with store.lock:
        tasks = list(store.tasks)
    if status:
        tasks = [t for t in tasks if t.status == status]
    if assignee:
        tasks = [t for t in tasks if t.assignee == assignee]
    if workflow_id:
        tasks = [t for t in tasks if t.workflow_id == workflow_id]
    if task_type:
        tasks = [t for t in tasks if t.task_type == task_type]
    return tasks


def status_summary(store) -> dict:
    """Counts per status plus the full task list and last command."""
    with store.lock:
        counts = {s: 0 for s in TASK_STATUSES}
        for t in store.tasks:
            counts[t.status] = counts.get(t.status, 0) + 1
        return {
            "ok": True,
            "counts": counts,
            "total": len(store.tasks),
            "tasks": list(store.tasks),
            "last_command": store.last_command,
            "workers": len(store.workers),
            "roles": len(store.roles),
            "persistence_failures": store.persistence_failures,
            "activity_write_failures": store.activity_write_failures,
        }


def activity_log(
    store,
    workflow_id: str | None = None,
    agent_id: str | None = None,
    limit: int = 50,
    fmt: str = "json",
) -> dict:
    """Return the most recent matching activity events (oldest first)."""
    limit = max(1, min(MAX_ACTIVITY_LIMIT, limit))
    with store.lock:
        events = list(store.activity)
    if workflow_id:
        events = [e for e in events if e.workflow_id == workflow_id]
    if agent_id:
        events = [e for e in events if e.agent_id == agent_id]
    events = events[-limit:]

    result = {"ok": True, "count": len(events), "events": events}
    if fmt == "text":
        result["text"] = "\n".join(
            f"{e.timestamp} [{e.type}] {e.action}: {e.detail}" for e in events
        )
    return result


# ── Simple mutations ─────────────────────────────────────────────────────────


def enqueue_task(
    store,
    title: str,
    description: str = "",
    assignee: str | None = None,
    workflow_id: str | None = None,
) -> Task:
    """Add a new implementation task in 'todo'."""
    task = store.add_task(
        Task(
            id=issue_id("task"),
            title=title,
            description=description,
            assignee=assignee,
            workflow_id=workflow_id,
        )
    )
    store.add_event(
        "workflow",
        "task_enqueued",
        f"{task.id} {title}",
        agent_id=assignee,
        workflow_id=workflow_id,
    )
    return task


def assign_task(store, task_id: str, assignee: str) -> dict:
    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
        task.assignee = assignee
        store.touch(task)
    store.add_event(
        "workflow",
        "task_assigned",
        f"{task_id} assigned to {assignee}",
        agent_id=assignee,
        workflow_id=task.workflow_id,
    )
    return {"ok": True, "task": task}


def block_task(store, task_id: str, reason: str, agent_id: str | None = None) -> Task | None:
    """Move a task to 'blocked', keeping the reason on the task."""
    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return None
        task.status = "blocked"
        task.rework_reason = reason
        store.touch(task)
    store.add_event(
        "workflow",
        "task_blocked",
        f"{task_id} blocked: {reason}",
        agent_id=agent_id,
        workflow_id=task.workflow_id,
    )
    return task


def mark_submitted(store, task: Task, agent_id: str, summary: str | None = None) -> Task:
    """Move a task to 'in_review', clear rework flags and queue a tech-lead review."""
    with store.lock:
        task.status = "in_review"
        task.rework_requested = False
        task.rework_reason = None
        store.touch(task)
    detail = f"{task.id} submitted by {agent_id}"
    if summary:
        detail += f": {summary}"
    store.add_event("workflow", "task_submitted", detail, agent_id=agent_id, workflow_id=task.workflow_id)
    queue_review_task(store, task, "tl_review")
    return task


def mark_rejected(store, task: Task, reason: str, agent_id: str | None = None) -> Task:
    """Send a task back for rework and close its open review tasks."""
    with store.lock:
        task.status = "rejected"
        task.rework_requested = True
        task.rework_count += 1
        task.rework_reason = reason
        store.touch(task)
    store.add_event(
        "workflow",
        "planning_reject_task",
        f"{task.id} rejected: {reason}",
        agent_id=agent_id,
        workflow_id=task.workflow_id,
    )
    close_review_tasks(store, task.id)
    return task


# ── Lifecycle transitions ────────────────────────────────────────────────────


def _claim_guard(store, task: Task, agent_id: str) -> dict | None:
    if task.status not in CLAIMABLE_STATUSES:
        return {
            "ok": False,
            "error": "INVALID_STATE",
            "task_id": task.id,
            "agent_id": agent_id,
            "status": task.status,
        }
    if task.assignee and task.assignee != agent_id:
        return {
            "ok": False,
            "error": "ASSIGNEE_MISMATCH",
            "task_id": task.id,
            "agent_id": agent_id,
            "assignee": task.assignee,
        }
    if task.rework_requested:
        return None
    prioritized = next(
        (
            t
            for t in store.tasks
            if t.id != task.id
            and t.status in CLAIMABLE_STATUSES
            and t.assignee == agent_id
            and t.rework_requested
        ),
        None,
    )
    if prioritized:
        return {
            "ok": False,
            "error": "REWORK_PRIORITY_REQUIRED",
            "task_id": task.id,
            "agent_id": agent_id,
            "prioritized_task_id": prioritized.id,
        }
    return None


def claim_task(store, task_id: str, agent_id: str) -> dict:
    """Claim a todo/rejected task for an agent and ensure its worktree."""
    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id, "agent_id": agent_id}
        if error := _claim_guard(store, task, agent_id):
            return error
        worker = store.workers.get(agent_id)
        if not worker:
            return {"ok": False, "error": "WORKER_NOT_FOUND", "task_id": task_id, "agent_id": agent_id}

    setup = ensure_task_worktree(worker, agent_id, task_id)
    if not setup["ok"]:
        block_task(store, task_id, f"worktree setup failed: {setup['error']}", agent_id)
        return {
            "ok": False,
            "error": "WORKTREE_SETUP_FAILED",
            "task_id": task_id,
            "agent_id": agent_id,
            "reason": setup["error"],
            "detail": setup.get("detail"),
        }

    with store.lock:
        if error := _claim_guard(store, task, agent_id):
            return error
        task.assignee = agent_id
        task.status = "doing"
        task.rework_requested = False
        store.touch(task)

    store.add_event(
        "workflow",
        "task_claimed",
        f"{task_id} claimed by {agent_id}",
        agent_id=agent_id,
        workflow_id=task.workflow_id,
    )
    return {
        "ok": True,
        "task": task,
        "worktree_path": setup["worktree_path"],
        "branch": setup["branch"],
    }


def submit_task(store, task_id: str, agent_id: str, summary: str | None = None) -> dict:
    """Submit a doing task for review. The task worktree must be intact."""
    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
        if task.status != "doing":
            return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
        if task.assignee != agent_id:
            return {
                "ok": False,
                "error": "ASSIGNEE_MISMATCH",
                "task_id": task_id,
                "assignee": task.assignee,
                "requested_by": agent_id,
            }
        worker = store.workers.get(agent_id)
        if not worker:
            return {"ok": False, "error": "WORKER_NOT_FOUND", "task_id": task_id, "agent_id": agent_id}

    check = validate_task_worktree(worker, agent_id, task_id)
    if not check["ok"]:
        return {
            "ok": False,
            "error": "WORKTREE_REQUIRED",
            "task_id": task_id,
            "reason": check["error"],
            "worktree_path": check["worktree_path"],
            "branch": check["branch"],
        }

    with store.lock:
        if task.status != "doing":
            return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
    mark_submitted(store, task, agent_id, summary)
    return {"ok": True, "task": task}


def reject_task(store, task_id: str, reason: str) -> dict:
    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
        if task.status not in REJECTABLE_STATUSES:
            return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
        mark_rejected(store, task, reason)
    return {"ok": True, "task": task}


def check_done_gate(store, task_id: str) -> dict | None:
    """Error dict when the task's latest run lacks provenance or verification."""
    meta = store.run_meta.get(task_id)
    if meta is None:
        return None
    if not meta.provenance_ok:
        return {"ok": False, "error": "PROVENANCE_REQUIRED", "task_id": task_id, "meta": meta}
    if meta.verify_required and not meta.verified:
        return {"ok": False, "error": "VERIFY_REQUIRED", "task_id": task_id, "meta": meta}
    return None


def set_task_status(store, task_id: str, status: str) -> dict:
    """Manual status override. Moving to 'done' requires 'wait_accept' and the run gate."""
    if status not in TASK_STATUSES:
        return {"ok": False, "error": "INVALID_STATUS", "status": status}

    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
        if status == "done":
            if task.status != "wait_accept":
                return {
                    "ok": False,
                    "error": "INVALID_TRANSITION",
                    "task_id": task_id,
                    "from": task.status,
                    "to": status,
                }
            if gate := check_done_gate(store, task_id):
                return gate
        previous = task.status
        task.status = status
        store.touch(task)

    store.add_event(
        "workflow",
        "task_status_set",
        f"{task_id} {previous} -> {status}",
        agent_id=task.assignee,
        workflow_id=task.workflow_id,
    )
    return {"ok": True, "task": task, "previous_status": previous}


def report_progress(store, task_id: str, agent_id: str, message: str) -> dict:
    """Record a progress note from the agent working a doing task."""
    with store.lock:
        task = store.find_task(task_id)
        if not task:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
        if task.status != "doing":
            return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
        if task.assignee != agent_id:
            return {
                "ok": False,
                "error": "ASSIGNEE_MISMATCH",
                "task_id": task_id,
                "assignee": task.assignee,
                "requested_by": agent_id,
            }
        text = (message or "").strip()
        if not text or len(text) > MAX_PROGRESS_MESSAGE:
            return {
                "ok": False,
                "error": "INVALID_MESSAGE",
                "task_id": task_id,
                "reason": "empty" if not text else f"longer than {MAX_PROGRESS_MESSAGE} characters",
            }
        store.touch(task)

    event = store.add_event(
        "agent",
        "worker_progress_reported",
        f"{task_id} {text}",
        agent_id=agent_id,
        workflow_id=task.workflow_id,
    )
    return {"ok": True, "task": task, "event": event}
