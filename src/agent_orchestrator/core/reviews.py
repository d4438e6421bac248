"""Follow-on review tasks: tech-lead review, PM review and tech-lead merge."""

from agent_orchestrator.core.roles import find_agent_by_kind
from agent_orchestrator.db.ids import issue_id
from agent_orchestrator.db.models import RoleKind, Task

OPEN_REVIEW_STATUSES = ("todo", "doing", "blocked")

REVIEW_SPECS = {
    "tl_review": (RoleKind.TECH_LEAD, "[TL Review]"),
    "pm_review": (RoleKind.PM, "[PM Review]"),
    "tl_merge": (RoleKind.TECH_LEAD, "[TL Merge]"),
}


def find_open_review(store, target_id: str, task_type: str) -> Task | None:
    with store.lock:
        return next(
            (
                t
                for t in store.tasks
                if t.task_type == task_type
                and t.review_target_task_id == target_id
                and t.status in OPEN_REVIEW_STATUSES
            ),
            None,
        )


def queue_review_task(store, target: Task, task_type: str) -> Task | None:
    """Queue a review task for ``target`` assigned by role.

    Review tasks never spawn further reviews. When no agent holds the
    required role the step is skipped and a ``<type>_queue_skipped`` event
    is recorded. An existing open review of the same type is reused.
    """
    if target.is_review:
        return None
    kind, prefix = REVIEW_SPECS[task_type]

    reviewer = find_agent_by_kind(store, kind)
    if reviewer is None:
        store.add_event(
            "system",
            f"{task_type}_queue_skipped",
            f"{kind.value} role not found for {target.id}",
            workflow_id=target.workflow_id,
        )
        return None

    with store.lock:
        existing = find_open_review(store, target.id, task_type)
        if existing:
            return existing
        review = store.add_task(
            Task(
                id=issue_id("review"),
                title=f"{prefix} {target.title}",
                description=f"Review target={target.id}\n{target.description}".strip(),
                task_type=task_type,
                review_target_task_id=target.id,
                assignee=reviewer.agent_id,
                workflow_id=target.workflow_id,
            )
        )

    store.add_event(
        "workflow",
        f"{task_type}_queued",
        f"{review.id} for {target.id} assigned to {reviewer.agent_id}",
        agent_id=reviewer.agent_id,
        workflow_id=target.workflow_id,
    )
    return review


def close_review_tasks(store, target_id: str, task_type: str | None = None) -> list[Task]:
    """Mark open review tasks for a target as done."""
    closed = []
    with store.lock:
        for t in store.tasks:
            if t.review_target_task_id != target_id or not t.is_review:
                continue
            if task_type and t.task_type != task_type:
                continue
            if t.status == "done":
                continue
            t.status = "done"
            store.touch(t)
            closed.append(t)
    for t in closed:
        store.add_event(
            "workflow",
            "review_task_closed",
            f"{t.id} closed for {target_id}",
            agent_id=t.assignee,
            workflow_id=t.workflow_id,
        )
    return closed
