"""Story workflows: clarifying questions, decomposition into role-assigned tasks, execution."""

import re

from agent_orchestrator.core.prompts import build_story_task_prompt
from agent_orchestrator.core.roles import load_agent_roles, pick_pm
from agent_orchestrator.core.runs import run_worker_task
from agent_orchestrator.db.ids import issue_id
from agent_orchestrator.db.models import AgentRoleProfile, RoleKind, StoryWorkflow, Task, now_iso

MAX_CLAUSES = 3
MAX_QUESTIONS = 3
RUNNABLE_STATUSES = ("todo", "doing", "rejected")

_CLAUSE_SPLIT = re.compile(r"\n|。|\.")

# (cues that make the question unnecessary, question)
QUESTION_RULES = [
    (
        ("acceptance", "done when", "受け入れ", "完了条件"),
        "What are the concrete acceptance criteria for this story?",
    ),
    (
        ("scope", "out of scope", "non-functional", "対象外", "非機能"),
        "Is anything explicitly out of scope for this change?",
    ),
    (
        ("constraint", "compatib", "制約", "互換"),
        "Are there technical constraints (allowed libraries, forbidden changes, compatibility requirements)?",
    ),
]

FALLBACK_TITLE = "Implementation"
FALLBACK_DESCRIPTION = "Implement the requirements of the story"
ACCEPTANCE_TITLE = "Inspection/Acceptance"
ACCEPTANCE_DESCRIPTION = "Inspect the resulting changes and decide whether to accept them"


def build_clarifying_questions(story: str) -> list[dict]:
    """Questions for details the story does not mention, at most three."""
    text = story.lower()
    questions = [
        {"id": issue_id("q"), "question": question, "answer": None}
        for cues, question in QUESTION_RULES
        if not any(cue in text for cue in cues)
    ]
    return questions[:MAX_QUESTIONS]


def _split_clauses(story: str) -> list[str]:
    clauses = [c.strip() for c in _CLAUSE_SPLIT.split(story)]
    return [c for c in clauses if c][:MAX_CLAUSES]


def build_workflow_tasks(story: str, roles: list[AgentRoleProfile]) -> list[Task]:
    """Split a story into implementation tasks plus one acceptance task.

    Implementation tasks go round-robin to developer and tech-lead roles
    (every role when there are none). The acceptance task goes to the first
    PM, else the first QA role, else the first implementer.
    """
    developers = [r for r in roles if r.kind in (RoleKind.DEVELOPER, RoleKind.TECH_LEAD)]
    implementers = developers or list(roles)
    fallback = implementers[0].agent_id if implementers else None

    tasks = [
        Task(
            id=issue_id("storytask"),
            title=f"{FALLBACK_TITLE} {i + 1}",
            description=clause,
            assignee=implementers[i % len(implementers)].agent_id if implementers else None,
        )
        for i, clause in enumerate(_split_clauses(story))
    ]
    if not tasks:
        tasks.append(
            Task(
                id=issue_id("storytask"),
                title=FALLBACK_TITLE,
                description=FALLBACK_DESCRIPTION,
                assignee=fallback,
            )
        )

    reviewer = pick_pm(roles) or next(
        (r for r in roles if r.kind == RoleKind.QA), None
    )
    tasks.append(
        Task(
            id=issue_id("storytask"),
            title=ACCEPTANCE_TITLE,
            description=ACCEPTANCE_DESCRIPTION,
            assignee=reviewer.agent_id if reviewer else fallback,
        )
    )
    return tasks


def _apply_answers(workflow: StoryWorkflow, answers: list[dict]) -> int:
    applied = 0
    by_id = {a.get("question_id"): (a.get("answer") or "").strip() for a in answers}
    for q in workflow.questions:
        answer = by_id.get(q["id"])
        if answer:
            q["answer"] = answer
            applied += 1
    return applied


def _unresolved(workflow: StoryWorkflow) -> list[dict]:
    return [q for q in workflow.questions if not (q.get("answer") or "").strip()]


def _ensure_roles(store, workflow: StoryWorkflow, repo_path: str | None) -> list[AgentRoleProfile]:
    with store.lock:
        roles = list(store.roles.values())
        if roles:
            return roles
        if not repo_path:
            first = next(iter(store.workers.values()), None)
            repo_path = first.repo_path if first else None
    if not repo_path:
        return []
    loaded = load_agent_roles(store, repo_path)
    if not loaded["ok"]:
        return []
    store.add_event(
        "system",
        "load_roles_md_auto",
        f"loaded {len(loaded['roles'])} role(s) from {loaded['path']}",
        workflow_id=workflow.id,
    )
    with store.lock:
        return list(store.roles.values())


def _set_status(store, workflow: StoryWorkflow, status: str):
    with store.lock:
        workflow.status = status
        workflow.updated_at = now_iso()


def _workflow_tasks(store, workflow: StoryWorkflow) -> list[Task]:
    return [t for t in (store.find_task(tid) for tid in workflow.task_ids) if t]


def _execute_subtask(store, workflow: StoryWorkflow, task: Task, auto_verify: bool, base_branch: str | None):
    store.add_event(
        "agent",
        "subtask_start",
        f"{task.title}: {task.description}",
        agent_id=task.assignee,
        workflow_id=workflow.id,
    )
    if not task.assignee or task.assignee not in store.workers:
        with store.lock:
            task.status = "blocked"
            task.rework_reason = f"worker not found: {task.assignee}"
            store.touch(task)
        store.add_event(
            "agent", "subtask_failed", f"{task.title}: worker not found", task.assignee, workflow.id
        )
        return

    profile = store.roles.get(task.assignee)
    result = run_worker_task(
        store,
        task.assignee,
        task.id,
        build_story_task_prompt(workflow.story, task, profile),
        base_branch=base_branch,
        require_verify=auto_verify,
        verify_command_key=(profile.verify_command_key if profile else None) or "test",
    )
    store.add_event(
        "agent",
        "subtask_complete" if result["ok"] else "subtask_failed",
        f"{task.title} -> {task.status}",
        agent_id=task.assignee,
        workflow_id=workflow.id,
    )


def _report(workflow: StoryWorkflow, tasks: list[Task]) -> str:
    counts = {}
    for t in tasks:
        counts[t.status] = counts.get(t.status, 0) + 1
    parts = [f"workflow={workflow.id}", f"status={workflow.status}"]
    parts += [f"{status}={n}/{len(tasks)}" for status, n in sorted(counts.items())]
    return "; ".join(parts)


def run_story_workflow(
    store,
    workflow_id: str | None = None,
    story: str | None = None,
    answers: list[dict] | None = None,
    auto_execute: bool = False,
    auto_verify: bool = True,
    base_branch: str | None = None,
    repo_path: str | None = None,
) -> dict:
    """Advance a story workflow as far as it can go in one call.

    A new workflow first asks clarifying questions and waits for answers.
    Once every question is answered the story is decomposed into tasks, and
    with ``auto_execute`` each task is run through its assigned worker.
    """
    workflow = store.find_workflow(workflow_id) if workflow_id else None
    if workflow_id and workflow is None and not story:
        return {"ok": False, "error": "WORKFLOW_NOT_FOUND", "workflow_id": workflow_id}

    if workflow is None:
        if not story or not story.strip():
            return {"ok": False, "error": "STORY_REQUIRED"}
        now = now_iso()
        workflow = StoryWorkflow(
            id=issue_id("wf"),
            story=story,
            questions=build_clarifying_questions(story),
            created_at=now,
            updated_at=now,
        )
        with store.lock:
            store.workflows.append(workflow)
        store.add_event("workflow", "workflow_created", "created from story request", workflow_id=workflow.id)

    if answers:
        with store.lock:
            applied = _apply_answers(workflow, answers)
            workflow.updated_at = now_iso()
        store.add_event("workflow", "answers_applied", f"applied {applied} answer(s)", workflow_id=workflow.id)

    if unresolved := _unresolved(workflow):
        _set_status(store, workflow, "awaiting_user")
        return {"ok": True, "workflow": workflow, "questions": unresolved}

    if not workflow.task_ids:
        roles = _ensure_roles(store, workflow, repo_path)
        if not roles:
            return {
                "ok": False,
                "error": "AGENT_ROLES_REQUIRED",
                "workflow_id": workflow.id,
                "hint": "prepare <repo>/.agent/roles.md and call load_agent_roles",
            }
        tasks = build_workflow_tasks(workflow.story, roles)
        with store.lock:
            for task in tasks:
                task.title = f"[{workflow.id}] {task.title}"
                task.workflow_id = workflow.id
                store.add_task(task)
            workflow.task_ids = [t.id for t in tasks]
            workflow.updated_at = now_iso()
        store.add_event("workflow", "tasks_decomposed", f"created {len(tasks)} task(s)", workflow_id=workflow.id)

    if not auto_execute:
        _set_status(store, workflow, "ready")
        return {"ok": True, "workflow": workflow, "tasks": _workflow_tasks(store, workflow)}

    _set_status(store, workflow, "executing")
    for task in _workflow_tasks(store, workflow):
        if task.status in RUNNABLE_STATUSES:
            _execute_subtask(store, workflow, task, auto_verify, base_branch)

    tasks = _workflow_tasks(store, workflow)
    _set_status(store, workflow, "blocked" if any(t.status == "blocked" for t in tasks) else "verified")
    with store.lock:
        workflow.report = _report(workflow, tasks)
    store.add_event("workflow", "workflow_reported", workflow.report, workflow_id=workflow.id)
    if workflow.status == "verified":
        _set_status(store, workflow, "reported")
    return {"ok": True, "workflow": workflow, "tasks": tasks, "report": workflow.report}
