"""Data models for the agent orchestrator."""

from collections import deque
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

TASK_STATUSES = (
    "todo",
    "doing",
    "in_review",
    "wait_accept",
    "accepted",
    "done",
    "rejected",
    "blocked",
)
TASK_TYPES = ("implementation", "tl_review", "pm_review", "tl_merge")
REVIEW_TASK_TYPES = ("tl_review", "pm_review", "tl_merge")
RUN_STATUSES = ("queued", "running", "succeeded", "failed", "canceled")
WORKFLOW_STATUSES = ("awaiting_user", "ready", "executing", "verified", "reported", "blocked")
EVENT_TYPES = ("workflow", "agent", "system")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RoleKind(str, Enum):
    DEVELOPER = "developer"
    TECH_LEAD = "tech_lead"
    PM = "pm"
    QA = "qa"


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = "todo"
    task_type: str = "implementation"
    review_target_task_id: str | None = None
    assignee: str | None = None
    workflow_id: str | None = None
    rework_requested: bool = False
    rework_reason: str | None = None
    rework_count: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_review(self) -> bool:
        return self.task_type in REVIEW_TASK_TYPES


@dataclass
class Worker:
    agent_id: str
    repo_path: str
    worktree_root: str
    codex_cmd: str = "codex"


@dataclass
class AgentRoleProfile:
    agent_id: str
    role: str
    kind: RoleKind = RoleKind.DEVELOPER
    is_pm: bool = False
    focus: str | None = None
    personality: str | None = None
    verify_command_key: str | None = None


@dataclass
class CommandResult:
    ok: bool
    command: str
    cwd: str
    exit_code: int | None
    signal: str | None
    stdout: str
    stderr: str
    started_at: str
    finished_at: str
    duration_ms: int
    timed_out: bool = False


@dataclass
class TaskRunMeta:
    task_id: str
    agent_id: str
    worktree_path: str
    branch: str
    base_branch: str
    diff_length: int = 0
    provenance_ok: bool = False
    verify_required: bool = False
    verify_command_key: str | None = None
    verified: bool = False
    last_run_at: str = ""


@dataclass
class RunRecord:
    id: str
    task_id: str
    agent_id: str
    status: str = "queued"
    created_at: str = ""
    updated_at: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    base_branch: str | None = None
    branch: str | None = None
    worktree_path: str | None = None
    summary: str | None = None
    result: dict | None = None
    error: str | None = None
    cancel_requested: bool = False


@dataclass
class ActivityEvent:
    id: str
    timestamp: str
    type: str
    action: str
    detail: str
    agent_id: str | None = None
    workflow_id: str | None = None
    run_id: str | None = None


@dataclass
class StoryWorkflow:
    id: str
    story: str
    status: str = "awaiting_user"
    questions: list[dict] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    report: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class RepoPolicy:
    commands: dict[str, str] = field(default_factory=dict)
    allow: list[str] = field(default_factory=list)
    forbid_raw_command: bool = True
    project_name: str | None = None


def to_jsonable(value):
    """Recursively convert dataclasses, enums and paths into JSON-compatible values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, deque)):
        return [to_jsonable(v) for v in value]
    return value
