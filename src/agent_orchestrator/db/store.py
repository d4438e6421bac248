"""In-memory state container with best-effort file persistence."""

import json
import logging
import os
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, fields
from pathlib import Path

from agent_orchestrator.db.ids import issue_id
from agent_orchestrator.db.models import (
    ActivityEvent,
    AgentRoleProfile,
    CommandResult,
    RepoPolicy,
    RoleKind,
    RunRecord,
    StoryWorkflow,
    Task,
    TaskRunMeta,
    Worker,
    now_iso,
)

logger = logging.getLogger(__name__)

ACTIVITY_LIMIT = 500


def _known(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class Store:
    """Single owner of all orchestrator state.

    Every mutation of tasks, roles, workflows, runs and the activity log
    happens while holding ``lock``. The activity log keeps the newest
    ``ACTIVITY_LIMIT`` events in memory; every event is also appended to
    ``activity_log_file`` when one is configured.
    """

    def __init__(
        self,
        state_file: Path | None = None,
        activity_log_file: Path | None = None,
        activity_limit: int = ACTIVITY_LIMIT,
    ):
        self.state_file = Path(state_file) if state_file else None
        self.activity_log_file = Path(activity_log_file) if activity_log_file else None
        self.lock = threading.RLock()
        self.tasks: list[Task] = []
        self.workers: dict[str, Worker] = {}
        self.roles: dict[str, AgentRoleProfile] = {}
        self.workflows: list[StoryWorkflow] = []
        self.runs: dict[str, RunRecord] = {}
        self.run_threads: dict[str, threading.Thread] = {}
        self.run_meta: dict[str, TaskRunMeta] = {}
        self.activity: deque[ActivityEvent] = deque(maxlen=activity_limit)
        self.last_command: CommandResult | None = None
        self.policy_cache: dict[str, RepoPolicy] = {}
        self.persistence_failures = 0
        self.activity_write_failures = 0

    # ── Lookups ──────────────────────────────────────────────────────────────

    def find_task(self, task_id: str) -> Task | None:
        with self.lock:
            return next((t for t in self.tasks if t.id == task_id), None)

    def find_workflow(self, workflow_id: str) -> StoryWorkflow | None:
        with self.lock:
            return next((w for w in self.workflows if w.id == workflow_id), None)

    # ── Mutations ────────────────────────────────────────────────────────────

    def add_task(self, task: Task) -> Task:
        with self.lock:
            if not task.created_at:
                task.created_at = now_iso()
            if not task.updated_at:
                task.updated_at = task.created_at
            self.tasks.append(task)
        return task

    def touch(self, task: Task) -> str:
        task.updated_at = now_iso()
        return task.updated_at

    def add_event(
        self,
        type: str,
        action: str,
        detail: str,
        agent_id: str | None = None,
        workflow_id: str | None = None,
        run_id: str | None = None,
    ) -> ActivityEvent:
        """Record an activity event, append it to the log file and snapshot state."""
        event = ActivityEvent(
            id=issue_id("evt"),
            timestamp=now_iso(),
            type=type,
            action=action,
            detail=detail,
            agent_id=agent_id,
            workflow_id=workflow_id,
            run_id=run_id,
        )
        with self.lock:
            self.activity.append(event)
            self._append_event_file(event)
            self.save()
        return event

    # ── Persistence ──────────────────────────────────────────────────────────

    def _append_event_file(self, event: ActivityEvent):
        if self.activity_log_file is None:
            return
        try:
            self.activity_log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.activity_log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(asdict(event)) + "\n")
        except OSError:
            self.activity_write_failures += 1
            logger.warning("Failed to append activity event to %s", self.activity_log_file)

    def snapshot(self) -> dict:
        with self.lock:
            roles = {}
            for agent_id, profile in self.roles.items():
                data = asdict(profile)
                data["kind"] = profile.kind.value
                roles[agent_id] = data
            return {
                "tasks": [asdict(t) for t in self.tasks],
                "last_command": asdict(self.last_command) if self.last_command else None,
                "agent_roles": roles,
                "workflows": [asdict(w) for w in self.workflows],
                "activity_log": [asdict(e) for e in self.activity],
                "run_meta": {k: asdict(v) for k, v in self.run_meta.items()},
            }

    def save(self) -> bool:
        """Write the snapshot atomically. Failures are counted, never raised."""
        if self.state_file is None:
            return False
        try:
            with self.lock:
                payload = json.dumps(self.snapshot())
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.state_file.with_name(self.state_file.name + ".tmp")
                tmp.write_text(payload, encoding="utf-8")
                os.replace(tmp, self.state_file)
            return True
        except (OSError, TypeError, ValueError):
            self.persistence_failures += 1
            logger.warning("Failed to persist state snapshot to %s", self.state_file)
            return False

    def load(self) -> bool:
        """Rehydrate state from the snapshot file if one exists."""
        if self.state_file is None or not self.state_file.exists():
            return False
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            self.persistence_failures += 1
            logger.warning("Failed to load state snapshot from %s", self.state_file)
            return False
        if not isinstance(data, dict):
            return False

        with self.lock:
            self.tasks = [Task(**_known(Task, t)) for t in data.get("tasks") or []]
            self.workflows = [
                StoryWorkflow(**_known(StoryWorkflow, w)) for w in data.get("workflows") or []
            ]
            self.roles = {}
            for agent_id, role in (data.get("agent_roles") or {}).items():
                profile = AgentRoleProfile(**_known(AgentRoleProfile, role))
                profile.kind = RoleKind(profile.kind)
                self.roles[agent_id] = profile
            self.run_meta = {
                k: TaskRunMeta(**_known(TaskRunMeta, v))
                for k, v in (data.get("run_meta") or {}).items()
            }
            last = data.get("last_command")
            self.last_command = CommandResult(**_known(CommandResult, last)) if last else None
            self.activity.clear()
            for e in (data.get("activity_log") or [])[-self.activity.maxlen:]:
                self.activity.append(ActivityEvent(**_known(ActivityEvent, e)))
        return True


def read_snapshot_task(state_file: Path, task_id: str) -> dict | None:
    """Return one task's fields from a snapshot written by another process."""
    try:
        data = json.loads(Path(state_file).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return next(
        (t for t in data.get("tasks") or [] if isinstance(t, dict) and t.get("id") == task_id),
        None,
    )


def init_store(config) -> Store:
    """Build a store from config, loading the snapshot and worker file."""
    from agent_orchestrator.core.workers import preload_workers_from_config

    store = Store(state_file=config.state_file, activity_log_file=config.activity_log_file)
    store.load()
    if config.workers_file and Path(config.workers_file).exists():
        try:
            preload_workers_from_config(store, config.workers_file, codex_cmd=config.codex_cmd)
        except (OSError, ValueError) as e:
            logger.warning("Failed to preload workers from %s: %s", config.workers_file, e)
    return store


@contextmanager
def get_store(config):
    """Context manager that saves the snapshot on exit."""
    store = init_store(config)
    try:
        yield store
    finally:
        store.save()
