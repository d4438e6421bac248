"""Background polling loops: auto-claim and auto-execute."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from pathlib import Path

from agent_orchestrator.core.acceptance import DEFAULT_TARGET_BRANCH, accept_task_with_policy
from agent_orchestrator.core.policy import (
    CommandRejected,
    PolicyError,
    load_repo_policy,
    resolve_command_from_policy,
)
from agent_orchestrator.core.prompts import build_execution_prompt, build_review_prompt
from agent_orchestrator.core.roles import find_pm, find_tech_lead
from agent_orchestrator.core.runs import Heartbeat, agent_command, agent_env, collect_diff
from agent_orchestrator.core.tasks import CLAIMABLE_STATUSES, block_task, claim_task, mark_rejected, mark_submitted
from agent_orchestrator.core.worktrees import validate_task_worktree
from agent_orchestrator.db.models import Task, TaskRunMeta, now_iso
from agent_orchestrator.db.store import read_snapshot_task
from agent_orchestrator.integrations.shell import run_command

logger = logging.getLogger(__name__)

REVIEW_STAGES = ("in_review", "wait_accept", "accepted")
DECISION_ORDER = REVIEW_STAGES + ("done",)
EXECUTE_STATUSES = ("doing",) + REVIEW_STAGES
SKIP_GIT_CHECK = "--skip-git-repo-check"


class _PollingLoop:
    """Run ``tick`` every interval on a daemon thread until stopped."""

    name = "loop"

    def __init__(self, store, interval_ms: int):
        self.store = store
        self.interval_ms = interval_ms
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self._on_start()
        logger.info("%s started (interval %d ms)", self.name, self.interval_ms)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("%s stopped", self.name)

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in %s", self.name)
            self._stop_event.wait(self.interval_ms / 1000)

    def _on_start(self):
        pass

    def tick(self):
        raise NotImplementedError


# ── Auto-claim ───────────────────────────────────────────────────────────────


class AutoClaimLoop(_PollingLoop):
    """Claim the next eligible task for every worker below its doing cap."""

    name = "auto-claim"

    def __init__(self, store, interval_ms: int = 5000, max_doing_per_agent: int = 1):
        super().__init__(store, interval_ms)
        self.max_doing_per_agent = max_doing_per_agent
        self._tick_lock = threading.Lock()

    def _on_start(self):
        self.store.add_event(
            "system",
            "auto_claim_loop_started",
            f"interval_ms={self.interval_ms}, max_doing_per_agent={self.max_doing_per_agent}",
        )

    def next_task_for(self, agent_id: str) -> Task | None:
        """Rework first, then tasks assigned to the agent, then unassigned ones."""
        with self.store.lock:
            eligible = [
                t
                for t in self.store.tasks
                if not t.is_review
                and t.status in CLAIMABLE_STATUSES
                and t.assignee in (agent_id, None)
            ]
        for t in eligible:
            if t.assignee == agent_id and t.rework_requested:
                return t
        for t in eligible:
            if t.assignee == agent_id and t.status == "todo":
                return t
        return next((t for t in eligible if t.assignee is None and t.status == "todo"), None)

    def tick(self):
        if not self._tick_lock.acquire(blocking=False):
            return
        try:
            with self.store.lock:
                agent_ids = list(self.store.workers)
            for agent_id in agent_ids:
                with self.store.lock:
                    doing = sum(1 for t in self.store.tasks if t.status == "doing" and t.assignee == agent_id)
                if doing >= self.max_doing_per_agent:
                    continue
                candidate = self.next_task_for(agent_id)
                if candidate is None:
                    continue
                result = claim_task(self.store, candidate.id, agent_id)
                if not result["ok"]:
                    self.store.add_event(
                        "system",
                        "auto_claim_failed",
                        f"{candidate.id} for {agent_id}: {result['error']}",
                        agent_id=agent_id,
                    )
        finally:
            self._tick_lock.release()


# ── Auto-execute ─────────────────────────────────────────────────────────────


class AutoExecuteLoop(_PollingLoop):
    """Drive doing tasks through implementation and review stages through review agents.

    Each task is dispatched at most once per ``(status, updated_at)`` token
    and never while a previous dispatch for it is still in flight. Review
    agents run in their own process; when the task is unchanged here after
    the review command exits, the decision is read back from the state file
    the agent was pointed at, and the task is rejected if none was recorded.
    """

    name = "auto-execute"

    def __init__(
        self,
        store,
        interval_ms: int = 5000,
        timeout_ms: int = 20 * 60 * 1000,
        auto_verify: bool = False,
        auto_accept: bool = False,
        heartbeat_ms: int = 10000,
        target_branch: str = DEFAULT_TARGET_BRANCH,
        max_workers: int = 4,
    ):
        super().__init__(store, interval_ms)
        self.timeout_ms = timeout_ms
        self.auto_verify = auto_verify
        self.auto_accept = auto_accept
        self.heartbeat_ms = heartbeat_ms
        self.target_branch = target_branch
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._tokens: dict[str, tuple[str, str]] = {}
        self._futures: set[Future] = set()
        self.max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    def _on_start(self):
        self.store.add_event(
            "system",
            "worker_execution_loop_started",
            f"interval_ms={self.interval_ms}, timeout_ms={self.timeout_ms}, "
            f"auto_verify={self.auto_verify}, auto_accept={self.auto_accept}",
        )

    def stop(self):
        super().stop()
        with self._lock:
            executor, self._executor = self._executor, None
        if executor:
            executor.shutdown(wait=False, cancel_futures=True)

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="auto-execute")
            return self._executor

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every dispatched task has finished."""
        with self._lock:
            pending = set(self._futures)
        done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _acquire(self, task: Task) -> bool:
        token = (task.status, task.updated_at)
        with self._lock:
            if task.id in self._in_flight or self._tokens.get(task.id) == token:
                return False
            self._in_flight.add(task.id)
            self._tokens[task.id] = token
            return True

    def _release(self, task_id: str):
        with self._lock:
            self._in_flight.discard(task_id)

    def tick(self):
        with self.store.lock:
            candidates = [
                t
                for t in self.store.tasks
                if t.status in EXECUTE_STATUSES and not t.is_review and (t.assignee or t.status != "doing")
            ]
        for task in candidates:
            if not self._acquire(task):
                continue
            future = self._pool().submit(self._dispatch, task.id)
            with self._lock:
                self._futures.add(future)
            future.add_done_callback(partial(self._forget, task.id))

    def _forget(self, task_id: str, future: Future):
        with self._lock:
            self._futures.discard(future)
            if future.cancelled():
                self._in_flight.discard(task_id)
                self._tokens.pop(task_id, None)

    def _dispatch(self, task_id: str):
        try:
            self.process_task(task_id)
        except Exception:
            logger.exception("Error executing task %s", task_id)
        finally:
            self._release(task_id)

    def process_task(self, task_id: str):
        """Run whichever stage the task is currently in."""
        task = self.store.find_task(task_id)
        if task is None:
            return
        if task.status == "doing":
            self._run_implementation(task)
        elif task.status in REVIEW_STAGES:
            self._run_review(task)

    # ── Implementation stage ─────────────────────────────────────────────────

    def _run_implementation(self, task: Task):
        store = self.store
        agent_id = task.assignee
        if not agent_id:
            return
        worker = store.workers.get(agent_id)
        if not worker:
            block_task(store, task.id, "worker not found", agent_id)
            return

        worktree = validate_task_worktree(worker, agent_id, task.id)
        if not worktree["ok"]:
            block_task(store, task.id, f"worktree invalid: {worktree['error']}", agent_id)
            return
        cwd = worktree["worktree_path"]

        store.add_event("agent", "worker_execution_started", f"{task.id} by {agent_id}", agent_id, task.workflow_id)
        prompt = build_execution_prompt(task, store.roles.get(agent_id))
        with Heartbeat(store, self.heartbeat_ms, "worker_execution_heartbeat", f"{task.id} running", agent_id):
            run = run_command(
                agent_command(worker, prompt, SKIP_GIT_CHECK),
                cwd,
                self.timeout_ms,
                env=agent_env(worker),
            )
        store.last_command = run

        if not run.ok:
            block_task(store, task.id, "worker command failed", agent_id)
            store.add_event(
                "agent",
                "worker_execution_failed",
                f"{task.id} exit={run.exit_code} timed_out={run.timed_out}",
                agent_id,
                task.workflow_id,
            )
            return
        store.add_event("agent", "worker_execution_succeeded", f"{task.id} command completed", agent_id, task.workflow_id)

        diff_text, untracked = collect_diff(Path(cwd))
        meta = TaskRunMeta(
            task_id=task.id,
            agent_id=agent_id,
            worktree_path=cwd,
            branch=worktree["branch"],
            base_branch="HEAD",
            diff_length=len(diff_text),
            provenance_ok=bool(diff_text.strip() or untracked),
            verify_required=self.auto_verify,
            last_run_at=now_iso(),
        )
        with store.lock:
            store.run_meta[task.id] = meta
        if not meta.provenance_ok:
            block_task(store, task.id, "no changes produced", agent_id)
            return

        if self.auto_verify and not self._verify(task, worker, cwd, meta):
            return

        mark_submitted(store, task, agent_id, "auto-submitted after execution")
        if self.auto_accept:
            self._accept_through(task, agent_id)

    def _verify(self, task: Task, worker, cwd: str, meta: TaskRunMeta) -> bool:
        store = self.store
        agent_id = task.assignee
        profile = store.roles.get(agent_id)
        key = profile.verify_command_key if profile else None
        if not key:
            block_task(store, task.id, "verify command key not found", agent_id)
            return False
        meta.verify_command_key = key

        try:
            resolved = resolve_command_from_policy(load_repo_policy(store, worker.repo_path), key)
        except (PolicyError, CommandRejected) as e:
            block_task(store, task.id, f"verify setup failed: {e}", agent_id)
            return False

        verify = run_command(resolved.command, cwd, self.timeout_ms)
        store.last_command = verify
        with store.lock:
            meta.verified = verify.ok
        if not verify.ok:
            store.add_event("agent", "worker_verify_failed", f"{task.id} verify failed: {key}", agent_id, task.workflow_id)
            mark_rejected(store, task, f"verify failed: {key}", agent_id)
            return False
        store.add_event("agent", "worker_verify_succeeded", f"{task.id} verify passed: {key}", agent_id, task.workflow_id)
        return True

    def _accept_through(self, task: Task, agent_id: str):
        for _ in REVIEW_STAGES:
            result = accept_task_with_policy(self.store, task.id, self.target_branch, agent_id)
            if not result["ok"] or task.status == "done":
                return

    # ── Review stages ────────────────────────────────────────────────────────

    def _reviewer_for(self, stage: str):
        return find_pm(self.store) if stage == "wait_accept" else find_tech_lead(self.store)

    def _run_review(self, task: Task):
        store = self.store
        stage = task.status
        reviewer = self._reviewer_for(stage)
        if reviewer is None:
            return
        reviewer_worker = store.workers.get(reviewer.agent_id)
        owner = store.workers.get(task.assignee) if task.assignee else None
        worker = reviewer_worker or owner
        if worker is None:
            return

        cwd = worker.repo_path
        if owner:
            check = validate_task_worktree(owner, task.assignee, task.id)
            if check["ok"]:
                cwd = check["worktree_path"]

        store.add_event(
            "agent",
            "review_execution_started",
            f"{task.id} stage={stage} reviewer={reviewer.agent_id}",
            reviewer.agent_id,
            task.workflow_id,
        )
        prompt = build_review_prompt(task, reviewer)
        with Heartbeat(store, self.heartbeat_ms, "worker_execution_heartbeat", f"{task.id} review", reviewer.agent_id):
            run = run_command(
                agent_command(worker, prompt, SKIP_GIT_CHECK),
                cwd,
                self.timeout_ms,
                env=agent_env(worker),
            )
        store.last_command = run

        current = store.find_task(task.id)
        if current is None or current.status != stage:
            return
        if self._sync_review_decision(current, stage, reviewer.agent_id, worker):
            return
        reason = f"review decision missing at {stage} from {reviewer.agent_id} (exit={run.exit_code})"
        store.add_event("workflow", "review_decision_missing", f"{task.id} {reason}", reviewer.agent_id, task.workflow_id)
        mark_rejected(store, current, reason, reviewer.agent_id)

    def _sync_review_decision(self, task: Task, stage: str, reviewer_id: str, worker) -> bool:
        """Replay a decision the reviewer recorded in its own state file."""
        recorded = read_snapshot_task(Path(agent_env(worker)["AO_STATE_FILE"]), task.id)
        status = recorded.get("status") if recorded else None
        if status == "rejected":
            reason = recorded.get("rework_reason") or f"rejected at {stage} by {reviewer_id}"
            mark_rejected(self.store, task, reason, reviewer_id)
        elif status in DECISION_ORDER and DECISION_ORDER.index(status) > DECISION_ORDER.index(stage):
            result = accept_task_with_policy(self.store, task.id, self.target_branch, reviewer_id)
            if not result["ok"]:
                return False
        else:
            return False
        self.store.add_event(
            "workflow",
            "review_decision_synced",
            f"{task.id} {stage} -> {task.status} from {reviewer_id}",
            reviewer_id,
            task.workflow_id,
        )
        return True
