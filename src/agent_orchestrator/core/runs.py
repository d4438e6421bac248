"""Worker runs: agent execution in task worktrees, async run records, policy commands."""

import logging
import threading
from pathlib import Path

from agent_orchestrator.core.policy import (
    CommandRejected,
    PolicyError,
    load_repo_policy,
    resolve_command_from_policy,
    resolve_cwd_within_repo,
)
from agent_orchestrator.core.tasks import block_task, mark_submitted
from agent_orchestrator.core.worktrees import task_branch, task_worktree_path
from agent_orchestrator.db.ids import issue_id
from agent_orchestrator.db.models import RunRecord, TaskRunMeta, Worker, now_iso
from agent_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    get_diff,
    is_work_tree,
    list_untracked,
    resolve_base_branch,
    worktree_add,
)
from agent_orchestrator.integrations.shell import run_command, shell_quote

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 300_000
MAX_TIMEOUT_MS = 3_600_000
DEFAULT_HEARTBEAT_MS = 10_000
MIN_HEARTBEAT_MS = 3_000
MAX_HEARTBEAT_MS = 120_000
DIFF_PREVIEW_CHARS = 4000


def agent_env(worker: Worker) -> dict[str, str]:
    """Shared orchestrator file locations for agent subprocesses."""
    root = Path(worker.repo_path)
    return {
        "AO_WORKERS_FILE": str(root / "settings" / "workers.yaml"),
        "AO_ACTIVITY_LOG_FILE": str(root / "logs" / "activity.ndjson"),
        "AO_STATE_FILE": str(root / "logs" / "state.json"),
    }


def agent_command(worker: Worker, prompt: str, extra: str = "") -> str:
    command = f"{worker.codex_cmd} exec {shell_quote(prompt)}"
    return f"{command} {extra}".rstrip()


class Heartbeat:
    """Emit an activity event every interval while the ``with`` block runs."""

    def __init__(
        self,
        store,
        interval_ms: int,
        action: str,
        detail: str,
        agent_id: str | None = None,
        run_id: str | None = None,
    ):
        self.store = store
        self.interval_ms = interval_ms
        self.action = action
        self.detail = detail
        self.agent_id = agent_id
        self.run_id = run_id
        self.beats = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self):
        self._thread = threading.Thread(target=self._run, name=f"heartbeat-{self.action}", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        return False

    def _run(self):
        while not self._stop_event.wait(self.interval_ms / 1000):
            self.beats += 1
            self.store.add_event(
                "agent",
                self.action,
                f"{self.detail} beat={self.beats}",
                agent_id=self.agent_id,
                run_id=self.run_id,
            )


# ── Synchronous run ──────────────────────────────────────────────────────────


def collect_diff(worktree: Path) -> tuple[str, list[str]]:
    try:
        text = get_diff(worktree) + get_diff(worktree, staged=True)
        untracked = list_untracked(worktree)
    except GitError:
        return "", []
    return text, untracked


def _resolve_policy_command(store, worker: Worker, key: str):
    policy = load_repo_policy(store, worker.repo_path)
    return resolve_command_from_policy(policy, key)


def run_worker_task(
    store,
    agent_id: str,
    task_id: str,
    prompt: str,
    base_branch: str | None = None,
    run_after_command: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    require_verify: bool = True,
    verify_command_key: str = "test",
    auto_set_task_status: bool = True,
    run_id: str | None = None,
) -> dict:
    """Run the worker's agent command for a task in its worktree.

    Collects the resulting diff as provenance, runs the optional verify
    command through the repository policy, stores a TaskRunMeta and moves
    the task to ``in_review`` on success or ``blocked`` otherwise.
    """
    worker = store.workers.get(agent_id)
    if not worker:
        return {"ok": False, "error": "WORKER_NOT_FOUND", "agent_id": agent_id, "task_id": task_id}
    timeout_ms = max(1, min(MAX_TIMEOUT_MS, timeout_ms))

    task = store.find_task(task_id)
    if auto_set_task_status:
        if task is None:
            return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
        with store.lock:
            if task.status == "done":
                return {"ok": False, "error": "INVALID_STATE", "task_id": task_id, "status": task.status}
            task.status = "doing"
            task.assignee = agent_id
            store.touch(task)
    workflow_id = task.workflow_id if task else None

    def emit(action: str, detail: str):
        store.add_event("agent", action, detail, agent_id=agent_id, workflow_id=workflow_id, run_id=run_id)

    emit("run_start", f"{task_id} by {agent_id}")

    if not is_work_tree(worker.repo_path):
        if auto_set_task_status:
            block_task(store, task_id, "repository is not a git work tree", agent_id)
        return {"ok": False, "error": "NOT_GIT_REPO", "repo_path": worker.repo_path, "task_id": task_id}

    base = resolve_base_branch(worker.repo_path, base_branch)
    emit("base_resolved", f"{task_id} base={base.branch} tried={','.join(base.tried)}")

    worktree = task_worktree_path(worker, agent_id, task_id)
    branch = task_branch(agent_id, task_id)
    Path(worker.worktree_root).mkdir(parents=True, exist_ok=True)

    if not worktree.exists():
        emit("worktree_add_start", f"{task_id} {worktree} from {base.ref}")
        try:
            worktree_add(
                worker.repo_path,
                worktree,
                branch,
                base.ref,
                create_branch=not branch_exists(worker.repo_path, branch),
            )
        except GitError as e:
            emit("worktree_add_failed", f"{task_id} {e}")
            if auto_set_task_status:
                block_task(store, task_id, f"worktree add failed: {e}", agent_id)
            return {
                "ok": False,
                "error": "WORKTREE_ADD_FAILED",
                "task_id": task_id,
                "worktree_path": str(worktree),
                "branch": branch,
                "detail": str(e),
            }

    emit("codex_start", f"{task_id} timeout_ms={timeout_ms}")
    codex = run_command(agent_command(worker, prompt), str(worktree), timeout_ms, env=agent_env(worker))
    store.last_command = codex
    emit("codex_exit", f"{task_id} exit={codex.exit_code} timed_out={codex.timed_out}")

    after = None
    after_error = None
    if run_after_command:
        try:
            resolved = _resolve_policy_command(store, worker, run_after_command)
        except (PolicyError, CommandRejected) as e:
            after_error = str(e)
            emit("after_rejected", f"{task_id} {e}")
        else:
            emit("after_start", f"{task_id} {resolved.command}")
            after = run_command(resolved.command, str(worktree), timeout_ms)
            store.last_command = after
            emit("after_exit", f"{task_id} exit={after.exit_code} timed_out={after.timed_out}")

    diff_text, untracked = collect_diff(worktree)
    provenance_ok = bool(diff_text.strip() or untracked)
    emit("diff_collected", f"{task_id} diff_length={len(diff_text)} untracked={len(untracked)}")

    verify = None
    verify_error = None
    if require_verify:
        emit("verify_start", f"{task_id} key={verify_command_key}")
        try:
            resolved = _resolve_policy_command(store, worker, verify_command_key)
        except (PolicyError, CommandRejected) as e:
            verify_error = str(e)
            emit("verify_error", f"{task_id} {e}")
        else:
            verify = run_command(resolved.command, str(worktree), timeout_ms)
            store.last_command = verify
            emit("verify_exit", f"{task_id} exit={verify.exit_code} timed_out={verify.timed_out}")
    verified = bool(verify and verify.ok)

    meta = TaskRunMeta(
        task_id=task_id,
        agent_id=agent_id,
        worktree_path=str(worktree),
        branch=branch,
        base_branch=base.branch,
        diff_length=len(diff_text),
        provenance_ok=provenance_ok,
        verify_required=require_verify,
        verify_command_key=verify_command_key if require_verify else None,
        verified=verified,
        last_run_at=now_iso(),
    )
    with store.lock:
        store.run_meta[task_id] = meta

    problems = []
    if not codex.ok:
        problems.append("agent command failed")
    if run_after_command and not (after and after.ok):
        problems.append("after command failed")
    if not provenance_ok:
        problems.append("no diff produced")
    if require_verify and not verified:
        problems.append("verification failed")
    success = not problems

    if auto_set_task_status and task is not None:
        if success:
            mark_submitted(store, task, agent_id, "worker run completed")
        else:
            block_task(store, task_id, "; ".join(problems), agent_id)

    emit("run_done" if success else "run_incomplete", f"{task_id} {'; '.join(problems) or 'ok'}")

    result = {
        "ok": success,
        "task_id": task_id,
        "agent_id": agent_id,
        "worktree_path": str(worktree),
        "branch": branch,
        "base_branch": base.branch,
        "tried_bases": base.tried,
        "codex": codex,
        "after": after,
        "after_error": after_error,
        "diff": {
            "length": len(diff_text),
            "untracked": untracked,
            "preview": diff_text[:DIFF_PREVIEW_CHARS],
        },
        "verify": verify,
        "verify_error": verify_error,
        "meta": meta,
    }
    if not success:
        result["error"] = "RUN_INCOMPLETE"
        result["problems"] = problems
    return result


# ── Async runs ───────────────────────────────────────────────────────────────


def _summarize(result: dict) -> str:
    if result.get("ok"):
        return f"{result['task_id']} ok diff_length={result['diff']['length']}"
    problems = result.get("problems") or [result.get("error", "failed")]
    return f"{result.get('task_id', '')} {'; '.join(problems)}".strip()


def _execute_run(store, run: RunRecord, prompt: str, heartbeat_ms: int, run_kwargs: dict):
    with store.lock:
        if run.cancel_requested:
            run.status = "canceled"
            run.finished_at = run.updated_at = now_iso()
            canceled = True
        else:
            run.status = "running"
            run.started_at = run.updated_at = now_iso()
            canceled = False
    if canceled:
        store.add_event("agent", "async_run_canceled", f"{run.id} canceled before start", run.agent_id, run_id=run.id)
        return
    store.add_event("agent", "async_run_started", f"{run.id} {run.task_id}", run.agent_id, run_id=run.id)

    try:
        with Heartbeat(store, heartbeat_ms, "async_run_heartbeat", f"{run.id} running", run.agent_id, run.id):
            result = run_worker_task(store, run.agent_id, run.task_id, prompt, run_id=run.id, **run_kwargs)
    except Exception as e:
        logger.exception("Error in async run %s", run.id)
        with store.lock:
            run.status = "failed"
            run.error = str(e)
            run.finished_at = run.updated_at = now_iso()
        store.add_event("agent", "async_run_error", f"{run.id} {e}", run.agent_id, run_id=run.id)
        return

    with store.lock:
        run.status = "succeeded" if result["ok"] else "failed"
        run.result = result
        run.summary = _summarize(result)
        run.error = result.get("error")
        run.branch = result.get("branch")
        run.worktree_path = result.get("worktree_path")
        run.base_branch = result.get("base_branch")
        run.finished_at = run.updated_at = now_iso()
    store.add_event("agent", "async_run_finished", f"{run.id} {run.status}: {run.summary}", run.agent_id, run_id=run.id)
    logger.info("Run %s for task '%s' %s", run.id, run.task_id, run.status)


def start_run_worker_task(
    store,
    agent_id: str,
    task_id: str,
    prompt: str,
    heartbeat_ms: int = DEFAULT_HEARTBEAT_MS,
    **run_kwargs,
) -> dict:
    """Queue a worker run in a background thread and return its run id."""
    if agent_id not in store.workers:
        return {"ok": False, "error": "WORKER_NOT_FOUND", "agent_id": agent_id, "task_id": task_id}
    heartbeat_ms = max(MIN_HEARTBEAT_MS, min(MAX_HEARTBEAT_MS, heartbeat_ms))

    now = now_iso()
    run = RunRecord(id=issue_id("run"), task_id=task_id, agent_id=agent_id, created_at=now, updated_at=now)
    with store.lock:
        store.runs[run.id] = run
    store.add_event("agent", "async_run_queued", f"{run.id} {task_id}", agent_id, run_id=run.id)

    thread = threading.Thread(
        target=_execute_run,
        args=(store, run, prompt, heartbeat_ms, run_kwargs),
        name=f"run-{run.id}",
        daemon=True,
    )
    store.run_threads[run.id] = thread
    thread.start()
    return {"ok": True, "run_id": run.id, "status": "queued"}


def get_run_status(store, run_id: str) -> dict:
    with store.lock:
        run = store.runs.get(run_id)
    if not run:
        return {"ok": False, "error": "RUN_NOT_FOUND", "run_id": run_id}
    return {"ok": True, "run": run}


def cancel_run(store, run_id: str) -> dict:
    """Request cooperative cancellation. Only queued runs stop before working."""
    with store.lock:
        run = store.runs.get(run_id)
        if not run:
            return {"ok": False, "error": "RUN_NOT_FOUND", "run_id": run_id}
        run.cancel_requested = True
        run.updated_at = now_iso()
    store.add_event("agent", "async_run_cancel_requested", run_id, run.agent_id, run_id=run_id)
    return {"ok": True, "run": run}


def list_runs(
    store,
    task_id: str | None = None,
    agent_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[RunRecord]:
    """Runs newest first, optionally filtered."""
    with store.lock:
        runs = list(store.runs.values())
    if task_id:
        runs = [r for r in runs if r.task_id == task_id]
    if agent_id:
        runs = [r for r in runs if r.agent_id == agent_id]
    if status:
        runs = [r for r in runs if r.status == status]
    runs.sort(key=lambda r: r.created_at, reverse=True)
    return runs[: max(1, limit)]


# ── Policy-gated commands ────────────────────────────────────────────────────


def run_policy_command(store, agent_id: str, command_key: str, cwd: str | None = None) -> dict:
    """Run a policy-resolved command inside the worker's repository."""
    worker = store.workers.get(agent_id)
    if not worker:
        return {"ok": False, "error": "WORKER_NOT_FOUND", "agent_id": agent_id}
    try:
        resolved = _resolve_policy_command(store, worker, command_key)
    except PolicyError as e:
        return {"ok": False, "error": "POLICY_LOAD_FAILED", "detail": str(e)}
    except CommandRejected as e:
        return {"ok": False, "error": "COMMAND_REJECTED", "command_key": command_key, "detail": str(e)}
    try:
        target = resolve_cwd_within_repo(worker.repo_path, cwd)
    except ValueError as e:
        return {"ok": False, "error": "CWD_REJECTED", "cwd": cwd, "detail": str(e)}

    result = run_command(resolved.command, str(target))
    store.last_command = result
    store.add_event(
        "agent",
        "command_run",
        f"{command_key} -> {resolved.command} exit={result.exit_code}",
        agent_id=agent_id,
    )
    response = {"ok": result.ok, "command_key": command_key, "command": resolved.command, "result": result}
    if not result.ok:
        response["error"] = "COMMAND_FAILED"
    return response


def verify_task(
    store,
    agent_id: str,
    task_id: str,
    command_key: str = "test",
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> dict:
    """Run the verify command in the task worktree and record the outcome."""
    worker = store.workers.get(agent_id)
    if not worker:
        return {"ok": False, "error": "WORKER_NOT_FOUND", "agent_id": agent_id}
    task = store.find_task(task_id)
    if not task:
        return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
    try:
        resolved = _resolve_policy_command(store, worker, command_key)
    except PolicyError as e:
        return {"ok": False, "error": "POLICY_LOAD_FAILED", "detail": str(e)}
    except CommandRejected as e:
        return {"ok": False, "error": "COMMAND_REJECTED", "command_key": command_key, "detail": str(e)}

    worktree = task_worktree_path(worker, agent_id, task_id)
    if not worktree.exists():
        return {"ok": False, "error": "WORKTREE_NOT_FOUND", "worktree_path": str(worktree)}

    result = run_command(resolved.command, str(worktree), max(1, min(MAX_TIMEOUT_MS, timeout_ms)))
    with store.lock:
        store.last_command = result
        meta = store.run_meta.get(task_id)
        if meta:
            meta.verify_command_key = command_key
            meta.verified = result.ok
            meta.last_run_at = now_iso()
    store.add_event(
        "agent",
        "task_verified" if result.ok else "task_verify_failed",
        f"{task_id} {command_key} exit={result.exit_code}",
        agent_id=agent_id,
        workflow_id=task.workflow_id,
    )
    response = {"ok": result.ok, "task_id": task_id, "command_key": command_key, "result": result}
    if not result.ok:
        response["error"] = "VERIFY_FAILED"
    return response
