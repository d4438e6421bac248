"""MCP server exposing all agent orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_orchestrator.config import Config, get_config
from agent_orchestrator.core import acceptance as acceptance_mod
from agent_orchestrator.core import roles as roles_mod
from agent_orchestrator.core import runs as runs_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core import workers as workers_mod
from agent_orchestrator.core import workflows as workflows_mod
from agent_orchestrator.core import worktrees as worktrees_mod
from agent_orchestrator.core.loops import AutoClaimLoop, AutoExecuteLoop
from agent_orchestrator.db.models import to_jsonable
from agent_orchestrator.db.store import Store, init_store


@dataclass
class AppContext:
    store: Store
    config: Config
    auto_claim: AutoClaimLoop | None = None
    auto_execute: AutoExecuteLoop | None = None


def start_loops(store: Store, config: Config) -> tuple[AutoClaimLoop | None, AutoExecuteLoop | None]:
    """Start whichever background loops the configuration enables."""
    claim = execute = None
    if config.auto_claim:
        claim = AutoClaimLoop(store, config.auto_claim_interval_ms, config.max_doing_per_agent)
        claim.start()
    if config.auto_execute:
        execute = AutoExecuteLoop(
            store,
            interval_ms=config.auto_execute_interval_ms,
            timeout_ms=config.auto_execute_timeout_ms,
            auto_verify=config.auto_verify,
            auto_accept=config.auto_accept,
            heartbeat_ms=config.heartbeat_interval_ms,
            target_branch=config.integration_target_branch,
        )
        execute.start()
    return claim, execute


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Load state and workers on startup, stop loops and snapshot on shutdown."""
    config = get_config()
    store = init_store(config)
    claim, execute = start_loops(store, config)

    try:
        yield AppContext(store=store, config=config, auto_claim=claim, auto_execute=execute)
    finally:
        for loop in (claim, execute):
            if loop:
                loop.stop()
        store.save()


mcp = FastMCP("agent-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _store(ctx: Context) -> Store:
    return _ctx(ctx).store


def _out(result) -> dict:
    return to_jsonable(result)


# ── Status Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def ping(ctx: Context) -> dict:
    """Health check."""
    return {"ok": True, "message": "pong"}


@mcp.tool()
def status(ctx: Context) -> dict:
    """Task counts per status, all tasks, the last command result and persistence health."""
    return _out(tasks_mod.status_summary(_store(ctx)))


@mcp.tool()
def activity_log(
    ctx: Context,
    workflow_id: str | None = None,
    agent_id: str | None = None,
    limit: int = 50,
    format: str = "json",
) -> dict:
    """Recent activity events (limit 1-200). format='text' adds a plain-text rendering."""
    return _out(tasks_mod.activity_log(_store(ctx), workflow_id, agent_id, limit, format))


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def enqueue_task(
    ctx: Context,
    title: str,
    description: str = "",
    assignee: str | None = None,
    workflow_id: str | None = None,
) -> dict:
    """Add a new implementation task in 'todo'."""
    task = tasks_mod.enqueue_task(_store(ctx), title, description, assignee, workflow_id)
    return _out({"ok": True, "task": task})


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    assignee: str | None = None,
    workflow_id: str | None = None,
    task_type: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by status, assignee, workflow and type."""
    return _out(tasks_mod.list_tasks(_store(ctx), status, assignee, workflow_id, task_type))


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its latest run metadata."""
    store = _store(ctx)
    task = tasks_mod.get_task(store, task_id)
    if not task:
        return {"ok": False, "error": "TASK_NOT_FOUND", "task_id": task_id}
    return _out({"ok": True, "task": task, "run_meta": store.run_meta.get(task_id)})


@mcp.tool()
def assign_task(ctx: Context, task_id: str, assignee: str) -> dict:
    """Set a task's assignee."""
    return _out(tasks_mod.assign_task(_store(ctx), task_id, assignee))


@mcp.tool()
def claim_task(ctx: Context, task_id: str, agent_id: str) -> dict:
    """Claim a todo/rejected task. Creates or validates the task's git worktree.

    Fails with REWORK_PRIORITY_REQUIRED while the agent has rework pending.
    """
    return _out(tasks_mod.claim_task(_store(ctx), task_id, agent_id))


@mcp.tool()
def submit_task(ctx: Context, task_id: str, agent_id: str, summary: str | None = None) -> dict:
    """Submit a doing task for tech-lead review."""
    return _out(tasks_mod.submit_task(_store(ctx), task_id, agent_id, summary))


@mcp.tool()
def accept_task(
    ctx: Context,
    task_id: str,
    agent_id: str | None = None,
    target_branch: str | None = None,
) -> dict:
    """Review acceptance step: in_review -> wait_accept (TL), wait_accept -> accepted (PM),
    accepted -> done (TL merge, cherry-picks the task commit onto the target branch)."""
    app = _ctx(ctx)
    branch = target_branch or app.config.integration_target_branch
    return _out(acceptance_mod.accept_task_with_policy(app.store, task_id, branch, agent_id))


@mcp.tool()
def reject_task(ctx: Context, task_id: str, reason: str) -> dict:
    """Send a task under review back for rework."""
    return _out(tasks_mod.reject_task(_store(ctx), task_id, reason))


@mcp.tool()
def set_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Manually set a task's status. 'done' requires 'wait_accept' and a passing run gate."""
    return _out(tasks_mod.set_task_status(_store(ctx), task_id, status))


@mcp.tool()
def report_progress(ctx: Context, task_id: str, agent_id: str, message: str) -> dict:
    """Record a short progress note (max 500 chars) for a doing task."""
    return _out(tasks_mod.report_progress(_store(ctx), task_id, agent_id, message))


# ── Worker Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def register_worker(
    ctx: Context,
    agent_id: str,
    repo_path: str,
    worktree_dir_name: str | None = None,
    codex_cmd: str | None = None,
    role: str | None = None,
    focus: str | None = None,
    personality: str | None = None,
    verify_command_key: str | None = None,
    is_pm: bool = False,
) -> dict:
    """Register a worker agent bound to a git repository."""
    store = _store(ctx)
    try:
        worker = workers_mod.register_worker(
            store,
            agent_id,
            repo_path,
            worktree_dir_name=worktree_dir_name,
            codex_cmd=codex_cmd or _ctx(ctx).config.codex_cmd,
            role=role,
            focus=focus,
            personality=personality,
            verify_command_key=verify_command_key,
            is_pm=is_pm,
        )
    except (ValueError, OSError) as e:
        return {"ok": False, "error": "INVALID_ARGUMENT", "message": str(e)}
    return _out({"ok": True, "worker": worker, "role": store.roles.get(agent_id)})


@mcp.tool()
def list_workers(ctx: Context) -> list[dict]:
    """List registered workers with their role profiles."""
    store = _store(ctx)
    return [
        _out({"worker": w, "role": store.roles.get(w.agent_id)})
        for w in workers_mod.list_workers(store)
    ]


@mcp.tool()
def reload_config(
    ctx: Context,
    workers_file: str | None = None,
    reset_workers: bool = False,
    reset_roles: bool = False,
    clear_policy_cache: bool = True,
) -> dict:
    """Re-read the workers file and optionally reset workers, roles and the policy cache."""
    app = _ctx(ctx)
    path = app.config.resolve(workers_file) if workers_file else app.config.workers_file
    return _out(
        workers_mod.reload_config(app.store, path, reset_workers, reset_roles, clear_policy_cache)
    )


@mcp.tool()
def load_agent_roles(
    ctx: Context,
    repo_path: str | None = None,
    file_path: str | None = None,
    replace: bool = False,
) -> dict:
    """Load role profiles from <repo>/.agent/roles.md frontmatter."""
    return _out(roles_mod.load_agent_roles(_store(ctx), repo_path, file_path, replace))


# ── Command & Run Tools ──────────────────────────────────────────────────────


@mcp.tool()
def run_command(ctx: Context, agent_id: str, command_key: str, cwd: str | None = None) -> dict:
    """Run a command from the repository policy (.agent/policy.yaml) inside the worker's repo."""
    return _out(runs_mod.run_policy_command(_store(ctx), agent_id, command_key, cwd))


@mcp.tool()
def verify_task(ctx: Context, agent_id: str, task_id: str, command_key: str = "test") -> dict:
    """Run the policy verify command in the task worktree and record the result."""
    return _out(runs_mod.verify_task(_store(ctx), agent_id, task_id, command_key))


@mcp.tool()
def run_worker_task(
    ctx: Context,
    agent_id: str,
    task_id: str,
    prompt: str,
    base_branch: str | None = None,
    run_after_command: str | None = None,
    timeout_ms: int = runs_mod.DEFAULT_TIMEOUT_MS,
    require_verify: bool = True,
    verify_command_key: str = "test",
    auto_set_task_status: bool = True,
) -> dict:
    """Run the worker's agent in the task worktree and wait for diff and verify results."""
    return _out(
        runs_mod.run_worker_task(
            _store(ctx),
            agent_id,
            task_id,
            prompt,
            base_branch=base_branch,
            run_after_command=run_after_command,
            timeout_ms=timeout_ms,
            require_verify=require_verify,
            verify_command_key=verify_command_key,
            auto_set_task_status=auto_set_task_status,
        )
    )


@mcp.tool()
def start_run_worker_task(
    ctx: Context,
    agent_id: str,
    task_id: str,
    prompt: str,
    base_branch: str | None = None,
    run_after_command: str | None = None,
    timeout_ms: int = runs_mod.DEFAULT_TIMEOUT_MS,
    require_verify: bool = True,
    verify_command_key: str = "test",
    auto_set_task_status: bool = True,
    heartbeat_ms: int | None = None,
) -> dict:
    """Start a worker run in the background. Poll with get_run_status or list_runs."""
    app = _ctx(ctx)
    return _out(
        runs_mod.start_run_worker_task(
            app.store,
            agent_id,
            task_id,
            prompt,
            heartbeat_ms=heartbeat_ms or app.config.heartbeat_interval_ms,
            base_branch=base_branch,
            run_after_command=run_after_command,
            timeout_ms=timeout_ms,
            require_verify=require_verify,
            verify_command_key=verify_command_key,
            auto_set_task_status=auto_set_task_status,
        )
    )


@mcp.tool()
def get_run_status(ctx: Context, run_id: str) -> dict:
    """Get an async run record."""
    return _out(runs_mod.get_run_status(_store(ctx), run_id))


@mcp.tool()
def list_runs(
    ctx: Context,
    task_id: str | None = None,
    agent_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """List async runs, newest first."""
    return _out(runs_mod.list_runs(_store(ctx), task_id, agent_id, status, limit))


@mcp.tool()
def cancel_run(ctx: Context, run_id: str) -> dict:
    """Request cancellation of a queued run."""
    return _out(runs_mod.cancel_run(_store(ctx), run_id))


# ── Worktree Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def apply_patch(ctx: Context, agent_id: str, task_id: str, patch: str, target: str = "worktree") -> dict:
    """Apply a unified diff in the task worktree (target='worktree') or the repository (target='repo')."""
    return _out(worktrees_mod.apply_patch(_store(ctx), agent_id, task_id, patch, target))


@mcp.tool()
def cleanup_worktree(
    ctx: Context,
    agent_id: str,
    task_id: str,
    force: bool = False,
    delete_branch: bool = False,
    archive_before_force: bool = True,
) -> dict:
    """Remove a task worktree. Forced removal archives uncommitted changes first by default."""
    return _out(
        worktrees_mod.cleanup_worktree(
            _store(ctx),
            agent_id,
            task_id,
            force=force,
            delete_branch_after=delete_branch,
            archive_before_force=archive_before_force,
        )
    )


# ── Workflow Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def run_story_workflow(
    ctx: Context,
    workflow_id: str | None = None,
    story: str | None = None,
    answers: list[dict] | None = None,
    auto_execute: bool = False,
    auto_verify: bool = True,
    base_branch: str | None = None,
    repo_path: str | None = None,
) -> dict:
    """Story-driven workflow: clarifying questions, role-based decomposition, optional execution.

    answers is a list of {"question_id": ..., "answer": ...}.
    """
    return _out(
        workflows_mod.run_story_workflow(
            _store(ctx),
            workflow_id=workflow_id,
            story=story,
            answers=answers,
            auto_execute=auto_execute,
            auto_verify=auto_verify,
            base_branch=base_branch,
            repo_path=repo_path,
        )
    )
