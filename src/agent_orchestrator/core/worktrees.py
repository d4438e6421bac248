"""Per-task git worktree naming, validation, setup and teardown."""

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

from agent_orchestrator.db.models import Worker
from agent_orchestrator.integrations.git import (
    GitError,
    apply_patch_file,
    branch_exists,
    delete_branch,
    get_current_branch,
    get_diff,
    get_status,
    worktree_add,
    worktree_list,
    worktree_remove,
)

_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]+")
PATCH_FILE_NAME = ".mcp_patch.diff"


def safe_branch_name(value: str) -> str:
    """Replace characters outside [A-Za-z0-9._-] with '-' and cap at 80."""
    return _UNSAFE.sub("-", value)[:80]


def task_branch(agent_id: str, task_id: str) -> str:
    return f"agent/{agent_id}/{safe_branch_name(task_id)}"


def task_worktree_path(worker: Worker, agent_id: str, task_id: str) -> Path:
    return Path(worker.worktree_root) / f"{agent_id}__{safe_branch_name(task_id)}"


def validate_task_worktree(worker: Worker, agent_id: str, task_id: str) -> dict:
    """Check the task worktree is registered and on its expected branch."""
    path = task_worktree_path(worker, agent_id, task_id)
    branch = task_branch(agent_id, task_id)
    info = {"worktree_path": str(path), "branch": branch}

    try:
        worktrees = worktree_list(worker.repo_path)
    except GitError as e:
        return {"ok": False, "error": "WORKTREE_LIST_FAILED", "detail": str(e), **info}

    resolved = path.resolve()
    if not any(Path(wt.path).resolve() == resolved for wt in worktrees):
        return {"ok": False, "error": "WORKTREE_NOT_FOUND", **info}

    try:
        current = get_current_branch(path)
    except GitError as e:
        return {"ok": False, "error": "WORKTREE_BRANCH_CHECK_FAILED", "detail": str(e), **info}

    if current != branch:
        return {
            "ok": False,
            "error": "WORKTREE_BRANCH_MISMATCH",
            "expected": branch,
            "actual": current,
            **info,
        }

    return {"ok": True, **info}


def ensure_task_worktree(worker: Worker, agent_id: str, task_id: str) -> dict:
    """Validate the task worktree, creating it from HEAD when it is missing."""
    check = validate_task_worktree(worker, agent_id, task_id)
    if check["ok"]:
        return {**check, "created": False}
    if check["error"] != "WORKTREE_NOT_FOUND":
        return check

    path = Path(check["worktree_path"])
    branch = check["branch"]
    try:
        Path(worker.worktree_root).mkdir(parents=True, exist_ok=True)
        worktree_add(
            worker.repo_path,
            path,
            branch,
            "HEAD",
            create_branch=not branch_exists(worker.repo_path, branch),
        )
    except (GitError, OSError) as e:
        return {
            "ok": False,
            "error": "WORKTREE_ADD_FAILED",
            "detail": str(e),
            "worktree_path": str(path),
            "branch": branch,
        }
    return {"ok": True, "worktree_path": str(path), "branch": branch, "created": True}


# ── Admin operations ─────────────────────────────────────────────────────────


def apply_patch(store, agent_id: str, task_id: str, patch: str, target: str = "worktree") -> dict:
    """Apply a unified diff inside the task worktree or the worker's repo."""
    worker = store.workers.get(agent_id)
    if not worker:
        return {"ok": False, "error": "WORKER_NOT_FOUND", "agent_id": agent_id}
    if target not in ("worktree", "repo"):
        return {"ok": False, "error": "INVALID_TARGET", "target": target}

    cwd = task_worktree_path(worker, agent_id, task_id) if target == "worktree" else Path(worker.repo_path)
    if not cwd.exists():
        return {"ok": False, "error": "TARGET_NOT_FOUND", "cwd": str(cwd)}

    patch_file = cwd / PATCH_FILE_NAME
    patch_file.write_text(patch, encoding="utf-8")
    try:
        apply_patch_file(cwd, patch_file)
        applied, detail = True, None
    except GitError as e:
        applied, detail = False, str(e)
    finally:
        patch_file.unlink(missing_ok=True)

    try:
        status = get_status(cwd)
    except GitError as e:
        status = f"(status unavailable: {e})"

    store.add_event(
        "agent",
        "patch_applied" if applied else "patch_failed",
        f"{task_id} target={target}",
        agent_id=agent_id,
    )
    result = {"ok": applied, "cwd": str(cwd), "target": target, "status": status}
    if not applied:
        result.update({"error": "PATCH_APPLY_FAILED", "detail": detail})
    return result


def _archive_worktree(worker: Worker, path: Path) -> Path:
    archive_dir = Path(worker.worktree_root) / "_archives"
    archive_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive = archive_dir / f"{path.name}_{stamp}.patch"
    sections = [
        ("git status --porcelain", get_status(path)),
        ("git diff", get_diff(path)),
        ("git diff --staged", get_diff(path, staged=True)),
    ]
    archive.write_text(
        "".join(f"### {title}\n{body}\n\n" for title, body in sections),
        encoding="utf-8",
    )
    return archive


def cleanup_worktree(
    store,
    agent_id: str,
    task_id: str,
    force: bool = False,
    delete_branch_after: bool = False,
    archive_before_force: bool = True,
) -> dict:
    """Remove the task worktree, optionally archiving changes and deleting its branch."""
    worker = store.workers.get(agent_id)
    if not worker:
        return {"ok": False, "error": "WORKER_NOT_FOUND", "agent_id": agent_id}

    path = task_worktree_path(worker, agent_id, task_id)
    branch = task_branch(agent_id, task_id)
    result: dict = {"ok": True, "worktree_path": str(path), "branch": branch, "archive": None}

    if force and archive_before_force and path.exists():
        try:
            archive = _archive_worktree(worker, path)
        except (GitError, OSError) as e:
            return {"ok": False, "error": "ARCHIVE_FAILED", "detail": str(e), **result}
        result["archive"] = str(archive)
        store.add_event("agent", "cleanup_archive_created", f"{task_id} -> {archive}", agent_id=agent_id)

    if path.exists():
        try:
            worktree_remove(worker.repo_path, path, force=force)
        except GitError as e:
            return {"ok": False, "error": "WORKTREE_REMOVE_FAILED", "detail": str(e), **result}
        shutil.rmtree(path, ignore_errors=True)
    result["removed"] = True

    if delete_branch_after and branch_exists(worker.repo_path, branch):
        try:
            delete_branch(worker.repo_path, branch, force=force)
            result["branch_deleted"] = True
        except GitError as e:
            result["branch_deleted"] = False
            result["branch_detail"] = str(e)

    if force and not archive_before_force:
        store.add_event(
            "system",
            "cleanup_forced_without_archive",
            f"{task_id} removed with --force and no archive",
            agent_id=agent_id,
        )
    store.add_event("agent", "cleanup_complete", f"{task_id} worktree removed", agent_id=agent_id)
    return result
