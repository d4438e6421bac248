"""Worker registry: registration, YAML bootstrap and config reload."""

import logging
import os
from pathlib import Path

import yaml

from agent_orchestrator.core.roles import apply_agent_roles, make_profile
from agent_orchestrator.db.models import AgentRoleProfile, Worker

logger = logging.getLogger(__name__)

DEFAULT_WORKTREE_DIR = ".worktrees"


def _default_codex_cmd() -> str:
    return os.environ.get("CODEX_CMD") or "codex"


def _build_worker(
    agent_id: str,
    repo_path: str | Path,
    worktree_dir_name: str | None,
    codex_cmd: str | None,
) -> Worker:
    repo = Path(repo_path).resolve()
    root = repo / (worktree_dir_name or DEFAULT_WORKTREE_DIR)
    root.mkdir(parents=True, exist_ok=True)
    return Worker(
        agent_id=agent_id,
        repo_path=str(repo),
        worktree_root=str(root),
        codex_cmd=codex_cmd or _default_codex_cmd(),
    )


def register_worker(
    store,
    agent_id: str,
    repo_path: str,
    worktree_dir_name: str | None = None,
    codex_cmd: str | None = None,
    role: str | None = None,
    focus: str | None = None,
    personality: str | None = None,
    verify_command_key: str | None = None,
    is_pm: bool = False,
) -> Worker:
    """Register a worker bound to one repository, plus its role if given."""
    if not agent_id:
        raise ValueError("agent_id is required")
    worker = _build_worker(agent_id, repo_path, worktree_dir_name, codex_cmd)

    with store.lock:
        store.workers[agent_id] = worker
        if role:
            profile = make_profile(agent_id, role, is_pm, focus, personality, verify_command_key)
            store.roles[agent_id] = profile

    store.add_event(
        "system",
        "worker_registered",
        f"{agent_id} repo={worker.repo_path}" + (f" role={role}" if role else ""),
        agent_id=agent_id,
    )
    return worker


def get_worker(store, agent_id: str) -> Worker | None:
    with store.lock:
        return store.workers.get(agent_id)


def list_workers(store) -> list[Worker]:
    with store.lock:
        return list(store.workers.values())


def preload_workers_from_config(
    store,
    path: str | Path,
    codex_cmd: str | None = None,
) -> tuple[list[Worker], list[AgentRoleProfile]]:
    """Load ``workers:`` entries from a YAML file into the store.

    Entries without agentId or repoPath are skipped. Relative repo paths are
    resolved against the project home: the parent of a ``settings``
    directory, else the file's own directory. Roles found in the file
    replace the role table. Raises OSError or ValueError.
    """
    path = Path(path)
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid workers file {path}: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"workers file must be a mapping: {path}")

    home = path.parent.parent if path.parent.name == "settings" else path.parent
    loaded: list[Worker] = []
    roles: list[AgentRoleProfile] = []

    for entry in parsed.get("workers") or []:
        if not isinstance(entry, dict) or not entry.get("agentId") or not entry.get("repoPath"):
            continue
        repo = Path(str(entry["repoPath"]))
        if not repo.is_absolute():
            repo = home / repo
        agent_id = str(entry["agentId"])
        worker = _build_worker(
            agent_id,
            repo,
            entry.get("worktreeDirName"),
            entry.get("codexCmd") or codex_cmd,
        )
        loaded.append(worker)
        if entry.get("role"):
            roles.append(
                make_profile(
                    agent_id,
                    str(entry["role"]),
                    is_pm=bool(entry.get("isPm", False)),
                    focus=entry.get("focus"),
                    personality=entry.get("personality"),
                    verify_command_key=entry.get("verifyCommandKey"),
                )
            )

    with store.lock:
        for worker in loaded:
            store.workers[worker.agent_id] = worker
    if roles:
        apply_agent_roles(store, roles, replace=True)

    logger.info("Loaded %d worker(s) and %d role(s) from %s", len(loaded), len(roles), path)
    return loaded, roles


def reload_config(
    store,
    workers_file: str | Path,
    reset_workers: bool = False,
    reset_roles: bool = False,
    clear_policy_cache: bool = True,
) -> dict:
    """Re-read the workers file, optionally clearing registries and caches."""
    with store.lock:
        before = {
            "workers": len(store.workers),
            "roles": len(store.roles),
            "policies": len(store.policy_cache),
        }
        if reset_workers:
            store.workers.clear()
        if reset_roles:
            store.roles.clear()
        if clear_policy_cache:
            store.policy_cache.clear()

    try:
        loaded, roles = preload_workers_from_config(store, workers_file)
    except (OSError, ValueError) as e:
        return {"ok": False, "error": "RELOAD_FAILED", "path": str(workers_file), "detail": str(e)}

    with store.lock:
        after = {
            "workers": len(store.workers),
            "roles": len(store.roles),
            "policies": len(store.policy_cache),
        }

    store.add_event(
        "system",
        "config_reloaded",
        f"workers {before['workers']}->{after['workers']}, roles {before['roles']}->{after['roles']}",
    )
    return {
        "ok": True,
        "path": str(workers_file),
        "before": before,
        "after": after,
        "loaded_workers": [w.agent_id for w in loaded],
        "loaded_roles": [r.agent_id for r in roles],
    }
