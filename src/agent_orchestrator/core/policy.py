"""Per-repository command policy: symbolic keys to allowlisted shell commands."""

from dataclasses import dataclass
from pathlib import Path

import yaml

from agent_orchestrator.db.models import RepoPolicy

POLICY_FILE = Path(".agent") / "policy.yaml"


class PolicyError(ValueError):
    """Raised when a repository policy cannot be loaded."""


class CommandRejected(ValueError):
    """Raised when a command key is not permitted by the policy."""


@dataclass
class ResolvedCommand:
    key: str
    command: str
    raw: bool = False


def parse_policy(data: dict | None) -> RepoPolicy:
    """Build a RepoPolicy from parsed policy.yaml content."""
    data = data or {}
    if not isinstance(data, dict):
        raise PolicyError("policy must be a mapping")
    commands = data.get("commands") or {}
    security = data.get("security") or {}
    project = data.get("project") or {}
    return RepoPolicy(
        commands={str(k): str(v) for k, v in commands.items()},
        allow=[str(k) for k in security.get("allow") or []],
        forbid_raw_command=bool(security.get("forbid_raw_command", True)),
        project_name=project.get("name") if isinstance(project, dict) else None,
    )


def load_repo_policy(store, repo_path: str | Path, refresh: bool = False) -> RepoPolicy:
    """Load and cache ``<repo>/.agent/policy.yaml``. Raises PolicyError."""
    key = str(Path(repo_path).resolve())
    with store.lock:
        if refresh:
            store.policy_cache.pop(key, None)
        cached = store.policy_cache.get(key)
    if cached is not None:
        return cached

    path = Path(key) / POLICY_FILE
    try:
        text = path.read_text(encoding="utf-8")
        policy = parse_policy(yaml.safe_load(text))
    except OSError as e:
        raise PolicyError(f"cannot read policy {path}: {e}") from e
    except yaml.YAMLError as e:
        raise PolicyError(f"invalid policy {path}: {e}") from e

    with store.lock:
        store.policy_cache[key] = policy
    return policy


def resolve_command_from_policy(policy: RepoPolicy, key: str) -> ResolvedCommand:
    """Map a command key to a concrete command. Raises CommandRejected."""
    if key in policy.commands:
        if policy.allow and key not in policy.allow:
            raise CommandRejected(f"command key not in allowlist: {key}")
        return ResolvedCommand(key=key, command=policy.commands[key])

    if not policy.forbid_raw_command:
        return ResolvedCommand(key=key, command=key, raw=True)

    raise CommandRejected(f"raw command is forbidden by policy: {key}")


def resolve_cwd_within_repo(repo_path: str | Path, cwd: str | None = None) -> Path:
    """Resolve cwd relative to the repo. Raises ValueError if it escapes."""
    repo = Path(repo_path).resolve()
    if not cwd:
        return repo
    target = Path(cwd)
    target = (target if target.is_absolute() else repo / target).resolve()
    if target != repo and repo not in target.parents:
        raise ValueError(f"cwd must be inside repo. repo={repo}, cwd={target}")
    return target
