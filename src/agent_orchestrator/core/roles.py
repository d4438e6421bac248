"""Agent role profiles: classification, routing lookups and roles.md loading."""

import re
from pathlib import Path

import yaml

from agent_orchestrator.db.models import AgentRoleProfile, RoleKind

TECH_LEAD_PATTERN = re.compile(r"tech lead|techlead|architect|\btl\b", re.IGNORECASE)
PM_PATTERN = re.compile(r"planning|\bpm\b|product manager", re.IGNORECASE)
QA_PATTERN = re.compile(r"qa|review|test", re.IGNORECASE)

ROLES_FILE = Path(".agent") / "roles.md"
_FRONTMATTER = re.compile(r"^---\r?\n(.*?)\r?\n---(?:\r?\n|$)", re.DOTALL)


def classify_role(role: str, is_pm: bool = False) -> RoleKind:
    """Map a free-text role label to a RoleKind."""
    if is_pm:
        return RoleKind.PM
    if TECH_LEAD_PATTERN.search(role):
        return RoleKind.TECH_LEAD
    if PM_PATTERN.search(role):
        return RoleKind.PM
    if QA_PATTERN.search(role):
        return RoleKind.QA
    return RoleKind.DEVELOPER


def make_profile(
    agent_id: str,
    role: str,
    is_pm: bool = False,
    focus: str | None = None,
    personality: str | None = None,
    verify_command_key: str | None = None,
) -> AgentRoleProfile:
    return AgentRoleProfile(
        agent_id=agent_id,
        role=role,
        kind=classify_role(role, is_pm),
        is_pm=is_pm,
        focus=focus,
        personality=personality,
        verify_command_key=verify_command_key,
    )


def apply_agent_roles(store, roles: list[AgentRoleProfile], replace: bool = False):
    with store.lock:
        if replace:
            store.roles.clear()
        for profile in roles:
            store.roles[profile.agent_id] = profile
        store.save()


def pick_pm(roles) -> AgentRoleProfile | None:
    """An explicit ``is_pm`` profile wins over one matched by its role text."""
    roles = list(roles)
    return next((p for p in roles if p.is_pm), None) or next(
        (p for p in roles if p.kind == RoleKind.PM), None
    )


def find_agent_by_kind(store, kind: RoleKind) -> AgentRoleProfile | None:
    """First profile of the given kind in registration order, flagged PMs first."""
    with store.lock:
        if kind == RoleKind.PM:
            return pick_pm(store.roles.values())
        return next((p for p in store.roles.values() if p.kind == kind), None)


def find_tech_lead(store) -> AgentRoleProfile | None:
    return find_agent_by_kind(store, RoleKind.TECH_LEAD)


def find_pm(store) -> AgentRoleProfile | None:
    return find_agent_by_kind(store, RoleKind.PM)


def parse_roles_frontmatter(text: str) -> list[AgentRoleProfile]:
    """Parse the ``agents:`` list from a markdown file's YAML frontmatter."""
    match = _FRONTMATTER.match(text.lstrip("﻿"))
    if not match:
        raise ValueError("roles frontmatter is missing")
    try:
        parsed = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid roles frontmatter: {e}") from e

    roles = []
    for entry in parsed.get("agents") or []:
        if not isinstance(entry, dict) or not entry.get("agentId") or not entry.get("role"):
            continue
        roles.append(
            make_profile(
                str(entry["agentId"]),
                str(entry["role"]),
                is_pm=bool(entry.get("isPm", False)),
                focus=entry.get("focus"),
                personality=entry.get("personality"),
                verify_command_key=entry.get("verifyCommandKey"),
            )
        )
    if not roles:
        raise ValueError("no valid agents found in roles frontmatter")
    return roles


def resolve_roles_path(repo_path: str | Path, file_path: str | None = None) -> Path:
    repo = Path(repo_path)
    if not file_path:
        return repo / ROLES_FILE
    path = Path(file_path)
    return path if path.is_absolute() else repo / path


def load_agent_roles(
    store,
    repo_path: str | None,
    file_path: str | None = None,
    replace: bool = False,
) -> dict:
    """Load role profiles from a repository's roles.md into the store."""
    if not repo_path:
        return {"ok": False, "error": "REPO_PATH_REQUIRED"}

    path = resolve_roles_path(repo_path, file_path)
    try:
        roles = parse_roles_frontmatter(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        return {"ok": False, "error": "LOAD_ROLES_FAILED", "path": str(path), "detail": str(e)}

    apply_agent_roles(store, roles, replace=replace)
    store.add_event(
        "system",
        "load_roles_md",
        f"loaded {len(roles)} role(s) from {path}",
    )
    return {"ok": True, "path": str(path), "roles": roles}
