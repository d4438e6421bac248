"""Prompt text handed to worker and reviewer agents."""

from agent_orchestrator.db.models import AgentRoleProfile, Task

STAGE_INSTRUCTIONS = {
    "in_review": "You are the tech lead. Review the implementation for correctness and scope.",
    "wait_accept": "You are the product/planning owner. Decide whether the change meets the requirement.",
    "accepted": "You are the tech lead. Confirm the change is ready to merge onto the integration branch.",
}


def build_execution_prompt(task: Task, profile: AgentRoleProfile | None = None) -> str:
    """Prompt for implementing a task inside its worktree."""
    parts = [
        "You are a software worker agent running inside an assigned git worktree.",
        "Implement the requested task directly in the repository with minimal, safe changes.",
        "Run local checks as needed and keep the change scope focused.",
    ]
    if profile:
        parts.append(f"Your role: {profile.role}")
        if profile.focus:
            parts.append(f"Focus: {profile.focus}")
        if profile.personality:
            parts.append(f"Style: {profile.personality}")
    if task.rework_reason:
        parts.append(f"This is rework. Previous rejection reason: {task.rework_reason}")
    parts += [
        "",
        f"Task ID: {task.id}",
        f"Title: {task.title}",
        f"Description: {task.description or '(none)'}",
    ]
    return "\n".join(parts)


def build_review_prompt(task: Task, reviewer: AgentRoleProfile) -> str:
    """Prompt asking a reviewer agent to accept or reject the target task."""
    return "\n".join(
        [
            STAGE_INSTRUCTIONS.get(task.status, "Review the task."),
            f"Your agent id: {reviewer.agent_id} (role: {reviewer.role})",
            "",
            f"Target task ID: {task.id}",
            f"Title: {task.title}",
            f"Description: {task.description or '(none)'}",
            f"Current stage: {task.status}",
            "",
            "Inspect the task worktree and its diff, then decide.",
            f"To approve call the accept_task tool with task_id='{task.id}'.",
            f"To send it back call the reject_task tool with task_id='{task.id}' and a concrete reason.",
            "You must make exactly one of these calls before finishing.",
        ]
    )


def build_story_task_prompt(story: str, task: Task, profile: AgentRoleProfile | None) -> str:
    """Prompt for a task decomposed from a story workflow."""
    lines = [f"Your role: {profile.role if profile else 'developer'}"]
    if profile and profile.focus:
        lines.append(f"Focus: {profile.focus}")
    lines += [
        f"Story: {story}",
        f"Assigned task: {task.title}",
        f"Details: {task.description}",
        "Run the minimal tests or checks needed after your change.",
    ]
    return "\n".join(lines)
