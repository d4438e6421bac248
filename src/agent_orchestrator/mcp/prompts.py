"""MCP prompt templates for common workflows."""

from agent_orchestrator.mcp.server import mcp


@mcp.prompt()
def plan_story(story: str) -> str:
    """Generate a prompt to turn a story into a workflow."""
    return (
        f"I want the team of worker agents to deliver this story:\n\n"
        f"{story}\n\n"
        f"Call run_story_workflow with the story. If it returns clarifying questions, "
        f"ask me each one and pass my answers back as answers=[{{question_id, answer}}] "
        f"with the same workflow_id. Once tasks are decomposed, summarize who owns what."
    )


@mcp.prompt()
def status_report() -> str:
    """Generate a prompt for an orchestrator status report."""
    return (
        "Please generate a status report for the orchestrator.\n\n"
        "Use the status tool and activity_log (format='text', limit=50), then provide:\n"
        "1. Counts per status\n"
        "2. Tasks waiting on review or acceptance and which role owns the next step\n"
        "3. Blocked or rejected tasks with their reasons\n"
        "4. Recent failures in the activity log\n"
        "5. Persistence health (persistence_failures, activity_write_failures)"
    )


@mcp.prompt()
def review_task(task_id: str) -> str:
    """Generate a prompt to review a task at its current acceptance stage."""
    return (
        f"Please review task '{task_id}'.\n\n"
        f"Use get_task to see its status and run metadata. Inspect the worktree diff.\n"
        f"If the change meets the requirement call accept_task(task_id='{task_id}'), "
        f"otherwise call reject_task(task_id='{task_id}', reason=...) with a concrete reason."
    )


@mcp.prompt()
def work_next(agent_id: str) -> str:
    """Generate a prompt for a worker to pick up and finish its next task."""
    return (
        f"You are worker '{agent_id}'.\n\n"
        f"1. Use list_tasks(assignee='{agent_id}') and claim rework (status 'rejected') before new 'todo' tasks\n"
        f"2. Work only inside the worktree path returned by claim_task\n"
        f"3. Use report_progress for short updates while working\n"
        f"4. Use run_command or verify_task with policy keys to check your change\n"
        f"5. Finish with submit_task and a one-line summary"
    )
