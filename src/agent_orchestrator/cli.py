"""CLI entry point for the agent orchestrator."""

import json
import logging
import sys

import click

from agent_orchestrator.config import get_config
from agent_orchestrator.core import acceptance as acceptance_mod
from agent_orchestrator.core import roles as roles_mod
from agent_orchestrator.core import runs as runs_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core import workers as workers_mod
from agent_orchestrator.core import workflows as workflows_mod
from agent_orchestrator.db.models import to_jsonable
from agent_orchestrator.db.store import get_store

STATUS_ICONS = {
    "todo": "○",
    "doing": "●",
    "in_review": "◐",
    "wait_accept": "◑",
    "accepted": "◕",
    "done": "✓",
    "rejected": "↺",
    "blocked": "✗",
}


def _echo_json(value):
    click.echo(json.dumps(to_jsonable(value), indent=2))


def _fail(result: dict):
    """Print a failed result's error kind and details, then exit non-zero."""
    details = {k: v for k, v in to_jsonable(result).items() if k not in ("ok", "error", "task")}
    click.echo(f"Error: {result['error']}", err=True)
    for key, value in details.items():
        if value not in (None, "", [], {}):
            click.echo(f"  {key}: {value}", err=True)
    sys.exit(1)


def _task_line(task) -> str:
    icon = STATUS_ICONS.get(task.status, "?")
    who = f" @{task.assignee}" if task.assignee else ""
    kind = f" [{task.task_type}]" if task.is_review else ""
    rework = f" (rework {task.rework_count})" if task.rework_count else ""
    return f"  {icon} {task.id}: {task.title} ({task.status}){who}{kind}{rework}"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """ao - Agent Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_command(json_output):
    """Show task counts per status."""
    with get_store(get_config()) as store:
        summary = tasks_mod.status_summary(store)
        if json_output:
            _echo_json(summary)
            return
        click.echo(f"Tasks: {summary['total']}  Workers: {summary['workers']}  Roles: {summary['roles']}")
        for status, count in summary["counts"].items():
            if count:
                click.echo(f"  {STATUS_ICONS.get(status, '?')} {status}: {count}")
        if summary["persistence_failures"] or summary["activity_write_failures"]:
            click.echo(
                f"  persistence failures: {summary['persistence_failures']}, "
                f"activity write failures: {summary['activity_write_failures']}"
            )


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--assignee", "-a", default=None, help="Agent id to assign")
def task_add(title, description, assignee):
    """Enqueue a new task."""
    with get_store(get_config()) as store:
        task = tasks_mod.enqueue_task(store, title, description, assignee)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--assignee", default=None, help="Filter by assignee")
@click.option("--workflow", "workflow_id", default=None, help="Filter by workflow id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, assignee, workflow_id, json_output):
    """List tasks."""
    with get_store(get_config()) as store:
        tasks = tasks_mod.list_tasks(store, status=status, assignee=assignee, workflow_id=workflow_id)
        if json_output:
            _echo_json(tasks)
            return
        if not tasks:
            click.echo("No tasks found.")
            return
        for task in tasks:
            click.echo(_task_line(task))


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with get_store(get_config()) as store:
        task = tasks_mod.get_task(store, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Type: {task.task_type}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.review_target_task_id:
            click.echo(f"  Reviews: {task.review_target_task_id}")
        if task.workflow_id:
            click.echo(f"  Workflow: {task.workflow_id}")
        if task.rework_count:
            click.echo(f"  Rework count: {task.rework_count}")
        if task.rework_reason:
            click.echo(f"  Reason: {task.rework_reason}")
        if meta := store.run_meta.get(task_id):
            click.echo(f"  Last run: {meta.last_run_at} on {meta.branch}")
            click.echo(f"    diff length: {meta.diff_length}, provenance: {meta.provenance_ok}")
            if meta.verify_required:
                click.echo(f"    verified ({meta.verify_command_key}): {meta.verified}")

        events = [e for e in store.activity if e.detail.startswith(task_id)]
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.timestamp}] {e.action}: {e.detail}")


@task_group.command("claim")
@click.argument("task_id")
@click.argument("agent_id")
def task_claim(task_id, agent_id):
    """Claim a task for an agent and set up its worktree."""
    with get_store(get_config()) as store:
        result = tasks_mod.claim_task(store, task_id, agent_id)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Task '{task_id}' claimed by {agent_id}")
        click.echo(f"  Worktree: {result['worktree_path']}")
        click.echo(f"  Branch: {result['branch']}")


@task_group.command("submit")
@click.argument("task_id")
@click.argument("agent_id")
@click.option("--summary", "-s", default=None, help="One-line summary of the change")
def task_submit(task_id, agent_id, summary):
    """Submit a doing task for review."""
    with get_store(get_config()) as store:
        result = tasks_mod.submit_task(store, task_id, agent_id, summary)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Task '{task_id}' submitted ({result['task'].status})")


@task_group.command("accept")
@click.argument("task_id")
@click.option("--agent", "agent_id", default=None, help="Accepting agent id")
@click.option("--target-branch", default=None, help="Integration branch (default from config)")
def task_accept(task_id, agent_id, target_branch):
    """Advance a task by one acceptance stage."""
    config = get_config()
    with get_store(config) as store:
        result = acceptance_mod.accept_task_with_policy(
            store, task_id, target_branch or config.integration_target_branch, agent_id
        )
        if not result["ok"]:
            _fail(result)
        integration = result["integration"]
        click.echo(f"Task '{task_id}' is now {result['task'].status}")
        if integration["enabled"]:
            click.echo(f"  Integration: {integration['status']} onto {integration['target_branch']}")
            if integration["commit"]:
                click.echo(f"  Commit: {integration['commit']}")


@task_group.command("reject")
@click.argument("task_id")
@click.argument("reason")
def task_reject(task_id, reason):
    """Send a task back for rework."""
    with get_store(get_config()) as store:
        result = tasks_mod.reject_task(store, task_id, reason)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Task '{task_id}' rejected (rework {result['task'].rework_count})")


@task_group.command("set-status")
@click.argument("task_id")
@click.argument("status")
def task_set_status(task_id, status):
    """Manually set a task's status."""
    with get_store(get_config()) as store:
        result = tasks_mod.set_task_status(store, task_id, status)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Task '{task_id}': {result['previous_status']} -> {status}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("assignee")
def task_assign(task_id, assignee):
    """Assign a task to an agent."""
    with get_store(get_config()) as store:
        result = tasks_mod.assign_task(store, task_id, assignee)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Task '{task_id}' assigned to {assignee}")


@task_group.command("verify")
@click.argument("task_id")
@click.argument("agent_id")
@click.option("--key", "command_key", default="test", help="Policy command key")
def task_verify(task_id, agent_id, command_key):
    """Run the policy verify command in the task worktree."""
    with get_store(get_config()) as store:
        result = runs_mod.verify_task(store, agent_id, task_id, command_key)
        if "result" in result:
            click.echo(result["result"].stdout, nl=False)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Task '{task_id}' verified with '{command_key}'")


# ── Worker Commands ──────────────────────────────────────────────────────────


@main.group("worker")
def worker_group():
    """Manage workers and roles."""
    pass


@worker_group.command("list")
def worker_list():
    """List workers loaded from the workers file."""
    with get_store(get_config()) as store:
        workers = workers_mod.list_workers(store)
        if not workers:
            click.echo("No workers registered.")
            return
        for w in workers:
            profile = store.roles.get(w.agent_id)
            role = f" {profile.role} [{profile.kind.value}]" if profile else ""
            click.echo(f"  {w.agent_id}:{role}")
            click.echo(f"    repo: {w.repo_path}")
            click.echo(f"    worktrees: {w.worktree_root}")


@worker_group.command("load")
@click.option("--file", "workers_file", default=None, help="Workers YAML (default from config)")
@click.option("--reset", is_flag=True, help="Clear workers and roles before loading")
def worker_load(workers_file, reset):
    """Reload workers and roles from a YAML file."""
    config = get_config()
    with get_store(config) as store:
        path = config.resolve(workers_file) if workers_file else config.workers_file
        result = workers_mod.reload_config(store, path, reset_workers=reset, reset_roles=reset)
        if not result["ok"]:
            _fail(result)
        click.echo(f"Loaded {len(result['loaded_workers'])} worker(s) from {result['path']}")


@worker_group.command("roles")
@click.argument("repo_path", default=".")
@click.option("--file", "file_path", default=None, help="Roles markdown file, relative to the repo")
@click.option("--replace", is_flag=True, help="Replace the role table")
def worker_roles(repo_path, file_path, replace):
    """Load role profiles from <repo>/.agent/roles.md."""
    with get_store(get_config()) as store:
        result = roles_mod.load_agent_roles(store, repo_path, file_path, replace)
        if not result["ok"]:
            _fail(result)
        for profile in result["roles"]:
            click.echo(f"  {profile.agent_id}: {profile.role} [{profile.kind.value}]")


@worker_group.command("run")
@click.argument("agent_id")
@click.argument("command_key")
@click.option("--cwd", default=None, help="Working directory inside the repository")
def worker_run(agent_id, command_key, cwd):
    """Run a policy command in the worker's repository."""
    with get_store(get_config()) as store:
        result = runs_mod.run_policy_command(store, agent_id, command_key, cwd)
        if "result" in result:
            click.echo(result["result"].stdout, nl=False)
            click.echo(result["result"].stderr, nl=False, err=True)
        if not result["ok"]:
            _fail(result)


# ── Activity & Workflow Commands ─────────────────────────────────────────────


@main.command("activity")
@click.option("--workflow", "workflow_id", default=None, help="Filter by workflow id")
@click.option("--agent", "agent_id", default=None, help="Filter by agent id")
@click.option("--limit", "-n", default=50, type=int, help="Number of events (max 200)")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def activity_command(workflow_id, agent_id, limit, json_output):
    """Show recent activity events."""
    with get_store(get_config()) as store:
        result = tasks_mod.activity_log(store, workflow_id, agent_id, limit, fmt="text")
        if json_output:
            _echo_json(result["events"])
        elif result["events"]:
            click.echo(result["text"])
        else:
            click.echo("No activity.")


@main.group("workflow")
def workflow_group():
    """Story workflows."""
    pass


def _echo_workflow(result: dict):
    workflow = result["workflow"]
    click.echo(f"Workflow: {workflow.id} ({workflow.status})")
    for q in result.get("questions") or []:
        click.echo(f"  ? {q['id']}: {q['question']}")
    for task in result.get("tasks") or []:
        click.echo(_task_line(task))
    if workflow.report:
        click.echo(f"  Report: {workflow.report}")


@workflow_group.command("start")
@click.argument("story")
@click.option("--repo-path", default=None, help="Repository holding .agent/roles.md")
def workflow_start(story, repo_path):
    """Create a workflow from a story."""
    with get_store(get_config()) as store:
        result = workflows_mod.run_story_workflow(store, story=story, repo_path=repo_path)
        if not result["ok"]:
            _fail(result)
        _echo_workflow(result)


@workflow_group.command("answer")
@click.argument("workflow_id")
@click.argument("answers", nargs=-1, required=True)
@click.option("--execute", is_flag=True, help="Run each decomposed task through its worker")
def workflow_answer(workflow_id, answers, execute):
    """Answer clarifying questions with QUESTION_ID=ANSWER pairs."""
    parsed = []
    for pair in answers:
        question_id, sep, answer = pair.partition("=")
        if not sep:
            raise click.BadParameter(f"expected QUESTION_ID=ANSWER, got '{pair}'")
        parsed.append({"question_id": question_id, "answer": answer})

    with get_store(get_config()) as store:
        result = workflows_mod.run_story_workflow(
            store, workflow_id=workflow_id, answers=parsed, auto_execute=execute
        )
        if not result["ok"]:
            _fail(result)
        _echo_workflow(result)


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from agent_orchestrator.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_orchestrator.mcp.server import mcp
    from agent_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
