"""Tests for the CLI."""

import json
import os
import re

import pytest
from click.testing import CliRunner

from agent_orchestrator.cli import main

from conftest import git, write_policy


@pytest.fixture
def cli_env(tmp_dir, git_repo):
    """A home directory whose workers file points at a throwaway repo."""
    home = tmp_dir / "home"
    (home / "settings").mkdir(parents=True)
    (home / "settings" / "workers.yaml").write_text(
        "workers:\n"
        f"  - agentId: W1\n    repoPath: {git_repo}\n    role: backend developer\n"
        f"  - agentId: TL\n    repoPath: {git_repo}\n    role: tech lead\n"
    )
    write_policy(git_repo)

    env = {"AO_HOME": str(home)}
    old_env = {}
    for k, v in env.items():
        old_env[k] = os.environ.get(k)
        os.environ[k] = v

    yield CliRunner(), home, git_repo

    for k, v in old_env.items():
        if v is None:
            os.environ.pop(k, None)
        else:
            os.environ[k] = v


def _created_id(output: str) -> str:
    return re.search(r"Created task: (\S+)", output).group(1)


class TestCLI:
    def test_help(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Agent Orchestrator" in result.output

    def test_add_and_list(self, cli_env):
        runner, home, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Export CSV", "-d", "report page", "-a", "W1"])
        assert result.exit_code == 0
        task_id = _created_id(result.output)
        assert (home / "logs" / "state.json").exists()

        result = runner.invoke(main, ["task", "list"])
        assert task_id in result.output
        assert "(todo) @W1" in result.output

        result = runner.invoke(main, ["task", "list", "--json"])
        assert json.loads(result.output)[0]["id"] == task_id

        result = runner.invoke(main, ["task", "show", task_id])
        assert "Description: report page" in result.output
        assert "task_enqueued" in result.output

    def test_empty_list(self, cli_env):
        runner, _, _ = cli_env
        assert "No tasks found." in runner.invoke(main, ["task", "list"]).output

    def test_full_lifecycle(self, cli_env):
        runner, _, repo = cli_env
        task_id = _created_id(runner.invoke(main, ["task", "add", "Feature"]).output)

        result = runner.invoke(main, ["task", "claim", task_id, "W1"])
        assert result.exit_code == 0, result.output
        assert f"Task '{task_id}' claimed by W1" in result.output
        worktree = re.search(r"Worktree: (\S+)", result.output).group(1)
        (repo / ".worktrees" / f"W1__{task_id}" / "feature.txt").write_text("x\n")
        assert worktree.endswith(f"W1__{task_id}")

        result = runner.invoke(main, ["task", "submit", task_id, "W1", "-s", "first cut"])
        assert "submitted (in_review)" in result.output

        result = runner.invoke(main, ["task", "list", "--status", "todo"])
        assert "[tl_review]" in result.output

        assert "is now wait_accept" in runner.invoke(main, ["task", "accept", task_id]).output
        assert "is now accepted" in runner.invoke(main, ["task", "accept", task_id]).output
        result = runner.invoke(main, ["task", "accept", task_id])
        assert "is now done" in result.output
        assert "Integration: applied onto main" in result.output
        assert (repo / "feature.txt").exists()
        assert git(repo, "log", "-1", "--format=%s") == f"agent-orchestrator: apply {task_id}"

    def test_reject_and_rework(self, cli_env):
        runner, _, _ = cli_env
        task_id = _created_id(runner.invoke(main, ["task", "add", "Feature"]).output)
        runner.invoke(main, ["task", "claim", task_id, "W1"])
        runner.invoke(main, ["task", "submit", task_id, "W1"])
        result = runner.invoke(main, ["task", "reject", task_id, "needs tests"])
        assert f"Task '{task_id}' rejected (rework 1)" in result.output

    def test_errors_exit_nonzero(self, cli_env):
        runner, _, _ = cli_env
        task_id = _created_id(runner.invoke(main, ["task", "add", "Feature"]).output)

        result = runner.invoke(main, ["task", "set-status", task_id, "done"])
        assert result.exit_code == 1
        assert "Error: INVALID_TRANSITION" in result.output

        result = runner.invoke(main, ["task", "show", "missing"])
        assert result.exit_code == 1

        result = runner.invoke(main, ["task", "claim", task_id, "GHOST"])
        assert "Error: WORKER_NOT_FOUND" in result.output

    def test_set_status(self, cli_env):
        runner, _, _ = cli_env
        task_id = _created_id(runner.invoke(main, ["task", "add", "Feature"]).output)
        result = runner.invoke(main, ["task", "set-status", task_id, "blocked"])
        assert f"Task '{task_id}': todo -> blocked" in result.output

    def test_status(self, cli_env):
        runner, _, _ = cli_env
        runner.invoke(main, ["task", "add", "A"])
        runner.invoke(main, ["task", "add", "B"])
        data = json.loads(runner.invoke(main, ["status", "--json"]).output)
        assert data["counts"]["todo"] == 2
        assert data["workers"] == 2

        result = runner.invoke(main, ["status"])
        assert "Tasks: 2" in result.output


class TestWorkerCommands:
    def test_list(self, cli_env):
        runner, _, repo = cli_env
        result = runner.invoke(main, ["worker", "list"])
        assert "W1: backend developer [developer]" in result.output
        assert "TL: tech lead [tech_lead]" in result.output
        assert str(repo.resolve()) in result.output

    def test_run_policy_command(self, cli_env):
        runner, _, _ = cli_env
        assert runner.invoke(main, ["worker", "run", "W1", "test"]).exit_code == 0
        result = runner.invoke(main, ["worker", "run", "W1", "rm -rf ."])
        assert result.exit_code == 1
        assert "Error: COMMAND_REJECTED" in result.output

    def test_roles_from_repo(self, cli_env):
        runner, _, repo = cli_env
        (repo / ".agent" / "roles.md").write_text(
            "---\nagents:\n  - agentId: PM\n    role: planning\n---\n"
        )
        result = runner.invoke(main, ["worker", "roles", str(repo)])
        assert "PM: planning [pm]" in result.output


class TestWorkflowAndActivity:
    def test_workflow_questions_and_answers(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["workflow", "start", "Make the app better"])
        assert result.exit_code == 0, result.output
        workflow_id = re.search(r"Workflow: (\S+) \(awaiting_user\)", result.output).group(1)
        question_ids = re.findall(r"\? (q_\S+):", result.output)
        assert len(question_ids) == 3

        pairs = [f"{qid}=yes" for qid in question_ids]
        result = runner.invoke(main, ["workflow", "answer", workflow_id, *pairs])
        assert result.exit_code == 0, result.output
        assert f"Workflow: {workflow_id} (ready)" in result.output
        assert "Implementation 1" in result.output

    def test_bad_answer_pair(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["workflow", "answer", "wf_x", "no-equals"])
        assert result.exit_code != 0

    def test_activity(self, cli_env):
        runner, _, _ = cli_env
        assert "No activity." in runner.invoke(main, ["activity"]).output
        runner.invoke(main, ["task", "add", "A"])
        result = runner.invoke(main, ["activity"])
        assert "task_enqueued" in result.output
