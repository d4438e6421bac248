"""Tests for git and shell integrations."""

import time

import pytest

from agent_orchestrator.integrations.git import (
    GitError,
    cherry_pick,
    commit_all,
    get_current_branch,
    get_head_commit,
    is_ancestor,
    is_patch_applied,
    resolve_base_branch,
    worktree_add,
    worktree_list,
)
from agent_orchestrator.integrations.shell import run_command, shell_quote

from conftest import git, init_repo


class TestRunCommand:
    def test_success(self, tmp_dir):
        result = run_command("echo hello", str(tmp_dir))
        assert result.ok
        assert result.exit_code == 0
        assert result.stdout.strip() == "hello"
        assert not result.timed_out

    def test_failure_exit_code(self, tmp_dir):
        result = run_command("echo oops >&2; exit 4", str(tmp_dir))
        assert not result.ok
        assert result.exit_code == 4
        assert "oops" in result.stderr

    def test_timeout_terminates(self, tmp_dir):
        start = time.monotonic()
        result = run_command("sleep 30", str(tmp_dir), timeout_ms=200, kill_grace_ms=200)
        assert result.timed_out
        assert not result.ok
        assert time.monotonic() - start < 10

    def test_env_passed(self, tmp_dir):
        result = run_command('echo "$AO_TEST_VALUE"', str(tmp_dir), env={"AO_TEST_VALUE": "xyz"})
        assert result.stdout.strip() == "xyz"

    def test_missing_cwd(self, tmp_dir):
        result = run_command("true", str(tmp_dir / "missing"))
        assert not result.ok
        assert result.exit_code is None


class TestShellQuote:
    def test_round_trip_through_shell(self, tmp_dir):
        value = 'say "hi" $HOME `id` \\ end'
        result = run_command(f"printf %s {shell_quote(value)}", str(tmp_dir))
        assert result.stdout == value


class TestResolveBaseBranch:
    def test_main(self, git_repo):
        base = resolve_base_branch(git_repo)
        assert base.branch == "main"
        assert base.ref == "main"

    def test_preferred_wins(self, git_repo):
        git(git_repo, "branch", "feature")
        base = resolve_base_branch(git_repo, "feature")
        assert base.branch == "feature"
        assert base.tried == ["feature"]

    def test_only_develop_falls_back_to_current(self, tmp_dir):
        repo = init_repo(tmp_dir / "dev", branch="develop")
        base = resolve_base_branch(repo)
        assert base.branch == "develop"
        assert base.tried == ["main", "master", "develop"]

    def test_unknown_preferred_skipped(self, git_repo):
        base = resolve_base_branch(git_repo, "nope")
        assert base.branch == "main"
        assert base.tried[:2] == ["nope", "main"]

    def test_origin_ref(self, tmp_dir):
        upstream = init_repo(tmp_dir / "upstream", branch="trunk")
        clone = tmp_dir / "clone"
        git(tmp_dir, "clone", str(upstream), str(clone))
        git(clone, "checkout", "-b", "local-only")
        git(clone, "branch", "-D", "trunk")
        base = resolve_base_branch(clone)
        assert base.branch == "trunk"
        assert base.ref == "origin/trunk"

    def test_nothing_resolves(self, tmp_dir):
        empty = tmp_dir / "empty"
        empty.mkdir()
        git(empty, "init")
        base = resolve_base_branch(empty)
        assert base.branch == "HEAD"


class TestIntegrationHelpers:
    def test_cherry_pick_and_patch_equivalence(self, git_repo, tmp_dir):
        wt = tmp_dir / "wt"
        worktree_add(git_repo, wt, "topic", "main")
        (wt / "new.txt").write_text("x\n")
        commit = commit_all(wt, "add new")

        assert not is_ancestor(git_repo, commit)
        assert not is_patch_applied(git_repo, commit)
        cherry_pick(git_repo, commit)
        assert get_head_commit(git_repo) != commit
        assert is_patch_applied(git_repo, commit)
        assert get_current_branch(git_repo) == "main"

    def test_conflict_is_aborted(self, git_repo, tmp_dir):
        wt = tmp_dir / "wt"
        worktree_add(git_repo, wt, "topic", "main")
        (wt / "README.md").write_text("theirs\n")
        commit = commit_all(wt, "change readme")
        (git_repo / "README.md").write_text("ours\n")
        commit_all(git_repo, "diverge")

        with pytest.raises(GitError):
            cherry_pick(git_repo, commit)
        assert git(git_repo, "status", "--porcelain", "--untracked-files=no") == ""

    def test_worktree_list(self, git_repo, tmp_dir):
        worktree_add(git_repo, tmp_dir / "wt", "topic", "main")
        branches = {wt.branch for wt in worktree_list(git_repo)}
        assert {"main", "topic"} <= branches
