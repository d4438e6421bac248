"""Shared fixtures: throwaway git repositories and in-memory stores."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from agent_orchestrator.core import workers as workers_mod
from agent_orchestrator.db.store import Store

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}

POLICY_YAML = """\
project:
  name: demo
commands:
  test: "test -f README.md"
  fail: "exit 3"
security:
  allow: [test, fail]
  forbid_raw_command: true
"""


def git(repo, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True, env=GIT_ENV
    )
    return result.stdout.strip()


def init_repo(path: Path, branch: str = "main") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "checkout", "-b", branch)
    git(path, "config", "user.name", "Test")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# Test\n")
    git(path, "add", ".")
    git(path, "commit", "-m", "init")
    return path


def write_policy(repo: Path, text: str = POLICY_YAML):
    (repo / ".agent").mkdir(exist_ok=True)
    (repo / ".agent" / "policy.yaml").write_text(text)


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def git_repo(tmp_dir):
    """A git repo on 'main' with one commit and a local identity."""
    return init_repo(tmp_dir / "repo")


@pytest.fixture
def store():
    """A store with no backing files."""
    return Store()


@pytest.fixture
def worker(store, git_repo):
    return workers_mod.register_worker(store, "W1", str(git_repo), role="backend developer")


@pytest.fixture
def team(store, git_repo):
    """A developer, a tech lead and a PM on the same repository."""
    workers_mod.register_worker(store, "W1", str(git_repo), role="backend developer")
    workers_mod.register_worker(store, "TL", str(git_repo), role="Tech Lead")
    workers_mod.register_worker(store, "PM", str(git_repo), role="planning owner")
    return store
