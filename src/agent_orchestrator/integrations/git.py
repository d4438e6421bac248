"""Git subprocess wrappers for worktree, branch and integration operations."""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


@dataclass
class BaseBranch:
    branch: str
    ref: str
    tried: list[str] = field(default_factory=list)


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def is_work_tree(path: str | Path) -> bool:
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base: str = "HEAD",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def _parse_worktree_entry(current: dict) -> WorktreeInfo:
    return WorktreeInfo(
        path=current.get("worktree", ""),
        branch=current.get("branch", "").replace("refs/heads/", ""),
        head=current.get("HEAD", ""),
        is_bare=current.get("bare", False),
    )


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n"):
        if not line:
            if current:
                worktrees.append(_parse_worktree_entry(current))
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    if current:
        worktrees.append(_parse_worktree_entry(current))

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def ref_exists(repo_path: str | Path, ref: str) -> bool:
    """Check whether a ref resolves to a commit."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], cwd=repo_path)
        return True
    except GitError:
        return False


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    return ref_exists(repo_path, f"refs/heads/{branch}")


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_status(cwd: str | Path, untracked: bool = True) -> str:
    """Get porcelain status of a working directory."""
    args = ["status", "--porcelain"]
    if not untracked:
        args.append("--untracked-files=no")
    return run_git(args, cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name ('HEAD' when detached)."""
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def get_head_commit(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def remote_head_branch(repo_path: str | Path, remote: str = "origin") -> str | None:
    """Branch that the remote's symbolic HEAD points to, if any."""
    try:
        ref = run_git(
            ["symbolic-ref", "--quiet", "--short", f"refs/remotes/{remote}/HEAD"], cwd=repo_path
        )
    except GitError:
        return None
    prefix = f"{remote}/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref or None


def resolve_base_branch(repo_path: str | Path, preferred: str | None = None) -> BaseBranch:
    """Pick a base branch: preferred, origin HEAD, main, master, current.

    A candidate is chosen when it resolves locally or as ``origin/<name>``.
    Falls back to ``HEAD`` when nothing resolves.
    """
    candidates = [preferred, remote_head_branch(repo_path), "main", "master"]
    try:
        current = get_current_branch(repo_path)
    except GitError:
        current = None
    if current and current != "HEAD":
        candidates.append(current)

    tried: list[str] = []
    for candidate in candidates:
        if not candidate or candidate in tried:
            continue
        tried.append(candidate)
        if ref_exists(repo_path, candidate):
            return BaseBranch(branch=candidate, ref=candidate, tried=tried)
        if ref_exists(repo_path, f"origin/{candidate}"):
            return BaseBranch(branch=candidate, ref=f"origin/{candidate}", tried=tried)

    return BaseBranch(branch="HEAD", ref="HEAD", tried=tried)


def get_diff(cwd: str | Path, staged: bool = False) -> str:
    args = ["diff"]
    if staged:
        args.append("--staged")
    return run_git(args, cwd=cwd)


def list_untracked(cwd: str | Path) -> list[str]:
    output = run_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)
    return [line for line in output.split("\n") if line]


def commit_all(cwd: str | Path, message: str) -> str:
    """Stage everything and commit. Returns the new HEAD."""
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "-m", message], cwd=cwd)
    return get_head_commit(cwd)


def is_ancestor(repo_path: str | Path, commit: str, ref: str = "HEAD") -> bool:
    """True when ``commit`` is reachable from ``ref``."""
    result = subprocess.run(
        ["git", "merge-base", "--is-ancestor", commit, ref],
        cwd=repo_path,
        capture_output=True,
        text=True,
    )
    if result.returncode == 0:
        return True
    if result.returncode == 1:
        return False
    raise GitError(f"git merge-base --is-ancestor failed: {result.stderr.strip()}")


def is_patch_applied(repo_path: str | Path, commit: str, ref: str = "HEAD") -> bool:
    """True when an equivalent change of ``commit`` already exists on ``ref``."""
    try:
        output = run_git(["cherry", ref, commit, f"{commit}^"], cwd=repo_path)
    except GitError:
        return False
    return output.startswith("-")


def cherry_pick(repo_path: str | Path, commit: str) -> str:
    """Cherry-pick a commit. On failure the pick is aborted and GitError raised."""
    try:
        run_git(["cherry-pick", "--no-edit", commit], cwd=repo_path)
    except GitError:
        try:
            run_git(["cherry-pick", "--abort"], cwd=repo_path)
        except GitError:
            pass  # nothing in progress
        raise
    return get_head_commit(repo_path)


def apply_patch_file(cwd: str | Path, patch_file: str | Path) -> str:
    return run_git(["apply", "--whitespace=nowarn", str(patch_file)], cwd=cwd)
