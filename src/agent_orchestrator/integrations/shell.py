"""Shell command execution with timeout and captured output."""

import os
import signal
import subprocess
import time

from agent_orchestrator.db.models import CommandResult, now_iso

KILL_GRACE_MS = 5000


def shell_quote(value: str) -> str:
    """Double-quote a value for a POSIX shell command line."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
    return f'"{escaped}"'


def _signal_group(proc: subprocess.Popen, sig: int):
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def run_command(
    command: str,
    cwd: str,
    timeout_ms: int | None = None,
    env: dict[str, str] | None = None,
    kill_grace_ms: int = KILL_GRACE_MS,
) -> CommandResult:
    """Run a shell command and capture its result.

    On timeout the process group receives SIGTERM, then SIGKILL if it is
    still alive after ``kill_grace_ms``. A timed-out run is never ``ok``.
    """
    started_at = now_iso()
    start = time.monotonic()
    full_env = {**os.environ, **env} if env else None

    try:
        proc = subprocess.Popen(
            command,
            cwd=cwd,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=full_env,
            start_new_session=True,
        )
    except OSError as e:
        return CommandResult(
            ok=False,
            command=command,
            cwd=str(cwd),
            exit_code=None,
            signal=None,
            stdout="",
            stderr=str(e),
            started_at=started_at,
            finished_at=now_iso(),
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    timed_out = False
    timeout = timeout_ms / 1000 if timeout_ms else None
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _signal_group(proc, signal.SIGTERM)
        try:
            stdout, stderr = proc.communicate(timeout=kill_grace_ms / 1000)
        except subprocess.TimeoutExpired:
            _signal_group(proc, signal.SIGKILL)
            stdout, stderr = proc.communicate()

    code = proc.returncode
    sig_name = None
    exit_code = code
    if code is not None and code < 0:
        try:
            sig_name = signal.Signals(-code).name
        except ValueError:
            sig_name = str(-code)
        exit_code = None

    return CommandResult(
        ok=exit_code == 0 and not timed_out,
        command=command,
        cwd=str(cwd),
        exit_code=exit_code,
        signal=sig_name,
        stdout=stdout or "",
        stderr=stderr or "",
        started_at=started_at,
        finished_at=now_iso(),
        duration_ms=int((time.monotonic() - start) * 1000),
        timed_out=timed_out,
    )
