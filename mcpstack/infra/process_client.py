# -----------------------------------------------------------------------------
# BOUNDED PROCESS RUNNER
# -----------------------------------------------------------------------------
# Responsibility: Run one child process with piped stdio and a hard timeout.
# (executable, args, input bytes, timeout) -> ProcessResult
#
# Safety Features:
# - No shell: argv is passed as a list
# - Timeout: the child is killed, partial output is still returned
# - Cancellation is timeout-only
# -----------------------------------------------------------------------------

import subprocess
import time
from dataclasses import dataclass

from rich.console import Console

console = Console()

# Grace period for collecting output after a kill
KILL_GRACE_SECONDS = 5


@dataclass
class ProcessResult:
    """Captured outcome of a bounded child process."""

    stdout: bytes
    stderr: bytes
    exit_code: int | None
    timed_out: bool
    duration_seconds: float = 0.0

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


def run_bounded(
    executable: str,
    args: list[str] | None = None,
    input_bytes: bytes = b"",
    timeout: float = 15.0,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> ProcessResult:
    """
    Spawn a process, feed it input_bytes, and collect output until exit or timeout.

    Args:
        executable: Absolute path (or PATH name) of the program.
        args: Argument list (never interpreted by a shell).
        input_bytes: Written to stdin, which is then closed.
        timeout: Seconds before the child is forcibly terminated.
        env: Full environment for the child (inherits ours when None).
        cwd: Working directory for the child.

    Returns:
        ProcessResult with captured stdout/stderr, exit code and timeout flag.

    Raises:
        OSError: If the executable cannot be spawned at all.
    """
    cmd = [str(executable), *[str(a) for a in (args or [])]]
    start = time.monotonic()

    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
        cwd=cwd,
    )

    timed_out = False
    try:
        stdout, stderr = proc.communicate(input=input_bytes, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        timed_out = True
        console.print(f"[yellow][PROCESS] Timeout after {timeout}s, killing pid {proc.pid}[/yellow]")
        proc.kill()
        try:
            stdout, stderr = proc.communicate(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            # Grandchildren may still hold the pipes open
            stdout, stderr = e.stdout or b"", e.stderr or b""

    return ProcessResult(
        stdout=stdout or b"",
        stderr=stderr or b"",
        exit_code=proc.poll(),
        timed_out=timed_out,
        duration_seconds=time.monotonic() - start,
    )
