"""Subprocess helper shared by the toolchain adapters.

Every external tool runs with a timeout; on expiry the process is killed and
the result is marked ``timed_out``.
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    returncode: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def failure_reason(self, limit: int = 500) -> str:
        """Short description of a failed run (exit code plus stderr tail)."""
        if self.timed_out:
            return f"timed out after {self.duration_ms // 1000}s"
        tail = self.stderr.strip()[-limit:]
        return f"exit code {self.returncode}: {tail}" if tail else f"exit code {self.returncode}"


def run_command(
    command: Sequence[str] | str,
    *,
    timeout: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    shell: bool = False,
) -> CommandResult:
    """Run ``command`` to completion or until ``timeout`` seconds elapse.

    Args:
        command: Argument vector, or a shell string when ``shell`` is True.
        timeout: Upper bound in seconds.
        cwd: Working directory.
        env: Extra environment variables layered over the current environment.
        shell: Run through the shell.

    Returns:
        CommandResult. A missing executable yields exit code 127.
    """
    merged_env = {**os.environ, **env} if env else None
    start = time.monotonic()
    log = logger.bind(command=command if isinstance(command, str) else command[0])

    try:
        completed = subprocess.run(
            command,
            shell=shell,
            cwd=cwd,
            env=merged_env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        log.warning("command_timed_out", timeout_seconds=timeout)
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        stderr = e.stderr.decode() if isinstance(e.stderr, bytes) else (e.stderr or "")
        return CommandResult(-1, stdout, stderr, duration_ms, timed_out=True)
    except FileNotFoundError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        log.warning("command_not_found", error=str(e))
        return CommandResult(COMMAND_NOT_FOUND, "", str(e), duration_ms)

    duration_ms = int((time.monotonic() - start) * 1000)
    log.debug("command_finished", exit_code=completed.returncode, duration_ms=duration_ms)
    return CommandResult(completed.returncode, completed.stdout, completed.stderr, duration_ms)


__all__ = ["COMMAND_NOT_FOUND", "CommandResult", "run_command"]
