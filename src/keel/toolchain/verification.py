"""Verification (test) runner.

Runs the configured test command through the shell after checking that the
interpreter on PATH matches the declared runtime version.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from keel.telemetry.tracing import create_span
from keel.toolchain._process import CommandResult, run_command

logger = structlog.get_logger(__name__)

Runner = Callable[..., CommandResult]

_VERSION_PATTERN = re.compile(r"(\d+(?:\.\d+)*)")


def version_matches(declared: str, reported: str) -> bool:
    """True if ``reported`` is the ``declared`` version or a patch of it.

    Examples:
        >>> version_matches("3.12", "Python 3.12.4")
        True
        >>> version_matches("3.12", "Python 3.1.2")
        False
    """
    match = _VERSION_PATTERN.search(reported)
    if match is None:
        return False
    want = declared.strip().split(".")
    have = match.group(1).split(".")
    return have[: len(want)] == want


@dataclass(frozen=True)
class VerificationResult:
    """pass/fail outcome of a verification run."""

    passed: bool
    reason: str | None = None
    duration_ms: int = 0


class VerificationRunner:
    """Run a test command under a declared runtime.

    Example:
        >>> runner = VerificationRunner(cwd=Path("."))
        >>> runner.run_tests("pytest -q", runtime_version="3.12").passed
        True
    """

    def __init__(
        self,
        *,
        cwd: Path | None = None,
        interpreter: str = "python",
        timeout_seconds: float = 1800,
        runner: Runner = run_command,
    ) -> None:
        self._cwd = cwd
        self._interpreter = interpreter
        self._timeout = timeout_seconds
        self._runner = runner

    def check_runtime(self, runtime_version: str) -> VerificationResult:
        """Confirm the interpreter on PATH reports ``runtime_version``."""
        result = self._runner([self._interpreter, "--version"], timeout=30, cwd=self._cwd)
        if not result.ok:
            return VerificationResult(
                passed=False,
                reason=f"cannot run {self._interpreter}: {result.failure_reason()}",
            )

        reported = (result.stdout or result.stderr).strip()
        if not version_matches(runtime_version, reported):
            return VerificationResult(
                passed=False,
                reason=f"runtime mismatch: declared {runtime_version}, found {reported or 'unknown'}",
            )
        return VerificationResult(passed=True)

    def run_tests(self, command: str, runtime_version: str | None = None) -> VerificationResult:
        """Run ``command``; non-zero exit or timeout fails verification."""
        log = logger.bind(command=command, runtime_version=runtime_version)

        with create_span(
            "keel.build.verify",
            attributes={"keel.test_command": command, "keel.runtime_version": runtime_version},
        ) as span:
            if runtime_version:
                runtime = self.check_runtime(runtime_version)
                if not runtime.passed:
                    log.warning("runtime_check_failed", reason=runtime.reason)
                    return runtime

            log.info("verification_started")
            result = self._runner(command, timeout=self._timeout, cwd=self._cwd, shell=True)
            span.set_attribute("duration_ms", result.duration_ms)

            if not result.ok:
                log.warning("verification_failed", reason=result.failure_reason())
                return VerificationResult(
                    passed=False,
                    reason=result.failure_reason(),
                    duration_ms=result.duration_ms,
                )

        log.info("verification_passed", duration_ms=result.duration_ms)
        return VerificationResult(passed=True, duration_ms=result.duration_ms)


__all__ = ["VerificationResult", "VerificationRunner", "version_matches"]
