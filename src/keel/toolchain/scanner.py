"""Vulnerability scanner adapter.

Runs a scanner command against a published digest reference, parses Trivy or
Grype JSON into a SecurityScanResult and evaluates it against a ScanPolicy.

Example:
    >>> from keel.toolchain.scanner import parse_trivy_output
    >>> result = parse_trivy_output(
    ...     trivy_json_output,
    ...     block_on_severity=["CRITICAL", "HIGH"],
    ...     ignore_unfixed=True,
    ... )
    >>> result.blocking_cves
    ['CVE-2024-1234']
"""

from __future__ import annotations

import json
import shlex
from collections.abc import Callable, Iterable
from string import Template

import structlog

from keel.schemas.build import ScanEvaluation, ScanPolicy, SecurityScanResult
from keel.schemas.reference import CanonicalReference
from keel.telemetry.tracing import create_span
from keel.toolchain._process import CommandResult, run_command

logger = structlog.get_logger(__name__)

Runner = Callable[..., CommandResult]

_COUNTED_SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")


class ScannerOutputError(Exception):
    """Raised when scanner output cannot be parsed.

    Attributes:
        message: Description of the parse error.
        scanner_format: Scanner format that failed (trivy, grype).
        raw_output: First 500 chars of the problematic output.
    """

    def __init__(
        self,
        message: str,
        scanner_format: str = "unknown",
        raw_output: str | None = None,
    ) -> None:
        self.message = message
        self.scanner_format = scanner_format
        self.raw_output = raw_output[:500] if raw_output else None
        super().__init__(f"{scanner_format}: {message}")


def _tally(
    findings: Iterable[tuple[str, str, bool]],
    block_on_severity: list[str],
    ignore_unfixed: bool,
    scanner: str,
) -> SecurityScanResult:
    """Count unique (cve, severity, has_fix) findings."""
    log = logger.bind(scanner=scanner, ignore_unfixed=ignore_unfixed)
    counts = dict.fromkeys(_COUNTED_SEVERITIES, 0)
    blocking_cves: list[str] = []
    ignored_unfixed = 0
    seen_cves: set[str] = set()
    block_severity_set = {s.upper() for s in block_on_severity}

    for cve_id, severity, has_fix in findings:
        # Same CVE across targets/packages counts once
        if cve_id in seen_cves:
            continue
        seen_cves.add(cve_id)

        if severity in counts:
            counts[severity] += 1

        if severity in block_severity_set:
            if ignore_unfixed and not has_fix:
                ignored_unfixed += 1
                log.debug("scan_ignored_unfixed", cve=cve_id, severity=severity)
            else:
                blocking_cves.append(cve_id)

    log.info(
        "scan_parse_complete",
        critical=counts["CRITICAL"],
        high=counts["HIGH"],
        medium=counts["MEDIUM"],
        low=counts["LOW"],
        blocking=len(blocking_cves),
        ignored_unfixed=ignored_unfixed,
    )

    return SecurityScanResult(
        critical_count=counts["CRITICAL"],
        high_count=counts["HIGH"],
        medium_count=counts["MEDIUM"],
        low_count=counts["LOW"],
        blocking_cves=blocking_cves,
        ignored_unfixed=ignored_unfixed,
    )


def _severities(block_on_severity: list[str] | None) -> list[str]:
    return ["CRITICAL", "HIGH"] if block_on_severity is None else block_on_severity


def _load(output: str, scanner: str, required_key: str | None = None) -> dict:
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        logger.error("scan_parse_failed", scanner=scanner, error=str(e))
        raise ScannerOutputError(f"Invalid JSON: {e}", scanner_format=scanner, raw_output=output) from e

    if not isinstance(data, dict):
        raise ScannerOutputError(
            "Expected a JSON object", scanner_format=scanner, raw_output=output
        )
    if required_key is not None and required_key not in data:
        raise ScannerOutputError(
            f"Missing '{required_key}' key in output",
            scanner_format=scanner,
            raw_output=output,
        )
    return data


def parse_trivy_output(
    output: str,
    block_on_severity: list[str] | None = None,
    ignore_unfixed: bool = False,
) -> SecurityScanResult:
    """Parse ``trivy image --format json`` output.

    A vulnerability counts as fixed when it carries a non-empty
    ``FixedVersion``. Trivy omits ``Results`` when nothing was detected
    (scratch or distroless images), which is a clean report.

    Raises:
        ScannerOutputError: If output is not valid Trivy JSON.

    Examples:
        >>> parse_trivy_output('{"Results": []}').total_vulnerabilities
        0
    """
    data = _load(output, "trivy")

    def findings() -> Iterable[tuple[str, str, bool]]:
        for result in data.get("Results") or []:
            for vuln in result.get("Vulnerabilities") or []:
                fixed_version = vuln.get("FixedVersion")
                yield (
                    vuln.get("VulnerabilityID", "UNKNOWN"),
                    vuln.get("Severity", "UNKNOWN").upper(),
                    bool(fixed_version and fixed_version.strip()),
                )

    return _tally(findings(), _severities(block_on_severity), ignore_unfixed, "trivy")


def parse_grype_output(
    output: str,
    block_on_severity: list[str] | None = None,
    ignore_unfixed: bool = False,
) -> SecurityScanResult:
    """Parse ``grype <image> -o json`` output.

    Grype reports mixed-case severities and a fix state of ``fixed``,
    ``not-fixed``, ``wont-fix`` or ``unknown``; only ``fixed`` counts as fixed.

    Raises:
        ScannerOutputError: If output is not valid Grype JSON.

    Examples:
        >>> parse_grype_output('{"matches": []}').total_vulnerabilities
        0
    """
    data = _load(output, "grype", "matches")

    def findings() -> Iterable[tuple[str, str, bool]]:
        for match in data.get("matches") or []:
            vulnerability = match.get("vulnerability", {})
            yield (
                vulnerability.get("id", "UNKNOWN"),
                vulnerability.get("severity", "UNKNOWN").upper(),
                vulnerability.get("fix", {}).get("state", "unknown") == "fixed",
            )

    return _tally(findings(), _severities(block_on_severity), ignore_unfixed, "grype")


_PARSERS = {
    "trivy": parse_trivy_output,
    "grype": parse_grype_output,
}


def evaluate_scan(scan_result: SecurityScanResult, policy: ScanPolicy) -> ScanEvaluation:
    """Apply ``policy`` to parsed findings.

    Blocking CVEs fail the evaluation; ``blocking`` is set only under the
    ``block`` policy mode.
    """
    blocking_cves = scan_result.blocking_cves
    if not blocking_cves:
        logger.info("scan_passed", total_vulnerabilities=scan_result.total_vulnerabilities)
        return ScanEvaluation(passed=True, blocking=False, scan_result=scan_result)

    reason = (
        f"{len(blocking_cves)} blocking vulnerabilities "
        f"({', '.join(policy.block_on_severity)}): {', '.join(blocking_cves)}"
    )
    logger.warning(
        "scan_found_blocking_vulnerabilities",
        mode=policy.mode,
        blocking_count=len(blocking_cves),
        blocking_cves=blocking_cves,
    )
    return ScanEvaluation(
        passed=False,
        blocking=policy.mode == "block",
        blocking_cves=list(blocking_cves),
        reason=reason,
        scan_result=scan_result,
    )


class ScanRunner:
    """Run the configured scanner command against a digest reference.

    Example:
        >>> evaluation = ScanRunner().scan(reference, ScanPolicy(mode="warn"))
        >>> evaluation.passed
        True
    """

    def __init__(self, *, runner: Runner = run_command) -> None:
        self._runner = runner

    def command(self, reference: CanonicalReference, policy: ScanPolicy) -> str:
        """Scanner command with ``${ARTIFACT_REF}`` substituted (shell-quoted)."""
        return Template(policy.command).safe_substitute(ARTIFACT_REF=shlex.quote(str(reference)))

    def scan(self, reference: CanonicalReference, policy: ScanPolicy) -> ScanEvaluation:
        """Scan ``reference`` and evaluate the findings.

        A scanner that cannot run or emits unparsable output yields a failed
        evaluation (blocking under the ``block`` mode).
        """
        command = self.command(reference, policy)
        log = logger.bind(reference=str(reference), scanner=policy.scanner_format, mode=policy.mode)

        with create_span(
            "keel.build.scan",
            attributes={"keel.reference": str(reference), "keel.scan_mode": policy.mode},
        ) as span:
            result = self._runner(command, timeout=policy.timeout_seconds, shell=True)
            span.set_attribute("duration_ms", result.duration_ms)

            if not result.ok:
                reason = f"scanner failed: {result.failure_reason()}"
                log.warning("scan_command_failed", reason=reason)
                return ScanEvaluation(passed=False, blocking=policy.mode == "block", reason=reason)

            try:
                parsed = _PARSERS[policy.scanner_format](
                    result.stdout,
                    block_on_severity=policy.block_on_severity,
                    ignore_unfixed=policy.ignore_unfixed,
                )
            except ScannerOutputError as e:
                reason = f"unparsable scanner output: {e}"
                log.warning("scan_output_unparsable", error=str(e))
                return ScanEvaluation(passed=False, blocking=policy.mode == "block", reason=reason)

            evaluation = evaluate_scan(parsed, policy)
            span.set_attribute("keel.scan_passed", evaluation.passed)
            return evaluation


__all__: list[str] = [
    "ScanRunner",
    "ScannerOutputError",
    "evaluate_scan",
    "parse_grype_output",
    "parse_trivy_output",
]
