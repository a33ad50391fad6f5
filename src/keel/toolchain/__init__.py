"""Adapters for external build-time tools: docker buildx, test command, scanner."""

from __future__ import annotations

from keel.toolchain._process import CommandResult, run_command
from keel.toolchain.builder import DockerBuildxToolchain
from keel.toolchain.scanner import ScanRunner, evaluate_scan, parse_grype_output, parse_trivy_output
from keel.toolchain.verification import VerificationResult, VerificationRunner

__all__ = [
    "CommandResult",
    "DockerBuildxToolchain",
    "ScanRunner",
    "VerificationResult",
    "VerificationRunner",
    "evaluate_scan",
    "parse_grype_output",
    "parse_trivy_output",
    "run_command",
]
