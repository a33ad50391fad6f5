"""Build-and-publish stage schemas.

Key Components:
    ScanPolicy: Vulnerability scan command, thresholds and block/warn mode
    SecurityScanResult: Parsed scanner findings (counts + blocking CVEs)
    ScanEvaluation: Policy decision for one scan
    BuildConfig: Build stage inputs (the build invocation surface)
    BuildMetadata: Revision/branch/timestamp facts baked into the image
    BuildContent: Toolchain output (an OCI image layout on disk)
    BuildResult: Stage output carrying the CanonicalReference
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from keel.schemas.reference import Artifact, CanonicalReference

VALID_SEVERITY_LEVELS = frozenset({"CRITICAL", "HIGH", "MEDIUM", "LOW"})

SHORT_REVISION_LENGTH = 7

DEFAULT_SCAN_COMMAND = "trivy image --quiet --format json ${ARTIFACT_REF}"


class ScanPolicy(BaseModel):
    """Vulnerability scan configuration.

    Attributes:
        mode: ``block`` fails the stage on blocking findings; ``warn`` records them.
        command: Scanner command with ``${ARTIFACT_REF}`` placeholder.
        block_on_severity: Severity levels that count as blocking.
        ignore_unfixed: Ignore vulnerabilities without an available fix.
        scanner_format: Output format of the command (trivy, grype).
        timeout_seconds: Scanner timeout in seconds.

    Examples:
        >>> policy = ScanPolicy(mode="warn")
        >>> policy.block_on_severity
        ['CRITICAL', 'HIGH']
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: Literal["block", "warn"] = Field(
        default="block",
        description="Whether blocking findings fail the stage or only warn",
    )
    command: str = Field(
        default=DEFAULT_SCAN_COMMAND,
        min_length=1,
        description="Scanner command with ${ARTIFACT_REF} placeholder",
    )
    block_on_severity: list[str] = Field(
        default_factory=lambda: ["CRITICAL", "HIGH"],
        description="Severity levels that block",
    )
    ignore_unfixed: bool = Field(
        default=False,
        description="Ignore vulnerabilities without fixes",
    )
    scanner_format: Literal["trivy", "grype"] = Field(
        default="trivy",
        description="Scanner output format",
    )
    timeout_seconds: int = Field(
        default=600,
        ge=30,
        le=3600,
        description="Scanner timeout in seconds",
    )

    @field_validator("block_on_severity")
    @classmethod
    def validate_severity_levels(cls, v: list[str]) -> list[str]:
        """Validate all severity levels are valid."""
        normalized = [s.upper() for s in v]
        invalid = set(normalized) - VALID_SEVERITY_LEVELS
        if invalid:
            raise ValueError(
                f"Invalid severity levels: {invalid}. Valid levels: {sorted(VALID_SEVERITY_LEVELS)}"
            )
        return normalized


class SecurityScanResult(BaseModel):
    """Vulnerability counts and blocking CVEs from one scan.

    Examples:
        >>> result = SecurityScanResult(critical_count=0, high_count=2, medium_count=5,
        ...                             low_count=10, blocking_cves=["CVE-2024-1234"])
        >>> result.total_vulnerabilities
        17
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    critical_count: int = Field(..., ge=0)
    high_count: int = Field(..., ge=0)
    medium_count: int = Field(..., ge=0)
    low_count: int = Field(..., ge=0)
    blocking_cves: list[str] = Field(default_factory=list)
    ignored_unfixed: int = Field(default=0, ge=0)

    @property
    def total_vulnerabilities(self) -> int:
        """Total count of all vulnerabilities."""
        return self.critical_count + self.high_count + self.medium_count + self.low_count


class ScanEvaluation(BaseModel):
    """Outcome of evaluating a scan against a ScanPolicy.

    Attributes:
        passed: No blocking findings and the scanner ran cleanly.
        blocking: The evaluation should fail the stage (``passed`` is False
            and the policy mode is ``block``).
        blocking_cves: CVE identifiers behind the decision.
        reason: Explanation when not passed.
        scan_result: Parsed findings, absent if the scanner itself failed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    passed: bool
    blocking: bool
    blocking_cves: list[str] = Field(default_factory=list)
    reason: str | None = None
    scan_result: SecurityScanResult | None = None


class BuildConfig(BaseModel):
    """Inputs of the build-and-publish stage.

    Attributes:
        app_name: Application name; also the default repository name.
        registry: Registry host used to derive the default image name.
        owner: Registry namespace/owner used to derive the default image name.
        image_name: Explicit image location (overrides registry/owner/app_name).
        context: Build context directory.
        dockerfile: Build instructions file, relative to the context.
        platforms: Target platforms built in one toolchain invocation.
        build_args: Extra ``KEY=VALUE`` build arguments.
        test_command: Verification command; None or blank skips verification.
        runtime_version: Interpreter version tests must run under.
        push_latest: Also point ``latest`` at the digest on the primary branch.
        primary_branch: Branch allowed to move ``latest``.
        run_security_scan: Scan the published image.
        scan_policy: Scanner and block/warn policy.
        cache_from: Optional toolchain cache source.
        cache_to: Optional toolchain cache destination.
        revision: Explicit source revision (else CI env or git).
        branch: Explicit branch name (else CI env or git).
        build_timeout_seconds: Toolchain build timeout.
        test_timeout_seconds: Test command timeout.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    app_name: str = Field(..., min_length=1, pattern=r"^[a-z0-9]+([._-][a-z0-9]+)*$")
    registry: str = Field(default="ghcr.io", min_length=1)
    owner: str | None = Field(default=None)
    image_name: str | None = Field(default=None)
    context: Path = Field(default=Path("."))
    dockerfile: str = Field(default="Dockerfile", min_length=1)
    platforms: list[str] = Field(default_factory=lambda: ["linux/amd64"], min_length=1)
    build_args: list[str] = Field(default_factory=list)
    test_command: str | None = Field(default="pytest -q")
    runtime_version: str | None = Field(default=None)
    push_latest: bool = Field(default=False)
    primary_branch: str = Field(default="main", min_length=1)
    run_security_scan: bool = Field(default=False)
    scan_policy: ScanPolicy = Field(default_factory=ScanPolicy)
    cache_from: str | None = Field(default=None)
    cache_to: str | None = Field(default=None)
    revision: str | None = Field(default=None)
    branch: str | None = Field(default=None)
    build_timeout_seconds: int = Field(default=3600, ge=60)
    test_timeout_seconds: int = Field(default=1800, ge=10)

    @field_validator("test_command")
    @classmethod
    def blank_test_command_is_unset(cls, v: str | None) -> str | None:
        """Treat an empty test command as 'verification disabled'."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("build_args")
    @classmethod
    def validate_build_args(cls, v: list[str]) -> list[str]:
        """Require KEY=VALUE build arguments."""
        for arg in v:
            key, sep, _ = arg.partition("=")
            if not sep or not key.strip():
                raise ValueError(f"build arg must be KEY=VALUE: {arg!r}")
        return v

    @model_validator(mode="after")
    def require_image_location(self) -> BuildConfig:
        """Either image_name or owner must be known."""
        if self.image_name is None and not self.owner:
            raise ValueError("image_name is required when owner is not set")
        return self

    @property
    def image(self) -> str:
        """Registry location the image is published to."""
        if self.image_name:
            return self.image_name.lower()
        return f"{self.registry}/{self.owner}/{self.app_name}".lower()

    @property
    def dockerfile_path(self) -> Path:
        """Build instructions path resolved against the context."""
        return self.context / self.dockerfile


class BuildMetadata(BaseModel):
    """Immutable build-time facts injected into the image."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    revision: str = Field(..., min_length=SHORT_REVISION_LENGTH, pattern=r"^[0-9a-fA-F]+$")
    branch: str = Field(..., min_length=1)
    built_at: datetime

    @property
    def short_revision(self) -> str:
        """Abbreviated revision used in the image tag."""
        return self.revision[:SHORT_REVISION_LENGTH].lower()

    @property
    def image_tag(self) -> str:
        """Revision-derived primary tag (``sha-<short revision>``)."""
        return f"sha-{self.short_revision}"

    def build_args(self) -> dict[str, str]:
        """Metadata as toolchain build arguments."""
        return {
            "REVISION": self.revision,
            "BRANCH": self.branch,
            "BUILD_DATE": self.built_at.isoformat(),
        }

    def labels(self, app_name: str) -> dict[str, str]:
        """Metadata as OCI image annotations/labels."""
        return {
            "org.opencontainers.image.title": app_name,
            "org.opencontainers.image.revision": self.revision,
            "org.opencontainers.image.created": self.built_at.isoformat(),
            "org.opencontainers.image.ref.name": self.branch,
        }


class BuildContent(BaseModel):
    """Toolchain output: an OCI image layout directory."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    layout_path: Path
    platforms: list[str] = Field(default_factory=list)


class BuildResult(BaseModel):
    """Output of a successful build-and-publish stage.

    ``image`` is the only durable output downstream stages consume.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    artifact: Artifact
    image: CanonicalReference
    image_tag: str
    metadata: BuildMetadata
    tested: bool = False
    latest_tagged: bool = False
    scan: ScanEvaluation | None = None
    warnings: list[str] = Field(default_factory=list)

    def outputs(self) -> dict[str, str]:
        """Stage outputs as ``name -> value``."""
        return {"image": str(self.image), "image_tag": self.image_tag}


__all__: list[str] = [
    "BuildConfig",
    "BuildContent",
    "BuildMetadata",
    "BuildResult",
    "ScanEvaluation",
    "ScanPolicy",
    "SecurityScanResult",
]
