"""Exception hierarchy for keel pipeline stages.

Every failure a stage can surface is a subclass of KeelError. Each class
carries a stable ``kind`` string (reported in CLI output and logs) and a CLI
``exit_code`` so a scheduler can distinguish failure kinds without parsing
messages.

Exception Hierarchy:
    KeelError (base)
    ├── ConfigurationError            # Invalid keel.yaml or CLI input
    ├── InvalidReference              # Not a registry@sha256:<digest> reference
    ├── RegistryError
    │   ├── AuthenticationError       # Registry rejected credentials
    │   ├── RegistryUnavailableError  # Network/5xx after retries
    │   └── DigestMismatchError       # Registry digest != expected digest
    ├── BuildStageError
    │   ├── BuildFailure              # Toolchain build failed
    │   ├── TestFailure               # Verification failed, nothing published
    │   ├── PublishFailure            # Push to registry failed
    │   └── BlockingScanFailure       # Published, but scan policy blocks
    ├── PromotionError
    │   ├── ReferenceNotFound         # Source digest absent from registry
    │   ├── InvalidPromotionRequest   # Empty/invalid tag list
    │   └── PartialPromotionFailure   # Some tags failed (names reported)
    └── DeployError
        ├── NoCredentialAvailable     # Neither federated nor static configured
        ├── CredentialResolutionFailure
        ├── ManifestApplyFailure
        ├── ImageUpdateFailure
        ├── RolloutFailed
        └── RolloutTimedOut

Example:
    >>> from keel.errors import ReferenceNotFound
    >>> raise ReferenceNotFound("ghcr.io/acme/shop@sha256:abc...")
    Traceback (most recent call last):
        ...
    ReferenceNotFound: Reference not found in registry: ghcr.io/acme/shop@sha256:abc...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from keel.schemas.deploy import DeployPhase, RolloutRecord


class KeelError(Exception):
    """Base exception for all keel errors.

    Attributes:
        kind: Stable machine-readable failure kind.
        exit_code: CLI exit code for this error type (default: 1).
    """

    kind: str = "error"
    exit_code: int = 1


class ConfigurationError(KeelError):
    """Raised when pipeline configuration is missing or invalid."""

    kind = "configuration"
    exit_code = 2


class InvalidReference(KeelError):
    """Raised when a string is not a canonical digest reference.

    Tags (including ``latest``) are never accepted where a canonical
    reference is required.

    Attributes:
        value: The rejected reference string.
        reason: Why the value was rejected.
    """

    kind = "invalid_reference"
    exit_code = 23

    def __init__(self, value: str, reason: str) -> None:
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid canonical reference {value!r}: {reason}")


# =============================================================================
# Registry
# =============================================================================


class RegistryError(KeelError):
    """Base class for registry interaction errors."""

    kind = "registry"


class AuthenticationError(RegistryError):
    """Raised when registry authentication fails.

    Attributes:
        registry: Registry host where authentication failed.
        reason: Description of why authentication failed.
    """

    kind = "registry_auth"
    exit_code = 40

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"Authentication failed for {registry}: {reason}")


class RegistryUnavailableError(RegistryError):
    """Raised when the registry is unreachable or keeps failing after retries.

    Attributes:
        registry: Registry host that is unreachable.
        reason: Description of the connectivity failure.
    """

    kind = "registry_unavailable"
    exit_code = 41

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"Registry unavailable: {registry}: {reason}")


class DigestMismatchError(RegistryError):
    """Raised when the registry reports a different digest than expected.

    Attributes:
        expected: The expected digest (sha256:...).
        actual: The digest the registry reported.
        ref: The tag or reference being verified.
    """

    kind = "digest_mismatch"
    exit_code = 42

    def __init__(self, expected: str, actual: str, ref: str) -> None:
        self.expected = expected
        self.actual = actual
        self.ref = ref
        super().__init__(
            f"Digest mismatch for {ref}: expected {expected[:19]}..., got {actual[:19]}..."
        )


# =============================================================================
# Build stage
# =============================================================================


class BuildStageError(KeelError):
    """Base class for build-and-publish stage failures."""

    kind = "build_stage"


class BuildFailure(BuildStageError):
    """Raised when the image toolchain fails to build.

    Attributes:
        reason: Toolchain failure description (exit code, stderr tail).
    """

    kind = "build_failure"
    exit_code = 10

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Build failed: {reason}")


class TestFailure(BuildStageError):
    """Raised when the verification command fails. Nothing is published.

    Attributes:
        command: The test command that was run.
        reason: Exit code or runtime mismatch description.
    """

    __test__ = False  # not a pytest test class

    kind = "test_failure"
    exit_code = 11

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Tests failed ({command}): {reason}")


class PublishFailure(BuildStageError):
    """Raised when pushing the built image to the registry fails.

    Attributes:
        target: The registry location + tag being published.
        reason: Underlying failure description.
    """

    kind = "publish_failure"
    exit_code = 13

    def __init__(self, target: str, reason: str) -> None:
        self.target = target
        self.reason = reason
        super().__init__(f"Publish to {target} failed: {reason}")


class BlockingScanFailure(BuildStageError):
    """Raised when a blocking vulnerability scan policy rejects the image.

    The image stays published (it is not retroactively deleted); only the
    stage's exit status fails and no canonical reference is emitted.

    Attributes:
        reference: The published (but rejected) digest reference.
        blocking_cves: CVE identifiers that triggered the block.
        reason: Human-readable explanation.
    """

    kind = "blocking_scan_failure"
    exit_code = 12

    def __init__(self, reference: str, reason: str, blocking_cves: list[str] | None = None) -> None:
        self.reference = reference
        self.reason = reason
        self.blocking_cves = blocking_cves or []
        super().__init__(f"Security scan blocked {reference}: {reason}")


# =============================================================================
# Promote stage
# =============================================================================


class PromotionError(KeelError):
    """Base class for promote stage failures."""

    kind = "promotion"


class ReferenceNotFound(PromotionError):
    """Raised when the source digest does not exist in the registry."""

    kind = "reference_not_found"
    exit_code = 20

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Reference not found in registry: {reference}")


class InvalidPromotionRequest(PromotionError):
    """Raised when the requested tag list is empty or contains invalid tags."""

    kind = "invalid_promotion_request"
    exit_code = 21

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid promotion request: {reason}")


class PartialPromotionFailure(PromotionError):
    """Raised when at least one target tag could not be applied.

    Tags already applied are not rolled back. ``failed`` maps every tag that
    was not applied (including tags skipped after a fatal auth error) to the
    reason, so an operator can retry exactly those.

    Attributes:
        reference: The digest reference being promoted.
        succeeded: Tags that now point at the digest.
        failed: Mapping of tag -> failure reason.
    """

    kind = "partial_promotion_failure"
    exit_code = 22

    def __init__(self, reference: str, succeeded: list[str], failed: dict[str, str]) -> None:
        self.reference = reference
        self.succeeded = list(succeeded)
        self.failed = dict(failed)
        ok = ", ".join(self.succeeded) or "none"
        bad = ", ".join(self.failed)
        super().__init__(f"Promotion of {reference} incomplete: succeeded=[{ok}] failed=[{bad}]")


# =============================================================================
# Deploy stage
# =============================================================================


class DeployError(KeelError):
    """Base class for deploy stage failures.

    Attributes:
        phase: The deploy phase the failure occurred in (set by the stage).
    """

    kind = "deploy"
    phase: DeployPhase | None = None


class NoCredentialAvailable(DeployError):
    """Raised when neither a federated nor a static cluster credential is configured."""

    kind = "no_credential_available"
    exit_code = 30

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(
            f"No cluster credential available for environment {environment!r}: declare "
            "aws_role_to_assume/aws_region/cluster_name with generate_kubeconfig, "
            "or provide KUBE_CONFIG"
        )


class CredentialResolutionFailure(DeployError):
    """Raised when the selected credential method fails to produce cluster access."""

    kind = "credential_resolution_failure"
    exit_code = 31

    def __init__(self, method: str, reason: str) -> None:
        self.method = method
        self.reason = reason
        super().__init__(f"Resolving {method} cluster credential failed: {reason}")


class ManifestApplyFailure(DeployError):
    """Raised when a manifest cannot be selected, rendered or applied.

    Attributes:
        manifest: Identifier of the offending document or file.
        reason: Underlying failure description.
    """

    kind = "manifest_apply_failure"
    exit_code = 32

    def __init__(self, manifest: str, reason: str) -> None:
        self.manifest = manifest
        self.reason = reason
        super().__init__(f"Applying manifest {manifest} failed: {reason}")


class ImageUpdateFailure(DeployError):
    """Raised when the deployment's container image cannot be pinned to the digest."""

    kind = "image_update_failure"
    exit_code = 33

    def __init__(self, deployment: str, container: str, reason: str) -> None:
        self.deployment = deployment
        self.container = container
        self.reason = reason
        super().__init__(f"Updating image of {deployment}/{container} failed: {reason}")


class RolloutError(DeployError):
    """Base class for non-successful rollout outcomes.

    Attributes:
        record: The terminal RolloutRecord.
    """

    def __init__(self, message: str, record: RolloutRecord) -> None:
        self.record = record
        super().__init__(message)


class RolloutFailed(RolloutError):
    """Raised when the cluster signals an explicit rollout failure."""

    kind = "rollout_failed"
    exit_code = 34

    def __init__(self, record: RolloutRecord) -> None:
        super().__init__(
            f"Rollout of {record.deployment_id} failed: {record.last_reason or 'unknown reason'}",
            record,
        )


class RolloutTimedOut(RolloutError):
    """Raised when the rollout does not complete within the configured timeout."""

    kind = "rollout_timed_out"
    exit_code = 35

    def __init__(self, record: RolloutRecord, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        message = (
            f"Rollout of {record.deployment_id} timed out after {timeout_seconds:.0f}s "
            f"({record.observed_replicas_ready}/{record.desired_replicas} replicas ready)"
        )
        if record.last_reason:
            message += f": {record.last_reason}"
        super().__init__(message, record)


__all__: list[str] = [
    "KeelError",
    "ConfigurationError",
    "InvalidReference",
    "RegistryError",
    "AuthenticationError",
    "RegistryUnavailableError",
    "DigestMismatchError",
    "BuildStageError",
    "BuildFailure",
    "TestFailure",
    "PublishFailure",
    "BlockingScanFailure",
    "PromotionError",
    "ReferenceNotFound",
    "InvalidPromotionRequest",
    "PartialPromotionFailure",
    "DeployError",
    "NoCredentialAvailable",
    "CredentialResolutionFailure",
    "ManifestApplyFailure",
    "ImageUpdateFailure",
    "RolloutError",
    "RolloutFailed",
    "RolloutTimedOut",
]
