"""Deploy stage schemas.

Key Components:
    DeployPhase: Deploy state machine phases
    FederatedCredential / StaticCredential: The ClusterCredential variant
    RolloutCondition / RolloutStatus: One observation of a deployment
    RolloutState / RolloutRecord: Mutable record owned by the polling loop
    DeployRequest: Deploy stage inputs
    DeployResult: Deploy stage output
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from keel.schemas.reference import CanonicalReference


class DeployPhase(str, Enum):
    """Phases of a deploy invocation.

    ``resolving_credentials -> applying_manifests -> updating_image ->
    awaiting_rollout -> {succeeded, failed, timed_out}``
    """

    RESOLVING_CREDENTIALS = "resolving_credentials"
    APPLYING_MANIFESTS = "applying_manifests"
    UPDATING_IMAGE = "updating_image"
    AWAITING_ROLLOUT = "awaiting_rollout"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        """True for phases that end the state machine."""
        return self in (DeployPhase.SUCCEEDED, DeployPhase.FAILED, DeployPhase.TIMED_OUT)


# =============================================================================
# Cluster credentials
# =============================================================================


class FederatedCredential(BaseModel):
    """Short-lived cluster access via AWS role assumption.

    Attributes:
        role_arn: IAM role to assume.
        region: AWS region of the cluster.
        cluster_name: EKS cluster name.
        session_seconds: STS session duration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: Literal["federated"] = "federated"
    role_arn: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    cluster_name: str = Field(..., min_length=1)
    session_seconds: int = Field(default=900, ge=900, le=43200)


class StaticCredential(BaseModel):
    """Long-lived kubeconfig supplied as a secret (base64 or raw YAML)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    method: Literal["static"] = "static"
    kubeconfig: SecretStr


ClusterCredential = Annotated[
    Union[FederatedCredential, StaticCredential],
    Field(discriminator="method"),
]
"""Tagged credential variant; exactly one is active per deploy invocation."""


# =============================================================================
# Rollout
# =============================================================================


class RolloutCondition(str, Enum):
    """Classification of one deployment status observation."""

    PROGRESSING = "progressing"
    COMPLETE = "complete"
    FAILED = "failed"


class RolloutStatus(BaseModel):
    """Snapshot of a deployment's rollout progress."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    desired_replicas: int = Field(default=0, ge=0)
    updated_replicas: int = Field(default=0, ge=0)
    ready_replicas: int = Field(default=0, ge=0)
    available_replicas: int = Field(default=0, ge=0)
    observed_generation: int = Field(default=0, ge=0)
    generation: int = Field(default=0, ge=0)
    condition: RolloutCondition = RolloutCondition.PROGRESSING
    reason: str | None = None


class RolloutState(str, Enum):
    """Lifecycle status of a RolloutRecord."""

    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class RolloutRecord(BaseModel):
    """Progress record for one rollout.

    Created at the start of a deploy attempt and mutated only by the rollout
    polling loop.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    deployment_id: str
    desired_image_ref: str
    observed_replicas_ready: int = 0
    desired_replicas: int = 0
    status: RolloutState = RolloutState.IN_PROGRESS
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    terminal_at: datetime | None = None
    polls: int = 0
    last_reason: str | None = None

    def observe(self, status: RolloutStatus) -> None:
        """Fold one status observation into the record."""
        self.polls += 1
        self.observed_replicas_ready = status.ready_replicas
        self.desired_replicas = status.desired_replicas
        if status.reason:
            self.last_reason = status.reason

    def finish(self, state: RolloutState, reason: str | None = None) -> None:
        """Move the record to a terminal state."""
        self.status = state
        self.terminal_at = datetime.now(timezone.utc)
        if reason:
            self.last_reason = reason


# =============================================================================
# Deploy request / result
# =============================================================================


class DeployRequest(BaseModel):
    """Inputs of one deploy invocation.

    Attributes:
        environment: Target environment name (selects manifests/overlay).
        image: Canonical digest reference to run.
        namespace: Target namespace.
        manifest_path: Directory holding manifests or the overlay base.
        deployment: Deployment name.
        container: Container name within the deployment.
        aws_region: Region for federated credentials.
        aws_role_to_assume: Role for federated credentials.
        cluster_name: Cluster for federated credentials.
        generate_kubeconfig: Allow generating a kubeconfig from federation.
        kubeconfig: Static kubeconfig secret.
        use_overlay_tool: Render manifests with kustomize.
        rollout_timeout: Upper bound on rollout polling in seconds.
        poll_interval: Seconds between status reads.
        request_timeout: Per-call timeout for cluster API requests.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str = Field(..., min_length=1)
    image: CanonicalReference
    namespace: str = Field(default="default", min_length=1)
    manifest_path: Path = Field(default=Path("k8s"))
    deployment: str = Field(..., min_length=1)
    container: str = Field(..., min_length=1)
    aws_region: str | None = None
    aws_role_to_assume: str | None = None
    cluster_name: str | None = None
    generate_kubeconfig: bool = True
    kubeconfig: SecretStr | None = None
    use_overlay_tool: bool = False
    rollout_timeout: float = Field(default=300.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)

    @field_validator("kubeconfig")
    @classmethod
    def blank_kubeconfig_is_unset(cls, v: SecretStr | None) -> SecretStr | None:
        """An empty secret counts as absent."""
        if v is None or not v.get_secret_value().strip():
            return None
        return v

    @property
    def deployment_id(self) -> str:
        """``namespace/deployment`` identifier."""
        return f"{self.namespace}/{self.deployment}"


class DeployResult(BaseModel):
    """Outcome of a successful deploy invocation."""

    model_config = ConfigDict(extra="forbid")

    environment: str
    deployment: str
    container: str
    image: CanonicalReference
    credential_method: Literal["federated", "static"]
    phase_history: list[DeployPhase] = Field(default_factory=list)
    applied: list[str] = Field(default_factory=list)
    rollout: RolloutRecord


__all__: list[str] = [
    "ClusterCredential",
    "DeployPhase",
    "DeployRequest",
    "DeployResult",
    "FederatedCredential",
    "RolloutCondition",
    "RolloutRecord",
    "RolloutState",
    "RolloutStatus",
    "StaticCredential",
]
