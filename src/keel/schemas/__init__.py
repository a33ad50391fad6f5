"""Pydantic schemas shared by keel stages.

Example:
    >>> from keel.schemas import CanonicalReference, parse_promote_to
    >>> parse_promote_to("dev,staging")
    ('dev', 'staging')
"""

from __future__ import annotations

from keel.schemas.build import (
    BuildConfig,
    BuildContent,
    BuildMetadata,
    BuildResult,
    ScanEvaluation,
    ScanPolicy,
    SecurityScanResult,
)
from keel.schemas.deploy import (
    ClusterCredential,
    DeployPhase,
    DeployRequest,
    DeployResult,
    FederatedCredential,
    RolloutCondition,
    RolloutRecord,
    RolloutState,
    RolloutStatus,
    StaticCredential,
)
from keel.schemas.pipeline import (
    AuthType,
    EnvironmentConfig,
    PipelineConfig,
    RegistryConfig,
    RetryConfig,
)
from keel.schemas.promotion import PromotionResult, TagOutcome, TagStatus, parse_promote_to
from keel.schemas.reference import Artifact, CanonicalReference

__all__: list[str] = [
    # reference
    "Artifact",
    "CanonicalReference",
    # build
    "BuildConfig",
    "BuildContent",
    "BuildMetadata",
    "BuildResult",
    "ScanEvaluation",
    "ScanPolicy",
    "SecurityScanResult",
    # promotion
    "PromotionResult",
    "TagOutcome",
    "TagStatus",
    "parse_promote_to",
    # deploy
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
    # pipeline
    "AuthType",
    "EnvironmentConfig",
    "PipelineConfig",
    "RegistryConfig",
    "RetryConfig",
]
