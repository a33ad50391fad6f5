"""Pipeline configuration (``keel.yaml``).

Example ``keel.yaml``::

    app_name: shop
    registry:
      host: ghcr.io
      owner: acme
      auth: token
    build:
      platforms: [linux/amd64, linux/arm64]
      test_command: pytest -q
      runtime_version: "3.12"
      push_latest: true
    environments:
      - name: staging
        promote_to: staging
        namespace: shop
        deployment: shop
        container: app
      - name: prod
        promote_to: prod,stable
        namespace: shop
        deployment: shop
        container: app
        aws_region: eu-west-1
        aws_role_to_assume: arn:aws:iam::123456789012:role/deployer
        cluster_name: prod

Secrets never appear in this file; they come from the environment (see
``keel.registry.auth`` and ``keel.cluster.credentials``).
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from keel.errors import ConfigurationError, InvalidPromotionRequest
from keel.schemas.build import BuildConfig
from keel.schemas.deploy import DeployRequest
from keel.schemas.promotion import parse_promote_to
from keel.schemas.reference import CanonicalReference


class AuthType(str, Enum):
    """Authentication types for the registry."""

    ANONYMOUS = "anonymous"
    BASIC = "basic"
    TOKEN = "token"
    AWS_IRSA = "aws-irsa"


class RetryConfig(BaseModel):
    """Retry policy configuration for transient registry failures.

    Uses exponential backoff with optional jitter.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts",
    )
    initial_delay_ms: int = Field(
        default=500,
        ge=10,
        description="Initial delay between retries in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=10000,
        ge=100,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=True,
        description="Add random jitter to delays",
    )


class RegistryConfig(BaseModel):
    """Registry connection settings.

    Examples:
        >>> config = RegistryConfig(host="ghcr.io", owner="acme")
        >>> config.tls_verify
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(
        default="ghcr.io",
        min_length=1,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9.-]*(:[0-9]+)?$",
        description="Registry host (optionally with port)",
    )
    owner: str | None = Field(
        default=None,
        description="Namespace/owner under the registry host",
    )
    auth: AuthType = Field(
        default=AuthType.ANONYMOUS,
        description="Authentication type; secrets come from the environment",
    )
    tls_verify: bool = Field(
        default=True,
        description="Verify TLS certificates (disable only for local testing)",
    )
    insecure_http: bool = Field(
        default=False,
        description="Talk plain HTTP to the registry (local registries only)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Per-request timeout",
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry policy for transient failures",
    )
    aws_region: str | None = Field(
        default=None,
        description="Region for aws-irsa (ECR) authentication",
    )


class EnvironmentConfig(BaseModel):
    """One promotion + deploy target.

    Attributes:
        name: Environment name (selects env-qualified manifests and overlay).
        promote_to: Tags to point at the digest before deploying.
        deploy: Whether to deploy after promotion.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, pattern=r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
    promote_to: tuple[str, ...] = Field(..., min_length=1)
    deploy: bool = True
    namespace: str = Field(default="default", min_length=1)
    manifest_path: Path = Field(default=Path("k8s"))
    deployment: str | None = None
    container: str | None = None
    aws_region: str | None = None
    aws_role_to_assume: str | None = None
    cluster_name: str | None = None
    generate_kubeconfig: bool = True
    use_overlay_tool: bool = False
    rollout_timeout: float = Field(default=300.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)

    @field_validator("promote_to", mode="before")
    @classmethod
    def normalize_promote_to(cls, v: Any) -> tuple[str, ...]:
        """Accept a comma-separated string or a list of tags."""
        if not isinstance(v, (str, list, tuple)):
            raise ValueError("promote_to must be a string or a list of tags")
        try:
            return parse_promote_to(v)
        except InvalidPromotionRequest as e:
            raise ValueError(e.reason) from e

    def deploy_request(
        self,
        image: CanonicalReference,
        *,
        app_name: str,
        kubeconfig: SecretStr | None = None,
    ) -> DeployRequest:
        """Build the deploy stage input for ``image``.

        ``deployment`` and ``container`` default to ``app_name``.
        """
        return DeployRequest(
            environment=self.name,
            image=image,
            namespace=self.namespace,
            manifest_path=self.manifest_path,
            deployment=self.deployment or app_name,
            container=self.container or app_name,
            aws_region=self.aws_region,
            aws_role_to_assume=self.aws_role_to_assume,
            cluster_name=self.cluster_name,
            generate_kubeconfig=self.generate_kubeconfig,
            kubeconfig=kubeconfig,
            use_overlay_tool=self.use_overlay_tool,
            rollout_timeout=self.rollout_timeout,
            poll_interval=self.poll_interval,
        )


class PipelineConfig(BaseModel):
    """Top-level ``keel.yaml`` schema."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app_name: str = Field(..., min_length=1)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    build: BuildConfig
    environments: list[EnvironmentConfig] = Field(default_factory=list)
    max_parallel_environments: int = Field(default=4, ge=1, le=32)

    @model_validator(mode="before")
    @classmethod
    def inject_build_identity(cls, data: Any) -> Any:
        """Fill ``build.app_name/registry/owner`` from the top-level sections."""
        if not isinstance(data, dict):
            return data
        build = dict(data.get("build") or {})
        build.setdefault("app_name", data.get("app_name"))
        registry = data.get("registry") or {}
        if isinstance(registry, dict):
            build.setdefault("registry", registry.get("host", "ghcr.io"))
            if registry.get("owner"):
                build.setdefault("owner", registry["owner"])
        return {**data, "build": build}

    @field_validator("environments")
    @classmethod
    def unique_environment_names(cls, v: list[EnvironmentConfig]) -> list[EnvironmentConfig]:
        """Environment names must be unique."""
        names = [env.name for env in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate environment names: {duplicates}")
        return v

    def environment(self, name: str) -> EnvironmentConfig:
        """Look up an environment by name.

        Raises:
            ConfigurationError: If no such environment is declared.
        """
        for env in self.environments:
            if env.name == name:
                return env
        known = ", ".join(e.name for e in self.environments) or "none"
        raise ConfigurationError(f"Unknown environment {name!r} (declared: {known})")

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineConfig:
        """Load and validate ``keel.yaml``.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Pipeline config not found: {path}")

        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Pipeline config must be a mapping: {path}")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline config {path}: {e}") from e


__all__: list[str] = [
    "AuthType",
    "EnvironmentConfig",
    "PipelineConfig",
    "RegistryConfig",
    "RetryConfig",
]
