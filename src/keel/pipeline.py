"""Full pipeline invocation: build once, then promote and deploy per environment.

Environments are independent. Each worker runs promote then deploy for its
environment and reads only the immutable CanonicalReference; a failure in one
environment never stops the others.

Example:
    >>> config = PipelineConfig.from_yaml("keel.yaml")
    >>> with RegistryClient.from_config(config.registry, os.environ) as registry:
    ...     result = PipelineRunner(config, registry).run()
    >>> result.succeeded
    True
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor

import structlog
from pydantic import BaseModel, ConfigDict, Field

from keel.cluster.credentials import static_kubeconfig_from_env
from keel.errors import KeelError
from keel.registry.client import RegistryClient
from keel.schemas.build import BuildResult
from keel.schemas.deploy import DeployResult
from keel.schemas.pipeline import EnvironmentConfig, PipelineConfig
from keel.schemas.promotion import PromotionResult
from keel.schemas.reference import CanonicalReference
from keel.stages.build import BuildStage
from keel.stages.deploy import DeployStage
from keel.stages.promote import PromoteStage
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class EnvironmentOutcome(BaseModel):
    """What happened to one environment.

    Attributes:
        environment: Environment name.
        promotion: Promotion result, if promotion succeeded.
        deploy: Deploy result, if deploy ran and succeeded.
        error_kind: ``kind`` of the error that stopped the environment.
        error: Message of that error.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    promotion: PromotionResult | None = None
    deploy: DeployResult | None = None
    error_kind: str | None = None
    error: str | None = None
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.error_kind is None


class PipelineResult(BaseModel):
    """Outcome of a pipeline invocation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    reference: CanonicalReference
    build: BuildResult | None = None
    environments: list[EnvironmentOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True if every environment succeeded."""
        return all(outcome.ok for outcome in self.environments)

    @property
    def exit_code(self) -> int:
        """Exit code of the first failed environment, 0 if all succeeded."""
        for outcome in self.environments:
            if not outcome.ok:
                return outcome.exit_code
        return 0


class PipelineRunner:
    """Run a pipeline from a PipelineConfig.

    Args:
        config: Validated ``keel.yaml``.
        registry: Registry client, shared by all workers.
        build_stage: Build stage override.
        promote_stage: Promote stage override.
        deploy_stage: Deploy stage override.
        environ: Environment for CI metadata and ``KUBE_CONFIG``.
    """

    def __init__(
        self,
        config: PipelineConfig,
        registry: RegistryClient,
        *,
        build_stage: BuildStage | None = None,
        promote_stage: PromoteStage | None = None,
        deploy_stage: DeployStage | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self._environ = os.environ if environ is None else environ
        self._build_stage = build_stage or BuildStage(config.build, registry, environ=self._environ)
        self._promote_stage = promote_stage or PromoteStage(registry)
        self._deploy_stage = deploy_stage or DeployStage()

    def run(
        self,
        reference: CanonicalReference | None = None,
        environments: Sequence[str] | None = None,
    ) -> PipelineResult:
        """Build (unless ``reference`` is given), then fan out to environments.

        Args:
            reference: Existing canonical reference; skips the build stage.
            environments: Subset of environment names (default: all).

        Raises:
            ConfigurationError: If an environment name is unknown.
            BuildStageError: If the build stage fails; no environment runs.
        """
        targets = (
            [self.config.environment(name) for name in environments]
            if environments is not None
            else list(self.config.environments)
        )

        with create_span(
            "keel.pipeline",
            attributes={"keel.app": self.config.app_name, "keel.environments": len(targets)},
        ):
            build = None
            if reference is None:
                build = self._build_stage.run()
                reference = build.image
            else:
                logger.info("build_skipped", reference=str(reference))

            outcomes: list[EnvironmentOutcome] = []
            if targets:
                workers = min(self.config.max_parallel_environments, len(targets))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keel-env") as pool:
                    futures = [pool.submit(self.run_environment, env, reference) for env in targets]
                    outcomes = [future.result() for future in futures]

            result = PipelineResult(reference=reference, build=build, environments=outcomes)
            logger.info(
                "pipeline_completed",
                reference=str(reference),
                succeeded=result.succeeded,
                failed=[o.environment for o in outcomes if not o.ok],
            )
            return result

    def run_environment(
        self, env: EnvironmentConfig, reference: CanonicalReference
    ) -> EnvironmentOutcome:
        """Promote then deploy one environment; KeelErrors become the outcome."""
        log = logger.bind(environment=env.name, reference=str(reference))
        promotion: PromotionResult | None = None
        try:
            promotion = self._promote_stage.run(reference, env.promote_to)
            if not env.deploy:
                log.info("environment_deploy_disabled")
                return EnvironmentOutcome(environment=env.name, promotion=promotion)

            request = env.deploy_request(
                reference,
                app_name=self.config.app_name,
                kubeconfig=static_kubeconfig_from_env(self._environ),
            )
            deployed = self._deploy_stage.run(request)
        except KeelError as e:
            log.error("environment_failed", kind=e.kind, error=str(e))
            return EnvironmentOutcome(
                environment=env.name,
                promotion=promotion,
                error_kind=e.kind,
                error=str(e),
                exit_code=e.exit_code,
            )

        log.info("environment_completed")
        return EnvironmentOutcome(environment=env.name, promotion=promotion, deploy=deployed)


__all__ = ["EnvironmentOutcome", "PipelineResult", "PipelineRunner"]
