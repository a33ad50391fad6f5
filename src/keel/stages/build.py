"""Build-and-publish stage.

Builds the image once, verifies it, publishes it under the revision tag and
emits the canonical digest reference. Nothing after this stage ever locates
content by tag.

Flow:
    metadata -> build (OCI layout in a temp dir) -> verify -> publish
    -> confirm digest -> optional scan -> optional ``latest`` -> BuildResult

A blocked image stays published under its revision tag but never gets
``latest``.

Example:
    >>> stage = BuildStage(config, registry)
    >>> result = stage.run()
    >>> result.outputs()
    {'image': 'ghcr.io/acme/shop@sha256:...', 'image_tag': 'sha-1a2b3c4'}
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path

import structlog

from keel.errors import (
    BlockingScanFailure,
    BuildFailure,
    KeelError,
    PublishFailure,
    TestFailure,
)
from keel.registry.client import RegistryClient
from keel.registry.layout import OCILayout
from keel.schemas.build import BuildConfig, BuildMetadata, BuildResult, ScanEvaluation
from keel.schemas.reference import Artifact, CanonicalReference
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span
from keel.toolchain._process import CommandResult, run_command
from keel.toolchain.builder import DockerBuildxToolchain
from keel.toolchain.scanner import ScanRunner
from keel.toolchain.verification import VerificationRunner

logger = structlog.get_logger(__name__)

LATEST_TAG = "latest"

ENV_REVISION = "GITHUB_SHA"
ENV_BRANCH = "GITHUB_REF_NAME"

Runner = Callable[..., CommandResult]


class BuildStage:
    """Run the build-and-publish stage for one BuildConfig.

    Args:
        config: Build configuration.
        registry: Client for the registry hosting ``config.image``.
        toolchain: Image builder (docker buildx by default).
        verifier: Test runner (runs in ``config.context`` by default).
        scanner: Vulnerability scanner adapter.
        environ: Environment to read CI metadata from.
        runner: Subprocess runner used for ``git`` metadata lookups.
    """

    def __init__(
        self,
        config: BuildConfig,
        registry: RegistryClient,
        *,
        toolchain: DockerBuildxToolchain | None = None,
        verifier: VerificationRunner | None = None,
        scanner: ScanRunner | None = None,
        environ: Mapping[str, str] | None = None,
        runner: Runner = run_command,
    ) -> None:
        self.config = config
        self._registry = registry
        self._toolchain = toolchain or DockerBuildxToolchain(
            timeout_seconds=config.build_timeout_seconds
        )
        self._verifier = verifier or VerificationRunner(
            cwd=config.context, timeout_seconds=config.test_timeout_seconds
        )
        self._scanner = scanner or ScanRunner()
        self._environ = os.environ if environ is None else environ
        self._runner = runner

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def resolve_metadata(self) -> BuildMetadata:
        """Revision, branch and timestamp for this build.

        Sources in order: explicit config, CI environment, ``git``.

        Raises:
            BuildFailure: If no revision or branch can be determined.
        """
        revision = (
            self.config.revision
            or self._environ.get(ENV_REVISION, "").strip()
            or self._git("rev-parse", "HEAD")
        )
        branch = (
            self.config.branch
            or self._environ.get(ENV_BRANCH, "").strip()
            or self._git("rev-parse", "--abbrev-ref", "HEAD")
        )
        try:
            return BuildMetadata(
                revision=revision,
                branch=branch,
                built_at=datetime.now(timezone.utc).replace(microsecond=0),
            )
        except ValueError as e:
            raise BuildFailure(f"invalid build metadata: {e}") from e

    def _git(self, *args: str) -> str:
        result = self._runner(["git", *args], timeout=30, cwd=self.config.context)
        if not result.ok:
            raise BuildFailure(f"cannot determine {' '.join(args)}: {result.failure_reason()}")
        return result.stdout.strip()

    def _build_args(self, metadata: BuildMetadata) -> dict[str, str]:
        args = dict(arg.split("=", 1) for arg in self.config.build_args)
        args.update(metadata.build_args())
        return args

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    def run(self) -> BuildResult:
        """Build, verify, publish and (optionally) scan.

        Returns:
            BuildResult carrying the canonical reference.

        Raises:
            BuildFailure: Toolchain failed or timed out.
            TestFailure: Verification failed; nothing was published.
            PublishFailure: Push failed or the digest could not be confirmed.
            BlockingScanFailure: Blocking findings under the ``block`` policy.
        """
        config = self.config
        metadata = self.resolve_metadata()
        log = logger.bind(image=config.image, revision=metadata.short_revision)
        warnings: list[str] = []

        with create_span(
            "keel.build",
            attributes={
                "keel.image": config.image,
                "keel.revision": metadata.revision,
                "keel.branch": metadata.branch,
            },
        ) as span:
            log.info("build_started", branch=metadata.branch, platforms=config.platforms)

            with tempfile.TemporaryDirectory(prefix="keel-build-") as workdir:
                content = self._toolchain.build(
                    context=config.context,
                    dockerfile=config.dockerfile_path,
                    platforms=config.platforms,
                    build_args=self._build_args(metadata),
                    labels=metadata.labels(config.app_name),
                    output_dir=Path(workdir) / "layout",
                    cache_from=config.cache_from,
                    cache_to=config.cache_to,
                )

                tested = self._verify()
                digest = self._publish(OCILayout(content.layout_path), metadata.image_tag)

            reference = CanonicalReference.from_parts(config.image, digest)
            span.set_attribute("keel.digest", digest)
            artifact = Artifact(
                name=config.app_name,
                content_digest=digest,
                registry_location=config.image,
                tags=frozenset({metadata.image_tag}),
            )

            scan = None
            if config.run_security_scan:
                scan = self._scan(reference, warnings)

            latest_tagged = False
            if self._should_tag_latest(metadata):
                latest_tagged = self._tag_latest(reference, warnings)
                if latest_tagged:
                    artifact = artifact.with_tag(LATEST_TAG)

            log.info("build_completed", reference=str(reference), warnings=len(warnings))
            return BuildResult(
                artifact=artifact,
                image=reference,
                image_tag=metadata.image_tag,
                metadata=metadata,
                tested=tested,
                latest_tagged=latest_tagged,
                scan=scan,
                warnings=warnings,
            )

    def _verify(self) -> bool:
        command = self.config.test_command
        if command is None:
            logger.info("verification_skipped", reason="no test command")
            return False

        result = self._verifier.run_tests(command, self.config.runtime_version)
        if not result.passed:
            raise TestFailure(command, result.reason or "tests failed")
        return True

    def _publish(self, layout: OCILayout, tag: str) -> str:
        target = f"{self.config.image}:{tag}"
        try:
            digest = self._registry.publish(layout, self.config.image, tag)
            reference = CanonicalReference.from_parts(self.config.image, digest)
            if not self._registry.digest_exists(reference):
                raise PublishFailure(target, f"registry does not report {digest} after push")
        except PublishFailure:
            raise
        except KeelError as e:
            raise PublishFailure(target, str(e)) from e
        return digest

    def _should_tag_latest(self, metadata: BuildMetadata) -> bool:
        if not self.config.push_latest:
            return False
        if metadata.branch != self.config.primary_branch:
            logger.info(
                "latest_tag_skipped",
                branch=metadata.branch,
                primary_branch=self.config.primary_branch,
            )
            return False
        return True

    def _tag_latest(self, reference: CanonicalReference, warnings: list[str]) -> bool:
        try:
            self._registry.copy_tag(reference, LATEST_TAG)
        except KeelError as e:
            message = f"could not tag {LATEST_TAG}: {sanitize_error_message(str(e))}"
            logger.warning("latest_tag_failed", reference=str(reference), error=message)
            warnings.append(message)
            return False
        logger.info("latest_tagged", reference=str(reference))
        return True

    def _scan(self, reference: CanonicalReference, warnings: list[str]) -> ScanEvaluation:
        evaluation = self._scanner.scan(reference, self.config.scan_policy)
        if evaluation.passed:
            logger.info("scan_passed", reference=str(reference))
            return evaluation

        reason = evaluation.reason or "scan did not pass"
        if evaluation.blocking:
            logger.error(
                "scan_blocked",
                reference=str(reference),
                blocking_cves=evaluation.blocking_cves,
            )
            raise BlockingScanFailure(str(reference), reason, evaluation.blocking_cves)

        logger.warning("scan_findings_ignored", reference=str(reference), reason=reason)
        warnings.append(f"security scan: {reason}")
        return evaluation


__all__ = ["BuildStage", "LATEST_TAG"]
