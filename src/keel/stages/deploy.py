"""Deploy stage: run a canonical digest reference on a cluster.

State machine::

    resolving_credentials -> applying_manifests -> updating_image
        -> awaiting_rollout -> {succeeded, failed, timed_out}

Every transition is logged and recorded in ``DeployResult.phase_history``.
Errors carry the phase they occurred in (``DeployError.phase``). There is no
automatic rollback and the registry is never touched.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from keel.cluster.client import ClusterClient
from keel.cluster.credentials import CredentialProvider, select_credential
from keel.cluster.manifests import DirectoryManifestSet, ManifestSet, render_overlay, select_manifests
from keel.cluster.rollout import RolloutMonitor
from keel.errors import DeployError, RolloutTimedOut
from keel.schemas.deploy import DeployPhase, DeployRequest, DeployResult, RolloutRecord
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

ClusterFactory = Callable[[dict[str, Any], float], ClusterClient]
OverlayRenderer = Callable[[Path, str], list[dict[str, Any]]]


def _default_cluster_factory(kubeconfig: dict[str, Any], request_timeout: float) -> ClusterClient:
    return ClusterClient.from_kubeconfig(kubeconfig, request_timeout=request_timeout)


class _PhaseTracker:
    """Records phase transitions for one deploy invocation."""

    def __init__(self, log: Any) -> None:
        self.history: list[DeployPhase] = []
        self._log = log

    @property
    def current(self) -> DeployPhase | None:
        return self.history[-1] if self.history else None

    def enter(self, phase: DeployPhase) -> None:
        previous = self.current
        self.history.append(phase)
        self._log.info(
            "deploy_phase_changed",
            phase=phase.value,
            previous=previous.value if previous else None,
        )


class DeployStage:
    """Run one deploy invocation.

    Args:
        credentials: Resolves the selected ClusterCredential.
        cluster_factory: Builds a ClusterClient from a kubeconfig dict.
        manifest_set: Manifest source for direct mode (defaults to the
            request's ``manifest_path`` directory).
        overlay_renderer: Renders overlay mode documents.
        clock: Monotonic clock for rollout polling.
        sleep: Sleep function for rollout polling.

    Example:
        >>> request = env.deploy_request(reference, app_name="shop", kubeconfig=secret)
        >>> DeployStage().run(request).phase_history[-1]
        <DeployPhase.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        *,
        credentials: CredentialProvider | None = None,
        cluster_factory: ClusterFactory | None = None,
        manifest_set: ManifestSet | None = None,
        overlay_renderer: OverlayRenderer = render_overlay,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._credentials = credentials or CredentialProvider()
        self._cluster_factory = cluster_factory or _default_cluster_factory
        self._manifest_set = manifest_set
        self._overlay_renderer = overlay_renderer
        self._clock = clock
        self._sleep = sleep

    def run(self, request: DeployRequest) -> DeployResult:
        """Deploy ``request.image`` and wait for the rollout.

        Raises:
            NoCredentialAvailable: Before any cluster call.
            CredentialResolutionFailure, ManifestApplyFailure,
            ImageUpdateFailure, RolloutFailed, RolloutTimedOut: With
                ``phase`` set to where the failure happened.
        """
        image_ref = str(request.image)
        log = logger.bind(
            environment=request.environment,
            deployment=request.deployment_id,
            image=image_ref,
        )
        phases = _PhaseTracker(log)

        with create_span(
            "keel.deploy",
            attributes={
                "keel.environment": request.environment,
                "keel.deployment": request.deployment_id,
                "keel.reference": image_ref,
            },
        ) as span:
            try:
                result = self._run(request, phases, log)
            except DeployError as e:
                if e.phase is None:
                    e.phase = phases.current or DeployPhase.RESOLVING_CREDENTIALS
                terminal = (
                    DeployPhase.TIMED_OUT if isinstance(e, RolloutTimedOut) else DeployPhase.FAILED
                )
                phases.enter(terminal)
                span.set_attribute("keel.phase", e.phase.value)
                log.error("deploy_failed", phase=e.phase.value, kind=e.kind, error=str(e))
                raise

            span.set_attribute("keel.phase", DeployPhase.SUCCEEDED.value)
            return result

    def _run(self, request: DeployRequest, phases: _PhaseTracker, log: Any) -> DeployResult:
        phases.enter(DeployPhase.RESOLVING_CREDENTIALS)
        credential = select_credential(request)
        log.info("credential_selected", method=credential.method)
        kubeconfig = self._credentials.resolve(credential)

        cluster = self._cluster_factory(kubeconfig, request.request_timeout)
        del kubeconfig
        try:
            phases.enter(DeployPhase.APPLYING_MANIFESTS)
            applied = self._apply(cluster, request)

            phases.enter(DeployPhase.UPDATING_IMAGE)
            cluster.set_container_image(
                request.deployment,
                request.container,
                str(request.image),
                namespace=request.namespace,
            )

            phases.enter(DeployPhase.AWAITING_ROLLOUT)
            record = RolloutRecord(
                deployment_id=request.deployment_id,
                desired_image_ref=str(request.image),
            )
            monitor = RolloutMonitor(cluster, clock=self._clock, sleep=self._sleep)
            monitor.await_rollout(
                record,
                namespace=request.namespace,
                deployment=request.deployment,
                timeout=request.rollout_timeout,
                interval=request.poll_interval,
            )
        finally:
            cluster.close()

        phases.enter(DeployPhase.SUCCEEDED)
        log.info("deploy_succeeded", polls=record.polls, applied=len(applied))
        return DeployResult(
            environment=request.environment,
            deployment=request.deployment,
            container=request.container,
            image=request.image,
            credential_method=credential.method,
            phase_history=list(phases.history),
            applied=applied,
            rollout=record,
        )

    def _apply(self, cluster: ClusterClient, request: DeployRequest) -> list[str]:
        cluster.ensure_namespace(request.namespace)

        if request.use_overlay_tool:
            documents = self._overlay_renderer(request.manifest_path, request.environment)
        else:
            manifest_set = self._manifest_set or DirectoryManifestSet(request.manifest_path)
            documents = [
                doc
                for selected in select_manifests(manifest_set, request.environment)
                for doc in selected.documents
            ]

        return [cluster.apply_manifest(doc, namespace=request.namespace) for doc in documents]


__all__ = ["DeployStage"]
