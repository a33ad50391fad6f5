"""Kubernetes API adapter for the deploy stage.

Wraps the official ``kubernetes`` client behind the four operations the
deploy stage needs. Every API call passes ``_request_timeout``.

Example:
    >>> cluster = ClusterClient.from_kubeconfig(kubeconfig_dict)
    >>> cluster.ensure_namespace("shop")
    >>> cluster.apply_manifest(document, namespace="shop")
    >>> cluster.set_container_image("shop", "app", "ghcr.io/acme/shop@sha256:...", namespace="shop")
    >>> status = cluster.get_rollout_status("shop", namespace="shop")
"""

from __future__ import annotations

import copy
from typing import Any

import structlog

from keel.cluster.manifests import document_id
from keel.errors import CredentialResolutionFailure, ImageUpdateFailure, ManifestApplyFailure
from keel.schemas.deploy import RolloutCondition, RolloutStatus

logger = structlog.get_logger(__name__)

FIELD_MANAGER = "keel"

POD_FAILURE_REASONS = frozenset(
    {"CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull", "CreateContainerConfigError"}
)
PROGRESS_DEADLINE_EXCEEDED = "ProgressDeadlineExceeded"


def _api_reason(e: Exception) -> str:
    status = getattr(e, "status", None)
    reason = getattr(e, "reason", None) or str(e)
    return f"HTTP {status}: {reason}" if status else str(reason)


def _pod_images(pod: Any) -> list[str]:
    return [c.image for c in (pod.spec.containers or [])] if pod.spec else []


def classify_rollout(deployment: Any, pods: list[Any], image_ref: str | None = None) -> RolloutStatus:
    """Build a RolloutStatus from a V1Deployment and its pods.

    Complete when the observed generation is current and updated, ready and
    available replicas all equal the desired count (with no surplus old
    replicas). Failed on ``ProgressDeadlineExceeded`` or when a pod running
    ``image_ref`` (any pod if None) is waiting with a failure reason.
    """
    spec = deployment.spec
    status = deployment.status
    desired = spec.replicas if spec.replicas is not None else 1
    generation = deployment.metadata.generation or 0
    observed = (status.observed_generation or 0) if status else 0
    total = (status.replicas or 0) if status else 0
    updated = (status.updated_replicas or 0) if status else 0
    ready = (status.ready_replicas or 0) if status else 0
    available = (status.available_replicas or 0) if status else 0

    def snapshot(condition: RolloutCondition, reason: str | None = None) -> RolloutStatus:
        return RolloutStatus(
            desired_replicas=desired,
            updated_replicas=updated,
            ready_replicas=ready,
            available_replicas=available,
            observed_generation=observed,
            generation=generation,
            condition=condition,
            reason=reason,
        )

    for condition in (status.conditions or []) if status else []:
        if condition.type == "Progressing" and condition.reason == PROGRESS_DEADLINE_EXCEEDED:
            return snapshot(RolloutCondition.FAILED, condition.message or PROGRESS_DEADLINE_EXCEEDED)

    for pod in pods:
        if image_ref and image_ref not in _pod_images(pod):
            continue
        for container_status in (pod.status.container_statuses or []) if pod.status else []:
            waiting = container_status.state.waiting if container_status.state else None
            if waiting is not None and waiting.reason in POD_FAILURE_REASONS:
                return snapshot(
                    RolloutCondition.FAILED,
                    f"pod {pod.metadata.name} container {container_status.name}: {waiting.reason}",
                )

    if (
        observed >= generation
        and updated == desired
        and ready == desired
        and available == desired
        and total <= desired
    ):
        return snapshot(RolloutCondition.COMPLETE)

    return snapshot(
        RolloutCondition.PROGRESSING,
        f"{updated}/{desired} updated, {ready} ready, {available} available",
    )


class ClusterClient:
    """Operations against one cluster.

    Attributes:
        request_timeout: Per-call timeout in seconds.
    """

    def __init__(self, api_client: Any, *, request_timeout: float = 30.0) -> None:
        self._api_client = api_client
        self.request_timeout = request_timeout
        self._core: Any = None
        self._apps: Any = None
        self._dynamic: Any = None

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig: dict[str, Any], *, request_timeout: float = 30.0
    ) -> ClusterClient:
        """Create a client from an in-memory kubeconfig dict.

        Raises:
            CredentialResolutionFailure: If the kubeconfig is unusable.
        """
        from kubernetes import config as k8s_config

        try:
            api_client = k8s_config.new_client_from_config_dict(kubeconfig, persist_config=False)
        except Exception as e:
            raise CredentialResolutionFailure("kubeconfig", f"unusable kubeconfig: {e}") from e
        return cls(api_client, request_timeout=request_timeout)

    @property
    def core(self) -> Any:
        if self._core is None:
            from kubernetes import client

            self._core = client.CoreV1Api(self._api_client)
        return self._core

    @property
    def apps(self) -> Any:
        if self._apps is None:
            from kubernetes import client

            self._apps = client.AppsV1Api(self._api_client)
        return self._apps

    @property
    def dynamic(self) -> Any:
        if self._dynamic is None:
            from kubernetes.dynamic import DynamicClient

            self._dynamic = DynamicClient(self._api_client)
        return self._dynamic

    def close(self) -> None:
        """Release the API client's connection pool."""
        close = getattr(self._api_client, "close", None)
        if callable(close):
            close()

    def ensure_namespace(self, name: str) -> None:
        """Create ``name`` unless it already exists (HTTP 409 is success).

        Raises:
            ManifestApplyFailure: On any other API error.
        """
        from kubernetes.client import ApiException

        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}
        try:
            self.core.create_namespace(body=body, _request_timeout=self.request_timeout)
            logger.info("namespace_created", namespace=name)
        except ApiException as e:
            if e.status == 409:
                logger.debug("namespace_exists", namespace=name)
                return
            raise ManifestApplyFailure(f"Namespace/{name}", _api_reason(e)) from e

    def apply_manifest(self, document: dict[str, Any], *, namespace: str) -> str:
        """Server-side apply one document under field manager ``keel``.

        Namespaced documents without ``metadata.namespace`` land in
        ``namespace``.

        Returns:
            ``Kind/name`` of the applied object.

        Raises:
            ManifestApplyFailure: If the kind is unknown or the API rejects it.
        """
        from kubernetes.client import ApiException
        from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError

        identifier = document_id(document)
        body = copy.deepcopy(document)
        try:
            resource = self.dynamic.resources.get(
                api_version=body["apiVersion"], kind=body["kind"]
            )
            target_namespace = None
            if resource.namespaced:
                target_namespace = body["metadata"].setdefault("namespace", namespace)

            self.dynamic.server_side_apply(
                resource,
                body=body,
                name=body["metadata"]["name"],
                namespace=target_namespace,
                field_manager=FIELD_MANAGER,
                force_conflicts=True,
                _request_timeout=self.request_timeout,
            )
        except ResourceNotFoundError as e:
            raise ManifestApplyFailure(identifier, f"unknown kind: {e}") from e
        except (ApiException, DynamicApiError) as e:
            raise ManifestApplyFailure(identifier, _api_reason(e)) from e

        logger.info("manifest_applied", object=identifier, namespace=target_namespace)
        return identifier

    def set_container_image(
        self,
        deployment: str,
        container: str,
        image_ref: str,
        *,
        namespace: str,
    ) -> None:
        """Patch ``container`` of ``deployment`` to run ``image_ref``.

        Raises:
            ImageUpdateFailure: If the deployment or container does not exist
                or the patch is rejected.
        """
        from kubernetes.client import ApiException

        try:
            current = self.apps.read_namespaced_deployment(
                name=deployment, namespace=namespace, _request_timeout=self.request_timeout
            )
        except ApiException as e:
            raise ImageUpdateFailure(deployment, container, _api_reason(e)) from e

        names = [c.name for c in current.spec.template.spec.containers or []]
        if container not in names:
            raise ImageUpdateFailure(
                deployment, container, f"no such container (has: {', '.join(names) or 'none'})"
            )

        patch = {"spec": {"template": {"spec": {"containers": [{"name": container, "image": image_ref}]}}}}
        try:
            self.apps.patch_namespaced_deployment(
                name=deployment,
                namespace=namespace,
                body=patch,
                field_manager=FIELD_MANAGER,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            raise ImageUpdateFailure(deployment, container, _api_reason(e)) from e

        logger.info(
            "container_image_set",
            deployment=deployment,
            container=container,
            namespace=namespace,
            image=image_ref,
        )

    def get_rollout_status(
        self,
        deployment: str,
        *,
        namespace: str,
        image_ref: str | None = None,
    ) -> RolloutStatus:
        """Read the deployment status and its pods and classify them.

        API errors propagate; the rollout monitor treats them as transient.
        """
        current = self.apps.read_namespaced_deployment_status(
            name=deployment, namespace=namespace, _request_timeout=self.request_timeout
        )

        pods: list[Any] = []
        selector = current.spec.selector.match_labels if current.spec.selector else None
        if selector:
            label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
            pods = self.core.list_namespaced_pod(
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=self.request_timeout,
            ).items

        return classify_rollout(current, pods, image_ref)


__all__ = [
    "ClusterClient",
    "FIELD_MANAGER",
    "POD_FAILURE_REASONS",
    "classify_rollout",
]
