"""Cluster access for the deploy stage.

Modules:
    credentials: Select and resolve the federated or static credential
    manifests: Select or render manifests in apply order
    client: Kubernetes API operations (apply, image pin, status)
    rollout: Bounded rollout polling
"""

from __future__ import annotations

from keel.cluster.client import ClusterClient, classify_rollout
from keel.cluster.credentials import (
    CredentialProvider,
    build_kubeconfig,
    select_credential,
    static_kubeconfig_from_env,
)
from keel.cluster.manifests import (
    DirectoryManifestSet,
    InMemoryManifestSet,
    ManifestSet,
    render_overlay,
    select_manifests,
)
from keel.cluster.rollout import RolloutMonitor

__all__ = [
    "ClusterClient",
    "CredentialProvider",
    "DirectoryManifestSet",
    "InMemoryManifestSet",
    "ManifestSet",
    "RolloutMonitor",
    "build_kubeconfig",
    "classify_rollout",
    "render_overlay",
    "select_credential",
    "select_manifests",
    "static_kubeconfig_from_env",
]
