"""Manifest selection and rendering.

Direct mode looks each logical resource up in a ManifestSet with an explicit
precedence: environment-qualified name first, then the generic name.
Overlay mode renders ``kustomize build`` output. Both yield parsed documents
in apply order.

Example:
    >>> manifests = InMemoryManifestSet({
    ...     "deployment.yaml": "kind: Deployment ...",
    ...     "deployment-prod.yaml": "kind: Deployment ...",
    ... })
    >>> [m.source for m in select_manifests(manifests, "prod")]
    ['deployment-prod.yaml']
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from keel.errors import ManifestApplyFailure
from keel.toolchain._process import CommandResult, run_command

logger = structlog.get_logger(__name__)

Runner = Callable[..., CommandResult]

RESOURCE_ORDER: tuple[str, ...] = ("namespace", "deployment", "service")
REQUIRED_RESOURCES = frozenset({"deployment"})
MANIFEST_EXTENSIONS: tuple[str, ...] = (".yaml", ".yml")

_KIND_RANK: dict[str, int] = {
    "Namespace": 0,
    "CustomResourceDefinition": 1,
    "ServiceAccount": 1,
    "ConfigMap": 1,
    "Secret": 1,
    "PersistentVolumeClaim": 1,
    "Role": 1,
    "ClusterRole": 1,
    "RoleBinding": 1,
    "ClusterRoleBinding": 1,
    "Deployment": 2,
    "StatefulSet": 2,
    "DaemonSet": 2,
    "Job": 2,
    "CronJob": 2,
    "Service": 3,
}
_UNRANKED = 4


def kind_rank(kind: str) -> int:
    """Apply-order rank of a kind: Namespace, configuration, workloads, Services, rest."""
    return _KIND_RANK.get(kind, _UNRANKED)


def order_documents(documents: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Stable sort of documents by kind rank."""
    return sorted(documents, key=lambda doc: kind_rank(str(doc.get("kind", ""))))


def document_id(document: Mapping[str, Any]) -> str:
    """``Kind/name`` identifier used in logs and errors."""
    metadata = document.get("metadata") or {}
    return f"{document.get('kind', '?')}/{metadata.get('name', '?')}"


class ManifestSet(ABC):
    """Named manifest documents, independent of storage."""

    @abstractmethod
    def read(self, name: str) -> str | None:
        """Text of manifest ``name``, or None if absent."""
        ...

    def describe(self, name: str) -> str:
        return name


class DirectoryManifestSet(ManifestSet):
    """Manifests stored as files in one directory."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self, name: str) -> str | None:
        candidate = self.path / name
        if not candidate.is_file():
            return None
        try:
            return candidate.read_text()
        except OSError as e:
            raise ManifestApplyFailure(str(candidate), f"unreadable: {e}") from e

    def describe(self, name: str) -> str:
        return str(self.path / name)


class InMemoryManifestSet(ManifestSet):
    """Manifests held in a name -> text mapping."""

    def __init__(self, documents: Mapping[str, str]) -> None:
        self._documents = dict(documents)

    def read(self, name: str) -> str | None:
        return self._documents.get(name)


@dataclass(frozen=True)
class SelectedManifest:
    """One selected manifest file and its parsed documents."""

    resource: str
    source: str
    documents: list[dict[str, Any]] = field(default_factory=list)


def candidate_names(resource: str, environment: str) -> list[str]:
    """Lookup precedence for one resource.

    Examples:
        >>> candidate_names("service", "prod")
        ['service-prod.yaml', 'service-prod.yml', 'service.yaml', 'service.yml']
    """
    qualified = [f"{resource}-{environment}{ext}" for ext in MANIFEST_EXTENSIONS]
    generic = [f"{resource}{ext}" for ext in MANIFEST_EXTENSIONS]
    return qualified + generic


def parse_documents(text: str, source: str) -> list[dict[str, Any]]:
    """Parse a multi-document YAML stream, dropping empty documents.

    Raises:
        ManifestApplyFailure: If the YAML is invalid or a document is not a
            mapping with ``kind`` and ``metadata.name``.
    """
    try:
        loaded = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestApplyFailure(source, f"invalid YAML: {e}") from e

    for doc in loaded:
        if not isinstance(doc, dict) or not doc.get("kind") or not doc.get("apiVersion"):
            raise ManifestApplyFailure(source, "document is missing apiVersion or kind")
        if not (doc.get("metadata") or {}).get("name"):
            raise ManifestApplyFailure(source, f"{doc['kind']} document has no metadata.name")
    return loaded


def select_manifests(manifest_set: ManifestSet, environment: str) -> list[SelectedManifest]:
    """Pick one manifest per logical resource in dependency order.

    Raises:
        ManifestApplyFailure: If the deployment manifest is missing.
    """
    selected: list[SelectedManifest] = []
    for resource in RESOURCE_ORDER:
        for name in candidate_names(resource, environment):
            text = manifest_set.read(name)
            if text is None:
                continue
            source = manifest_set.describe(name)
            selected.append(SelectedManifest(resource, source, parse_documents(text, source)))
            logger.debug("manifest_selected", resource=resource, source=source)
            break
        else:
            if resource in REQUIRED_RESOURCES:
                raise ManifestApplyFailure(
                    f"{resource}.yaml",
                    f"no {resource} manifest for environment {environment!r} "
                    f"(looked for {', '.join(candidate_names(resource, environment))})",
                )
    return selected


def overlay_directory(manifest_path: Path, environment: str) -> Path:
    """``<path>/overlays/<env>`` if it exists, else ``<path>``."""
    overlay = manifest_path / "overlays" / environment
    return overlay if overlay.is_dir() else manifest_path


def render_overlay(
    manifest_path: Path,
    environment: str,
    *,
    binary: str = "kustomize",
    timeout_seconds: float = 120,
    runner: Runner = run_command,
) -> list[dict[str, Any]]:
    """Render an overlay with ``kustomize build`` and order the documents.

    Raises:
        ManifestApplyFailure: If the tool fails or its output is invalid.
    """
    directory = overlay_directory(manifest_path, environment)
    result = runner([binary, "build", str(directory)], timeout=timeout_seconds)
    if not result.ok:
        raise ManifestApplyFailure(str(directory), f"{binary} build failed: {result.failure_reason()}")

    documents = order_documents(parse_documents(result.stdout, str(directory)))
    logger.info("overlay_rendered", directory=str(directory), documents=len(documents))
    return documents


__all__ = [
    "DirectoryManifestSet",
    "InMemoryManifestSet",
    "ManifestSet",
    "SelectedManifest",
    "candidate_names",
    "document_id",
    "kind_rank",
    "order_documents",
    "overlay_directory",
    "parse_documents",
    "render_overlay",
    "select_manifests",
]
