"""OCI image layout reader.

The build toolchain exports an OCI image layout directory::

    <layout>/
        oci-layout
        index.json
        blobs/sha256/<hex>

``OCILayout.publish_plan()`` walks it from the root descriptor and returns
what a registry push needs, in push order: every blob first, then child
manifests (per-platform images, attestations), then the root manifest or
index, which is published under the tag.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from keel.errors import PublishFailure
from keel.schemas.reference import DIGEST_PATTERN

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

INDEX_MEDIA_TYPES = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})
MANIFEST_MEDIA_TYPES = frozenset({OCI_MANIFEST, DOCKER_MANIFEST})

ACCEPT_MANIFEST_TYPES = ", ".join(
    [OCI_INDEX, OCI_MANIFEST, DOCKER_MANIFEST_LIST, DOCKER_MANIFEST]
)
"""Accept header for manifest requests."""


def sha256_digest(data: bytes) -> str:
    """Content digest of ``data``."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@dataclass(frozen=True)
class Descriptor:
    """OCI content descriptor."""

    media_type: str
    digest: str
    size: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Descriptor:
        try:
            descriptor = cls(
                media_type=str(data["mediaType"]),
                digest=str(data["digest"]),
                size=int(data["size"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"malformed descriptor {data!r}: {e}") from e
        if not DIGEST_PATTERN.match(descriptor.digest):
            raise ValueError(f"unsupported digest {descriptor.digest!r}")
        return descriptor


@dataclass(frozen=True)
class ManifestPayload:
    """A manifest or index with its exact serialized bytes."""

    descriptor: Descriptor
    content: bytes


@dataclass
class PublishPlan:
    """Ordered push plan for one image layout."""

    blobs: list[Descriptor] = field(default_factory=list)
    children: list[ManifestPayload] = field(default_factory=list)
    root: ManifestPayload | None = None


class OCILayout:
    """Read-only view over an OCI image layout directory."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def blob_path(self, digest: str) -> Path:
        algorithm, _, hexdigest = digest.partition(":")
        return self.path / "blobs" / algorithm / hexdigest

    def read_blob(self, digest: str) -> bytes:
        """Read a blob and verify its digest.

        Raises:
            PublishFailure: If the blob is missing or corrupt.
        """
        blob = self.blob_path(digest)
        try:
            data = blob.read_bytes()
        except OSError as e:
            raise PublishFailure(str(self.path), f"missing blob {digest}: {e}") from e
        actual = sha256_digest(data)
        if actual != digest:
            raise PublishFailure(str(self.path), f"corrupt blob {digest} (content is {actual})")
        return data

    def root(self) -> Descriptor:
        """Root descriptor from ``index.json``.

        Raises:
            PublishFailure: If index.json is missing, malformed or ambiguous.
        """
        index_file = self.path / "index.json"
        try:
            index = json.loads(index_file.read_text())
        except (OSError, ValueError) as e:
            raise PublishFailure(str(self.path), f"unreadable index.json: {e}") from e

        manifests = index.get("manifests") or []
        if len(manifests) != 1:
            raise PublishFailure(
                str(self.path),
                f"index.json must reference exactly one image, found {len(manifests)}",
            )
        try:
            return Descriptor.from_dict(manifests[0])
        except ValueError as e:
            raise PublishFailure(str(self.path), str(e)) from e

    def publish_plan(self) -> PublishPlan:
        """Walk the layout from its root into a push plan.

        Raises:
            PublishFailure: If any referenced content is missing or malformed.
        """
        plan = PublishPlan()
        seen_blobs: set[str] = set()
        root = self.root()
        plan.root = self._walk(root, plan, seen_blobs)
        return plan

    def _walk(
        self,
        descriptor: Descriptor,
        plan: PublishPlan,
        seen_blobs: set[str],
    ) -> ManifestPayload:
        content = self.read_blob(descriptor.digest)
        try:
            document = json.loads(content)
        except ValueError as e:
            raise PublishFailure(str(self.path), f"manifest {descriptor.digest} is not JSON") from e

        media_type = document.get("mediaType") or descriptor.media_type
        try:
            if media_type in INDEX_MEDIA_TYPES:
                for child in document.get("manifests") or []:
                    child_payload = self._walk(Descriptor.from_dict(child), plan, seen_blobs)
                    plan.children.append(child_payload)
            elif media_type in MANIFEST_MEDIA_TYPES:
                for blob in [document["config"], *(document.get("layers") or [])]:
                    blob_descriptor = Descriptor.from_dict(blob)
                    if blob_descriptor.digest not in seen_blobs:
                        seen_blobs.add(blob_descriptor.digest)
                        plan.blobs.append(blob_descriptor)
            else:
                raise PublishFailure(
                    str(self.path),
                    f"unsupported manifest media type {media_type!r} for {descriptor.digest}",
                )
        except (KeyError, ValueError) as e:
            raise PublishFailure(str(self.path), f"malformed manifest {descriptor.digest}: {e}") from e

        payload_descriptor = Descriptor(media_type, descriptor.digest, len(content))
        return ManifestPayload(descriptor=payload_descriptor, content=content)


__all__ = [
    "ACCEPT_MANIFEST_TYPES",
    "Descriptor",
    "ManifestPayload",
    "OCILayout",
    "PublishPlan",
    "sha256_digest",
]
