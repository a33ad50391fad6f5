"""Artifact identity schemas.

A CanonicalReference (``registry_location@sha256:<digest>``) is the only
artifact identity passed between stages. Tags are mutable pointers and never
identify an artifact; ``CanonicalReference.parse`` rejects them outright,
including the cosmetic ``latest`` tag.

Example:
    >>> ref = CanonicalReference.parse("ghcr.io/acme/shop@sha256:" + "a" * 64)
    >>> ref.host, ref.repository
    ('ghcr.io', 'acme/shop')
    >>> CanonicalReference.parse("ghcr.io/acme/shop:latest")
    Traceback (most recent call last):
        ...
    InvalidReference: Invalid canonical reference 'ghcr.io/acme/shop:latest': ...
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keel.errors import InvalidReference

DIGEST_PATTERN = re.compile(r"^sha256:[a-f0-9]{64}$")
"""Content digest grammar accepted by keel (OCI sha256 digests only)."""

TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]{0,127}$")
"""OCI distribution tag grammar."""

_LOCATION_PATTERN = re.compile(r"^[a-z0-9]+([._:-][a-z0-9]+)*(/[a-z0-9]+([._-]+[a-z0-9]+)*)*$")

DEFAULT_REGISTRY_HOST = "docker.io"


def is_valid_tag(tag: str) -> bool:
    """Return True if ``tag`` satisfies the OCI tag grammar."""
    return bool(TAG_PATTERN.match(tag))


def split_location(location: str) -> tuple[str, str]:
    """Split a registry location into (host, repository).

    The first path component is a host when it contains a dot or a port, or
    is ``localhost``; otherwise the location is a Docker Hub repository.
    """
    first, _, rest = location.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return DEFAULT_REGISTRY_HOST, location


class CanonicalReference(BaseModel):
    """Immutable digest-pinned artifact reference.

    Attributes:
        registry_location: Registry host and repository (no tag).
        content_digest: ``sha256:<64 hex>`` content digest.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    registry_location: str = Field(
        ...,
        min_length=1,
        description="Registry host and repository, without tag",
    )
    content_digest: str = Field(
        ...,
        description="Content digest (sha256:<64 hex>)",
    )

    @field_validator("content_digest")
    @classmethod
    def validate_digest(cls, v: str) -> str:
        """Require a lowercase sha256 digest."""
        if not DIGEST_PATTERN.match(v):
            raise ValueError(f"not a sha256 digest: {v!r}")
        return v

    @field_validator("registry_location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        """Reject locations carrying a tag or invalid characters."""
        if not _LOCATION_PATTERN.match(v):
            raise ValueError(f"not a registry location: {v!r}")
        return v

    @classmethod
    def parse(cls, value: str) -> CanonicalReference:
        """Parse ``location[:tag]@sha256:<digest>`` into a CanonicalReference.

        A tag between the location and the digest is accepted and discarded,
        since the digest alone determines content.

        Raises:
            InvalidReference: If no digest is present or either part is malformed.
        """
        raw = value.strip()
        if "@" not in raw:
            raise InvalidReference(value, "no @sha256 digest; tags are not canonical references")

        location, _, digest = raw.rpartition("@")
        if not DIGEST_PATTERN.match(digest):
            raise InvalidReference(value, f"digest {digest!r} is not sha256:<64 hex>")

        head, sep, last = location.rpartition("/")
        if ":" in last:
            last = last.split(":", 1)[0]
            location = f"{head}{sep}{last}"

        try:
            return cls(registry_location=location, content_digest=digest)
        except ValueError as e:
            raise InvalidReference(value, str(e)) from e

    @classmethod
    def from_parts(cls, location: str, digest: str) -> CanonicalReference:
        """Build a reference from an image name and digest, raising InvalidReference."""
        return cls.parse(f"{location}@{digest}")

    @property
    def host(self) -> str:
        """Registry host (``docker.io`` for unqualified names)."""
        return split_location(self.registry_location)[0]

    @property
    def repository(self) -> str:
        """Repository path within the registry."""
        return split_location(self.registry_location)[1]

    def __str__(self) -> str:
        return f"{self.registry_location}@{self.content_digest}"


class Artifact(BaseModel):
    """A published image.

    ``content_digest`` never changes once published. ``tags`` records the tags
    known to point at it when the record was produced; they are informational
    and never used to locate content.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Application name")
    content_digest: str = Field(..., description="Immutable content digest")
    registry_location: str = Field(..., description="Registry host and repository")
    tags: frozenset[str] = Field(default_factory=frozenset, description="Known tags")

    @property
    def reference(self) -> CanonicalReference:
        """The canonical reference for this artifact."""
        return CanonicalReference(
            registry_location=self.registry_location,
            content_digest=self.content_digest,
        )

    def with_tag(self, tag: str) -> Artifact:
        """Return a copy that also records ``tag``."""
        return self.model_copy(update={"tags": self.tags | {tag}})


__all__: list[str] = [
    "DIGEST_PATTERN",
    "TAG_PATTERN",
    "Artifact",
    "CanonicalReference",
    "is_valid_tag",
    "split_location",
]
