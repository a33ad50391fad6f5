"""Promotion schemas.

Promotion assigns additional tags to an existing digest. These models carry
the parsed request and the per-tag outcomes.

Key Components:
    parse_promote_to: Normalize a comma-separated ``promote_to`` string
    TagStatus: Outcome of one tag assignment
    TagOutcome: Per-tag result with previous digest and error
    PromotionResult: Aggregate result for one promote invocation
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from keel.errors import InvalidPromotionRequest
from keel.schemas.reference import CanonicalReference, is_valid_tag


def parse_promote_to(value: str | list[str] | tuple[str, ...]) -> tuple[str, ...]:
    """Normalize a tag list.

    Entries are trimmed, empty entries dropped and duplicates removed keeping
    first-occurrence order.

    Args:
        value: Comma-separated string or a sequence of tag names.

    Returns:
        Ordered tuple of unique tag names.

    Raises:
        InvalidPromotionRequest: If no tags remain or a tag is malformed.

    Examples:
        >>> parse_promote_to(" dev, staging,,dev ")
        ('dev', 'staging')
    """
    raw = value.split(",") if isinstance(value, str) else list(value)

    tags: list[str] = []
    for entry in raw:
        tag = entry.strip()
        if tag and tag not in tags:
            tags.append(tag)

    if not tags:
        raise InvalidPromotionRequest("promote_to names no tags")

    invalid = [t for t in tags if not is_valid_tag(t)]
    if invalid:
        raise InvalidPromotionRequest(f"invalid tag name(s): {', '.join(invalid)}")

    return tuple(tags)


class TagStatus(str, Enum):
    """Outcome of assigning one tag."""

    CREATED = "created"
    MOVED = "moved"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def succeeded(self) -> bool:
        """True if the tag now points at the requested digest."""
        return self in (TagStatus.CREATED, TagStatus.MOVED, TagStatus.UNCHANGED)


class TagOutcome(BaseModel):
    """Result of one tag assignment.

    Attributes:
        tag: Target tag name.
        status: What happened to the tag.
        previous_digest: Digest the tag pointed at before a move.
        error: Failure or skip reason.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tag: str
    status: TagStatus
    previous_digest: str | None = None
    error: str | None = None


class PromotionResult(BaseModel):
    """Aggregate outcome of a promote invocation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    reference: CanonicalReference
    outcomes: list[TagOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[str]:
        """Tags that point at the digest after the run."""
        return [o.tag for o in self.outcomes if o.status.succeeded]

    @property
    def failed(self) -> dict[str, str]:
        """Failed and skipped tags mapped to their reason."""
        return {o.tag: o.error or o.status.value for o in self.outcomes if not o.status.succeeded}

    @property
    def complete(self) -> bool:
        """True if every requested tag succeeded."""
        return not self.failed


__all__: list[str] = [
    "PromotionResult",
    "TagOutcome",
    "TagStatus",
    "parse_promote_to",
]
