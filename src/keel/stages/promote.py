"""Promote stage: point target tags at an existing digest.

Promotion is a pure registry metadata operation. The manifest bytes stored
under the digest are PUT unchanged under each tag, so no layer is ever
pulled or rebuilt and the tag cannot end up at another digest.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from keel.errors import (
    AuthenticationError,
    KeelError,
    PartialPromotionFailure,
    ReferenceNotFound,
)
from keel.registry.client import RegistryClient
from keel.schemas.promotion import PromotionResult, TagOutcome, TagStatus, parse_promote_to
from keel.schemas.reference import CanonicalReference
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class PromoteStage:
    """Assign tags to a digest on one registry.

    Example:
        >>> stage = PromoteStage(registry)
        >>> result = stage.run("ghcr.io/acme/shop@sha256:...", "dev,staging")
        >>> result.succeeded
        ['dev', 'staging']
    """

    def __init__(self, registry: RegistryClient) -> None:
        self._registry = registry

    def run(
        self,
        reference: CanonicalReference | str,
        promote_to: str | Sequence[str],
    ) -> PromotionResult:
        """Promote ``reference`` to every tag in ``promote_to``, in order.

        Args:
            reference: Canonical digest reference (string form is parsed).
            promote_to: Comma-separated string or sequence of tags.

        Returns:
            PromotionResult with every tag succeeded.

        Raises:
            InvalidReference: If ``reference`` is not a digest reference.
            InvalidPromotionRequest: If ``promote_to`` is empty or invalid.
            ReferenceNotFound: If the digest is absent (before any tag is touched).
            PartialPromotionFailure: If any tag failed or was skipped.
        """
        if isinstance(reference, str):
            reference = CanonicalReference.parse(reference)
        tags = parse_promote_to(promote_to if isinstance(promote_to, str) else tuple(promote_to))
        log = logger.bind(reference=str(reference), tags=list(tags))

        with create_span(
            "keel.promote",
            attributes={"keel.reference": str(reference), "keel.tags": ",".join(tags)},
        ) as span:
            if not self._registry.digest_exists(reference):
                log.error("promotion_source_missing")
                raise ReferenceNotFound(str(reference))

            log.info("promotion_started")
            outcomes: list[TagOutcome] = []
            fatal: str | None = None
            for tag in tags:
                if fatal is not None:
                    outcomes.append(
                        TagOutcome(tag=tag, status=TagStatus.SKIPPED, error=f"skipped: {fatal}")
                    )
                    continue
                try:
                    outcomes.append(self._promote_tag(reference, tag))
                except AuthenticationError as e:
                    fatal = sanitize_error_message(str(e))
                    log.error("tag_promotion_failed", tag=tag, error=fatal, fatal=True)
                    outcomes.append(TagOutcome(tag=tag, status=TagStatus.FAILED, error=fatal))
                except KeelError as e:
                    error = sanitize_error_message(str(e))
                    log.error("tag_promotion_failed", tag=tag, error=error, kind=e.kind)
                    outcomes.append(TagOutcome(tag=tag, status=TagStatus.FAILED, error=error))

            result = PromotionResult(reference=reference, outcomes=outcomes)
            span.set_attribute("keel.tags_succeeded", len(result.succeeded))

            if not result.complete:
                raise PartialPromotionFailure(str(reference), result.succeeded, result.failed)

            log.info(
                "promotion_completed",
                outcomes={o.tag: o.status.value for o in outcomes},
            )
            return result

    def _promote_tag(self, reference: CanonicalReference, tag: str) -> TagOutcome:
        repository = self._registry.repository_of(reference.registry_location)
        with create_span("keel.promote.tag", attributes={"keel.tag": tag}) as span:
            previous = self._registry.resolve_tag(repository, tag)
            if previous == reference.content_digest:
                span.set_attribute("keel.tag_status", TagStatus.UNCHANGED.value)
                logger.info("tag_unchanged", tag=tag, digest=previous)
                return TagOutcome(tag=tag, status=TagStatus.UNCHANGED)

            self._registry.copy_tag(reference, tag)
            status = TagStatus.CREATED if previous is None else TagStatus.MOVED
            span.set_attribute("keel.tag_status", status.value)
            logger.info(
                "tag_promoted",
                tag=tag,
                status=status.value,
                digest=reference.content_digest,
                previous_digest=previous,
            )
            return TagOutcome(tag=tag, status=status, previous_digest=previous)


__all__ = ["PromoteStage"]
