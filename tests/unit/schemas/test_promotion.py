"""Unit tests for promotion schemas."""

from __future__ import annotations

import pytest

from keel.errors import InvalidPromotionRequest
from keel.schemas.promotion import PromotionResult, TagOutcome, TagStatus, parse_promote_to
from keel.schemas.reference import CanonicalReference

DIGEST = "sha256:" + "c" * 64


class TestParsePromoteTo:
    """Tests for parse_promote_to."""

    def test_trims_and_drops_empty_entries(self) -> None:
        assert parse_promote_to(" dev , staging,, ") == ("dev", "staging")

    def test_duplicates_keep_first_occurrence(self) -> None:
        assert parse_promote_to("prod,stable,prod") == ("prod", "stable")

    def test_accepts_sequence(self) -> None:
        assert parse_promote_to(["a", " b "]) == ("a", "b")

    @pytest.mark.parametrize("value", ["", " , ,", []])
    def test_empty_is_invalid(self, value: str | list[str]) -> None:
        with pytest.raises(InvalidPromotionRequest, match="no tags"):
            parse_promote_to(value)

    def test_malformed_tag(self) -> None:
        with pytest.raises(InvalidPromotionRequest, match="bad tag"):
            parse_promote_to("ok,bad tag")


class TestPromotionResult:
    """Tests for PromotionResult aggregation."""

    def test_complete_when_all_succeeded(self) -> None:
        result = PromotionResult(
            reference=CanonicalReference.parse(f"ghcr.io/acme/shop@{DIGEST}"),
            outcomes=[
                TagOutcome(tag="a", status=TagStatus.CREATED),
                TagOutcome(tag="b", status=TagStatus.MOVED, previous_digest="sha256:" + "d" * 64),
                TagOutcome(tag="c", status=TagStatus.UNCHANGED),
            ],
        )

        assert result.complete is True
        assert result.succeeded == ["a", "b", "c"]
        assert result.failed == {}

    def test_failed_and_skipped_are_reported(self) -> None:
        result = PromotionResult(
            reference=CanonicalReference.parse(f"ghcr.io/acme/shop@{DIGEST}"),
            outcomes=[
                TagOutcome(tag="a", status=TagStatus.CREATED),
                TagOutcome(tag="b", status=TagStatus.FAILED, error="denied"),
                TagOutcome(tag="c", status=TagStatus.SKIPPED),
            ],
        )

        assert result.complete is False
        assert result.succeeded == ["a"]
        assert result.failed == {"b": "denied", "c": "skipped"}
