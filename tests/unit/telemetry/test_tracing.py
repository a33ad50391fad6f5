"""Unit tests for span helpers and trace-correlated logging."""

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext, StatusCode, TraceFlags

from keel.errors import ReferenceNotFound
from keel.telemetry.logging import add_trace_context, configure_logging
from keel.telemetry.tracer_factory import get_tracer as factory_get_tracer
from keel.telemetry.tracing import create_span, reset_tracer, set_tracer, traced


@pytest.fixture
def mock_tracer() -> Generator[MagicMock, None, None]:
    """Install a MagicMock tracer; reset the cache afterwards."""
    tracer = MagicMock()
    set_tracer(tracer)
    yield tracer
    reset_tracer()


def _span(tracer: MagicMock) -> MagicMock:
    return tracer.start_as_current_span.return_value.__enter__.return_value


class TestCreateSpan:
    """Tests for create_span."""

    def test_sets_attributes_skipping_none(self, mock_tracer: MagicMock) -> None:
        with create_span("keel.promote", attributes={"keel.tags": "dev", "keel.none": None}):
            pass

        assert mock_tracer.start_as_current_span.call_args.args[0] == "keel.promote"
        _span(mock_tracer).set_attribute.assert_called_once_with("keel.tags", "dev")

    def test_records_sanitized_error_and_kind(self, mock_tracer: MagicMock) -> None:
        with pytest.raises(ReferenceNotFound), create_span("keel.promote"):
            raise ReferenceNotFound("ghcr.io/acme/shop@sha256:" + "a" * 64)

        span = _span(mock_tracer)
        status = span.set_status.call_args.args[0]
        assert status.status_code == StatusCode.ERROR
        span.set_attribute.assert_any_call("exception.type", "ReferenceNotFound")
        span.set_attribute.assert_any_call("keel.error.kind", "reference_not_found")

    def test_error_message_is_sanitized(self, mock_tracer: MagicMock) -> None:
        with pytest.raises(RuntimeError), create_span("keel.registry"):
            raise RuntimeError("login failed password=hunter2")

        span = _span(mock_tracer)
        span.set_attribute.assert_any_call("exception.message", "login failed password=<REDACTED>")


class TestTraced:
    """Tests for the @traced decorator."""

    def test_default_span_name(self, mock_tracer: MagicMock) -> None:
        @traced
        def publish_image() -> str:
            return "ok"

        assert publish_image() == "ok"
        assert mock_tracer.start_as_current_span.call_args.args[0] == "publish_image"

    def test_explicit_name_and_attributes(self, mock_tracer: MagicMock) -> None:
        @traced(name="keel.registry.publish", attributes={"keel.host": "ghcr.io"})
        def publish_image() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError):
            publish_image()

        assert mock_tracer.start_as_current_span.call_args.args[0] == "keel.registry.publish"
        _span(mock_tracer).set_attribute.assert_any_call("keel.host", "ghcr.io")


class TestTracerFactory:
    """Tests for the cached tracer factory."""

    def test_tracer_is_cached(self) -> None:
        reset_tracer()
        assert factory_get_tracer("keel.test") is factory_get_tracer("keel.test")
        reset_tracer()

    def test_broken_provider_falls_back_to_noop(self) -> None:
        reset_tracer()
        with patch(
            "keel.telemetry.tracer_factory.trace.get_tracer", side_effect=RuntimeError("provider broken")
        ):
            tracer = factory_get_tracer("keel.broken")

        assert isinstance(tracer, trace.NoOpTracer)
        with create_span("keel.test.noop"):
            pass
        reset_tracer()


class TestLogging:
    """Tests for structlog configuration."""

    def test_trace_context_added_inside_span(self) -> None:
        context = SpanContext(
            trace_id=0x1234,
            span_id=0x5678,
            is_remote=False,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
        with trace.use_span(NonRecordingSpan(context)):
            event = add_trace_context(None, "info", {"event": "tag_promoted"})

        assert event["trace_id"] == format(0x1234, "032x")
        assert event["span_id"] == format(0x5678, "016x")

    def test_no_trace_context_outside_span(self) -> None:
        event = add_trace_context(None, "info", {"event": "tag_promoted"})
        assert "trace_id" not in event

    def test_unknown_level_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("LOUD")
