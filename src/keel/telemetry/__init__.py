"""Tracing and structured logging for keel.

Example:
    >>> from keel.telemetry import configure_logging, create_span
    >>> configure_logging("INFO", json_output=False)
    >>> with create_span("keel.build"):
    ...     pass
"""

from __future__ import annotations

from keel.telemetry.logging import add_trace_context, configure_logging
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span, get_tracer, reset_tracer, set_tracer, traced

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
