"""Cached OpenTelemetry tracers for keel.

keel depends only on the OpenTelemetry API. Spans go to whatever
TracerProvider the host process installed, or nowhere. A provider that
raises while handing out a tracer is replaced by a NoOpTracer so tracing
can never fail a stage.
"""

from __future__ import annotations

import threading

import structlog
from opentelemetry import trace
from opentelemetry.trace import Tracer

from keel import __version__

logger = structlog.get_logger(__name__)

_tracers: dict[str, Tracer] = {}
_lock = threading.Lock()


def _create_tracer(name: str) -> Tracer:
    try:
        return trace.get_tracer(name, __version__)
    except Exception as e:
        logger.warning("tracer_unavailable", tracer=name, error=str(e))
        return trace.NoOpTracer()


def get_tracer(name: str = "keel") -> Tracer:
    """Tracer for ``name``, created once and shared by all stage threads."""
    with _lock:
        tracer = _tracers.get(name)
        if tracer is None:
            tracer = _tracers[name] = _create_tracer(name)
        return tracer


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Pin (or with None, forget) the tracer for ``name``. Used by tests."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Forget every cached tracer."""
    with _lock:
        _tracers.clear()


__all__ = ["get_tracer", "set_tracer", "reset_tracer"]
