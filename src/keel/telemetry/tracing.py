"""OpenTelemetry tracing helpers: the @traced decorator and create_span().

Span names follow ``keel.<stage>[.<step>]`` (``keel.build``,
``keel.promote.tag``, ``keel.deploy.rollout``). Error messages are sanitized
before they are recorded on a span.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry.trace import Status, StatusCode, Tracer

from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from keel.telemetry.tracer_factory import reset_tracer
from keel.telemetry.tracer_factory import set_tracer as _factory_set_tracer

__all__ = ["traced", "create_span", "get_tracer", "set_tracer", "reset_tracer"]

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "keel"


def get_tracer() -> Tracer:
    """Get the keel tracer (NoOpTracer if OpenTelemetry is unusable)."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the keel tracer (for testing). None resets it."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def _record_error(span: Span, exc: Exception) -> None:
    sanitized = sanitize_error_message(str(exc))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(exc).__name__)
    span.set_attribute("exception.message", sanitized)
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str):
        span.set_attribute("keel.error.kind", kind)


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator wrapping each call of a function in a span.

    Can be used with or without arguments:
        @traced
        def my_function(): ...

        @traced(name="keel.registry.publish", attributes={"key": "value"})
        def my_function(): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Optional span name. Defaults to the function name.
        attributes: Optional static span attributes.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            tracer = get_tracer()
            with tracer.start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, value)
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically. Attribute
    values of None are skipped.

    Examples:
        >>> with create_span("keel.promote", attributes={"keel.tags": "dev,staging"}) as span:
        ...     span.set_attribute("keel.tag_count", 2)
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise
