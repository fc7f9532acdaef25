"""Tracing helpers for the replication cache.

Spans are named replication_cache.* and carry replication.* attributes.
Every span records the tenant it works for: the request tenant by default,
or the tenant of the traced object (a cache entry loading in the
background has no request around it).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from mirrorcache.core.tenant_context import get_tenant_id

P = ParamSpec("P")
T = TypeVar("T")

ATTRIBUTE_PREFIX = "replication."

_tracer = trace.get_tracer("mirrorcache")


def _subject_attributes(subject: Any) -> dict[str, str]:
    """Entity and tenant of a traced object that exposes `name` and `tenant`."""
    name = getattr(subject, "name", None)
    if not isinstance(name, str) or not hasattr(subject, "tenant"):
        return {}
    return {
        f"{ATTRIBUTE_PREFIX}entity": name,
        f"{ATTRIBUTE_PREFIX}tenant": subject.tenant or "default",
    }


def _mark_error(span: trace.Span, exception: BaseException) -> None:
    span.set_status(Status(StatusCode.ERROR, str(exception)))
    span.record_exception(exception)


@contextmanager
def _span(name: str, attributes: dict[str, Any] | None) -> Iterator[trace.Span]:
    with _tracer.start_as_current_span(
        name, record_exception=False, set_status_on_exception=False
    ) as span:
        span.set_attribute(f"{ATTRIBUTE_PREFIX}tenant", get_tenant_id() or "default")
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _mark_error(span, e)
            raise
        span.set_status(Status(StatusCode.OK))


def traced(
    operation_name: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator running a coroutine function (or method) inside a span.

    When the first argument is a cache entry its entity and tenant are
    recorded on the span.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attributes = _subject_attributes(args[0]) if args else {}
            with _span(operation_name, attributes):
                return await func(*args, **kwargs)

        return wrapper

    return decorator


def add_span_attributes(**attributes: str | int | float | bool) -> None:
    """Add replication.* attributes to the current span."""
    span = trace.get_current_span()
    if span.is_recording():
        for key, value in attributes.items():
            span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", value)


def add_span_event(name: str, attributes: dict | None = None) -> None:
    """Add an event to the current span."""
    span = trace.get_current_span()
    if span.is_recording():
        span.add_event(name, attributes=attributes or {})


def set_span_error(exception: Exception) -> None:
    """Mark the current span as failed; used where an error is handled, not raised."""
    span = trace.get_current_span()
    if span.is_recording():
        _mark_error(span, exception)


class TracedOperation:
    """Async context manager opening a span around a block."""

    def __init__(self, operation_name: str, attributes: dict[str, Any] | None = None) -> None:
        self.operation_name = operation_name
        self.attributes = attributes or {}
        self._context: Any = None

    async def __aenter__(self) -> trace.Span:
        self._context = _span(self.operation_name, self.attributes)
        return self._context.__enter__()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool | None:
        return self._context.__exit__(exc_type, exc_val, exc_tb)
