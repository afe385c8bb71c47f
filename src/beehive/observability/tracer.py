"""
Tracers injected into movers, repositories and the engine.

Components never talk to OpenTelemetry directly. They take an optional
``tracer`` argument and wrap each public operation in
``self._tracer.span("beehive.<component>.<operation>", {...})``:

- ``OpenTelemetryTracer`` when tracing is enabled and the SDK is installed
- ``NullTracer`` otherwise
- ``MockTracer`` in tests, to assert on span names and attributes

Attribute values may be None (e.g. ``ATTR_FIRST_DEST_ID`` of an empty move);
such attributes are dropped before they reach OpenTelemetry, which rejects
None values.

Example:
    >>> tracer = create_tracer(__name__, enable_tracing=config.enable_tracing)
    >>> with tracer.span("beehive.bulk_mover.move_all", {ATTR_ENTITY_TYPE: "obs"}):
    ...     await mover.move_all("obs")
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator, Mapping
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol, runtime_checkable

from beehive.observability.attributes import ATTR_ERROR_CODE
from beehive.observability.tracing import get_tracer, should_trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span


def _clean(attributes: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (attributes or {}).items() if v is not None}


@runtime_checkable
class Tracer(Protocol):
    """Creates spans around merge operations."""

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Span context manager.

        Args:
            name: Span name, e.g. "beehive.parallel.worker"
            attributes: Attribute constants from ``beehive.observability.attributes``
        """
        ...

    @property
    def enabled(self) -> bool:
        """True when spans are actually recorded."""
        ...


class NullTracer:
    """Tracer used when tracing is off; spans yield None."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Merge errors escaping a span are tagged with their error code
    (``MERGE_VERIFICATION_MISMATCH``, ...) besides the exception event
    OpenTelemetry records itself.

    Raises:
        ImportError: If OpenTelemetry is not installed.
    """

    def __init__(self, tracer_name: str) -> None:
        tracer = get_tracer(tracer_name)
        if tracer is None:
            raise ImportError("OpenTelemetryTracer requires the 'otel' extra (opentelemetry-api)")
        self._tracer = tracer

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        with self._tracer.start_as_current_span(name, attributes=_clean(attributes)) as span:
            try:
                yield span
            except Exception as e:
                code = getattr(e, "error_code", None)
                if code is not None:
                    span.set_attribute(ATTR_ERROR_CODE, code)
                raise

    @property
    def enabled(self) -> bool:
        return True


class RecordedSpan(NamedTuple):
    """A span seen by ``MockTracer``; compares equal to ``(name, attributes)``."""

    name: str
    attributes: dict[str, Any] | None


class MockTracer:
    """
    Records spans for assertions in tests.

    Example:
        >>> tracer = MockTracer()
        >>> mover = BulkMover(src, dst, catalogue, store, tracer=tracer)
        >>> await mover.move_all("person")
        >>> tracer.span_names
        ['beehive.bulk_mover.move_all']
        >>> tracer.attributes_of("beehive.bulk_mover.move_all")[ATTR_ENTITY_TYPE]
        'person'
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []
        self.failed: list[tuple[str, type[BaseException]]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append(RecordedSpan(name, attributes))
        try:
            yield None
        except Exception as e:
            self.failed.append((name, type(e)))
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [span.name for span in self.spans]

    def attributes_of(self, name: str) -> dict[str, Any]:
        """Attributes of the first span called ``name``."""
        for span in self.spans:
            if span.name == name:
                return dict(span.attributes or {})
        raise KeyError(name)

    def clear(self) -> None:
        self.spans.clear()
        self.failed.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """OpenTelemetryTracer when ``enable_tracing`` and OpenTelemetry is installed, else NullTracer."""
    if should_trace(enable_tracing):
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "MockTracer",
    "create_tracer",
]
