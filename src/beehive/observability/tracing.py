"""
OpenTelemetry detection for beehive.

OpenTelemetry is optional (``pip install beehive-merge[otel]``). This is the
only module that imports it; everything else checks ``OTEL_AVAILABLE`` or
asks :func:`beehive.observability.create_tracer` for a tracer.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

try:
    from opentelemetry import trace as otel_trace
except ImportError:
    otel_trace = None  # type: ignore[assignment]

OTEL_AVAILABLE = otel_trace is not None


def _library_version() -> str | None:
    try:
        return version("beehive-merge")
    except PackageNotFoundError:
        return None


def get_tracer(name: str) -> Tracer | None:
    """
    OpenTelemetry tracer named ``name`` and tagged with the beehive version.

    Returns None when OpenTelemetry is not installed.
    """
    if otel_trace is None:
        return None
    return otel_trace.get_tracer(name, _library_version())


def should_trace(enable_tracing: bool) -> bool:
    """Whether a component configured with ``enable_tracing`` creates real spans."""
    return enable_tracing and OTEL_AVAILABLE


__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
]
