"""
Observability utilities for beehive.

This module provides the composition-based tracer and the standard span
attributes used by every mover.

Note:
    OpenTelemetry is an optional dependency. All utilities in this module
    gracefully handle the case where OpenTelemetry is not installed.
"""

from beehive.observability.attributes import (
    ATTR_COLUMN_NAME,
    ATTR_ERROR_CODE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ENTITY_TYPE,
    ATTR_FIRST_DEST_ID,
    ATTR_MERGE_PHASE,
    ATTR_MERGE_SOURCE,
    ATTR_OFFSET,
    ATTR_PAGE_SIZE,
    ATTR_ROW_COUNT,
    ATTR_ROWS_MOVED,
    ATTR_TABLE_NAME,
    ATTR_WORKER_COUNT,
    ATTR_WORKER_ID,
)
from beehive.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    Tracer,
    create_tracer,
)
from beehive.observability.tracing import (
    OTEL_AVAILABLE,
    get_tracer,
    should_trace,
)

__all__ = [
    # Tracing utilities
    "OTEL_AVAILABLE",
    "get_tracer",
    "should_trace",
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "create_tracer",
    # Attributes
    "ATTR_MERGE_SOURCE",
    "ATTR_MERGE_PHASE",
    "ATTR_DRY_RUN",
    "ATTR_ENTITY_TYPE",
    "ATTR_TABLE_NAME",
    "ATTR_COLUMN_NAME",
    "ATTR_PAGE_SIZE",
    "ATTR_OFFSET",
    "ATTR_ROW_COUNT",
    "ATTR_ROWS_MOVED",
    "ATTR_FIRST_DEST_ID",
    "ATTR_WORKER_ID",
    "ATTR_WORKER_COUNT",
    "ATTR_ERROR_CODE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
