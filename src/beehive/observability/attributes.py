"""
Standard span attributes for beehive.

This module defines attribute constants used across all beehive components
for consistent span naming. These follow OpenTelemetry semantic conventions
where applicable.

Example:
    >>> from beehive.observability.attributes import (
    ...     ATTR_ENTITY_TYPE,
    ...     ATTR_ROWS_MOVED,
    ... )
    >>>
    >>> with tracer.span(
    ...     "beehive.bulk_mover.move_all",
    ...     {ATTR_ENTITY_TYPE: "obs", ATTR_ROWS_MOVED: 0},
    ... ):
    ...     pass
"""

# =============================================================================
# Run Attributes
# =============================================================================

ATTR_MERGE_SOURCE = "beehive.merge.source"
"""Identifier of the source database being merged (string)."""

ATTR_MERGE_PHASE = "beehive.merge.phase"
"""Name of the migration phase in progress (string)."""

ATTR_DRY_RUN = "beehive.merge.dry_run"
"""Whether the run will be rolled back at the end (boolean)."""

# =============================================================================
# Entity Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "beehive.entity.type"
"""Name of the entity type being moved (e.g., 'person', 'obs')."""

ATTR_TABLE_NAME = "beehive.entity.table"
"""Table backing the entity type (string)."""

ATTR_COLUMN_NAME = "beehive.entity.column"
"""Column being patched by the deferred reference resolver (string)."""

# =============================================================================
# Paging Attributes
# =============================================================================

ATTR_PAGE_SIZE = "beehive.page.size"
"""Number of rows fetched per page (integer)."""

ATTR_OFFSET = "beehive.page.offset"
"""Row offset the page loop starts from (integer)."""

ATTR_ROW_COUNT = "beehive.rows.count"
"""Number of rows in the range being processed (integer)."""

ATTR_ROWS_MOVED = "beehive.rows.moved"
"""Number of rows written to the destination (integer)."""

ATTR_FIRST_DEST_ID = "beehive.rows.first_dest_id"
"""First destination primary key assigned by a mover (integer)."""

# =============================================================================
# Worker Attributes
# =============================================================================

ATTR_WORKER_ID = "beehive.worker.id"
"""Index of a parallel worker (integer)."""

ATTR_WORKER_COUNT = "beehive.worker.count"
"""Number of parallel workers (integer)."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_CODE = "beehive.error.code"
"""Error code of a merge error escaping a span (e.g. 'MERGE_UNRESOLVED_REFERENCE')."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'mysql')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation type (e.g., 'INSERT', 'SELECT')."""

__all__ = [
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
