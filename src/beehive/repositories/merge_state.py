"""
Durable storage for identity mappings and checkpoint records.

Everything is keyed by the run's source identifier so several sources can
be merged into the same destination one after another.

Tables (see ``beehive.migrations``):
    - beehive_merge_map: one row per (source, table name, source id)
    - beehive_merge_exclusion: the exclusion set recorded when the run first
      started, one row per excluded source id
    - beehive_merge_progress: one row per recorded checkpoint; the row with
      the highest id is the most recent
    - beehive_merge_source: sources that completed a merge
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Boolean, DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.migrations import get_statements
from beehive.models import CheckpointRecord
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_MERGE_PHASE,
    ATTR_MERGE_SOURCE,
    ATTR_ROW_COUNT,
    ATTR_TABLE_NAME,
)
from beehive.repositories._connection import execute_with_connection

# Rows per multi-row INSERT; two bound values per row keeps every statement
# under SQLite's historical 999 variable limit.
MAPPING_BATCH_SIZE = 400


@runtime_checkable
class MergeStateRepository(Protocol):
    """
    Protocol for merge state repositories.

    Implementations:
    - SQLAlchemyMergeStateRepository: bookkeeping tables in the destination
    - InMemoryMergeStateRepository: for tests
    """

    @property
    def source_id(self) -> str:
        """Identifier of the source this repository records for."""
        ...

    async def create_tables(self) -> None:
        """Create the bookkeeping tables if they do not exist."""
        ...

    async def insert_mappings(self, table: str, pairs: Sequence[tuple[int, int]]) -> int:
        """
        Persist identity entries.

        Args:
            table: Identity map name (the entity type name).
            pairs: ``(src_id, dest_id)`` pairs.

        Returns:
            Number of entries written.
        """
        ...

    async def load_mappings(self, table: str) -> list[tuple[int, int]]:
        """Load every persisted ``(src_id, dest_id)`` pair for ``table``."""
        ...

    async def replace_exclusions(self, rows: Sequence[tuple[str, int, int | None]]) -> int:
        """
        Replace the recorded exclusion set of the source.

        Args:
            rows: ``(entity, src_id, dest_id)`` triples; ``dest_id`` is the
                uuid match of the row, or None for a plain exclusion.

        Returns:
            Number of rows written.
        """
        ...

    async def load_exclusions(self) -> list[tuple[str, int, int | None]]:
        """The recorded exclusion set, as written by ``replace_exclusions``."""
        ...

    async def insert_checkpoint(
        self,
        phase: str,
        passed: bool,
        rows_done: int,
        chunk: int | None = None,
    ) -> None:
        """
        Append a checkpoint record.

        Args:
            phase: Phase name.
            passed: Whether the phase (or chunk) completed.
            rows_done: Rows durably committed so far.
            chunk: Worker index for per-chunk records.
        """
        ...

    async def load_latest_checkpoint(self) -> CheckpointRecord | None:
        """Most recent phase-level checkpoint, or None."""
        ...

    async def load_chunk_checkpoints(self, phase: str) -> dict[int, CheckpointRecord]:
        """Completed chunk records of ``phase`` keyed by worker index."""
        ...

    async def register_source(self) -> None:
        """Mark the source as fully merged."""
        ...

    async def source_registered(self) -> bool:
        """Whether the source was already fully merged."""
        ...


class SQLAlchemyMergeStateRepository:
    """
    Merge state stored in the destination database.

    Joins the caller's transaction when given an AsyncConnection, so mapping
    and checkpoint writes commit atomically with the rows they describe.

    Example:
        >>> async with destination.connect() as conn:
        ...     async with conn.begin():
        ...         repo = SQLAlchemyMergeStateRepository(conn, "clinic-7")
        ...         await repo.insert_mappings("person", [(1, 501), (2, 502)])
        ...         await repo.insert_checkpoint("persons", False, 2)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        source_id: str,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the repository.

        Args:
            conn: Database connection or engine
            source_id: Identifier of the source being merged
            tracer: Optional tracer (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._conn = conn
        self._source_id = source_id
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._db_system = conn.dialect.name

    @property
    def source_id(self) -> str:
        return self._source_id

    async def create_tables(self) -> None:
        with self._tracer.span(
            "beehive.merge_state.create_tables",
            {ATTR_DB_SYSTEM: self._db_system},
        ):
            async with execute_with_connection(self._conn, transactional=True) as conn:
                for statement in get_statements(conn.dialect.name):
                    await conn.execute(text(statement))

    async def insert_mappings(self, table: str, pairs: Sequence[tuple[int, int]]) -> int:
        if not pairs:
            return 0

        with self._tracer.span(
            "beehive.merge_state.insert_mappings",
            {
                ATTR_MERGE_SOURCE: self._source_id,
                ATTR_TABLE_NAME: table,
                ATTR_ROW_COUNT: len(pairs),
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            written = 0
            async with execute_with_connection(self._conn, transactional=True) as conn:
                for start in range(0, len(pairs), MAPPING_BATCH_SIZE):
                    batch = pairs[start : start + MAPPING_BATCH_SIZE]
                    values_list: list[str] = []
                    params: dict[str, Any] = {
                        "source": self._source_id,
                        "table_name": table,
                    }
                    for i, (src_id, dest_id) in enumerate(batch):
                        values_list.append(f"(:source, :table_name, :src_{i}, :dest_{i})")
                        params[f"src_{i}"] = src_id
                        params[f"dest_{i}"] = dest_id

                    # values_sql contains only parameterized placeholders
                    values_sql = ", ".join(values_list)
                    query = text(
                        "INSERT INTO beehive_merge_map (source, table_name, src_id, dest_id) "
                        f"VALUES {values_sql}"  # nosec B608 - parameterized query construction
                    )
                    await conn.execute(query, params)
                    written += len(batch)
            return written

    async def load_mappings(self, table: str) -> list[tuple[int, int]]:
        with self._tracer.span(
            "beehive.merge_state.load_mappings",
            {
                ATTR_MERGE_SOURCE: self._source_id,
                ATTR_TABLE_NAME: table,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            query = text("""
                SELECT src_id, dest_id
                FROM beehive_merge_map
                WHERE source = :source AND table_name = :table_name
                ORDER BY src_id
            """)
            params = {"source": self._source_id, "table_name": table}

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                return [(int(row[0]), int(row[1])) for row in result]

    async def replace_exclusions(self, rows: Sequence[tuple[str, int, int | None]]) -> int:
        with self._tracer.span(
            "beehive.merge_state.replace_exclusions",
            {
                ATTR_MERGE_SOURCE: self._source_id,
                ATTR_ROW_COUNT: len(rows),
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            delete = text("DELETE FROM beehive_merge_exclusion WHERE source = :source")
            insert = text("""
                INSERT INTO beehive_merge_exclusion (source, table_name, src_id, dest_id)
                VALUES (:source, :table_name, :src_id, :dest_id)
            """)
            params = [
                {
                    "source": self._source_id,
                    "table_name": table,
                    "src_id": src_id,
                    "dest_id": dest_id,
                }
                for table, src_id, dest_id in rows
            ]

            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(delete, {"source": self._source_id})
                if params:
                    await conn.execute(insert, params)
            return len(params)

    async def load_exclusions(self) -> list[tuple[str, int, int | None]]:
        with self._tracer.span(
            "beehive.merge_state.load_exclusions",
            {ATTR_MERGE_SOURCE: self._source_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            query = text("""
                SELECT table_name, src_id, dest_id
                FROM beehive_merge_exclusion
                WHERE source = :source
                ORDER BY table_name, src_id
            """)

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"source": self._source_id})
                return [
                    (row[0], int(row[1]), None if row[2] is None else int(row[2]))
                    for row in result
                ]

    async def insert_checkpoint(
        self,
        phase: str,
        passed: bool,
        rows_done: int,
        chunk: int | None = None,
    ) -> None:
        with self._tracer.span(
            "beehive.merge_state.insert_checkpoint",
            {
                ATTR_MERGE_SOURCE: self._source_id,
                ATTR_MERGE_PHASE: phase,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            query = text("""
                INSERT INTO beehive_merge_progress
                    (source, phase, chunk, passed, rows_done, recorded_at)
                VALUES (:source, :phase, :chunk, :passed, :rows_done, :recorded_at)
            """).bindparams(
                bindparam("passed", type_=Boolean()),
                bindparam("recorded_at", type_=DateTime()),
            )
            params = {
                "source": self._source_id,
                "phase": phase,
                "chunk": chunk,
                "passed": passed,
                "rows_done": rows_done,
                "recorded_at": datetime.now(UTC).replace(tzinfo=None),
            }

            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def load_latest_checkpoint(self) -> CheckpointRecord | None:
        with self._tracer.span(
            "beehive.merge_state.load_latest_checkpoint",
            {ATTR_MERGE_SOURCE: self._source_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            query = text("""
                SELECT phase, passed, rows_done, recorded_at, chunk
                FROM beehive_merge_progress
                WHERE source = :source AND chunk IS NULL
                ORDER BY id DESC
                LIMIT 1
            """).columns(passed=Boolean(), recorded_at=DateTime())

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"source": self._source_id})
                row = result.fetchone()
                return self._row_to_checkpoint(row) if row else None

    async def load_chunk_checkpoints(self, phase: str) -> dict[int, CheckpointRecord]:
        with self._tracer.span(
            "beehive.merge_state.load_chunk_checkpoints",
            {
                ATTR_MERGE_SOURCE: self._source_id,
                ATTR_MERGE_PHASE: phase,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            query = (
                text("""
                SELECT phase, passed, rows_done, recorded_at, chunk
                FROM beehive_merge_progress
                WHERE source = :source AND phase = :phase
                  AND chunk IS NOT NULL AND passed = :passed
                ORDER BY id
            """)
                .bindparams(bindparam("passed", type_=Boolean()))
                .columns(passed=Boolean(), recorded_at=DateTime())
            )
            params = {"source": self._source_id, "phase": phase, "passed": True}

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                records = [self._row_to_checkpoint(row) for row in result]
            return {r.chunk: r for r in records if r.chunk is not None}

    async def register_source(self) -> None:
        with self._tracer.span(
            "beehive.merge_state.register_source",
            {ATTR_MERGE_SOURCE: self._source_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            query = text("""
                INSERT INTO beehive_merge_source (source, registered_at)
                VALUES (:source, :registered_at)
            """).bindparams(bindparam("registered_at", type_=DateTime()))
            params = {
                "source": self._source_id,
                "registered_at": datetime.now(UTC).replace(tzinfo=None),
            }

            async with execute_with_connection(self._conn, transactional=True) as conn:
                await conn.execute(query, params)

    async def source_registered(self) -> bool:
        with self._tracer.span(
            "beehive.merge_state.source_registered",
            {ATTR_MERGE_SOURCE: self._source_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            query = text("SELECT 1 FROM beehive_merge_source WHERE source = :source")

            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(query, {"source": self._source_id})
                return result.fetchone() is not None

    def _row_to_checkpoint(self, row: Sequence[Any]) -> CheckpointRecord:
        """
        Convert a progress row to a CheckpointRecord.

        The row order matches the SELECT queries:
        (phase, passed, rows_done, recorded_at, chunk)
        """
        return CheckpointRecord(
            phase=row[0],
            passed=bool(row[1]),
            rows_done=int(row[2]),
            recorded_at=row[3],
            chunk=row[4],
        )


class InMemoryMergeStateRepository:
    """
    In-memory implementation of the merge state repository for testing.

    Writes are not transactional; all data is lost when the process
    terminates.

    Example:
        >>> repo = InMemoryMergeStateRepository("clinic-7")
        >>> await repo.insert_mappings("person", [(1, 501)])
        >>> await repo.load_mappings("person")
        [(1, 501)]
    """

    def __init__(self, source_id: str) -> None:
        self._source_id = source_id
        self._mappings: dict[str, dict[int, int]] = {}
        self._checkpoints: list[CheckpointRecord] = []
        self._exclusions: list[tuple[str, int, int | None]] = []
        self._registered = False
        self._lock: asyncio.Lock = asyncio.Lock()

    @property
    def source_id(self) -> str:
        return self._source_id

    @property
    def checkpoints(self) -> list[CheckpointRecord]:
        """Every checkpoint written, oldest first."""
        return list(self._checkpoints)

    async def create_tables(self) -> None:
        return None

    async def insert_mappings(self, table: str, pairs: Sequence[tuple[int, int]]) -> int:
        async with self._lock:
            stored = self._mappings.setdefault(table, {})
            for src_id, _ in pairs:
                if src_id in stored:
                    raise ValueError(f"Duplicate mapping for {table} {src_id}")
            stored.update(pairs)
            return len(pairs)

    async def load_mappings(self, table: str) -> list[tuple[int, int]]:
        async with self._lock:
            return sorted(self._mappings.get(table, {}).items())

    async def replace_exclusions(self, rows: Sequence[tuple[str, int, int | None]]) -> int:
        async with self._lock:
            self._exclusions = sorted(rows)
            return len(rows)

    async def load_exclusions(self) -> list[tuple[str, int, int | None]]:
        async with self._lock:
            return list(self._exclusions)

    async def insert_checkpoint(
        self,
        phase: str,
        passed: bool,
        rows_done: int,
        chunk: int | None = None,
    ) -> None:
        async with self._lock:
            self._checkpoints.append(
                CheckpointRecord(
                    phase=phase,
                    passed=passed,
                    rows_done=rows_done,
                    recorded_at=datetime.now(UTC),
                    chunk=chunk,
                )
            )

    async def load_latest_checkpoint(self) -> CheckpointRecord | None:
        async with self._lock:
            for record in reversed(self._checkpoints):
                if record.chunk is None:
                    return record
            return None

    async def load_chunk_checkpoints(self, phase: str) -> dict[int, CheckpointRecord]:
        async with self._lock:
            return {
                r.chunk: r
                for r in self._checkpoints
                if r.phase == phase and r.chunk is not None and r.passed
            }

    async def register_source(self) -> None:
        async with self._lock:
            self._registered = True

    async def source_registered(self) -> bool:
        return self._registered


__all__ = [
    "MAPPING_BATCH_SIZE",
    "MergeStateRepository",
    "SQLAlchemyMergeStateRepository",
    "InMemoryMergeStateRepository",
]
