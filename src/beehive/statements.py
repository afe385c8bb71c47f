"""
SQL statements shared by the movers.

Table and column names come from the schema catalogue, whose identifiers
are validated when it is built, so they are interpolated directly. Values
are always bound parameters, except exclusion sets which are rendered as
integer literals so large sets do not run into driver parameter limits.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping, Sequence
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection

from beehive.exceptions import StatementFailureError
from beehive.models import EntityType

logger = logging.getLogger(__name__)

UPDATE_BATCH_SIZE = 1000
_SHORT_SQL = 300


def shorten(sql: str, limit: int = _SHORT_SQL) -> str:
    """Collapse whitespace and cut ``sql`` for log and error messages."""
    flat = " ".join(sql.split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "..."


def exclusion_clause(entity: EntityType, excluded: Collection[int]) -> str:
    """``WHERE`` clause skipping ``excluded`` primary keys, or ''."""
    if not excluded:
        return ""
    ids = ", ".join(str(int(i)) for i in sorted(excluded))
    return f" WHERE {entity.primary_key} NOT IN ({ids})"


async def count_rows(
    conn: AsyncConnection,
    entity: EntityType,
    excluded: Collection[int] = (),
) -> int:
    where = exclusion_clause(entity, excluded)
    query = text(f"SELECT COUNT(*) FROM {entity.table}{where}")  # nosec B608
    result = await conn.execute(query)
    return int(result.scalar_one())


async def next_free_id(conn: AsyncConnection, entity: EntityType) -> int:
    """One past the highest primary key currently in the table."""
    query = text(
        f"SELECT COALESCE(MAX({entity.primary_key}), 0) + 1 FROM {entity.table}"  # nosec B608
    )
    result = await conn.execute(query)
    return int(result.scalar_one())


def select_columns(entity: EntityType, columns: Sequence[str] | None = None) -> str:
    names = columns if columns is not None else entity.columns
    if names is None:
        return "*"
    return ", ".join([entity.primary_key] + [c for c in names if c != entity.primary_key])


async def fetch_page(
    conn: AsyncConnection,
    entity: EntityType,
    offset: int,
    limit: int,
    excluded: Collection[int] = (),
    columns: Sequence[str] | None = None,
) -> list[RowMapping]:
    """
    One page of source rows in deterministic order.

    Ordered by the entity's order column then primary key, so the same
    offset always addresses the same rows of an unchanged source.
    """
    where = exclusion_clause(entity, excluded)
    query = text(
        f"SELECT {select_columns(entity, columns)} FROM {entity.table}{where} "  # nosec B608
        f"ORDER BY {entity.order_by} LIMIT :limit OFFSET :offset"
    )
    result = await conn.execute(query, {"limit": limit, "offset": offset})
    return list(result.mappings().all())


async def fetch_all(
    conn: AsyncConnection,
    entity: EntityType,
    columns: Sequence[str] | None = None,
) -> list[RowMapping]:
    query = text(
        f"SELECT {select_columns(entity, columns)} FROM {entity.table} "  # nosec B608
        f"ORDER BY {entity.order_by}"
    )
    result = await conn.execute(query)
    return list(result.mappings().all())


def build_insert(
    table: str,
    columns: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
) -> tuple[str, dict[str, Any]]:
    """
    Multi-row INSERT for ``rows``.

    Returns:
        The SQL text and its parameters. Placeholders are ``:v{row}_{col}``.
    """
    values_list: list[str] = []
    params: dict[str, Any] = {}
    for i, row in enumerate(rows):
        placeholders: list[str] = []
        for j, column in enumerate(columns):
            name = f"v{i}_{j}"
            placeholders.append(f":{name}")
            params[name] = row.get(column)
        values_list.append(f"({', '.join(placeholders)})")

    # values_sql contains only parameterized placeholders
    values_sql = ", ".join(values_list)
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES {values_sql}"  # nosec B608
    return sql, params


async def insert_rows(
    conn: AsyncConnection,
    entity: EntityType,
    columns: Sequence[str],
    rows: Sequence[Mapping[str, Any]],
) -> int:
    """
    Insert ``rows`` with one multi-row statement.

    Raises:
        StatementFailureError: The destination rejected the statement.
    """
    if not rows:
        return 0
    sql, params = build_insert(entity.table, columns, rows)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("Inserting %d %s rows: %s", len(rows), entity.name, shorten(sql))
    try:
        await conn.execute(text(sql), params)
    except DBAPIError as e:
        logger.error("Insert into %s failed: %s", entity.table, e.orig)
        raise StatementFailureError(
            shorten(sql),
            str(e.orig),
            entity=entity.name,
            params_summary=f"{len(rows)} rows x {len(columns)} columns",
        ) from e
    return len(rows)


async def update_column(
    conn: AsyncConnection,
    entity: EntityType,
    column: str,
    pairs: Sequence[tuple[int, int]],
) -> int:
    """
    Set ``column`` on existing rows, never inserting.

    Args:
        pairs: ``(dest_id, value)`` per row to patch.

    Returns:
        Number of rows patched.
    """
    if not pairs:
        return 0
    sql = f"UPDATE {entity.table} SET {column} = :value WHERE {entity.primary_key} = :id"  # nosec B608
    for start in range(0, len(pairs), UPDATE_BATCH_SIZE):
        batch = pairs[start : start + UPDATE_BATCH_SIZE]
        try:
            await conn.execute(
                text(sql),
                [{"id": dest_id, "value": value} for dest_id, value in batch],
            )
        except DBAPIError as e:
            logger.error("Update of %s.%s failed: %s", entity.table, column, e.orig)
            raise StatementFailureError(
                sql,
                str(e.orig),
                entity=entity.name,
                params_summary=f"{len(batch)} rows",
            ) from e
    return len(pairs)


__all__ = [
    "UPDATE_BATCH_SIZE",
    "shorten",
    "exclusion_clause",
    "count_rows",
    "next_free_id",
    "select_columns",
    "fetch_page",
    "fetch_all",
    "build_insert",
    "insert_rows",
    "update_column",
]
