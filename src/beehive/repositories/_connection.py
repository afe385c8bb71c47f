"""
Connection handling helpers for database operations.

Repositories and movers accept either an AsyncEngine or an AsyncConnection
and may run inside a transaction opened further up.

- ``execute_with_connection`` opens a connection or transaction for an
  AsyncEngine and passes an AsyncConnection through untouched.
- ``open_transaction`` begins a transaction on a connection unless one is
  already open, in which case the enclosing transaction owns the commit.
  A dry run wraps the whole merge in one outer transaction and relies on
  this to keep every unit of work inside it.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection to run statements on.

    An ``AsyncEngine`` gets a fresh connection, inside a transaction when
    ``transactional`` is set. An ``AsyncConnection`` is yielded as it is and
    its transaction stays with the caller; the merge state repository relies
    on this to write mappings in the same transaction as the rows they map.

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(insert_mapping, pairs)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


@asynccontextmanager
async def open_transaction(conn: AsyncConnection) -> AsyncIterator[AsyncConnection]:
    """
    Run a unit of work in a transaction on ``conn``.

    Begins and commits a transaction when none is open. When the connection
    is already inside a transaction the block joins it; commit or rollback
    is left to whoever opened it.

    Example:
        >>> async with open_transaction(dest) as conn:
        ...     await conn.execute(insert_page, params)
        ...     await repo.insert_checkpoint(phase, False, rows_done)
    """
    if conn.in_transaction():
        yield conn
    else:
        async with conn.begin():
            yield conn
