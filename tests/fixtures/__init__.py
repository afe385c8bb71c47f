"""
Shared test fixtures for beehive.

Usage:
    from tests.fixtures import (
        CATALOGUE,
        build_catalogue,
        build_plan,
        create_schema,
        insert,
        fetch,
        count,
        persons,
        obs_rows,
    )
"""

from tests.fixtures.clinic import (
    CATALOGUE,
    PLAN,
    SCHEMA,
    SOURCE_ID,
    build_catalogue,
    build_plan,
    count,
    create_schema,
    fetch,
    insert,
    obs_rows,
    persons,
    sqlite_engine,
)

__all__ = [
    "CATALOGUE",
    "PLAN",
    "SCHEMA",
    "SOURCE_ID",
    "build_catalogue",
    "build_plan",
    "count",
    "create_schema",
    "fetch",
    "insert",
    "obs_rows",
    "persons",
    "sqlite_engine",
]
