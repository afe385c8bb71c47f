"""
A small clinic schema used across the database-backed tests.

Entity types:
- users: external, the admin user is seeded as {1: 1}
- role: catalogue table consolidated by name
- location: catalogue table consolidated by name, self-referencing parent
- person: bulk moved, carries a uuid
- patient: bulk moved, requires a person
- encounter: bulk moved, requires a patient, optional location and creator
- obs: bulk or parallel moved, requires a person, optional encounter,
  self-referencing obs group
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from beehive.catalogue import PhasePlan, SchemaCatalogue

CATALOGUE: dict[str, dict[str, Any]] = {
    "users": {"table": "users", "primary_key": "user_id", "business_key": ["username"]},
    "role": {"table": "role", "primary_key": "role_id", "business_key": ["name"]},
    "location": {
        "table": "location",
        "primary_key": "location_id",
        "business_key": ["name"],
        "uuid_column": "uuid",
        "foreign_keys": [{"column": "parent_location", "target": "location"}],
    },
    "person": {
        "table": "person",
        "primary_key": "person_id",
        "uuid_column": "uuid",
    },
    "patient": {
        "table": "patient",
        "primary_key": "patient_id",
        "foreign_keys": [{"column": "person_id", "target": "person", "nullable": False}],
    },
    "encounter": {
        "table": "encounter",
        "primary_key": "encounter_id",
        "foreign_keys": [
            {"column": "patient_id", "target": "patient", "nullable": False},
            {"column": "location_id", "target": "location"},
            {"column": "creator", "target": "users"},
        ],
    },
    "obs": {
        "table": "obs",
        "primary_key": "obs_id",
        "foreign_keys": [
            {"column": "person_id", "target": "person", "nullable": False},
            {"column": "encounter_id", "target": "encounter"},
            {"column": "obs_group_id", "target": "obs"},
        ],
    },
}

SCHEMA: list[str] = [
    """
    CREATE TABLE users (
        user_id INTEGER PRIMARY KEY,
        username TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE role (
        role_id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT
    )
    """,
    """
    CREATE TABLE location (
        location_id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        uuid TEXT,
        parent_location INTEGER REFERENCES location (location_id)
    )
    """,
    """
    CREATE TABLE person (
        person_id INTEGER PRIMARY KEY,
        gender TEXT,
        uuid TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE patient (
        patient_id INTEGER PRIMARY KEY,
        person_id INTEGER NOT NULL REFERENCES person (person_id),
        identifier TEXT
    )
    """,
    """
    CREATE TABLE encounter (
        encounter_id INTEGER PRIMARY KEY,
        patient_id INTEGER NOT NULL REFERENCES patient (patient_id),
        location_id INTEGER REFERENCES location (location_id),
        creator INTEGER REFERENCES users (user_id)
    )
    """,
    """
    CREATE TABLE obs (
        obs_id INTEGER PRIMARY KEY,
        person_id INTEGER NOT NULL REFERENCES person (person_id),
        encounter_id INTEGER REFERENCES encounter (encounter_id),
        obs_group_id INTEGER REFERENCES obs (obs_id),
        value_numeric REAL
    )
    """,
]

PLAN: dict[str, Any] = {
    "external": ["users"],
    "phases": [
        {
            "name": "catalogue",
            "movements": [
                {"entity": "role", "kind": "consolidate"},
                {"entity": "location", "kind": "consolidate"},
            ],
        },
        {"name": "people", "movements": ["person", "patient"]},
        {"name": "encounters", "movements": ["encounter"]},
        {"name": "observations", "movements": ["obs"]},
    ],
}


SOURCE_ID = "clinic-7"


def sqlite_engine(path: Path) -> AsyncEngine:
    """File database engine; the busy timeout lets concurrent writers queue."""
    return create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        connect_args={"timeout": 30},
    )


def build_catalogue() -> SchemaCatalogue:
    return SchemaCatalogue.from_dict(CATALOGUE)


def build_plan(data: Mapping[str, Any] | None = None) -> PhasePlan:
    return PhasePlan.from_dict(data if data is not None else PLAN)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


async def insert(engine: AsyncEngine, table: str, rows: Sequence[Mapping[str, Any]]) -> None:
    """Insert ``rows`` into ``table`` and commit."""
    if not rows:
        return
    columns = list(rows[0])
    sql = text(
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({', '.join(':' + c for c in columns)})"
    )
    async with engine.begin() as conn:
        await conn.execute(sql, [dict(row) for row in rows])


async def fetch(engine: AsyncEngine, table: str, order_by: str) -> list[dict[str, Any]]:
    async with engine.connect() as conn:
        result = await conn.execute(text(f"SELECT * FROM {table} ORDER BY {order_by}"))
        return [dict(row) for row in result.mappings()]


async def count(engine: AsyncEngine, table: str) -> int:
    async with engine.connect() as conn:
        result = await conn.execute(text(f"SELECT COUNT(*) FROM {table}"))
        return int(result.scalar_one())


def persons(ids: Sequence[int]) -> list[dict[str, Any]]:
    return [
        {"person_id": i, "gender": "F" if i % 2 else "M", "uuid": f"person-{i:05d}"}
        for i in ids
    ]


def obs_rows(total: int, *, grouped_every: int = 0, person_id: int = 1) -> list[dict[str, Any]]:
    """
    ``total`` obs rows with ids 1..total.

    When ``grouped_every`` is set, every row whose id is divisible by it
    points at the row ``grouped_every // 2 + 1`` ids later (forward
    references, left for deferred resolution), clamped to the last row.
    """
    rows: list[dict[str, Any]] = []
    for i in range(1, total + 1):
        group = None
        if grouped_every and i % grouped_every == 0:
            group = min(total, i + grouped_every // 2 + 1)
        rows.append(
            {
                "obs_id": i,
                "person_id": person_id,
                "encounter_id": None,
                "obs_group_id": group,
                "value_numeric": float(i) / 10,
            }
        )
    return rows
