"""
SQLite Merge Example

This example merges a small clinic database into a regional one:
- Catalogue rows (roles, locations) consolidated by name
- People and patients moved with new ids and rewritten foreign keys
- Observations moved by parallel workers, group references patched afterwards
- A dry run first, then the real run and a verification pass, then a refused repeat

Run with: python examples/merge_sqlite.py
"""

import asyncio
import dataclasses
import tempfile
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from beehive import (
    AlreadyProcessedSourceError,
    MergeConfig,
    MergeEngine,
    PhasePlan,
    SchemaCatalogue,
    find_unmoved,
)

# =============================================================================
# Schema and Catalogue
# =============================================================================

SCHEMA = [
    "CREATE TABLE users (user_id INTEGER PRIMARY KEY, username TEXT NOT NULL)",
    "CREATE TABLE role (role_id INTEGER PRIMARY KEY, name TEXT NOT NULL)",
    """CREATE TABLE location (
        location_id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        parent_location INTEGER REFERENCES location (location_id)
    )""",
    "CREATE TABLE person (person_id INTEGER PRIMARY KEY, uuid TEXT NOT NULL)",
    """CREATE TABLE patient (
        patient_id INTEGER PRIMARY KEY,
        person_id INTEGER NOT NULL REFERENCES person (person_id),
        location_id INTEGER REFERENCES location (location_id)
    )""",
    """CREATE TABLE obs (
        obs_id INTEGER PRIMARY KEY,
        person_id INTEGER NOT NULL REFERENCES person (person_id),
        obs_group_id INTEGER REFERENCES obs (obs_id),
        value_numeric REAL
    )""",
]

CATALOGUE = {
    "users": {"table": "users", "primary_key": "user_id"},
    "role": {"table": "role", "primary_key": "role_id", "business_key": ["name"]},
    "location": {
        "table": "location",
        "primary_key": "location_id",
        "business_key": ["name"],
        "foreign_keys": [{"column": "parent_location", "target": "location"}],
    },
    "person": {"table": "person", "primary_key": "person_id", "uuid_column": "uuid"},
    "patient": {
        "table": "patient",
        "primary_key": "patient_id",
        "foreign_keys": [
            {"column": "person_id", "target": "person", "nullable": False},
            {"column": "location_id", "target": "location"},
        ],
    },
    "obs": {
        "table": "obs",
        "primary_key": "obs_id",
        "foreign_keys": [
            {"column": "person_id", "target": "person", "nullable": False},
            {"column": "obs_group_id", "target": "obs"},
        ],
    },
}

PLAN = {
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
        {"name": "observations", "movements": [{"entity": "obs", "kind": "parallel", "workers": 4}]},
    ],
}


# =============================================================================
# Sample Data
# =============================================================================


async def create_database(path: Path, statements: list[str]) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"timeout": 30})
    async with engine.begin() as conn:
        for statement in SCHEMA + statements:
            await conn.execute(text(statement))
    return engine


CLINIC = [
    "INSERT INTO users VALUES (1, 'admin')",
    "INSERT INTO role VALUES (1, 'Clinician'), (2, 'Nurse')",
    "INSERT INTO location VALUES (1, 'Ward 3', 2), (2, 'District Hospital', NULL)",
    "INSERT INTO person VALUES (1, 'c-1'), (2, 'c-2'), (3, 'c-3')",
    "INSERT INTO patient VALUES (1, 1, 1), (2, 2, 1), (3, 3, 2)",
] + [
    f"INSERT INTO obs VALUES ({i}, {i % 3 + 1}, {i + 1 if i % 5 == 0 else 'NULL'}, {i / 10})"
    for i in range(1, 200)
]

REGION = [
    "INSERT INTO users VALUES (1, 'admin')",
    "INSERT INTO role VALUES (1, 'Admin'), (2, 'Clinician')",
    "INSERT INTO location VALUES (1, 'District Hospital', NULL)",
    "INSERT INTO person VALUES (1, 'r-1'), (2, 'r-2')",
]


# =============================================================================
# Main
# =============================================================================


async def main():
    """Run the SQLite merge example."""
    print("=" * 60)
    print("Clinic Merge Example")
    print("=" * 60)

    catalogue = SchemaCatalogue.from_dict(CATALOGUE)
    plan = PhasePlan.from_dict(PLAN)

    with tempfile.TemporaryDirectory() as tmp:
        source = await create_database(Path(tmp) / "clinic.db", CLINIC)
        destination = await create_database(Path(tmp) / "region.db", REGION)
        config = MergeConfig(
            source_id="clinic-7",
            page_size=25,
            seed_mappings={"users": {1: 1}},
            enable_tracing=False,
        )

        try:
            print("\n1. Dry run")
            dry = dataclasses.replace(config, dry_run=True)
            report = await MergeEngine(source, destination, catalogue, dry).run(plan)
            for entity, moved in report.counts.items():
                print(f"   {entity}: {moved} rows would move")

            print("\n2. Merge")
            report = await MergeEngine(source, destination, catalogue, config).run(plan)
            for entity, result in report.results.items():
                print(
                    f"   {entity}: moved={result.moved} matched={result.matched} "
                    f"patched={result.updated}"
                )

            print("\n3. Merged locations")
            async with destination.connect() as conn:
                rows = await conn.execute(
                    text("SELECT location_id, name, parent_location FROM location ORDER BY 1")
                )
                for location_id, name, parent in rows:
                    print(f"   [{location_id}] {name} (parent: {parent})")

            print("\n4. Verification")
            async with source.connect() as src, destination.connect() as dst:
                check = await find_unmoved(src, dst, [catalogue["person"]])
            print(f"   every person arrived: {check.ok}")

            print("\n5. Merging the same clinic again")
            try:
                await MergeEngine(source, destination, catalogue, config).run(plan)
            except AlreadyProcessedSourceError as e:
                print(f"   Refused: {e}")
        finally:
            await source.dispose()
            await destination.dispose()

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
