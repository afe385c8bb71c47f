"""
SQL schemas for the beehive bookkeeping tables.

Tables:
    - beehive_merge_source: sources that completed a merge
    - beehive_merge_map: persisted identity mappings
    - beehive_merge_exclusion: the exclusion set fixed when a run first started
    - beehive_merge_progress: checkpoint records, most recent wins by id

Supported backends:
    - mysql: MySQL and MariaDB
    - postgresql
    - sqlite

Usage:
    from beehive.migrations import get_statements

    async with engine.begin() as conn:
        for statement in get_statements(conn.dialect.name):
            await conn.execute(text(statement))
"""

from pathlib import Path
from typing import Literal

BackendName = Literal["mysql", "postgresql", "sqlite"]

_SCHEMAS_DIR = Path(__file__).parent / "schemas"

_DIALECT_BACKENDS: dict[str, BackendName] = {
    "mysql": "mysql",
    "mariadb": "mysql",
    "postgresql": "postgresql",
    "sqlite": "sqlite",
}


def backend_for(dialect_name: str) -> BackendName:
    """
    Map a SQLAlchemy dialect name to a schema backend.

    Raises:
        ValueError: If no schema ships for the dialect.
    """
    try:
        return _DIALECT_BACKENDS[dialect_name]
    except KeyError:
        raise ValueError(
            f"No bookkeeping schema for dialect '{dialect_name}'. "
            f"Available backends: {list_backends()}"
        ) from None


def get_schema(backend: BackendName) -> str:
    """
    Load the SQL schema for a backend.

    Raises:
        FileNotFoundError: If the schema file doesn't exist
    """
    path = _SCHEMAS_DIR / f"{backend}.sql"
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")
    return path.read_text()


def split_statements(sql: str) -> list[str]:
    """Split a schema into single statements, dropping ``--`` comment lines."""
    lines = [line for line in sql.splitlines() if not line.strip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def get_statements(dialect_name: str) -> list[str]:
    """Schema statements for a SQLAlchemy dialect, one per list entry."""
    return split_statements(get_schema(backend_for(dialect_name)))


def list_backends() -> list[str]:
    return sorted(p.stem for p in _SCHEMAS_DIR.glob("*.sql"))


__all__ = [
    "BackendName",
    "backend_for",
    "get_schema",
    "get_statements",
    "list_backends",
    "split_statements",
]
