"""
Configuration for beehive merges.

``MergeConfig`` is the immutable run configuration handed to the engine.
``ConnectionSettings`` and ``MergeSettings`` validate the JSON document the
command line reads, using pydantic models.

Example:
    >>> settings = load_config("merge.json")
    >>> config = settings.to_merge_config()
    >>> catalogue = settings.build_catalogue()
    >>> plan = settings.build_plan()
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import URL

from beehive.catalogue import PhasePlan, SchemaCatalogue
from beehive.exclusions import StaticExclusions


@dataclass(frozen=True)
class MergeConfig:
    """
    Configuration for a merge run.

    This class is immutable (frozen) to prevent accidental modification
    during a run.

    Attributes:
        source_id: Identifier of the source, the key of every persisted
            mapping and checkpoint.
        page_size: Rows per page for movers (default 1000).
        commit_every: Default sub-transaction size for bulk movements that
            do not set their own; None commits per phase.
        workers: Default worker count for parallel movements (default 1).
        dry_run: Roll back everything at the end of the run.
        enable_tracing: Create OpenTelemetry spans when available.
        seed_mappings: Identity entries known before the run, per entity
            type (e.g. the admin user ``{"users": {1: 1}}``). Never persisted.

    Example:
        >>> config = MergeConfig(source_id="clinic-7", page_size=500)
        >>> config.page_size
        500
    """

    source_id: str
    page_size: int = 1000
    commit_every: int | None = None
    workers: int = 1
    dry_run: bool = False
    enable_tracing: bool = True
    seed_mappings: Mapping[str, Mapping[int, int]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.source_id:
            raise ValueError("source_id must not be empty")
        if len(self.source_id) > 255:
            raise ValueError(f"source_id must be at most 255 characters, got {len(self.source_id)}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")
        if self.commit_every is not None and self.commit_every < 1:
            raise ValueError(f"commit_every must be >= 1, got {self.commit_every}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for logging.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "source_id": self.source_id,
            "page_size": self.page_size,
            "commit_every": self.commit_every,
            "workers": self.workers,
            "dry_run": self.dry_run,
            "enable_tracing": self.enable_tracing,
            "seed_mappings": {k: len(v) for k, v in self.seed_mappings.items()},
        }


class ConnectionSettings(BaseModel):
    """Where and how to connect to one database."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    driver: str = Field(
        default="mysql+aiomysql",
        description="SQLAlchemy async driver name, e.g. 'postgresql+asyncpg'",
    )
    host: str | None = Field(default=None, description="Database host")
    port: int | None = Field(default=None, ge=1, le=65535, description="Database port")
    username: str | None = Field(default=None, description="Login user")
    password: str | None = Field(default=None, description="Login password")
    database: str = Field(..., description="Database name, or file path for SQLite")
    query: dict[str, str] = Field(
        default_factory=dict,
        description="Extra driver options appended to the URL",
    )

    def to_url(self) -> URL:
        """Build the SQLAlchemy URL; the password is never rendered into logs."""
        return URL.create(
            self.driver,
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
            query=self.query,
        )


class MergeSettings(BaseModel):
    """The JSON document read by ``python -m beehive``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: ConnectionSettings
    destination: ConnectionSettings
    source_id: str = Field(..., min_length=1, max_length=255)
    page_size: int = Field(default=1000, ge=1)
    commit_every: int | None = Field(default=None, ge=1)
    workers: int = Field(default=1, ge=1)
    dry_run: bool = False
    enable_tracing: bool = True
    catalogue: dict[str, dict[str, Any]] = Field(
        ...,
        description="Entity type name to definition",
    )
    plan: dict[str, Any] | list[dict[str, Any]] = Field(
        ...,
        description="List of phases, or a mapping with 'phases' and 'external'",
    )
    seed_mappings: dict[str, dict[int, int]] = Field(default_factory=dict)
    exclusions: dict[str, list[int]] = Field(
        default_factory=dict,
        description="Source ids to skip per entity type",
    )
    match_uuids: list[str] = Field(
        default_factory=list,
        description="Entity types whose rows are excluded by uuid match",
    )

    def to_merge_config(self, *, dry_run: bool | None = None) -> MergeConfig:
        return MergeConfig(
            source_id=self.source_id,
            page_size=self.page_size,
            commit_every=self.commit_every,
            workers=self.workers,
            dry_run=self.dry_run if dry_run is None else dry_run,
            enable_tracing=self.enable_tracing,
            seed_mappings=self.seed_mappings,
        )

    def build_catalogue(self) -> SchemaCatalogue:
        return SchemaCatalogue.from_dict(self.catalogue)

    def build_plan(self) -> PhasePlan:
        return PhasePlan.from_dict(self.plan)

    def build_exclusions(self) -> StaticExclusions:
        return StaticExclusions(excluded=self.exclusions)


def load_config(path: str | Path) -> MergeSettings:
    """
    Read and validate a merge settings document.

    Raises:
        pydantic.ValidationError: If the document does not validate.
        OSError: If the file cannot be read.
    """
    return MergeSettings.model_validate_json(Path(path).read_text())


__all__ = [
    "MergeConfig",
    "ConnectionSettings",
    "MergeSettings",
    "load_config",
]
