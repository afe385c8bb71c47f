"""
Data models for the beehive merge engine.

Models in this module:

Enums:
    - MovementKind: How an entity type is moved
    - PhaseState: Lifecycle of a migration phase

Catalogue:
    - ForeignKey: A reference from one entity type to another
    - EntityType: A table with primary/foreign/business key metadata

Plan:
    - Movement: One entity type moved by one mover
    - MigrationPhase: Ordered unit of work committed together

Progress and results:
    - CheckpointRecord: Durable phase/offset progress
    - ResumePosition: Where a run picks up after a restart
    - DeferredReference: A reference left null at insert time
    - WorkerChunk: Row range handed to one parallel worker
    - WorkerResult: One-shot completion message of a parallel worker
    - MoveResult: Outcome of moving one entity type
    - RunReport: Outcome of a whole run
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from beehive.exceptions import CatalogueError, PhasePlanError, UnresolvedOptionalReference

if TYPE_CHECKING:
    from beehive.identity_map import IdentitySnapshot

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_identifier(value: str, what: str) -> str:
    """
    Reject anything that is not a plain SQL identifier.

    Table and column names are interpolated into generated statements, so
    they must never carry quoting or whitespace.

    Raises:
        CatalogueError: If ``value`` is not a plain identifier.
    """
    if not isinstance(value, str) or not IDENTIFIER_RE.match(value):
        raise CatalogueError(f"Invalid {what}: {value!r}")
    return value


class MovementKind(Enum):
    """
    How an entity type is moved into the destination.

    Attributes:
        CONSOLIDATE: Match against existing destination rows, insert the rest.
        BULK: Paged copy with key rewriting.
        PARALLEL: Paged copy split across concurrent workers.
    """

    CONSOLIDATE = "consolidate"
    """Match against existing destination rows, insert the rest."""

    BULK = "bulk"
    """Paged copy with key rewriting."""

    PARALLEL = "parallel"
    """Paged copy split across concurrent workers."""


class PhaseState(Enum):
    """
    Lifecycle of a migration phase.

    State machine transitions:
        NOT_STARTED -> IN_PROGRESS -> PASSED

    A phase is never re-entered once passed.
    """

    NOT_STARTED = "not_started"
    """No checkpoint has been recorded for the phase."""

    IN_PROGRESS = "in_progress"
    """The phase started; rows_done holds the committed offset."""

    PASSED = "passed"
    """The phase committed and its counts verified."""

    def can_transition_to(self, target: PhaseState) -> bool:
        """
        Check if transition to target state is valid.

        Args:
            target: The target state to transition to.

        Returns:
            True if the transition is valid.
        """
        valid_transitions: dict[PhaseState, list[PhaseState]] = {
            PhaseState.NOT_STARTED: [PhaseState.IN_PROGRESS, PhaseState.PASSED],
            PhaseState.IN_PROGRESS: [PhaseState.IN_PROGRESS, PhaseState.PASSED],
            PhaseState.PASSED: [],
        }
        return target in valid_transitions[self]


@dataclass(frozen=True)
class ForeignKey:
    """
    A reference from one entity type's column to another entity type.

    A foreign key whose target is its own entity type is always deferred.

    Attributes:
        column: The referencing column.
        target: Name of the referenced entity type.
        nullable: Whether the column may be left null when unresolved.
        deferred: Forward reference, patched after the target is moved.
    """

    column: str
    target: str
    nullable: bool = True
    deferred: bool = False

    def __post_init__(self) -> None:
        check_identifier(self.column, "foreign key column")
        check_identifier(self.target, "foreign key target")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ForeignKey:
        return cls(
            column=data["column"],
            target=data["target"],
            nullable=data.get("nullable", True),
            deferred=data.get("deferred", False),
        )


@dataclass(frozen=True)
class EntityType:
    """
    A table definition with primary, foreign and business key metadata.

    Attributes:
        name: Entity type name, also used as the identity map table name.
        table: Table backing the entity type.
        primary_key: Integer primary key column.
        foreign_keys: Foreign key columns, in declaration order.
        business_key: Columns matched by the consolidator.
        uuid_column: Globally unique external identifier column, if any.
        order_column: Column giving a deterministic source order.
            Defaults to the primary key.
        columns: Columns copied to the destination; None copies every
            column of the source row.
    """

    name: str
    table: str
    primary_key: str
    foreign_keys: tuple[ForeignKey, ...] = ()
    business_key: tuple[str, ...] = ()
    uuid_column: str | None = None
    order_column: str | None = None
    columns: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        check_identifier(self.name, "entity type name")
        check_identifier(self.table, "table name")
        check_identifier(self.primary_key, "primary key column")
        for column in self.business_key:
            check_identifier(column, "business key column")
        if self.uuid_column is not None:
            check_identifier(self.uuid_column, "uuid column")
        if self.order_column is not None:
            check_identifier(self.order_column, "order column")
        if self.columns is not None:
            for column in self.columns:
                check_identifier(column, "column")
        seen: set[str] = set()
        for fk in self.foreign_keys:
            if fk.column in seen:
                raise CatalogueError(f"Duplicate foreign key column {self.name}.{fk.column}")
            if fk.column == self.primary_key:
                raise CatalogueError(f"{self.name}: primary key cannot be a foreign key")
            if (fk.deferred or fk.target == self.name) and not fk.nullable:
                raise CatalogueError(
                    f"{self.name}.{fk.column} is deferred and must be nullable"
                )
            seen.add(fk.column)
        if self.order_column is None:
            object.__setattr__(self, "order_column", self.primary_key)

    @property
    def order_by(self) -> str:
        """ORDER BY clause giving a total, deterministic source order."""
        if self.order_column == self.primary_key:
            return self.primary_key
        return f"{self.order_column}, {self.primary_key}"

    def is_deferred(self, fk: ForeignKey) -> bool:
        return fk.deferred or fk.target == self.name

    @property
    def deferred_keys(self) -> tuple[ForeignKey, ...]:
        """Foreign keys patched after insert."""
        return tuple(fk for fk in self.foreign_keys if self.is_deferred(fk))

    def foreign_key(self, column: str) -> ForeignKey | None:
        for fk in self.foreign_keys:
            if fk.column == column:
                return fk
        return None

    @property
    def fk_targets(self) -> frozenset[str]:
        return frozenset(fk.target for fk in self.foreign_keys)

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> EntityType:
        """
        Create from a catalogue entry.

        Args:
            name: Entity type name.
            data: Dictionary with ``table``, ``primary_key`` and the optional
                ``foreign_keys``, ``business_key``, ``uuid_column``,
                ``order_column`` and ``columns`` entries.
        """
        columns = data.get("columns")
        return cls(
            name=name,
            table=data.get("table", name),
            primary_key=data.get("primary_key", f"{name}_id"),
            foreign_keys=tuple(ForeignKey.from_dict(fk) for fk in data.get("foreign_keys", ())),
            business_key=tuple(data.get("business_key", ())),
            uuid_column=data.get("uuid_column"),
            order_column=data.get("order_column"),
            columns=tuple(columns) if columns is not None else None,
        )


@dataclass(frozen=True)
class Movement:
    """
    One entity type moved by one mover.

    Attributes:
        entity: Name of the entity type.
        kind: Which mover handles it.
        page_size: Rows per page; None uses the run's configured page size.
        commit_every: Commit a sub-transaction every K rows (bulk only).
        workers: Worker count (parallel only).
        business_key: Overrides the entity type's business key (consolidate only).
    """

    entity: str
    kind: MovementKind = MovementKind.BULK
    page_size: int | None = None
    commit_every: int | None = None
    workers: int | None = None
    business_key: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.page_size is not None and self.page_size < 1:
            raise PhasePlanError(f"page_size must be >= 1, got {self.page_size}")
        if self.commit_every is not None:
            if self.commit_every < 1:
                raise PhasePlanError(f"commit_every must be >= 1, got {self.commit_every}")
            if self.kind != MovementKind.BULK:
                raise PhasePlanError(
                    f"commit_every only applies to bulk movements, not {self.kind.value}"
                )
        if self.workers is not None and self.workers < 1:
            raise PhasePlanError(f"workers must be >= 1, got {self.workers}")

    @property
    def is_chunked(self) -> bool:
        """Whether the movement commits on its own schedule."""
        return self.commit_every is not None or self.kind == MovementKind.PARALLEL

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | str) -> Movement:
        if isinstance(data, str):
            return cls(entity=data)
        try:
            kind = MovementKind(data.get("kind", "bulk"))
        except ValueError as e:
            raise PhasePlanError(f"Unknown movement kind: {data.get('kind')!r}") from e
        business_key = data.get("business_key")
        return cls(
            entity=data["entity"],
            kind=kind,
            page_size=data.get("page_size"),
            commit_every=data.get("commit_every"),
            workers=data.get("workers"),
            business_key=tuple(business_key) if business_key is not None else None,
        )


@dataclass(frozen=True)
class MigrationPhase:
    """
    A named, ordered unit of work committed together.

    Attributes:
        name: Phase name recorded in checkpoints.
        movements: Entity type movements, executed in order.
    """

    name: str
    movements: tuple[Movement, ...]

    def __post_init__(self) -> None:
        if not self.name:
            raise PhasePlanError("Phase name must not be empty")
        if not self.movements:
            raise PhasePlanError(f"Phase {self.name!r} has no movements")

    @property
    def is_chunked(self) -> bool:
        return any(m.is_chunked for m in self.movements)

    @property
    def entities(self) -> tuple[str, ...]:
        return tuple(m.entity for m in self.movements)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationPhase:
        return cls(
            name=data["name"],
            movements=tuple(Movement.from_dict(m) for m in data.get("movements", ())),
        )


@dataclass(frozen=True)
class CheckpointRecord:
    """
    Durable record of phase progress.

    Attributes:
        phase: Phase name.
        passed: Whether the phase committed and verified.
        rows_done: Rows durably committed in the phase so far.
        recorded_at: When the record was written.
        chunk: Worker index for per-chunk records, None for phase records.
    """

    phase: str
    passed: bool
    rows_done: int = 0
    recorded_at: datetime | None = None
    chunk: int | None = None


@dataclass(frozen=True)
class ResumePosition:
    """
    Where a run picks up.

    Attributes:
        phase: Phase to start in; None when nothing was recorded.
        rows_done: Committed offset inside that phase.
        skip: Names of phases that will not be executed.
        resumed: Whether an earlier attempt recorded a checkpoint.
    """

    phase: str | None = None
    rows_done: int = 0
    skip: frozenset[str] = frozenset()
    resumed: bool = False


@dataclass(frozen=True)
class DeferredReference:
    """
    A reference left null at insert time, patched later.

    Attributes:
        entity: Entity type owning the row.
        column: The referencing column.
        dest_id: Destination primary key of the row to patch.
        source_value: Source id the column referenced.
    """

    entity: str
    column: str
    dest_id: int
    source_value: int


@dataclass(frozen=True)
class WorkerChunk:
    """
    A contiguous row range migrated by one parallel worker.

    Attributes:
        index: Worker index, also the chunk checkpoint key.
        offset: First row of the range in source order.
        count: Number of rows in the range.
        first_dest_id: First destination id reserved for the range.
        snapshot: Read-only identity maps of the entity's FK targets.
    """

    index: int
    offset: int
    count: int
    first_dest_id: int
    snapshot: IdentitySnapshot | None = None


@dataclass(frozen=True)
class WorkerResult:
    """
    One-shot completion message of a parallel worker.

    Attributes:
        worker_id: Index of the worker that sent the message.
        moved: Rows committed by the worker.
        mappings: Identity entries the worker produced.
        deferred: References the worker left null.
        diagnostics: Optional references that stayed unresolved.
        error: Error message when the worker failed, else None.
    """

    worker_id: int
    moved: int = 0
    mappings: tuple[tuple[int, int], ...] = ()
    deferred: tuple[DeferredReference, ...] = ()
    diagnostics: tuple[UnresolvedOptionalReference, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class MoveResult:
    """
    Outcome of moving one entity type.

    Attributes:
        entity: Entity type name.
        moved: Rows inserted into the destination.
        matched: Source rows matched to existing destination rows.
        first_dest_id: First destination id assigned, if any rows moved.
        pages: Multi-row insert statements issued.
        deferred: References left null for later patching.
        updated: Deferred references patched.
        diagnostics: Optional references that stayed unresolved.
    """

    entity: str
    moved: int = 0
    matched: int = 0
    first_dest_id: int | None = None
    pages: int = 0
    deferred: list[DeferredReference] = field(default_factory=list)
    updated: int = 0
    diagnostics: list[UnresolvedOptionalReference] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "moved": self.moved,
            "matched": self.matched,
            "first_dest_id": self.first_dest_id,
            "pages": self.pages,
            "deferred": len(self.deferred),
            "updated": self.updated,
            "diagnostics": [str(d) for d in self.diagnostics],
        }


@dataclass
class RunReport:
    """
    Outcome of a whole run.

    Counts are reported as if committed, also for dry runs.

    Attributes:
        source_id: Identifier of the merged source.
        counts: Rows moved per entity type.
        phases_run: Phases executed by this run.
        phases_skipped: Phases skipped because they had already passed.
        results: MoveResult per entity type.
        dry_run: Whether everything was rolled back.
    """

    source_id: str
    counts: dict[str, int] = field(default_factory=dict)
    phases_run: list[str] = field(default_factory=list)
    phases_skipped: list[str] = field(default_factory=list)
    results: dict[str, MoveResult] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def diagnostics(self) -> list[UnresolvedOptionalReference]:
        return [d for r in self.results.values() for d in r.diagnostics]

    @property
    def total_moved(self) -> int:
        return sum(self.counts.values())

    def add(self, result: MoveResult) -> None:
        existing = self.results.get(result.entity)
        if existing is None:
            self.results[result.entity] = result
        else:
            existing.moved += result.moved
            existing.matched += result.matched
            existing.pages += result.pages
            existing.updated += result.updated
            existing.deferred.extend(result.deferred)
            existing.diagnostics.extend(result.diagnostics)
        self.counts[result.entity] = self.counts.get(result.entity, 0) + result.moved

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "counts": dict(self.counts),
            "phases_run": list(self.phases_run),
            "phases_skipped": list(self.phases_skipped),
            "dry_run": self.dry_run,
            "results": {name: r.to_dict() for name, r in self.results.items()},
        }


__all__ = [
    "IDENTIFIER_RE",
    "check_identifier",
    "MovementKind",
    "PhaseState",
    "ForeignKey",
    "EntityType",
    "Movement",
    "MigrationPhase",
    "CheckpointRecord",
    "ResumePosition",
    "DeferredReference",
    "WorkerChunk",
    "WorkerResult",
    "MoveResult",
    "RunReport",
]
