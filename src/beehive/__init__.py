"""
beehive - Merge one medical records database into another.

This library provides:
- Identity map store remapping source ids to destination ids
- Reference consolidator for catalogue tables present on both sides
- Dependency-ordered bulk mover with paged multi-row inserts
- Deferred reference resolver for forward and self references
- Checkpoint/resume manager with idempotent restarts
- Parallel chunked mover for the highest-volume table
- Post-merge verification by external identifier
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("beehive-merge")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from beehive.bulk_mover import BulkMover, MoveProgress
from beehive.catalogue import PhasePlan, SchemaCatalogue
from beehive.checkpoint import CheckpointManager
from beehive.config import ConnectionSettings, MergeConfig, MergeSettings, load_config
from beehive.connection import create_engine, create_engines
from beehive.consolidator import ReferenceConsolidator
from beehive.deferred import DeferredReferenceResolver
from beehive.engine import MergeEngine
from beehive.exceptions import (
    AlreadyProcessedSourceError,
    CatalogueError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    IdentityConflictError,
    MergeError,
    MergeRunError,
    ParallelMoveError,
    PhasePlanError,
    StatementFailureError,
    UnresolvedOptionalReference,
    UnresolvedRequiredReferenceError,
    VerificationMismatchError,
    classify_exception,
)
from beehive.exclusions import (
    ExclusionProvider,
    StaticExclusions,
    exclusion_rows,
    match_by_uuid,
)
from beehive.identity_map import (
    IdentityLookup,
    IdentityMap,
    IdentityMapStore,
    IdentitySnapshot,
    LayeredLookup,
)
from beehive.models import (
    CheckpointRecord,
    DeferredReference,
    EntityType,
    ForeignKey,
    MigrationPhase,
    Movement,
    MovementKind,
    MoveResult,
    PhaseState,
    ResumePosition,
    RunReport,
    WorkerChunk,
    WorkerResult,
)
from beehive.parallel import ParallelMover, partition
from beehive.repositories import (
    InMemoryMergeStateRepository,
    MergeStateRepository,
    SQLAlchemyMergeStateRepository,
)
from beehive.rewrite import RowRewriter
from beehive.verification import VerificationReport, find_unmoved

__all__ = [
    "__version__",
    # Engine
    "MergeEngine",
    "MergeConfig",
    "MergeSettings",
    "ConnectionSettings",
    "load_config",
    "create_engine",
    "create_engines",
    # Catalogue and plan
    "SchemaCatalogue",
    "PhasePlan",
    "EntityType",
    "ForeignKey",
    "MigrationPhase",
    "Movement",
    "MovementKind",
    # Identity maps
    "IdentityLookup",
    "IdentityMap",
    "IdentityMapStore",
    "IdentitySnapshot",
    "LayeredLookup",
    # Movers
    "ReferenceConsolidator",
    "BulkMover",
    "MoveProgress",
    "ParallelMover",
    "partition",
    "RowRewriter",
    "DeferredReferenceResolver",
    # Checkpoints
    "CheckpointManager",
    "CheckpointRecord",
    "PhaseState",
    "ResumePosition",
    # Exclusions
    "ExclusionProvider",
    "StaticExclusions",
    "exclusion_rows",
    "match_by_uuid",
    # Results
    "DeferredReference",
    "MoveResult",
    "RunReport",
    "WorkerChunk",
    "WorkerResult",
    # Verification
    "VerificationReport",
    "find_unmoved",
    # Persistence
    "MergeStateRepository",
    "SQLAlchemyMergeStateRepository",
    "InMemoryMergeStateRepository",
    # Errors
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "MergeError",
    "VerificationMismatchError",
    "UnresolvedRequiredReferenceError",
    "UnresolvedOptionalReference",
    "StatementFailureError",
    "AlreadyProcessedSourceError",
    "IdentityConflictError",
    "PhasePlanError",
    "CatalogueError",
    "ParallelMoveError",
    "MergeRunError",
    "classify_exception",
]
