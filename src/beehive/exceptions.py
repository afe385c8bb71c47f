"""
Merge-specific exceptions for beehive.

This module defines all exceptions that can be raised while merging a
source database into a destination, organized by the component that
raises them.

Exception Hierarchy:
    MergeError (base)
    +-- VerificationMismatchError
    +-- UnresolvedRequiredReferenceError
    +-- StatementFailureError
    +-- AlreadyProcessedSourceError
    +-- IdentityConflictError
    +-- PhasePlanError
    +-- CatalogueError
    +-- ParallelMoveError
    +-- MergeRunError

Every merge error carries an ``ErrorClassification``: how bad it is
(``ErrorSeverity``), whether a rerun can get past it (``ErrorRecoverability``),
a stable error code and an operator hint. The CLI prints it as JSON.

Unresolved optional references are not exceptions. They are reported as
``UnresolvedOptionalReference`` diagnostics and never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of merge errors.

    Attributes:
        CRITICAL: Data integrity is in doubt.
            Examples: Row counts do not add up after a move.
        ERROR: Significant failure that requires operator intervention.
            Examples: A generated statement was rejected.
        WARNING: Issue that should be looked at but does not stop a run.
        INFO: Worth recording only.
    """

    CRITICAL = "critical"
    """Data integrity is in doubt."""

    ERROR = "error"
    """Significant failure that requires operator intervention."""

    WARNING = "warning"
    """Issue that should be looked at but does not stop a run."""

    INFO = "info"
    """Worth recording only."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Level the engine logs this severity at."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for merge errors.

    Attributes:
        RECOVERABLE: The run can be retried once the cause is fixed and will
            resume from its last checkpoint.
        TRANSIENT: A plain rerun may succeed (lock timeout, lost connection).
        FATAL: The input data or configuration is wrong; retrying without
            changing it fails the same way.
    """

    RECOVERABLE = "recoverable"
    """The run can be retried once the cause is fixed."""

    TRANSIENT = "transient"
    """A plain rerun may succeed (lock timeout, lost connection)."""

    FATAL = "fatal"
    """Retrying without changes fails the same way."""

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    What an operator needs to know about a merge error.

    Attributes:
        severity: How bad the error is.
        recoverability: Whether rerunning the merge can get past it.
        error_code: Stable code, e.g. ``MERGE_UNRESOLVED_REFERENCE``.
        category: Component family (verification, reference, statement, ...).
        suggested_action: What to check before rerunning.

    Example:
        >>> classification = ErrorClassification(
        ...     severity=ErrorSeverity.CRITICAL,
        ...     recoverability=ErrorRecoverability.FATAL,
        ...     error_code="MERGE_VERIFICATION_MISMATCH",
        ...     category="verification",
        ...     suggested_action="Compare source and destination counts",
        ... )
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form with enum values."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


@dataclass(frozen=True)
class UnresolvedOptionalReference:
    """
    Diagnostic for a nullable reference that could not be resolved.

    The referencing column is left null in the destination. These are
    logged and returned in move results; they never abort a run.

    Attributes:
        entity: Entity type owning the referencing column.
        column: The referencing column.
        target: Entity type the column points at.
        source_value: The source id that had no destination counterpart.
        dest_id: Destination primary key of the referencing row, when known.
    """

    entity: str
    column: str
    target: str
    source_value: int
    dest_id: int | None = None

    def __str__(self) -> str:
        row = f" on row {self.dest_id}" if self.dest_id is not None else ""
        return (
            f"{self.entity}.{self.column}{row} references {self.target} "
            f"{self.source_value} which has no destination counterpart"
        )


class MergeError(Exception):
    """
    Base exception for all merge-related errors.

    Attributes:
        message: What went wrong.
        source_id: Identifier of the source being merged, if known.
        phase: Name of the phase in progress, if known.
        entity: Name of the entity type in progress, if known.
        suggested_action: Overrides the classification's operator hint.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_ERROR",
        category="general",
        suggested_action="Review the merge logs",
    )

    def __init__(
        self,
        message: str,
        *,
        source_id: str | None = None,
        phase: str | None = None,
        entity: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.source_id = source_id
        self.phase = phase
        self.entity = entity
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.source_id:
            parts.append(f"source_id={self.source_id}")
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.entity:
            parts.append(f"entity={self.entity}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Classification of this error; subclasses set ``_default_classification``."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability_type(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """Error report printed by the CLI when a merge fails."""
        return {
            "message": self.message,
            "source_id": self.source_id,
            "phase": self.phase,
            "entity": self.entity,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class VerificationMismatchError(MergeError):
    """
    Raised when a destination row count does not add up after a move.

    ``destination_after == destination_before + moved`` must hold for every
    entity type at every phase boundary. A mismatch means rows were lost or
    duplicated, so the surrounding transaction is rolled back.

    Attributes:
        expected: The row count the destination should have.
        actual: The row count the destination has.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_VERIFICATION_MISMATCH",
        category="verification",
        suggested_action=(
            "Check for concurrent writers on the destination and for rows "
            "excluded twice, then retry the phase"
        ),
    )

    def __init__(
        self,
        entity: str,
        expected: int,
        actual: int,
        *,
        phase: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            message=(
                f"Row count mismatch for {entity}: expected {expected}, found {actual}"
            ),
            phase=phase,
            entity=entity,
        )


class UnresolvedRequiredReferenceError(MergeError):
    """
    Raised when a non-nullable foreign key has no identity mapping.

    This indicates the plan moves a referencing entity before its target,
    or the source contains an orphaned reference.

    Attributes:
        column: The referencing column.
        target: Entity type the column points at.
        value: The unmapped source id.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_UNRESOLVED_REFERENCE",
        category="integrity",
        suggested_action=(
            "Move the target entity type in an earlier phase or repair the "
            "orphaned source row"
        ),
    )

    def __init__(self, entity: str, column: str, target: str, value: Any) -> None:
        self.column = column
        self.target = target
        self.value = value
        super().__init__(
            message=(
                f"{entity}.{column} references {target} {value!r} "
                f"which has not been migrated"
            ),
            entity=entity,
        )


class StatementFailureError(MergeError):
    """
    Raised when the destination rejects a generated statement.

    The statement text is retained for diagnosis; parameters are summarized
    rather than stored in full since a page may carry thousands of values.

    Attributes:
        statement: The SQL statement that failed.
        params_summary: Short description of the bound parameters.
        original_error: The underlying driver error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MERGE_STATEMENT_FAILURE",
        category="database",
        suggested_action=(
            "Inspect the statement and the destination schema; the run resumes "
            "from the last committed checkpoint"
        ),
    )

    def __init__(
        self,
        statement: str,
        error: str,
        *,
        entity: str | None = None,
        params_summary: str | None = None,
    ) -> None:
        self.statement = statement
        self.params_summary = params_summary
        self.original_error = error
        super().__init__(
            message=f"Statement failed: {error}",
            entity=entity,
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["statement"] = self.statement
        result["params_summary"] = self.params_summary
        return result


class AlreadyProcessedSourceError(MergeError):
    """
    Raised when the final phase of the plan has already passed for a source.

    Checked before any work starts, so nothing is written.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_ALREADY_PROCESSED",
        category="state",
        suggested_action="Nothing to do; this source has already been merged",
    )

    def __init__(self, source_id: str, phase: str | None = None) -> None:
        super().__init__(
            message=f"Source {source_id} already processed",
            source_id=source_id,
            phase=phase,
        )


class IdentityConflictError(MergeError):
    """
    Raised when a source id is mapped twice to different destination ids.

    Attributes:
        src_id: The source primary key.
        existing: The destination id it is already mapped to.
        attempted: The destination id of the rejected mapping.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_IDENTITY_CONFLICT",
        category="integrity",
        suggested_action="Check the persisted mappings for this source for duplicates",
    )

    def __init__(self, entity: str, src_id: int, existing: int, attempted: int) -> None:
        self.src_id = src_id
        self.existing = existing
        self.attempted = attempted
        super().__init__(
            message=(
                f"{entity} {src_id} is already mapped to {existing}, "
                f"refusing to remap to {attempted}"
            ),
            entity=entity,
        )


class PhasePlanError(MergeError):
    """Raised when a phase plan is invalid or does not match the checkpoint."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_INVALID_PLAN",
        category="configuration",
        suggested_action="Fix the phase plan",
    )


class CatalogueError(MergeError):
    """Raised when the schema catalogue is inconsistent."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MERGE_INVALID_CATALOGUE",
        category="configuration",
        suggested_action="Fix the schema catalogue",
    )


class ParallelMoveError(MergeError):
    """
    Raised when one or more parallel workers failed.

    Workers that committed are left as they are; their chunk checkpoints let
    a retry skip them.

    Attributes:
        errors: Worker index to error message for every failed worker.
        moved: Rows committed by the workers that succeeded.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MERGE_PARALLEL_FAILURE",
        category="parallel",
        suggested_action="Fix the cause and retry; completed chunks are skipped",
    )

    def __init__(self, entity: str, errors: dict[int, str], moved: int = 0) -> None:
        self.errors = dict(errors)
        self.moved = moved
        details = "; ".join(f"worker {i}: {msg}" for i, msg in sorted(self.errors.items()))
        super().__init__(
            message=f"{len(self.errors)} worker(s) failed moving {entity}: {details}",
            entity=entity,
        )


class MergeRunError(MergeError):
    """
    Summary error for a failed run.

    Names the phase and entity type in progress and chains the cause.

    Attributes:
        cause: The underlying exception.
    """

    def __init__(
        self,
        phase: str,
        entity: str | None,
        cause: BaseException,
        *,
        source_id: str | None = None,
    ) -> None:
        self.cause = cause
        where = f"phase {phase!r}"
        if entity:
            where += f", entity {entity!r}"
        super().__init__(
            message=f"Merge failed in {where}: {cause}",
            source_id=source_id,
            phase=phase,
            entity=entity,
        )

    @property
    def classification(self) -> ErrorClassification:
        return classify_exception(self.cause)


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classification of ``exc``.

    Merge errors carry their own. Anything else (a driver error escaping a
    mover, a bug) is reported as ``UNKNOWN_ERROR``.
    """
    if isinstance(exc, MergeError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="Inspect the traceback in the merge log",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "UnresolvedOptionalReference",
    "MergeError",
    "VerificationMismatchError",
    "UnresolvedRequiredReferenceError",
    "StatementFailureError",
    "AlreadyProcessedSourceError",
    "IdentityConflictError",
    "PhasePlanError",
    "CatalogueError",
    "ParallelMoveError",
    "MergeRunError",
    "classify_exception",
]
