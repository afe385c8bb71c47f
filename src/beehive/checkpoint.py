"""
Checkpoint/Resume Manager.

Phases move through ``not_started -> in_progress -> passed``. A phase is
marked in progress when it starts and every committed sub-transaction
records its running row offset; it is marked passed only after its final
commit and count verification. A crash leaves the last recorded offset as
the resume point.

On start the manager reads the most recent phase-level record for the
source. If the plan's final phase already passed the run is refused before
any work; otherwise every phase before the recorded one is skipped and the
recorded phase resumes at its offset.
"""

from __future__ import annotations

import logging

from beehive.catalogue import PhasePlan
from beehive.exceptions import AlreadyProcessedSourceError, PhasePlanError
from beehive.models import CheckpointRecord, PhaseState, ResumePosition
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import (
    ATTR_MERGE_PHASE,
    ATTR_MERGE_SOURCE,
    ATTR_OFFSET,
    ATTR_WORKER_ID,
)
from beehive.repositories.merge_state import MergeStateRepository

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Tracks phase state and writes checkpoint records.

    Writes go through the repository passed to each call so they join the
    transaction of the rows they describe; reads at start use the
    repository given at construction.

    Example:
        >>> checkpoints = CheckpointManager(repo)
        >>> position = await checkpoints.start(plan)
        >>> position.phase, position.rows_done
        ('obs', 40000)
    """

    def __init__(
        self,
        repo: MergeStateRepository,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._repo = repo
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._states: dict[str, PhaseState] = {}
        self._phase: str | None = None
        self._rows_done = 0

    async def start(self, plan: PhasePlan) -> ResumePosition:
        """
        Decide where a run starts.

        Raises:
            AlreadyProcessedSourceError: The final phase already passed or
                the source is registered as merged.
            PhasePlanError: The recorded phase is not part of ``plan``.
        """
        source_id = self._repo.source_id
        with self._tracer.span(
            "beehive.checkpoint.start",
            {ATTR_MERGE_SOURCE: source_id},
        ):
            if await self._repo.source_registered():
                raise AlreadyProcessedSourceError(source_id)

            self._states = {name: PhaseState.NOT_STARTED for name in plan.names}
            latest = await self._repo.load_latest_checkpoint()
            if latest is None:
                self._phase = plan.phases[0].name
                self._rows_done = 0
                logger.info("No checkpoint for %s, starting from the beginning", source_id)
                return ResumePosition(phase=self._phase, rows_done=0)

            if latest.phase not in self._states:
                raise PhasePlanError(
                    f"Checkpoint phase {latest.phase!r} is not part of the plan",
                    source_id=source_id,
                    phase=latest.phase,
                )
            if latest.passed and latest.phase == plan.final_phase.name:
                raise AlreadyProcessedSourceError(source_id, phase=latest.phase)

            index = plan.index_of(latest.phase)
            skip = set(plan.names[:index])
            if latest.passed:
                skip.add(latest.phase)
                self._phase = plan.names[index + 1]
                self._rows_done = 0
            else:
                self._phase = latest.phase
                self._rows_done = latest.rows_done
                self._states[latest.phase] = PhaseState.IN_PROGRESS
            for name in skip:
                self._states[name] = PhaseState.PASSED

            logger.info(
                "Resuming %s at phase %s, row %d (%d phases skipped)",
                source_id,
                self._phase,
                self._rows_done,
                len(skip),
            )
            return ResumePosition(
                phase=self._phase,
                rows_done=self._rows_done,
                skip=frozenset(skip),
                resumed=True,
            )

    def current_position(self) -> ResumePosition:
        """Phase in progress and its committed offset."""
        return ResumePosition(phase=self._phase, rows_done=self._rows_done)

    def state_of(self, phase: str) -> PhaseState:
        return self._states.get(phase, PhaseState.NOT_STARTED)

    def _transition(self, phase: str, target: PhaseState) -> None:
        current = self.state_of(phase)
        if not current.can_transition_to(target):
            raise PhasePlanError(
                f"Phase {phase!r} cannot move from {current.value} to {target.value}",
                phase=phase,
            )
        self._states[phase] = target

    async def record_progress(
        self,
        repo: MergeStateRepository,
        phase: str,
        rows_done: int,
    ) -> None:
        """Record that ``rows_done`` rows of ``phase`` are committed."""
        with self._tracer.span(
            "beehive.checkpoint.record_progress",
            {ATTR_MERGE_PHASE: phase, ATTR_OFFSET: rows_done},
        ):
            self._transition(phase, PhaseState.IN_PROGRESS)
            await repo.insert_checkpoint(phase, False, rows_done)
            self._phase = phase
            self._rows_done = rows_done
            logger.debug("Checkpoint %s at row %d", phase, rows_done)

    async def record_passed(self, repo: MergeStateRepository, phase: str) -> None:
        """Record that ``phase`` committed and verified."""
        with self._tracer.span(
            "beehive.checkpoint.record_passed",
            {ATTR_MERGE_PHASE: phase},
        ):
            self._transition(phase, PhaseState.PASSED)
            await repo.insert_checkpoint(phase, True, self._rows_done if self._phase == phase else 0)
            self._rows_done = 0
            logger.info("Phase %s passed", phase)

    async def record_chunk_passed(
        self,
        repo: MergeStateRepository,
        phase: str,
        chunk: int,
        rows: int,
    ) -> None:
        """Record that parallel worker ``chunk`` of ``phase`` committed ``rows`` rows."""
        with self._tracer.span(
            "beehive.checkpoint.record_chunk_passed",
            {ATTR_MERGE_PHASE: phase, ATTR_WORKER_ID: chunk},
        ):
            await repo.insert_checkpoint(phase, True, rows, chunk=chunk)

    async def completed_chunks(self, phase: str) -> dict[int, CheckpointRecord]:
        """Chunk records of ``phase`` committed by earlier attempts."""
        return await self._repo.load_chunk_checkpoints(phase)


__all__ = [
    "CheckpointManager",
]
