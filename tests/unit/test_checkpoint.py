"""
Unit tests for CheckpointManager.

Tests cover:
- Starting without a checkpoint
- Resuming an in-progress phase at its offset
- Skipping to the phase after a passed one
- Refusing a source whose final phase passed or that is registered
- Rejecting a checkpoint for a phase missing from the plan
- Phase state transitions
- Chunk checkpoints
"""

import pytest

from beehive.catalogue import PhasePlan
from beehive.checkpoint import CheckpointManager
from beehive.exceptions import AlreadyProcessedSourceError, PhasePlanError
from beehive.models import PhaseState
from beehive.repositories import InMemoryMergeStateRepository


@pytest.fixture
def checkpoints(memory_repo: InMemoryMergeStateRepository) -> CheckpointManager:
    return CheckpointManager(memory_repo, enable_tracing=False)


class TestStart:
    """Tests for CheckpointManager.start."""

    async def test_fresh_source(self, checkpoints: CheckpointManager, plan: PhasePlan) -> None:
        position = await checkpoints.start(plan)
        assert position.phase == "catalogue"
        assert position.rows_done == 0
        assert position.skip == frozenset()
        assert not position.resumed
        assert checkpoints.state_of("people") == PhaseState.NOT_STARTED

    async def test_resume_in_progress_phase(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await memory_repo.insert_checkpoint("catalogue", True, 0)
        await memory_repo.insert_checkpoint("people", True, 0)
        await memory_repo.insert_checkpoint("encounters", False, 0)
        await memory_repo.insert_checkpoint("encounters", False, 4000)

        position = await checkpoints.start(plan)

        assert position.phase == "encounters"
        assert position.rows_done == 4000
        assert position.skip == frozenset({"catalogue", "people"})
        assert position.resumed
        assert checkpoints.state_of("people") == PhaseState.PASSED
        assert checkpoints.state_of("encounters") == PhaseState.IN_PROGRESS
        assert checkpoints.current_position().rows_done == 4000

    async def test_after_passed_phase(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await memory_repo.insert_checkpoint("people", True, 300)
        position = await checkpoints.start(plan)
        assert position.phase == "encounters"
        assert position.rows_done == 0
        assert position.skip == frozenset({"catalogue", "people"})

    async def test_chunk_records_do_not_count(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await memory_repo.insert_checkpoint("observations", False, 0)
        await memory_repo.insert_checkpoint("observations", True, 2500, chunk=0)
        position = await checkpoints.start(plan)
        assert position.phase == "observations"
        assert list(await checkpoints.completed_chunks("observations")) == [0]

    async def test_final_phase_passed(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await memory_repo.insert_checkpoint("observations", True, 0)
        with pytest.raises(AlreadyProcessedSourceError) as exc_info:
            await checkpoints.start(plan)
        assert exc_info.value.phase == "observations"

    async def test_registered_source(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await memory_repo.register_source()
        with pytest.raises(AlreadyProcessedSourceError):
            await checkpoints.start(plan)

    async def test_unknown_phase(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await memory_repo.insert_checkpoint("billing", False, 10)
        with pytest.raises(PhasePlanError, match="billing"):
            await checkpoints.start(plan)


class TestTransitions:
    """Tests for recording progress."""

    async def test_progress_then_passed(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await checkpoints.start(plan)
        await checkpoints.record_progress(memory_repo, "catalogue", 0)
        await checkpoints.record_progress(memory_repo, "catalogue", 12)
        assert checkpoints.state_of("catalogue") == PhaseState.IN_PROGRESS

        await checkpoints.record_passed(memory_repo, "catalogue")

        assert checkpoints.state_of("catalogue") == PhaseState.PASSED
        last = memory_repo.checkpoints[-1]
        assert (last.phase, last.passed, last.rows_done) == ("catalogue", True, 12)

    async def test_passed_phase_is_final(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
        plan: PhasePlan,
    ) -> None:
        await checkpoints.start(plan)
        await checkpoints.record_passed(memory_repo, "catalogue")
        with pytest.raises(PhasePlanError, match="cannot move"):
            await checkpoints.record_progress(memory_repo, "catalogue", 5)
        with pytest.raises(PhasePlanError):
            await checkpoints.record_passed(memory_repo, "catalogue")

    async def test_chunk_passed(
        self,
        checkpoints: CheckpointManager,
        memory_repo: InMemoryMergeStateRepository,
    ) -> None:
        await checkpoints.record_chunk_passed(memory_repo, "observations", 2, 2500)
        chunks = await checkpoints.completed_chunks("observations")
        assert chunks[2].rows_done == 2500
        assert await memory_repo.load_latest_checkpoint() is None
