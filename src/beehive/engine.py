"""
MergeEngine - Runs a phase plan against a source and a destination database.

The engine wires every component of a run together: the identity map
store, the movers, the deferred reference resolver and the checkpoint
manager. It executes the phases of a plan strictly in order. Only the
parallel mover runs anything concurrently.

Responsibilities:
    - Validate the plan against the catalogue
    - Create bookkeeping tables and refuse sources already merged
    - Restore identity maps and resume at the last committed checkpoint
    - Record the exclusion set on first start and reuse it when resuming
    - Run atomic phases in one destination transaction
    - Let chunked phases commit on their own schedule
    - Resolve deferred references once their targets are moved
    - Register the source after the final phase passed
    - Roll everything back in dry-run mode

Usage:
    >>> engine = MergeEngine(source_engine, dest_engine, catalogue,
    ...                      MergeConfig(source_id="clinic-7"))
    >>> report = await engine.run(plan)
    >>> report.counts["person"]
    3
"""

from __future__ import annotations

import logging
from collections.abc import Collection

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.bulk_mover import BulkMover, ProgressCallback
from beehive.catalogue import PhasePlan, SchemaCatalogue
from beehive.checkpoint import CheckpointManager
from beehive.config import MergeConfig
from beehive.consolidator import ReferenceConsolidator
from beehive.deferred import DeferredReferenceResolver
from beehive.exceptions import MergeError, MergeRunError
from beehive.exclusions import ExclusionProvider, StaticExclusions, exclusion_rows
from beehive.identity_map import IdentityMapStore
from beehive.models import (
    MigrationPhase,
    Movement,
    MovementKind,
    MoveResult,
    ResumePosition,
    RunReport,
)
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import (
    ATTR_DRY_RUN,
    ATTR_ENTITY_TYPE,
    ATTR_MERGE_PHASE,
    ATTR_MERGE_SOURCE,
)
from beehive.parallel import ParallelMover, RepositoryFactory
from beehive.repositories._connection import open_transaction
from beehive.repositories.merge_state import (
    MergeStateRepository,
    SQLAlchemyMergeStateRepository,
)

logger = logging.getLogger(__name__)


class _Run:
    """Per-run components bound to the run's connections."""

    def __init__(
        self,
        engine: MergeEngine,
        source: AsyncConnection,
        destination: AsyncConnection,
    ) -> None:
        self.engine = engine
        self.source = source
        self.destination = destination
        self.current: str | None = None
        self.repo = engine.repository_factory(destination)
        self.checkpoints = CheckpointManager(self.repo, tracer=engine.tracer)

    def bind(self, exclusions: ExclusionProvider) -> None:
        """Build the movers once the run's exclusion set is known."""
        engine = self.engine
        tracer = engine.tracer
        self.resolver = DeferredReferenceResolver(
            self.destination,
            engine.catalogue,
            engine.store,
            exclusions,
            tracer=tracer,
        )
        self.consolidator = ReferenceConsolidator(
            self.source,
            self.destination,
            engine.catalogue,
            engine.store,
            exclusions,
            self.resolver,
            tracer=tracer,
        )
        self.bulk = BulkMover(
            self.source,
            self.destination,
            engine.catalogue,
            engine.store,
            exclusions,
            self.resolver,
            tracer=tracer,
            page_size=engine.config.page_size,
        )
        self.parallel = ParallelMover(
            engine.source_engine,
            engine.destination_engine,
            self.source,
            self.destination,
            engine.catalogue,
            engine.store,
            repository_factory=engine.repository_factory,
            exclusions=exclusions,
            resolver=self.resolver,
            tracer=tracer,
            page_size=engine.config.page_size,
        )


class MergeEngine:
    """
    Merges one source database into a destination database.

    Example:
        >>> engine = MergeEngine(src, dst, catalogue, config,
        ...                      exclusions=StaticExclusions({"users": {1}}))
        >>> report = await engine.run(plan)
        >>> report.phases_run
        ['catalogue', 'people', 'encounters', 'obs']
    """

    def __init__(
        self,
        source: AsyncEngine,
        destination: AsyncEngine,
        catalogue: SchemaCatalogue,
        config: MergeConfig,
        *,
        exclusions: ExclusionProvider | None = None,
        repository_factory: RepositoryFactory | None = None,
        tracer: Tracer | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            source: Engine of the database being merged. Only read.
            destination: Engine of the database receiving the rows.
            catalogue: Schema catalogue of both databases.
            config: Run configuration.
            exclusions: Rows to skip and uuid matches. Recorded when the
                source first starts; a resumed run reuses the recorded set
                and ignores this one.
            repository_factory: Builds the merge state repository for a
                destination connection; defaults to the SQLAlchemy one.
            tracer: Optional tracer (if not provided, one will be created).
            progress_callback: Called after every committed sub-transaction
                of a bulk movement, or once when the movement is atomic.
        """
        self.source_engine = source
        self.destination_engine = destination
        self.catalogue = catalogue
        self.config = config
        self.exclusions = exclusions or StaticExclusions()
        self.tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self.store = IdentityMapStore(seed_mappings=config.seed_mappings)
        self.repository_factory = repository_factory or self._default_repository
        self._progress_callback = progress_callback

    def _default_repository(self, conn: AsyncConnection) -> MergeStateRepository:
        return SQLAlchemyMergeStateRepository(conn, self.config.source_id, tracer=self.tracer)

    async def run(self, plan: PhasePlan) -> RunReport:
        """
        Run ``plan`` to completion or to the first failure.

        Returns:
            RunReport with per-entity counts and diagnostics.

        Raises:
            PhasePlanError: The plan is invalid for the catalogue.
            AlreadyProcessedSourceError: The source was merged before.
            MergeRunError: A phase failed; its transaction was rolled back.
        """
        plan.validate(self.catalogue)
        config = self.config
        report = RunReport(source_id=config.source_id, dry_run=config.dry_run)

        with self.tracer.span(
            "beehive.engine.run",
            {
                ATTR_MERGE_SOURCE: config.source_id,
                ATTR_DRY_RUN: config.dry_run,
            },
        ):
            logger.info(
                "Starting merge of %s (%d phases%s)",
                config.source_id,
                len(plan),
                ", dry run" if config.dry_run else "",
            )
            async with (
                self.source_engine.connect() as source,
                self.destination_engine.connect() as destination,
            ):
                outer = await destination.begin() if config.dry_run else None
                try:
                    await self._run_phases(plan, _Run(self, source, destination), report)
                finally:
                    if outer is not None:
                        await outer.rollback()
                        logger.info("Dry run: rolled back all changes for %s", config.source_id)

            logger.info(
                "Merge of %s finished: %d rows moved in %d phases (%d skipped)",
                config.source_id,
                report.total_moved,
                len(report.phases_run),
                len(report.phases_skipped),
            )
            return report

    async def _run_phases(self, plan: PhasePlan, run: _Run, report: RunReport) -> None:
        async with open_transaction(run.destination):
            await run.repo.create_tables()
            position = await run.checkpoints.start(plan)
            exclusions = await self._fix_exclusions(run.repo, position)
            entities = [m.entity for _, m in plan.movements()]
            await self.store.restore_all(run.repo, entities)
        run.bind(exclusions)

        moved: set[str] = set(plan.external)
        for phase in plan:
            if phase.name in position.skip:
                report.phases_skipped.append(phase.name)
                moved.update(phase.entities)
                logger.info("Skipping phase %s, already passed", phase.name)
                continue

            rows_done = position.rows_done if phase.name == position.phase else 0
            final = phase.name == plan.final_phase.name
            try:
                with self.tracer.span(
                    "beehive.engine.phase",
                    {ATTR_MERGE_PHASE: phase.name},
                ):
                    logger.info("Phase %s started", phase.name)
                    if not self.config.dry_run:
                        async with open_transaction(run.destination):
                            await run.checkpoints.record_progress(run.repo, phase.name, rows_done)
                    if self._is_chunked(phase):
                        await self._run_chunked_phase(run, phase, rows_done, final, moved, report)
                    else:
                        await self._run_atomic_phase(run, phase, rows_done, final, moved, report)
            except Exception as e:
                self._reset(run)
                logger.error(
                    "Phase %s failed on %s: %s",
                    phase.name,
                    run.current or "-",
                    e,
                    exc_info=not isinstance(e, MergeError),
                )
                raise MergeRunError(
                    phase.name,
                    run.current,
                    e,
                    source_id=self.config.source_id,
                ) from e
            report.phases_run.append(phase.name)

    async def _fix_exclusions(
        self,
        repo: MergeStateRepository,
        position: ResumePosition,
    ) -> ExclusionProvider:
        """
        Exclusion set of the run.

        A first start records the configured set. A resumed run reloads the
        recorded one so committed offsets keep pointing at the same source
        rows, whatever a fresh uuid match would find now.
        """
        if position.resumed:
            rows = await repo.load_exclusions()
            logger.info(
                "Resuming %s with the %d exclusions recorded at its first start",
                self.config.source_id,
                len(rows),
            )
            return StaticExclusions.from_rows(rows)
        rows = exclusion_rows(self.exclusions, self.catalogue.names)
        written = await repo.replace_exclusions(rows)
        logger.debug("Recorded %d exclusions for %s", written, self.config.source_id)
        return self.exclusions

    async def _run_atomic_phase(
        self,
        run: _Run,
        phase: MigrationPhase,
        rows_done: int,
        final: bool,
        moved: set[str],
        report: RunReport,
    ) -> None:
        async with open_transaction(run.destination):
            for index, movement in enumerate(phase.movements):
                run.current = movement.entity
                result = await self._move(
                    run, phase, movement, start_offset=rows_done if index == 0 else 0
                )
                report.add(result)
                moved.add(movement.entity)
                await self._resolve_ready(run, moved, report)
            run.current = None
            await self._finish_phase(run, phase, final)

    async def _run_chunked_phase(
        self,
        run: _Run,
        phase: MigrationPhase,
        rows_done: int,
        final: bool,
        moved: set[str],
        report: RunReport,
    ) -> None:
        movement = phase.movements[0]
        run.current = movement.entity
        result = await self._move(run, phase, movement, start_offset=rows_done)
        report.add(result)
        moved.add(movement.entity)
        async with open_transaction(run.destination):
            await self._resolve_ready(run, moved, report)
            run.current = None
            await self._finish_phase(run, phase, final)

    async def _finish_phase(self, run: _Run, phase: MigrationPhase, final: bool) -> None:
        written = await self.store.persist_all(run.repo)
        logger.debug("Persisted %d identity entries for phase %s", written, phase.name)
        await run.checkpoints.record_passed(run.repo, phase.name)
        if final:
            await run.repo.register_source()
            logger.info("Registered %s as merged", self.config.source_id)

    async def _move(
        self,
        run: _Run,
        phase: MigrationPhase,
        movement: Movement,
        *,
        start_offset: int = 0,
    ) -> MoveResult:
        with self.tracer.span(
            "beehive.engine.move",
            {
                ATTR_MERGE_PHASE: phase.name,
                ATTR_ENTITY_TYPE: movement.entity,
            },
        ):
            page_size = movement.page_size or self.config.page_size
            if movement.kind is MovementKind.CONSOLIDATE:
                return await run.consolidator.consolidate(movement.entity, movement.business_key)

            if movement.kind is MovementKind.PARALLEL and not self.config.dry_run:
                return await run.parallel.move_parallel(
                    movement.entity,
                    movement.workers or self.config.workers,
                    phase=phase.name,
                    checkpoints=run.checkpoints,
                    page_size=page_size,
                )

            commit_every = None if self.config.dry_run else self._commit_every(phase, movement)
            return await run.bulk.move_all(
                movement.entity,
                page_size=page_size,
                start_offset=start_offset,
                commit_every=commit_every,
                checkpoints=run.checkpoints if commit_every else None,
                repo=run.repo if commit_every else None,
                phase=phase.name if commit_every else None,
                progress_callback=self._progress_callback,
            )

    def _commit_every(self, phase: MigrationPhase, movement: Movement) -> int | None:
        """Sub-transaction size of a bulk movement, if it has one."""
        if movement.kind is not MovementKind.BULK:
            return None
        if movement.commit_every is not None:
            return movement.commit_every
        if len(phase.movements) == 1:
            return self.config.commit_every
        return None

    def _is_chunked(self, phase: MigrationPhase) -> bool:
        """Whether ``phase`` commits on its own schedule instead of once."""
        if self.config.dry_run or len(phase.movements) != 1:
            return False
        movement = phase.movements[0]
        return movement.kind is MovementKind.PARALLEL or self._commit_every(phase, movement) is not None

    async def _resolve_ready(self, run: _Run, moved: Collection[str], report: RunReport) -> None:
        updated = await run.resolver.resolve_ready(moved)
        for owner, count in updated.items():
            result = report.results.setdefault(owner, MoveResult(entity=owner))
            result.updated += count
        for diagnostic in run.resolver.take_diagnostics():
            result = report.results.setdefault(diagnostic.entity, MoveResult(entity=diagnostic.entity))
            result.diagnostics.append(diagnostic)

    def _reset(self, run: _Run) -> None:
        """Forget state the rolled back transaction never committed."""
        for entity in self.store.entities:
            self.store.discard_pending(entity)
        run.resolver.clear()


__all__ = [
    "MergeEngine",
]
