"""
Parallel Chunked Mover.

Splits the highest-volume entity type into contiguous row ranges and moves
each range with its own worker. Each worker has its own source and
destination connections and its own transaction, and reports back exactly
once through a completion queue.

Workers read foreign keys through one shared read-only identity snapshot
and collect their own entries locally. The coordinator merges the entries
into the store after every worker has reported, so the store is never
written concurrently.

A worker that fails rolls back only its own transaction. Chunks that
committed record a chunk checkpoint together with their rows and identity
entries, so a retry skips them.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.bulk_mover import BulkMover, copy_range
from beehive.catalogue import SchemaCatalogue
from beehive.checkpoint import CheckpointManager
from beehive.deferred import DeferredReferenceResolver
from beehive.exceptions import ParallelMoveError, PhasePlanError, VerificationMismatchError
from beehive.exclusions import ExclusionProvider, StaticExclusions
from beehive.identity_map import IdentityMapStore, LayeredLookup
from beehive.models import EntityType, MoveResult, WorkerChunk, WorkerResult
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import (
    ATTR_ENTITY_TYPE,
    ATTR_FIRST_DEST_ID,
    ATTR_MERGE_PHASE,
    ATTR_OFFSET,
    ATTR_ROW_COUNT,
    ATTR_WORKER_COUNT,
    ATTR_WORKER_ID,
)
from beehive.repositories._connection import open_transaction
from beehive.repositories.merge_state import MergeStateRepository
from beehive.rewrite import RowRewriter
from beehive.statements import count_rows, next_free_id

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[AsyncConnection], MergeStateRepository]


def partition(total: int, workers: int) -> list[tuple[int, int]]:
    """
    Split ``total`` rows into ``workers`` contiguous ``(offset, count)`` ranges.

    The remainder goes to the first range.

    Example:
        >>> partition(10, 4)
        [(0, 4), (4, 2), (6, 2), (8, 2)]
    """
    if workers < 1:
        raise ValueError("workers must be at least 1")
    base, remainder = divmod(total, workers)
    ranges: list[tuple[int, int]] = []
    offset = 0
    for index in range(workers):
        count = base + remainder if index == 0 else base
        ranges.append((offset, count))
        offset += count
    return ranges


class ParallelMover:
    """
    Moves one entity type with a fixed pool of independent workers.

    Example:
        >>> mover = ParallelMover(src_engine, dst_engine, src, dst, catalogue,
        ...                       store, repository_factory=factory)
        >>> result = await mover.move_parallel("obs", 4, phase="obs",
        ...                                    checkpoints=checkpoints)
        >>> result.moved
        10000
    """

    def __init__(
        self,
        source_engine: AsyncEngine,
        destination_engine: AsyncEngine,
        source: AsyncConnection,
        destination: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
        *,
        repository_factory: RepositoryFactory,
        exclusions: ExclusionProvider | None = None,
        resolver: DeferredReferenceResolver | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        page_size: int = 1000,
    ) -> None:
        """
        Initialize the mover.

        Args:
            source_engine: Engine workers open their source connections on.
            destination_engine: Engine workers open their destination
                connections on.
            source: Coordinator source connection.
            destination: Coordinator destination connection. It must not be
                inside a transaction while workers run.
            catalogue: Schema catalogue.
            store: Identity map store of the run.
            repository_factory: Builds a merge state repository on a worker's
                destination connection.
            exclusions: Rows to skip and uuid matches.
            resolver: Receives the deferred references of moved rows.
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing.
            page_size: Rows per page.
        """
        self._source_engine = source_engine
        self._destination_engine = destination_engine
        self._source = source
        self._destination = destination
        self._catalogue = catalogue
        self._store = store
        self._repository_factory = repository_factory
        self._exclusions = exclusions or StaticExclusions()
        self._resolver = resolver
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._page_size = page_size
        self._bulk = BulkMover(
            source,
            destination,
            catalogue,
            store,
            self._exclusions,
            resolver,
            tracer=self._tracer,
            page_size=page_size,
        )

    async def move_parallel(
        self,
        entity: str,
        workers: int,
        *,
        phase: str,
        checkpoints: CheckpointManager,
        page_size: int | None = None,
    ) -> MoveResult:
        """
        Move ``entity`` with ``workers`` workers.

        Args:
            entity: Entity type name.
            workers: Number of contiguous ranges and workers.
            phase: Phase the movement belongs to.
            checkpoints: Checkpoint manager; chunk records are written
                through it.
            page_size: Rows per page; defaults to the mover's.

        Returns:
            MoveResult summed over the workers of this call.

        Raises:
            ParallelMoveError: At least one worker failed.
            PhasePlanError: Recorded chunks do not match the partition.
            VerificationMismatchError: Destination count does not add up.
        """
        entity_type = self._catalogue[entity]
        page_size = page_size or self._page_size
        excluded = self._exclusions.excluded_ids(entity)

        with self._tracer.span(
            "beehive.parallel.move_parallel",
            {
                ATTR_ENTITY_TYPE: entity,
                ATTR_WORKER_COUNT: workers,
                ATTR_MERGE_PHASE: phase,
            },
        ):
            total = await count_rows(self._source, entity_type, excluded)
            ranges = partition(total, workers)
            async with open_transaction(self._destination) as dest:
                completed = await checkpoints.completed_chunks(phase)
                before = await count_rows(dest, entity_type)
                next_id = await next_free_id(dest, entity_type)

            for index, record in completed.items():
                if index >= len(ranges) or ranges[index][1] != record.rows_done:
                    raise PhasePlanError(
                        f"Chunk {index} of {entity} recorded {record.rows_done} rows, "
                        f"which does not match a {workers}-way split of {total} rows",
                        phase=phase,
                        entity=entity,
                    )

            snapshot = self._store.snapshot(entity_type.fk_targets | {entity})
            chunks: list[WorkerChunk] = []
            for index, (offset, count) in enumerate(ranges):
                if index in completed or count == 0:
                    continue
                chunks.append(WorkerChunk(index, offset, count, next_id, snapshot))
                next_id += count

            logger.info(
                "Moving %s with %d workers: %d rows, %d chunks already done",
                entity,
                workers,
                total,
                len(completed),
            )

            queue: asyncio.Queue[WorkerResult] = asyncio.Queue()
            tasks = [
                asyncio.create_task(
                    self._run_worker(chunk, entity_type, phase, checkpoints, page_size, queue)
                )
                for chunk in chunks
            ]
            results: list[WorkerResult] = []
            for _ in tasks:
                results.append(await queue.get())
            # Cancelled workers already reported through the queue
            await asyncio.gather(*tasks, return_exceptions=True)

            result = MoveResult(
                entity=entity,
                first_dest_id=chunks[0].first_dest_id if chunks else None,
            )
            errors: dict[int, str] = {}
            for worker in sorted(results, key=lambda r: r.worker_id):
                if not worker.ok:
                    assert worker.error is not None
                    errors[worker.worker_id] = worker.error
                    continue
                self._store.merge(entity, worker.mappings, persisted=True)
                result.moved += worker.moved
                result.deferred.extend(worker.deferred)
                result.diagnostics.extend(worker.diagnostics)
                if self._resolver is not None:
                    self._resolver.record_many(worker.deferred)

            if errors:
                logger.error(
                    "%d of %d workers failed moving %s",
                    len(errors),
                    len(chunks),
                    entity,
                )
                raise ParallelMoveError(entity, errors, moved=result.moved)

            for index in sorted(completed):
                offset, count = ranges[index]
                recovered = await self._bulk.recover_deferred(entity, offset, count)
                result.deferred.extend(recovered)

            async with open_transaction(self._destination) as dest:
                after = await count_rows(dest, entity_type)
            if after != before + result.moved:
                raise VerificationMismatchError(
                    entity,
                    expected=before + result.moved,
                    actual=after,
                    phase=phase,
                )

            result.pages = sum(math.ceil(chunk.count / page_size) for chunk in chunks)
            logger.info("Moved %d %s rows with %d workers", result.moved, entity, len(chunks))
            return result

    async def _run_worker(
        self,
        chunk: WorkerChunk,
        entity_type: EntityType,
        phase: str,
        checkpoints: CheckpointManager,
        page_size: int,
        queue: asyncio.Queue[WorkerResult],
    ) -> None:
        """Move one chunk and put exactly one WorkerResult on ``queue``."""
        with self._tracer.span(
            "beehive.parallel.worker",
            {
                ATTR_WORKER_ID: chunk.index,
                ATTR_OFFSET: chunk.offset,
                ATTR_ROW_COUNT: chunk.count,
                ATTR_FIRST_DEST_ID: chunk.first_dest_id,
            },
        ):
            message = WorkerResult(worker_id=chunk.index, error="worker stopped before finishing")
            try:
                message = await self._move_chunk(chunk, entity_type, phase, checkpoints, page_size)
            except Exception as e:
                logger.error(
                    "Worker %d failed on %s rows %d-%d: %s",
                    chunk.index,
                    entity_type.name,
                    chunk.offset,
                    chunk.offset + chunk.count,
                    e,
                    exc_info=True,
                )
                message = WorkerResult(worker_id=chunk.index, error=f"{type(e).__name__}: {e}")
            finally:
                queue.put_nowait(message)

    async def _move_chunk(
        self,
        chunk: WorkerChunk,
        entity_type: EntityType,
        phase: str,
        checkpoints: CheckpointManager,
        page_size: int,
    ) -> WorkerResult:
        local: dict[int, int] = {}
        base = chunk.snapshot if chunk.snapshot is not None else self._store
        lookup = LayeredLookup(entity_type.name, local, base)
        rewriter = RowRewriter(entity_type, lookup, self._exclusions)
        async with (
            self._source_engine.connect() as src,
            self._destination_engine.connect() as dst,
            dst.begin(),
        ):
            outcome = await copy_range(
                src,
                dst,
                entity_type,
                rewriter,
                local,
                offset=chunk.offset,
                count=chunk.count,
                first_dest_id=chunk.first_dest_id,
                page_size=page_size,
                excluded=self._exclusions.excluded_ids(entity_type.name),
            )
            repo = self._repository_factory(dst)
            await repo.insert_mappings(entity_type.name, list(local.items()))
            await checkpoints.record_chunk_passed(repo, phase, chunk.index, outcome.moved)

        deferred, diagnostics = rewriter.drain()
        logger.debug("Worker %d committed %d %s rows", chunk.index, outcome.moved, entity_type.name)
        return WorkerResult(
            worker_id=chunk.index,
            moved=outcome.moved,
            mappings=tuple(local.items()),
            deferred=tuple(deferred),
            diagnostics=tuple(diagnostics),
        )


__all__ = [
    "RepositoryFactory",
    "partition",
    "ParallelMover",
]
