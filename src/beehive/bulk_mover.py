"""
BulkMover - Dependency-ordered paged copy of high-cardinality entity types.

The BulkMover streams every source row of an entity type in fixed-size
pages, rewrites foreign keys through the identity map store, assigns a
contiguous block of destination ids starting at the destination's next free
id, and inserts each page with one multi-row statement.

Responsibilities:
    - Page through the source in a deterministic order
    - Skip excluded rows in SQL so offsets stay stable between attempts
    - Rewrite foreign keys and record deferred references
    - Verify ``destination_after == destination_before + moved``
    - Optionally commit every K rows with a checkpoint (large tables)

Usage:
    >>> mover = BulkMover(source, dest, catalogue, store, exclusions, resolver)
    >>> result = await mover.move_all("person", page_size=2)
    >>> result.moved, result.first_dest_id, result.pages
    (3, 501, 2)
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncConnection

from beehive.catalogue import SchemaCatalogue
from beehive.deferred import DeferredReferenceResolver
from beehive.exceptions import VerificationMismatchError
from beehive.exclusions import ExclusionProvider, StaticExclusions
from beehive.identity_map import IdentityMapStore, LayeredLookup
from beehive.models import DeferredReference, EntityType, MoveResult
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import (
    ATTR_ENTITY_TYPE,
    ATTR_MERGE_PHASE,
    ATTR_OFFSET,
    ATTR_PAGE_SIZE,
    ATTR_ROW_COUNT,
)
from beehive.repositories._connection import open_transaction
from beehive.rewrite import RowRewriter
from beehive.statements import count_rows, fetch_page, insert_rows, next_free_id

if TYPE_CHECKING:
    from beehive.checkpoint import CheckpointManager
    from beehive.repositories.merge_state import MergeStateRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveProgress:
    """
    Progress information for a bulk move.

    Attributes:
        entity: Entity type being moved.
        rows_done: Rows of the range handled so far, including resumed ones.
        rows_total: Rows to move in total.
        rows_per_second: Throughput of this attempt.
    """

    entity: str
    rows_done: int
    rows_total: int
    rows_per_second: float

    @property
    def progress_percent(self) -> float:
        if self.rows_total == 0:
            return 100.0
        return min(100.0, (self.rows_done / self.rows_total) * 100)


ProgressCallback = Callable[[MoveProgress], None]


@dataclass
class RangeOutcome:
    """What one pass of the page loop did."""

    moved: int = 0
    pages: int = 0
    next_id: int = 0


async def copy_range(
    source: AsyncConnection,
    destination: AsyncConnection,
    entity_type: EntityType,
    rewriter: RowRewriter,
    local: dict[int, int],
    *,
    offset: int,
    count: int,
    first_dest_id: int,
    page_size: int,
    excluded: Collection[int] = (),
    on_page: Callable[[list[tuple[int, int]]], None] | None = None,
) -> RangeOutcome:
    """
    Page loop over the rows ``[offset, offset + count)`` in source order.

    Every row gets the next sequential destination id and its entry is put
    into ``local`` before the following row is rewritten, so a row may refer
    to an earlier row of the same page. ``on_page`` receives each page's
    entries once its insert succeeded.

    Raises:
        VerificationMismatchError: The source ran out of rows early.
        StatementFailureError: An insert failed.
    """
    outcome = RangeOutcome(next_id=first_dest_id)
    pk = entity_type.primary_key
    columns: list[str] = []
    while outcome.moved < count:
        limit = min(page_size, count - outcome.moved)
        rows = await fetch_page(source, entity_type, offset + outcome.moved, limit, excluded)
        if not rows:
            raise VerificationMismatchError(
                entity_type.name,
                expected=count,
                actual=outcome.moved,
            )
        if not columns:
            columns = rewriter.columns_of(rows[0])

        values: list[dict[str, Any]] = []
        entries: list[tuple[int, int]] = []
        for row in rows:
            dest_id = outcome.next_id
            outcome.next_id += 1
            values.append(rewriter.rewrite(row, dest_id))
            local[row[pk]] = dest_id
            entries.append((row[pk], dest_id))

        await insert_rows(destination, entity_type, columns, values)
        outcome.moved += len(values)
        outcome.pages += 1
        if on_page is not None:
            on_page(entries)
    return outcome


class BulkMover:
    """
    Moves whole entity types page by page.

    Example:
        >>> mover = BulkMover(source, dest, catalogue, store)
        >>> result = await mover.move_all("obs", commit_every=50_000,
        ...                               checkpoints=checkpoints, repo=repo,
        ...                               phase="obs", start_offset=150_000)
    """

    def __init__(
        self,
        source: AsyncConnection,
        destination: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
        exclusions: ExclusionProvider | None = None,
        resolver: DeferredReferenceResolver | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        page_size: int = 1000,
    ) -> None:
        """
        Initialize the mover.

        Args:
            source: Source connection, read only.
            destination: Destination connection; all writes go through
                ``open_transaction`` on it.
            catalogue: Schema catalogue.
            store: Identity map store of the run.
            exclusions: Rows to skip and uuid matches.
            resolver: Receives the deferred references of moved rows.
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing.
            page_size: Default rows per page.
        """
        self._source = source
        self._destination = destination
        self._catalogue = catalogue
        self._store = store
        self._exclusions = exclusions or StaticExclusions()
        self._resolver = resolver
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._page_size = page_size

    def _entity_type(self, entity: str, order_column: str | None) -> EntityType:
        entity_type = self._catalogue[entity]
        if order_column is not None and order_column != entity_type.order_column:
            entity_type = dataclasses.replace(entity_type, order_column=order_column)
        return entity_type

    async def move_all(
        self,
        entity: str,
        order_column: str | None = None,
        page_size: int | None = None,
        exclusions: ExclusionProvider | None = None,
        start_offset: int = 0,
        *,
        commit_every: int | None = None,
        checkpoints: CheckpointManager | None = None,
        repo: MergeStateRepository | None = None,
        phase: str | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> MoveResult:
        """
        Move every non-excluded source row of ``entity``.

        Without ``commit_every`` the move runs in the caller's transaction
        (or a single new one). With it, every ``commit_every`` rows the
        pending identity entries and a progress checkpoint are written and
        the sub-transaction commits; ``start_offset`` resumes after the last
        committed checkpoint.

        Args:
            entity: Entity type name.
            order_column: Overrides the entity's order column.
            page_size: Rows per page; defaults to the mover's.
            exclusions: Overrides the mover's exclusion provider.
            start_offset: Rows of the ordered source already moved.
            commit_every: Sub-transaction size in rows.
            checkpoints: Checkpoint manager, required with commit_every.
            repo: Merge state repository, required with commit_every.
            phase: Phase name, required with commit_every.
            progress_callback: Called after every committed sub-transaction,
                or once at the end when ``commit_every`` is not set.

        Returns:
            MoveResult for the rows moved by this call.

        Raises:
            VerificationMismatchError: Destination count does not add up.
            UnresolvedRequiredReferenceError: A required reference has no
                mapping.
            StatementFailureError: An insert failed.
        """
        if commit_every is not None and (checkpoints is None or repo is None or phase is None):
            raise ValueError("commit_every requires checkpoints, repo and phase")

        entity_type = self._entity_type(entity, order_column)
        page_size = page_size or self._page_size
        provider = exclusions or self._exclusions
        excluded = provider.excluded_ids(entity)

        with self._tracer.span(
            "beehive.bulk_mover.move_all",
            {
                ATTR_ENTITY_TYPE: entity,
                ATTR_PAGE_SIZE: page_size,
                ATTR_OFFSET: start_offset,
                ATTR_MERGE_PHASE: phase or "",
            },
        ):
            async with open_transaction(self._destination) as dest:
                total = await count_rows(self._source, entity_type, excluded)
                before = await count_rows(dest, entity_type)
                next_id = await next_free_id(dest, entity_type)

            logger.info(
                "Moving %s: %d rows from offset %d, ids from %d",
                entity,
                total - start_offset,
                start_offset,
                next_id,
            )

            result = MoveResult(entity=entity, first_dest_id=next_id if total > start_offset else None)
            if start_offset:
                await self._recover_deferred(entity_type, 0, start_offset, excluded, result)

            local: dict[int, int] = {}
            rewriter = RowRewriter(entity_type, LayeredLookup(entity, local, self._store), provider)
            started = time.monotonic()
            offset = start_offset
            step = commit_every or max(total - start_offset, 1)

            def merge_page(entries: list[tuple[int, int]]) -> None:
                self._store.merge(entity, entries)
                local.clear()

            while offset < total:
                end = min(total, offset + step)
                try:
                    async with open_transaction(self._destination) as dest:
                        outcome = await copy_range(
                            self._source,
                            dest,
                            entity_type,
                            rewriter,
                            local,
                            offset=offset,
                            count=end - offset,
                            first_dest_id=next_id,
                            page_size=page_size,
                            excluded=excluded,
                            on_page=merge_page,
                        )
                        if commit_every is not None:
                            assert checkpoints is not None and repo is not None and phase
                            await self._store.persist(entity, repo)
                            await checkpoints.record_progress(repo, phase, end)
                except Exception:
                    self._store.discard_pending(entity)
                    rewriter.drain()
                    local.clear()
                    raise

                deferred, diagnostics = rewriter.drain()
                self._record_deferred(deferred, result)
                result.diagnostics.extend(diagnostics)
                result.moved += outcome.moved
                result.pages += outcome.pages
                next_id = outcome.next_id
                offset = end

                if progress_callback is not None:
                    elapsed = time.monotonic() - started
                    progress_callback(
                        MoveProgress(
                            entity=entity,
                            rows_done=offset,
                            rows_total=total,
                            rows_per_second=result.moved / elapsed if elapsed > 0 else 0.0,
                        )
                    )

            async with open_transaction(self._destination) as dest:
                after = await count_rows(dest, entity_type)
            if after != before + result.moved:
                raise VerificationMismatchError(
                    entity,
                    expected=before + result.moved,
                    actual=after,
                    phase=phase,
                )

            logger.info(
                "Moved %d %s rows in %d pages (%d deferred)",
                result.moved,
                entity,
                result.pages,
                len(result.deferred),
            )
            return result

    async def move_range(
        self,
        entity: str,
        offset: int,
        count: int,
        first_dest_id: int,
        *,
        page_size: int | None = None,
        local: dict[int, int] | None = None,
        source: AsyncConnection | None = None,
        destination: AsyncConnection | None = None,
        lookup: Any = None,
    ) -> MoveResult:
        """
        Move the rows ``[offset, offset + count)`` with explicit ids.

        The identity entries are only written into ``local``; the caller
        decides when they reach the store. Parallel workers pass their own
        connections and a lookup over the shared snapshot.

        Args:
            entity: Entity type name.
            offset: First row in source order.
            count: Number of rows.
            first_dest_id: Destination id of the first row.
            page_size: Rows per page; defaults to the mover's.
            local: Receives ``src_id -> dest_id`` for every moved row.
            source: Source connection; defaults to the mover's.
            destination: Destination connection; defaults to the mover's.
            lookup: Identity lookup behind ``local``; defaults to the store.
        """
        entity_type = self._catalogue[entity]
        local = {} if local is None else local
        page_size = page_size or self._page_size
        with self._tracer.span(
            "beehive.bulk_mover.move_range",
            {
                ATTR_ENTITY_TYPE: entity,
                ATTR_OFFSET: offset,
                ATTR_ROW_COUNT: count,
            },
        ):
            rewriter = RowRewriter(
                entity_type,
                LayeredLookup(entity, local, lookup if lookup is not None else self._store),
                self._exclusions,
            )
            outcome = await copy_range(
                source if source is not None else self._source,
                destination if destination is not None else self._destination,
                entity_type,
                rewriter,
                local,
                offset=offset,
                count=count,
                first_dest_id=first_dest_id,
                page_size=page_size,
                excluded=self._exclusions.excluded_ids(entity),
            )
            deferred, diagnostics = rewriter.drain()
            return MoveResult(
                entity=entity,
                moved=outcome.moved,
                first_dest_id=first_dest_id if outcome.moved else None,
                pages=outcome.pages,
                deferred=deferred,
                diagnostics=diagnostics,
            )

    async def recover_deferred(
        self,
        entity: str,
        offset: int,
        count: int,
    ) -> list[DeferredReference]:
        """
        Rebuild the deferred references of rows moved by an earlier attempt.

        Reads only the primary key and deferred columns of the range and
        maps each row through the restored identity map.
        """
        entity_type = self._catalogue[entity]
        result = MoveResult(entity=entity)
        await self._recover_deferred(
            entity_type, offset, count, self._exclusions.excluded_ids(entity), result
        )
        return result.deferred

    async def _recover_deferred(
        self,
        entity_type: EntityType,
        offset: int,
        count: int,
        excluded: Collection[int],
        result: MoveResult,
    ) -> None:
        keys = entity_type.deferred_keys
        if not keys or count <= 0:
            return
        columns = [fk.column for fk in keys]
        pk = entity_type.primary_key
        identity_map = self._store.map_for(entity_type.name)
        recovered: list[DeferredReference] = []
        done = 0
        while done < count:
            rows = await fetch_page(
                self._source,
                entity_type,
                offset + done,
                min(self._page_size, count - done),
                excluded,
                columns=columns,
            )
            if not rows:
                break
            for row in rows:
                dest_id = identity_map.get(row[pk])
                if dest_id is None:
                    continue
                for column in columns:
                    value = row[column]
                    if value is not None:
                        recovered.append(
                            DeferredReference(
                                entity=entity_type.name,
                                column=column,
                                dest_id=dest_id,
                                source_value=value,
                            )
                        )
            done += len(rows)
        logger.info(
            "Recovered %d deferred %s references from %d committed rows",
            len(recovered),
            entity_type.name,
            done,
        )
        self._record_deferred(recovered, result)

    def _record_deferred(self, refs: list[DeferredReference], result: MoveResult) -> None:
        result.deferred.extend(refs)
        if self._resolver is not None:
            self._resolver.record_many(refs)


__all__ = [
    "MoveProgress",
    "ProgressCallback",
    "RangeOutcome",
    "copy_range",
    "BulkMover",
]
