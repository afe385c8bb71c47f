"""
Deferred Reference Resolver.

A row can reference a row of its own entity type that has not been moved
yet (an observation grouping later observations, a location whose parent
has a larger id). Such columns are written as null at insert time and the
``(destination id, source value)`` pair is recorded here. Once the
referenced entity type is fully moved the resolver looks every recorded
value up and patches the column with batched UPDATE statements. It never
inserts rows.

Values that still cannot be resolved are reported as
``UnresolvedOptionalReference`` diagnostics and logged, never raised.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncConnection

from beehive.catalogue import SchemaCatalogue
from beehive.exceptions import CatalogueError, UnresolvedOptionalReference
from beehive.exclusions import ExclusionProvider, StaticExclusions
from beehive.identity_map import IdentityLookup
from beehive.models import DeferredReference
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import (
    ATTR_COLUMN_NAME,
    ATTR_ENTITY_TYPE,
    ATTR_ROW_COUNT,
)
from beehive.statements import update_column

logger = logging.getLogger(__name__)


class DeferredReferenceResolver:
    """
    Collects deferred references and patches them once resolvable.

    Args:
        conn: Destination connection the patches are written through.
        catalogue: Schema catalogue.
        lookup: Identity lookup, normally the run's IdentityMapStore.
        exclusions: Exclusion provider consulted for uuid matches.
        tracer: Optional tracer (if not provided, one will be created).

    Example:
        >>> resolver = DeferredReferenceResolver(dest, catalogue, store)
        >>> resolver.record(DeferredReference("location", "parent_location", 12, 40))
        >>> await resolver.resolve("location", "parent_location")
        1
    """

    def __init__(
        self,
        conn: AsyncConnection,
        catalogue: SchemaCatalogue,
        lookup: IdentityLookup,
        exclusions: ExclusionProvider | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._catalogue = catalogue
        self._lookup = lookup
        self._exclusions = exclusions or StaticExclusions()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._pending: dict[tuple[str, str], list[DeferredReference]] = defaultdict(list)
        self.diagnostics: list[UnresolvedOptionalReference] = []

    def record(self, ref: DeferredReference) -> None:
        self._pending[(ref.entity, ref.column)].append(ref)

    def record_many(self, refs: Iterable[DeferredReference]) -> int:
        count = 0
        for ref in refs:
            self.record(ref)
            count += 1
        return count

    def pending(self, entity: str, column: str) -> list[DeferredReference]:
        return list(self._pending.get((entity, column), ()))

    def pending_columns(self) -> list[tuple[str, str]]:
        """``(entity, column)`` pairs with unresolved references."""
        return [key for key, refs in self._pending.items() if refs]

    def __len__(self) -> int:
        return sum(len(refs) for refs in self._pending.values())

    async def resolve(self, entity: str, column: str) -> int:
        """
        Patch every pending reference of ``entity.column``.

        Returns:
            Number of rows updated.
        """
        refs = self._pending.pop((entity, column), [])
        if not refs:
            return 0

        entity_type = self._catalogue[entity]
        fk = entity_type.foreign_key(column)
        if fk is None:
            raise CatalogueError(f"{entity}.{column} is not a foreign key")

        with self._tracer.span(
            "beehive.deferred.resolve",
            {
                ATTR_ENTITY_TYPE: entity,
                ATTR_COLUMN_NAME: column,
                ATTR_ROW_COUNT: len(refs),
            },
        ):
            updates: list[tuple[int, int]] = []
            for ref in refs:
                dest_value = self._lookup.get(fk.target, ref.source_value)
                if dest_value is None:
                    dest_value = self._exclusions.uuid_match(fk.target, ref.source_value)
                if dest_value is None:
                    diagnostic = UnresolvedOptionalReference(
                        entity=entity,
                        column=column,
                        target=fk.target,
                        source_value=ref.source_value,
                        dest_id=ref.dest_id,
                    )
                    logger.warning("Unresolved optional reference: %s", diagnostic)
                    self.diagnostics.append(diagnostic)
                    continue
                updates.append((ref.dest_id, dest_value))

            updated = await update_column(self._conn, entity_type, column, updates)
            logger.info(
                "Resolved %d of %d deferred %s.%s references",
                updated,
                len(refs),
                entity,
                column,
            )
            return updated

    async def resolve_all(self, entity: str) -> int:
        """Resolve every pending column of ``entity``."""
        with self._tracer.span(
            "beehive.deferred.resolve_all",
            {ATTR_ENTITY_TYPE: entity},
        ):
            total = 0
            for owner, column in self.pending_columns():
                if owner == entity:
                    total += await self.resolve(owner, column)
            return total

    async def resolve_ready(self, moved: Iterable[str]) -> dict[str, int]:
        """
        Resolve every pending column whose target entity type is fully moved.

        Returns:
            Rows updated per owning entity type.
        """
        done = set(moved)
        updated: dict[str, int] = {}
        for owner, column in self.pending_columns():
            fk = self._catalogue[owner].foreign_key(column)
            if fk is not None and fk.target in done:
                count = await self.resolve(owner, column)
                updated[owner] = updated.get(owner, 0) + count
        if updated:
            logger.debug("Resolved deferred references: %s", updated)
        return updated

    def take_diagnostics(self, entity: str | None = None) -> list[UnresolvedOptionalReference]:
        """Return and forget the diagnostics collected so far."""
        if entity is None:
            taken, self.diagnostics = self.diagnostics, []
            return taken
        taken = [d for d in self.diagnostics if d.entity == entity]
        self.diagnostics = [d for d in self.diagnostics if d.entity != entity]
        return taken

    def clear(self) -> None:
        """Forget all pending references, e.g. after a rollback."""
        self._pending.clear()


__all__ = [
    "DeferredReferenceResolver",
]
