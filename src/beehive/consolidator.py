"""
Reference Consolidator.

Low-cardinality catalogue entity types (roles, encounter types, programs,
...) usually exist on both sides already. The consolidator matches every
source row against the destination by business key or by external
identifier, maps matched rows without inserting them, and inserts only the
rest.

Business-key components that are foreign keys are compared through the
identity map, never by raw source id. A key with a null component never
matches anything.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection

from beehive.catalogue import SchemaCatalogue
from beehive.deferred import DeferredReferenceResolver
from beehive.exceptions import UnresolvedRequiredReferenceError, VerificationMismatchError
from beehive.exclusions import ExclusionProvider, StaticExclusions
from beehive.identity_map import IdentityMapStore, LayeredLookup
from beehive.models import EntityType, MoveResult
from beehive.observability import Tracer, create_tracer
from beehive.observability.attributes import ATTR_ENTITY_TYPE, ATTR_TABLE_NAME
from beehive.rewrite import RowRewriter
from beehive.statements import count_rows, fetch_all, insert_rows, next_free_id

logger = logging.getLogger(__name__)

BusinessKey = tuple[Any, ...]


class ReferenceConsolidator:
    """
    Inserts only the catalogue rows the destination does not have yet.

    Example:
        >>> consolidator = ReferenceConsolidator(source, dest, catalogue, store)
        >>> result = await consolidator.consolidate("program_workflow")
        >>> result.moved, result.matched
        (2, 5)
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
    ) -> None:
        self._source = source
        self._destination = destination
        self._catalogue = catalogue
        self._store = store
        self._exclusions = exclusions or StaticExclusions()
        self._resolver = resolver
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def consolidate(
        self,
        entity: str,
        business_key: Sequence[str] | None = None,
    ) -> MoveResult:
        """
        Consolidate one entity type.

        Args:
            entity: Entity type name.
            business_key: Columns to match on; defaults to the catalogue's.

        Returns:
            MoveResult whose ``moved`` is the number of inserted rows.

        Raises:
            UnresolvedRequiredReferenceError: A business-key component
                references a row with no mapping.
            VerificationMismatchError: The destination count does not add up.
            StatementFailureError: The insert failed; the identity map is
                left untouched.
        """
        entity_type = self._catalogue[entity]
        key_columns = tuple(business_key or entity_type.business_key)

        with self._tracer.span(
            "beehive.consolidator.consolidate",
            {ATTR_ENTITY_TYPE: entity, ATTR_TABLE_NAME: entity_type.table},
        ):
            source_rows = await fetch_all(self._source, entity_type)
            dest_rows = await fetch_all(self._destination, entity_type)

            by_key: dict[BusinessKey, int] = {}
            by_uuid: dict[Any, int] = {}
            for row in dest_rows:
                dest_id = row[entity_type.primary_key]
                key = self._dest_key(row, key_columns)
                if key is not None:
                    by_key.setdefault(key, dest_id)
                if entity_type.uuid_column is not None:
                    uuid = row[entity_type.uuid_column]
                    if uuid is not None:
                        by_uuid.setdefault(uuid, dest_id)

            next_id = await next_free_id(self._destination, entity_type)
            first_dest_id = next_id
            identity_map = self._store.map_for(entity)
            matched: dict[int, int] = {}
            queued: list[tuple[Mapping[str, Any], int]] = []

            for row in source_rows:
                src_id = row[entity_type.primary_key]
                if src_id in identity_map:
                    continue
                key = self._source_key(entity_type, row, key_columns)
                uuid = row[entity_type.uuid_column] if entity_type.uuid_column else None

                dest_id = by_key.get(key) if key is not None else None
                if dest_id is None and uuid is not None:
                    dest_id = by_uuid.get(uuid)
                if dest_id is not None:
                    matched[src_id] = dest_id
                    continue

                dest_id = next_id
                next_id += 1
                queued.append((row, dest_id))
                if key is not None:
                    by_key[key] = dest_id
                if uuid is not None:
                    by_uuid[uuid] = dest_id

            local: dict[int, int] = dict(matched)
            rewriter = RowRewriter(
                entity_type,
                LayeredLookup(entity, local, self._store),
                self._exclusions,
            )
            rows: list[dict[str, Any]] = []
            columns: list[str] = []
            for row, dest_id in queued:
                if not columns:
                    columns = rewriter.columns_of(row)
                rows.append(rewriter.rewrite(row, dest_id))
                local[row[entity_type.primary_key]] = dest_id

            await insert_rows(self._destination, entity_type, columns, rows)
            after = await count_rows(self._destination, entity_type)
            if after != len(dest_rows) + len(rows):
                raise VerificationMismatchError(
                    entity,
                    expected=len(dest_rows) + len(rows),
                    actual=after,
                )

            self._store.merge(entity, local.items())
            deferred, diagnostics = rewriter.drain()
            if self._resolver is not None:
                self._resolver.record_many(deferred)

            result = MoveResult(
                entity=entity,
                moved=len(rows),
                matched=len(matched),
                first_dest_id=first_dest_id if rows else None,
                pages=1 if rows else 0,
                deferred=deferred,
                diagnostics=diagnostics,
            )
            logger.info(
                "Consolidated %s: %d matched, %d inserted",
                entity,
                result.matched,
                result.moved,
            )
            return result

    @staticmethod
    def _dest_key(row: Mapping[str, Any], key_columns: Sequence[str]) -> BusinessKey | None:
        if not key_columns:
            return None
        key = tuple(row[column] for column in key_columns)
        if any(value is None for value in key):
            return None
        return key

    def _source_key(
        self,
        entity_type: EntityType,
        row: Mapping[str, Any],
        key_columns: Sequence[str],
    ) -> BusinessKey | None:
        """Business key of a source row with foreign keys in destination ids."""
        if not key_columns:
            return None
        key: list[Any] = []
        for column in key_columns:
            value = row[column]
            if value is None:
                return None
            fk = entity_type.foreign_key(column)
            if fk is not None:
                mapped = self._store.get(fk.target, value)
                if mapped is None:
                    mapped = self._exclusions.uuid_match(fk.target, value)
                if mapped is None:
                    raise UnresolvedRequiredReferenceError(
                        entity_type.name, column, fk.target, value
                    )
                value = mapped
            key.append(value)
        return tuple(key)


__all__ = [
    "ReferenceConsolidator",
]
