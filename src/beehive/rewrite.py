"""
Foreign key rewriting.

``RowRewriter`` turns a source row into the destination row: it assigns the
new primary key and rewrites every foreign key column. For each non-null
foreign key value, the first rule that applies wins:

1. the target's identity map has the value: use the destination id
2. the exclusion provider matched the value by external identifier: use
   the destination id of the matching row
3. the column is deferred: write null now and record a DeferredReference
4. the value was excluded: write null
5. the column is nullable: write null and report an
   UnresolvedOptionalReference
6. otherwise raise UnresolvedRequiredReferenceError

Null source values stay null.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from beehive.exceptions import UnresolvedOptionalReference, UnresolvedRequiredReferenceError
from beehive.exclusions import ExclusionProvider, StaticExclusions
from beehive.identity_map import IdentityLookup
from beehive.models import DeferredReference, EntityType, ForeignKey

logger = logging.getLogger(__name__)


class RowRewriter:
    """
    Rewrites source rows of one entity type for insertion.

    Deferred references and diagnostics are appended to the public lists
    ``deferred`` and ``diagnostics``; callers drain them after each page.

    Example:
        >>> rewriter = RowRewriter(patient_type, store, exclusions)
        >>> values = rewriter.rewrite({"patient_id": 7, "person_id": 3}, dest_id=901)
        >>> values
        {'patient_id': 901, 'person_id': 503}
    """

    def __init__(
        self,
        entity: EntityType,
        lookup: IdentityLookup,
        exclusions: ExclusionProvider | None = None,
    ) -> None:
        self.entity = entity
        self.lookup = lookup
        self._exclusions = exclusions or StaticExclusions()
        self._excluded: dict[str, frozenset[int]] = {
            target: self._exclusions.excluded_ids(target) for target in entity.fk_targets
        }
        self._keys: dict[str, ForeignKey] = {fk.column: fk for fk in entity.foreign_keys}
        self.deferred: list[DeferredReference] = []
        self.diagnostics: list[UnresolvedOptionalReference] = []

    def columns_of(self, row: Mapping[str, Any]) -> list[str]:
        """Destination columns for ``row``, primary key first."""
        if self.entity.columns is None:
            names = list(row.keys())
        else:
            names = list(self.entity.columns)
        pk = self.entity.primary_key
        return [pk] + [name for name in names if name != pk]

    def rewrite(self, row: Mapping[str, Any], dest_id: int) -> dict[str, Any]:
        """
        Build the destination row for ``row``.

        Args:
            row: Source row keyed by column name.
            dest_id: Primary key assigned in the destination.

        Raises:
            UnresolvedRequiredReferenceError: A non-nullable reference has
                no destination counterpart.
        """
        values: dict[str, Any] = {}
        for column in self.columns_of(row):
            if column == self.entity.primary_key:
                values[column] = dest_id
                continue
            value = row[column]
            fk = self._keys.get(column)
            if fk is None or value is None:
                values[column] = value
            else:
                values[column] = self.resolve(fk, value, dest_id)
        return values

    def resolve(self, fk: ForeignKey, value: int, dest_id: int | None = None) -> int | None:
        """Apply the rewriting rules to one non-null foreign key value."""
        mapped = self.lookup.get(fk.target, value)
        if mapped is not None:
            return mapped

        matched = self._exclusions.uuid_match(fk.target, value)
        if matched is not None:
            return matched

        if self.entity.is_deferred(fk) and dest_id is not None:
            self.deferred.append(
                DeferredReference(
                    entity=self.entity.name,
                    column=fk.column,
                    dest_id=dest_id,
                    source_value=value,
                )
            )
            return None

        excluded = self._excluded.get(fk.target)
        if excluded is None:
            excluded = self._exclusions.excluded_ids(fk.target)
        if value in excluded:
            return None

        if fk.nullable:
            diagnostic = UnresolvedOptionalReference(
                entity=self.entity.name,
                column=fk.column,
                target=fk.target,
                source_value=value,
                dest_id=dest_id,
            )
            logger.warning("Unresolved optional reference: %s", diagnostic)
            self.diagnostics.append(diagnostic)
            return None

        raise UnresolvedRequiredReferenceError(self.entity.name, fk.column, fk.target, value)

    def drain(self) -> tuple[list[DeferredReference], list[UnresolvedOptionalReference]]:
        """Return and clear the collected deferred references and diagnostics."""
        deferred, diagnostics = self.deferred, self.diagnostics
        self.deferred, self.diagnostics = [], []
        return deferred, diagnostics


__all__ = [
    "RowRewriter",
]
