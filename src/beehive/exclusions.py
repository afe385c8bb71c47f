"""
Exclusion-set providers.

An exclusion provider names the source rows of an entity type that must not
be moved because they already exist in the destination. When the match is
by external identifier, the provider also knows the destination id the row
already has, which the row rewriter and the deferred resolver use for
references pointing at excluded rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from beehive.models import EntityType

logger = logging.getLogger(__name__)


@runtime_checkable
class ExclusionProvider(Protocol):
    """
    Protocol for exclusion-set providers.

    Implementations:
    - StaticExclusions: precomputed sets, optionally with uuid matches
    """

    def excluded_ids(self, entity: str) -> frozenset[int]:
        """Source ids of ``entity`` that are skipped entirely."""
        ...

    def uuid_match(self, entity: str, src_id: int) -> int | None:
        """Destination id of an excluded row matched by external identifier."""
        ...


class StaticExclusions:
    """
    Precomputed exclusion sets.

    Every source id with a uuid match is excluded as well.

    Args:
        excluded: Source ids to skip per entity type.
        matches: Per entity type, source id to the destination id of the row
            it matched.

    Example:
        >>> exclusions = StaticExclusions(matches={"location": {4: 12}})
        >>> exclusions.excluded_ids("location")
        frozenset({4})
        >>> exclusions.uuid_match("location", 4)
        12
    """

    def __init__(
        self,
        excluded: Mapping[str, Iterable[int]] | None = None,
        matches: Mapping[str, Mapping[int, int]] | None = None,
    ) -> None:
        self._matches: dict[str, dict[int, int]] = {
            entity: dict(pairs) for entity, pairs in (matches or {}).items()
        }
        names = set(self._matches) | set(excluded or {})
        self._excluded: dict[str, frozenset[int]] = {}
        for entity in names:
            ids = set((excluded or {}).get(entity, ()))
            ids.update(self._matches.get(entity, {}))
            self._excluded[entity] = frozenset(ids)

    @classmethod
    def from_rows(cls, rows: Iterable[tuple[str, int, int | None]]) -> StaticExclusions:
        """Rebuild exclusions from ``(entity, src_id, dest_id)`` rows, see ``exclusion_rows``."""
        excluded: dict[str, set[int]] = {}
        matches: dict[str, dict[int, int]] = {}
        for entity, src_id, dest_id in rows:
            if dest_id is None:
                excluded.setdefault(entity, set()).add(src_id)
            else:
                matches.setdefault(entity, {})[src_id] = dest_id
        return cls(excluded=excluded, matches=matches)

    def excluded_ids(self, entity: str) -> frozenset[int]:
        return self._excluded.get(entity, frozenset())

    def uuid_match(self, entity: str, src_id: int) -> int | None:
        return self._matches.get(entity, {}).get(src_id)

    def __repr__(self) -> str:
        sizes = {entity: len(ids) for entity, ids in self._excluded.items()}
        return f"StaticExclusions({sizes})"


async def match_by_uuid(
    source: AsyncConnection,
    destination: AsyncConnection,
    entities: Iterable[EntityType],
    excluded: Mapping[str, Iterable[int]] | None = None,
) -> StaticExclusions:
    """
    Exclude source rows whose external identifier already exists in the destination.

    Reads ``(primary key, uuid)`` pairs from both sides once, up front.
    Entity types without a uuid column are skipped.

    Args:
        source: Connection to the source database.
        destination: Connection to the destination database.
        entities: Entity types to match.
        excluded: Additional explicit exclusions to carry over.

    Returns:
        StaticExclusions holding every match found.
    """
    matches: dict[str, dict[int, int]] = {}
    for entity in entities:
        if entity.uuid_column is None:
            continue
        query = text(
            f"SELECT {entity.primary_key}, {entity.uuid_column} FROM {entity.table} "  # nosec B608
            f"WHERE {entity.uuid_column} IS NOT NULL"
        )
        dest_rows = await destination.execute(query)
        dest_by_uuid: dict[str, int] = {}
        for pk, uuid in dest_rows:
            dest_by_uuid.setdefault(uuid, pk)
        found: dict[int, int] = {}
        src_rows = await source.execute(query)
        for pk, uuid in src_rows:
            dest_id = dest_by_uuid.get(uuid)
            if dest_id is not None:
                found[pk] = dest_id
        if found:
            matches[entity.name] = found
            logger.info(
                "Excluding %d %s rows already present by uuid",
                len(found),
                entity.name,
            )
    return StaticExclusions(excluded=excluded, matches=matches)


def exclusion_rows(
    exclusions: ExclusionProvider,
    entities: Iterable[str],
) -> list[tuple[str, int, int | None]]:
    """
    Flatten a provider into ``(entity, src_id, dest_id)`` rows for ``entities``.

    ``dest_id`` is the uuid match of the row, or None when the row is only
    excluded.
    """
    rows: list[tuple[str, int, int | None]] = []
    for entity in sorted(set(entities)):
        for src_id in sorted(exclusions.excluded_ids(entity)):
            rows.append((entity, src_id, exclusions.uuid_match(entity, src_id)))
    return rows


__all__ = [
    "ExclusionProvider",
    "StaticExclusions",
    "exclusion_rows",
    "match_by_uuid",
]
