"""
Identity Map Store.

One ``IdentityMap`` per entity type maps source primary keys to destination
primary keys. Lookups and inserts are O(1) dict operations and memory grows
with the number of rows actually migrated.

Once a source key is mapped the mapping is immutable for the rest of the
run: a second ``put`` with a different destination id raises
``IdentityConflictError``.

Parallel workers never touch the store's mutable maps. They read through an
``IdentitySnapshot`` built once by the coordinator, write into a local dict,
and the coordinator merges the local dicts back single-threaded.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Protocol, runtime_checkable

from beehive.exceptions import IdentityConflictError
from beehive.repositories.merge_state import MergeStateRepository

logger = logging.getLogger(__name__)


@runtime_checkable
class IdentityLookup(Protocol):
    """Anything that resolves ``(entity, source id)`` to a destination id."""

    def get(self, entity: str, src_id: int | None) -> int | None: ...


class IdentityMap:
    """
    Source id to destination id registry for one entity type.

    Tracks which entries have not been written to durable storage yet.

    Example:
        >>> person_map = IdentityMap("person")
        >>> person_map.put(1, 501)
        >>> person_map.get(1)
        501
        >>> person_map.pending()
        [(1, 501)]
    """

    def __init__(self, entity: str) -> None:
        self.entity = entity
        self._entries: dict[int, int] = {}
        self._pending: dict[int, int] = {}

    def get(self, src_id: int) -> int | None:
        return self._entries.get(src_id)

    def put(self, src_id: int, dest_id: int) -> None:
        """
        Record a mapping.

        Raises:
            IdentityConflictError: If ``src_id`` is mapped to another id.
        """
        existing = self._entries.get(src_id)
        if existing is not None:
            if existing != dest_id:
                raise IdentityConflictError(self.entity, src_id, existing, dest_id)
            return
        self._entries[src_id] = dest_id
        self._pending[src_id] = dest_id

    def load(self, entries: Iterable[tuple[int, int]], *, persisted: bool) -> int:
        """
        Add many entries at once.

        Entries loaded with ``persisted=True`` are never written back.

        Returns:
            Number of entries that were new.
        """
        added = 0
        for src_id, dest_id in entries:
            existing = self._entries.get(src_id)
            if existing is not None:
                if existing != dest_id:
                    raise IdentityConflictError(self.entity, src_id, existing, dest_id)
                continue
            self._entries[src_id] = dest_id
            if not persisted:
                self._pending[src_id] = dest_id
            added += 1
        return added

    def pending(self) -> list[tuple[int, int]]:
        """Entries not yet written to durable storage, in insertion order."""
        return list(self._pending.items())

    def mark_persisted(self, src_ids: Iterable[int] | None = None) -> None:
        """Forget pending state for ``src_ids``, or for everything."""
        if src_ids is None:
            self._pending.clear()
            return
        for src_id in src_ids:
            self._pending.pop(src_id, None)

    def items(self) -> Iterator[tuple[int, int]]:
        return iter(self._entries.items())

    def as_mapping(self) -> Mapping[int, int]:
        """Read-only live view; use ``IdentityMapStore.snapshot`` for a copy."""
        return MappingProxyType(self._entries)

    def __contains__(self, src_id: object) -> bool:
        return src_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"IdentityMap({self.entity!r}, entries={len(self)}, pending={len(self._pending)})"


class IdentitySnapshot:
    """
    Read-only copy of several identity maps.

    Built once and shared by reference across parallel workers; nothing can
    mutate it.
    """

    def __init__(self, maps: Mapping[str, Mapping[int, int]]) -> None:
        self._maps: Mapping[str, Mapping[int, int]] = MappingProxyType(
            {entity: MappingProxyType(dict(entries)) for entity, entries in maps.items()}
        )

    def get(self, entity: str, src_id: int | None) -> int | None:
        if src_id is None:
            return None
        entries = self._maps.get(entity)
        if entries is None:
            return None
        return entries.get(src_id)

    def __getitem__(self, entity: str) -> Mapping[int, int]:
        return self._maps[entity]

    def __contains__(self, entity: object) -> bool:
        return entity in self._maps

    @property
    def entities(self) -> list[str]:
        return list(self._maps)

    def as_mapping(self) -> Mapping[str, Mapping[int, int]]:
        return self._maps


class LayeredLookup:
    """
    Local entries for one entity type in front of a shared lookup.

    Workers and page loops write into ``local`` and read through this, so
    their own fresh entries are visible before they are merged anywhere.
    """

    def __init__(self, entity: str, local: Mapping[int, int], base: IdentityLookup) -> None:
        self.entity = entity
        self.local = local
        self.base = base

    def get(self, entity: str, src_id: int | None) -> int | None:
        if src_id is None:
            return None
        if entity == self.entity:
            dest_id = self.local.get(src_id)
            if dest_id is not None:
                return dest_id
        return self.base.get(entity, src_id)


class IdentityMapStore:
    """
    All identity maps of a run.

    Args:
        seed_mappings: Entries known before the run (e.g. the admin user
            ``{"users": {1: 1}}``). Seeds are never persisted.

    Example:
        >>> store = IdentityMapStore(seed_mappings={"users": {1: 1}})
        >>> store.put("person", 1, 501)
        >>> store.get("person", 1)
        501
        >>> store.get("person", None) is None
        True
        >>> await store.persist_all(repo)
        1
    """

    def __init__(self, seed_mappings: Mapping[str, Mapping[int, int]] | None = None) -> None:
        self._maps: dict[str, IdentityMap] = {}
        for entity, entries in (seed_mappings or {}).items():
            self.map_for(entity).load(entries.items(), persisted=True)

    def map_for(self, entity: str) -> IdentityMap:
        identity_map = self._maps.get(entity)
        if identity_map is None:
            identity_map = IdentityMap(entity)
            self._maps[entity] = identity_map
        return identity_map

    def get(self, entity: str, src_id: int | None) -> int | None:
        """Destination id for ``src_id``; a null source value stays null."""
        if src_id is None:
            return None
        identity_map = self._maps.get(entity)
        if identity_map is None:
            return None
        return identity_map.get(src_id)

    def put(self, entity: str, src_id: int, dest_id: int) -> None:
        self.map_for(entity).put(src_id, dest_id)

    def snapshot(self, entities: Iterable[str]) -> IdentitySnapshot:
        """Read-only copies of the maps of ``entities``."""
        return IdentitySnapshot({entity: self.map_for(entity).as_mapping() for entity in entities})

    def merge(
        self,
        entity: str,
        entries: Iterable[tuple[int, int]],
        *,
        persisted: bool = False,
    ) -> int:
        """
        Merge entries produced elsewhere, e.g. by parallel workers.

        Must be called from a single task.

        Returns:
            Number of new entries.
        """
        return self.map_for(entity).load(entries, persisted=persisted)

    async def persist(self, entity: str, repo: MergeStateRepository) -> int:
        """Write the pending entries of ``entity``; returns how many."""
        identity_map = self.map_for(entity)
        pending = identity_map.pending()
        if not pending:
            return 0
        written = await repo.insert_mappings(entity, pending)
        identity_map.mark_persisted(src for src, _ in pending)
        logger.debug("Persisted %d %s identity entries", written, entity)
        return written

    async def persist_all(self, repo: MergeStateRepository) -> int:
        total = 0
        for entity in list(self._maps):
            total += await self.persist(entity, repo)
        return total

    async def restore(self, entity: str, repo: MergeStateRepository) -> int:
        """Load the persisted entries of ``entity``; returns how many were new."""
        entries = await repo.load_mappings(entity)
        added = self.map_for(entity).load(entries, persisted=True)
        if added:
            logger.info("Restored %d %s identity entries", added, entity)
        return added

    async def restore_all(self, repo: MergeStateRepository, entities: Iterable[str]) -> int:
        total = 0
        for entity in entities:
            total += await self.restore(entity, repo)
        return total

    def discard_pending(self, entity: str) -> None:
        """
        Drop entries that were never persisted.

        Used after a rolled back transaction so the maps match what the
        destination holds.
        """
        identity_map = self._maps.get(entity)
        if identity_map is None:
            return
        pending = identity_map.pending()
        if not pending:
            return
        fresh = IdentityMap(entity)
        stale = {src for src, _ in pending}
        fresh.load(((s, d) for s, d in identity_map.items() if s not in stale), persisted=True)
        self._maps[entity] = fresh
        logger.debug("Discarded %d unpersisted %s identity entries", len(stale), entity)

    @property
    def entities(self) -> list[str]:
        return list(self._maps)

    def __contains__(self, entity: object) -> bool:
        return entity in self._maps

    def __len__(self) -> int:
        return sum(len(m) for m in self._maps.values())


__all__ = [
    "IdentityLookup",
    "IdentityMap",
    "IdentitySnapshot",
    "LayeredLookup",
    "IdentityMapStore",
]
