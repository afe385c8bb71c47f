"""
Unit tests for exclusion providers.

Tests cover:
- StaticExclusions explicit sets and uuid matches
- Flattening exclusions to rows and rebuilding them
- match_by_uuid against SQLite source and destination databases
"""

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.catalogue import SchemaCatalogue
from beehive.exclusions import (
    ExclusionProvider,
    StaticExclusions,
    exclusion_rows,
    match_by_uuid,
)
from tests.fixtures import insert, persons


class TestStaticExclusions:
    """Tests for StaticExclusions."""

    def test_empty(self) -> None:
        exclusions = StaticExclusions()
        assert exclusions.excluded_ids("person") == frozenset()
        assert exclusions.uuid_match("person", 1) is None

    def test_matches_are_excluded(self) -> None:
        exclusions = StaticExclusions(excluded={"person": [2]}, matches={"person": {5: 40}})
        assert exclusions.excluded_ids("person") == frozenset({2, 5})
        assert exclusions.uuid_match("person", 5) == 40
        assert exclusions.uuid_match("person", 2) is None

    def test_rows_rebuild_the_same_exclusions(self) -> None:
        exclusions = StaticExclusions(excluded={"person": [2]}, matches={"person": {5: 40}})
        rows = exclusion_rows(exclusions, ["person", "obs"])
        assert rows == [("person", 2, None), ("person", 5, 40)]

        rebuilt = StaticExclusions.from_rows(rows)
        assert rebuilt.excluded_ids("person") == frozenset({2, 5})
        assert rebuilt.uuid_match("person", 5) == 40
        assert rebuilt.excluded_ids("obs") == frozenset()

    def test_satisfies_protocol(self) -> None:
        assert isinstance(StaticExclusions(), ExclusionProvider)

    def test_repr(self) -> None:
        assert repr(StaticExclusions(excluded={"obs": [1, 2]})) == "StaticExclusions({'obs': 2})"


class TestMatchByUuid:
    """Tests for match_by_uuid."""

    async def test_matches_existing_rows(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "person", persons([1, 2, 3]))
        shared = persons([2])[0] | {"person_id": 40}
        await insert(dest_engine, "person", [shared])

        exclusions = await match_by_uuid(
            src,
            dst,
            [catalogue["person"], catalogue["patient"]],
            excluded={"obs": [9]},
        )

        assert exclusions.excluded_ids("person") == frozenset({2})
        assert exclusions.uuid_match("person", 2) == 40
        assert exclusions.excluded_ids("obs") == frozenset({9})
        assert exclusions.excluded_ids("patient") == frozenset()

    async def test_null_uuids_are_ignored(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "location", [{"location_id": 1, "name": "Ward", "uuid": None}])
        await insert(dest_engine, "location", [{"location_id": 7, "name": "Ward", "uuid": None}])
        exclusions = await match_by_uuid(src, dst, [catalogue["location"]])
        assert exclusions.excluded_ids("location") == frozenset()
