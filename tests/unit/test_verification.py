"""
Unit tests for post-merge verification.

Tests cover:
- Rows whose uuid is missing from the destination are listed
- Excluded rows and rows without a uuid are not reported
- Entity types without a uuid column are skipped
"""

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.catalogue import SchemaCatalogue
from beehive.exclusions import StaticExclusions
from beehive.verification import VerificationReport, find_unmoved
from tests.fixtures import insert, persons


class TestFindUnmoved:
    """Tests for find_unmoved."""

    async def test_lists_missing_rows(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "person", persons([1, 2, 3, 4]))
        await insert(dest_engine, "person", persons([2, 4]))

        report = await find_unmoved(src, dst, [catalogue["person"]])

        assert not report.ok
        assert report.checked == ["person"]
        assert report.unmoved == {"person": [(1, "person-00001"), (3, "person-00003")]}

    async def test_excluded_and_null_uuids_are_not_reported(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "person", persons([1, 2]))
        await insert(dest_engine, "person", persons([2]))
        await insert(
            source_engine,
            "location",
            [
                {"location_id": 1, "name": "Ward", "uuid": "loc-w", "parent_location": None},
                {"location_id": 2, "name": "Annex", "uuid": None, "parent_location": None},
            ],
        )
        await insert(
            dest_engine,
            "location",
            [{"location_id": 5, "name": "Ward", "uuid": "loc-w", "parent_location": None}],
        )

        report = await find_unmoved(
            src,
            dst,
            [catalogue["person"], catalogue["location"]],
            StaticExclusions(excluded={"person": [1]}),
        )

        assert report.ok
        assert report.unmoved == {"person": [], "location": []}

    async def test_skips_entities_without_uuid(
        self,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        report = await find_unmoved(src, dst, [catalogue["patient"], catalogue["location"]])

        assert report.skipped == ["patient"]
        assert report.checked == ["location"]
        assert report.ok


class TestVerificationReport:
    """Tests for VerificationReport."""

    def test_to_dict(self) -> None:
        report = VerificationReport(checked=["obs"], unmoved={"obs": [(7, "obs-7")]})
        assert report.to_dict() == {
            "ok": False,
            "checked": ["obs"],
            "skipped": [],
            "unmoved": {"obs": [{"id": 7, "uuid": "obs-7"}]},
        }
