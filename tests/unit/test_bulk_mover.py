"""
Unit tests for BulkMover.

Tests cover:
- Sequential destination ids after the destination's largest id
- Paging and page counts
- Excluded rows are skipped
- Foreign keys rewritten through the identity map
- A required reference miss rolls the move back
- Forward self references resolved after the move
- Committing every K rows with checkpoints and persisted mappings
- Resuming from the last checkpoint after a failure without duplicates
- Recovering the deferred references of already moved rows
- Destination count verification
- Progress reporting
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from beehive.bulk_mover import BulkMover, MoveProgress
from beehive.catalogue import SchemaCatalogue
from beehive.checkpoint import CheckpointManager
from beehive.deferred import DeferredReferenceResolver
from beehive.exceptions import UnresolvedRequiredReferenceError, VerificationMismatchError
from beehive.exclusions import StaticExclusions
from beehive.identity_map import IdentityMapStore
from beehive.repositories import SQLAlchemyMergeStateRepository
from tests.fixtures import count, fetch, insert, obs_rows, persons


def mover(
    src: AsyncConnection,
    dst: AsyncConnection,
    catalogue: SchemaCatalogue,
    store: IdentityMapStore,
    **kwargs,
) -> BulkMover:
    return BulkMover(src, dst, catalogue, store, enable_tracing=False, **kwargs)


def patients(person_ids: list[int]) -> list[dict]:
    return [
        {"patient_id": i, "person_id": person_id, "identifier": f"MRN-{i}"}
        for i, person_id in enumerate(person_ids, start=1)
    ]


class TestMoveAll:
    """Tests for BulkMover.move_all."""

    async def test_ids_follow_destination_maximum(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
    ) -> None:
        await insert(source_engine, "person", persons([1, 2, 3]))
        await insert(dest_engine, "person", persons([500]))

        result = await mover(src, dst, catalogue, store).move_all("person", page_size=2)

        assert result.moved == 3
        assert result.first_dest_id == 501
        assert result.pages == 2
        assert dict(store.map_for("person").as_mapping()) == {1: 501, 2: 502, 3: 503}
        stored = await fetch(dest_engine, "person", "person_id")
        assert [r["person_id"] for r in stored] == [500, 501, 502, 503]
        assert [r["uuid"] for r in stored[1:]] == ["person-00001", "person-00002", "person-00003"]

    async def test_empty_source(
        self,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
    ) -> None:
        result = await mover(src, dst, catalogue, store).move_all("person")
        assert (result.moved, result.pages, result.first_dest_id) == (0, 0, None)

    async def test_excluded_rows_are_skipped(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
    ) -> None:
        await insert(source_engine, "person", persons([1, 2, 3, 4, 5]))
        exclusions = StaticExclusions(excluded={"person": [2, 4]})

        result = await mover(src, dst, catalogue, store, exclusions=exclusions).move_all(
            "person", page_size=2
        )

        assert result.moved == 3
        assert dict(store.map_for("person").as_mapping()) == {1: 1, 3: 2, 5: 3}
        assert await count(dest_engine, "person") == 3

    async def test_foreign_keys_are_rewritten(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "patient", patients([2, 1]))
        store = IdentityMapStore(seed_mappings={"person": {1: 501, 2: 502}})

        await mover(src, dst, catalogue, store).move_all("patient")

        stored = await fetch(dest_engine, "patient", "patient_id")
        assert [(r["patient_id"], r["person_id"], r["identifier"]) for r in stored] == [
            (1, 502, "MRN-1"),
            (2, 501, "MRN-2"),
        ]

    async def test_required_miss_rolls_back(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "patient", patients([1, 99]))
        store = IdentityMapStore(seed_mappings={"person": {1: 501}})

        with pytest.raises(UnresolvedRequiredReferenceError) as exc_info:
            await mover(src, dst, catalogue, store).move_all("patient", page_size=1)

        assert exc_info.value.value == 99
        assert await count(dest_engine, "patient") == 0
        assert store.get("patient", 1) is None

    async def test_forward_self_references_are_resolved(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        rows = obs_rows(100, grouped_every=3)
        await insert(source_engine, "obs", rows)
        store = IdentityMapStore(seed_mappings={"person": {1: 501}})
        resolver = DeferredReferenceResolver(dst, catalogue, store, enable_tracing=False)

        async with dst.begin():
            result = await mover(src, dst, catalogue, store, resolver=resolver).move_all(
                "obs", page_size=10
            )
            assert len(result.deferred) == 33
            assert await resolver.resolve_ready(["obs"]) == {"obs": 33}

        stored = await fetch(dest_engine, "obs", "obs_id")
        expected = {r["obs_id"]: r["obs_group_id"] for r in rows}
        assert {r["obs_id"]: r["obs_group_id"] for r in stored} == expected
        assert all(r["person_id"] == 501 for r in stored)
        assert resolver.diagnostics == []

    async def test_verification_mismatch(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
    ) -> None:
        await insert(source_engine, "person", persons([1, 2, 3]))
        with patch("beehive.bulk_mover.count_rows", AsyncMock(side_effect=[3, 1, 1])):
            with pytest.raises(VerificationMismatchError) as exc_info:
                async with dst.begin():
                    await mover(src, dst, catalogue, store).move_all("person")
        assert (exc_info.value.expected, exc_info.value.actual) == (4, 1)
        assert await count(dest_engine, "person") == 0

    async def test_progress_callback(
        self,
        source_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
    ) -> None:
        await insert(source_engine, "person", persons(range(1, 6)))
        updates: list[MoveProgress] = []
        await mover(src, dst, catalogue, store).move_all(
            "person", page_size=2, progress_callback=updates.append
        )
        assert [(u.rows_done, u.rows_total) for u in updates] == [(5, 5)]
        assert updates[0].progress_percent == 100.0


class TestChunkedMove:
    """Tests for commit_every, checkpoints and resume."""

    async def test_requires_checkpoint_arguments(
        self,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
    ) -> None:
        with pytest.raises(ValueError, match="commit_every"):
            await mover(src, dst, catalogue, store).move_all("person", commit_every=10)

    async def test_commits_every_k_rows(
        self,
        source_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        store: IdentityMapStore,
        merge_repo: SQLAlchemyMergeStateRepository,
    ) -> None:
        await insert(source_engine, "person", persons(range(1, 11)))
        checkpoints = CheckpointManager(merge_repo, enable_tracing=False)
        updates: list[MoveProgress] = []

        result = await mover(src, dst, catalogue, store).move_all(
            "person",
            page_size=3,
            commit_every=4,
            checkpoints=checkpoints,
            repo=merge_repo,
            phase="people",
            progress_callback=updates.append,
        )

        assert result.moved == 10
        assert result.pages == 5
        assert [u.rows_done for u in updates] == [4, 8, 10]
        assert store.map_for("person").pending() == []
        async with dst.begin():
            assert len(await merge_repo.load_mappings("person")) == 10
            latest = await merge_repo.load_latest_checkpoint()
        assert latest is not None
        assert (latest.phase, latest.passed, latest.rows_done) == ("people", False, 10)
        assert checkpoints.current_position().rows_done == 10

    async def test_resume_after_failure(
        self,
        source_engine: AsyncEngine,
        dest_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
        merge_repo: SQLAlchemyMergeStateRepository,
    ) -> None:
        person_ids = [1, 2, 3, 4, 5, 99, 7, 8, 9, 10]
        await insert(source_engine, "patient", patients(person_ids))
        seeds = {"person": {i: 500 + i for i in range(1, 11)}}
        store = IdentityMapStore(seed_mappings=seeds)
        checkpoints = CheckpointManager(merge_repo, enable_tracing=False)
        options = {
            "page_size": 2,
            "commit_every": 4,
            "checkpoints": checkpoints,
            "repo": merge_repo,
            "phase": "people",
        }

        with pytest.raises(UnresolvedRequiredReferenceError):
            await mover(src, dst, catalogue, store).move_all("patient", **options)

        assert await count(dest_engine, "patient") == 4
        assert dict(store.map_for("patient").as_mapping()) == {1: 1, 2: 2, 3: 3, 4: 4}
        async with dst.begin():
            latest = await merge_repo.load_latest_checkpoint()
        assert latest is not None
        assert latest.rows_done == 4

        async with source_engine.begin() as conn:
            await conn.execute(text("UPDATE patient SET person_id = 6 WHERE patient_id = 6"))

        restored = IdentityMapStore(seed_mappings=seeds)
        async with dst.begin():
            assert await restored.restore_all(merge_repo, ["patient"]) == 4
        result = await mover(src, dst, catalogue, restored).move_all(
            "patient", start_offset=latest.rows_done, **options
        )

        assert result.moved == 6
        assert result.first_dest_id == 5
        stored = await fetch(dest_engine, "patient", "patient_id")
        assert [r["patient_id"] for r in stored] == list(range(1, 11))
        assert [r["person_id"] for r in stored] == [500 + i for i in range(1, 11)]
        async with dst.begin():
            assert len(await merge_repo.load_mappings("patient")) == 10

    async def test_recover_deferred(
        self,
        source_engine: AsyncEngine,
        src: AsyncConnection,
        dst: AsyncConnection,
        catalogue: SchemaCatalogue,
    ) -> None:
        await insert(source_engine, "obs", obs_rows(20, grouped_every=4))
        store = IdentityMapStore(seed_mappings={"person": {1: 501}})
        bulk = mover(src, dst, catalogue, store, page_size=3)
        await bulk.move_all("obs")

        recovered = await bulk.recover_deferred("obs", 0, 10)

        assert [(r.dest_id, r.source_value) for r in recovered] == [(4, 7), (8, 11)]


class TestMoveProgress:
    """Tests for MoveProgress."""

    def test_percent(self) -> None:
        assert MoveProgress("obs", 25, 100, 10.0).progress_percent == 25.0

    def test_empty_total_is_complete(self) -> None:
        assert MoveProgress("obs", 0, 0, 0.0).progress_percent == 100.0
