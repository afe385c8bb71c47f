"""
Unit tests for merge configuration.

Tests cover:
- MergeConfig defaults and validation
- ConnectionSettings URL building
- MergeSettings loading from a JSON document
- Building the catalogue, plan and exclusions from settings
"""

import json
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from beehive.config import ConnectionSettings, MergeConfig, MergeSettings, load_config
from tests.fixtures import CATALOGUE, PLAN


def settings_document(**overrides: Any) -> dict[str, Any]:
    document: dict[str, Any] = {
        "source": {"driver": "sqlite+aiosqlite", "database": "/tmp/source.db"},
        "destination": {"driver": "sqlite+aiosqlite", "database": "/tmp/destination.db"},
        "source_id": "clinic-7",
        "catalogue": CATALOGUE,
        "plan": PLAN,
    }
    document.update(overrides)
    return document


class TestMergeConfig:
    """Tests for MergeConfig."""

    def test_defaults(self) -> None:
        config = MergeConfig(source_id="clinic-7")
        assert config.page_size == 1000
        assert config.commit_every is None
        assert config.workers == 1
        assert not config.dry_run
        assert config.seed_mappings == {}

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"source_id": ""},
            {"source_id": "x" * 256},
            {"source_id": "a", "page_size": 0},
            {"source_id": "a", "commit_every": 0},
            {"source_id": "a", "workers": 0},
        ],
    )
    def test_invalid_values(self, kwargs: dict[str, Any]) -> None:
        with pytest.raises(ValueError):
            MergeConfig(**kwargs)

    def test_frozen(self) -> None:
        config = MergeConfig(source_id="clinic-7")
        with pytest.raises(AttributeError):
            config.page_size = 5  # type: ignore[misc]

    def test_to_dict_summarizes_seeds(self) -> None:
        config = MergeConfig(source_id="clinic-7", seed_mappings={"users": {1: 1, 2: 2}})
        assert config.to_dict()["seed_mappings"] == {"users": 2}


class TestConnectionSettings:
    """Tests for ConnectionSettings."""

    def test_to_url(self) -> None:
        settings = ConnectionSettings(
            driver="postgresql+asyncpg",
            host="db.example.org",
            port=5432,
            username="merge",
            password="s3cret",
            database="openmrs",
        )
        url = settings.to_url()
        assert url.drivername == "postgresql+asyncpg"
        assert url.host == "db.example.org"
        assert url.password == "s3cret"
        assert "s3cret" not in str(url)

    def test_default_driver(self) -> None:
        assert ConnectionSettings(database="openmrs").driver == "mysql+aiomysql"

    def test_rejects_unknown_fields(self) -> None:
        with pytest.raises(ValidationError):
            ConnectionSettings(database="openmrs", schema="public")  # type: ignore[call-arg]

    def test_rejects_bad_port(self) -> None:
        with pytest.raises(ValidationError):
            ConnectionSettings(database="openmrs", port=70000)


class TestMergeSettings:
    """Tests for MergeSettings and load_config."""

    def test_load_config(self, tmp_path: Path) -> None:
        path = tmp_path / "merge.json"
        path.write_text(
            json.dumps(
                settings_document(
                    workers=4,
                    seed_mappings={"users": {"1": 1}},
                    exclusions={"person": [3, 4]},
                    match_uuids=["person"],
                )
            )
        )
        settings = load_config(path)
        assert settings.workers == 4
        assert settings.seed_mappings == {"users": {1: 1}}
        assert settings.match_uuids == ["person"]

        config = settings.to_merge_config()
        assert config.source_id == "clinic-7"
        assert config.workers == 4
        assert not config.dry_run
        assert settings.to_merge_config(dry_run=True).dry_run

        assert len(settings.build_catalogue()) == len(CATALOGUE)
        assert settings.build_plan().names == ["catalogue", "people", "encounters", "observations"]
        assert settings.build_exclusions().excluded_ids("person") == frozenset({3, 4})

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(OSError):
            load_config(tmp_path / "missing.json")

    def test_missing_source_id(self) -> None:
        document = settings_document()
        del document["source_id"]
        with pytest.raises(ValidationError):
            MergeSettings.model_validate(document)

    def test_rejects_unknown_fields(self) -> None:
        with pytest.raises(ValidationError):
            MergeSettings.model_validate(settings_document(threads=4))

    def test_rejects_zero_page_size(self) -> None:
        with pytest.raises(ValidationError):
            MergeSettings.model_validate(settings_document(page_size=0))
