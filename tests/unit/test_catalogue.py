"""
Unit tests for SchemaCatalogue and PhasePlan.

Tests cover:
- Catalogue construction and lookup
- Rejection of unknown foreign key targets and bad business keys
- Plan parsing from lists and mappings
- Plan validation against the catalogue
"""

import pytest

from beehive.catalogue import PhasePlan, SchemaCatalogue
from beehive.exceptions import CatalogueError, PhasePlanError
from beehive.models import EntityType, ForeignKey
from tests.fixtures import CATALOGUE, PLAN


class TestSchemaCatalogue:
    """Tests for SchemaCatalogue."""

    def test_from_dict(self, catalogue: SchemaCatalogue) -> None:
        assert len(catalogue) == len(CATALOGUE)
        assert "obs" in catalogue
        assert catalogue["patient"].fk_targets == frozenset({"person"})
        assert catalogue.names[0] == "users"

    def test_unknown_entity_type(self, catalogue: SchemaCatalogue) -> None:
        with pytest.raises(CatalogueError, match="Unknown entity type"):
            catalogue["visit"]

    def test_duplicate_entity_type(self) -> None:
        person = EntityType("person", "person", "person_id")
        with pytest.raises(CatalogueError, match="Duplicate"):
            SchemaCatalogue([person, person])

    def test_unknown_foreign_key_target(self) -> None:
        with pytest.raises(CatalogueError, match="unknown entity type"):
            SchemaCatalogue(
                [EntityType("patient", "patient", "patient_id", foreign_keys=(ForeignKey("person_id", "person"),))]
            )

    def test_business_key_cannot_hold_primary_key(self) -> None:
        with pytest.raises(CatalogueError, match="business key"):
            SchemaCatalogue([EntityType("role", "role", "role_id", business_key=("role_id",))])

    def test_iterates_in_declaration_order(self, catalogue: SchemaCatalogue) -> None:
        assert [e.name for e in catalogue] == list(CATALOGUE)


class TestPhasePlan:
    """Tests for PhasePlan parsing and validation."""

    def test_from_mapping(self, plan: PhasePlan) -> None:
        assert plan.names == ["catalogue", "people", "encounters", "observations"]
        assert plan.external == frozenset({"users"})
        assert plan.final_phase.name == "observations"
        assert plan.index_of("encounters") == 2

    def test_from_list(self) -> None:
        plan = PhasePlan.from_dict([{"name": "people", "movements": ["person"]}])
        assert plan.external == frozenset()
        assert len(plan) == 1

    def test_unknown_phase(self, plan: PhasePlan) -> None:
        with pytest.raises(PhasePlanError):
            plan.index_of("billing")

    def test_empty_plan(self) -> None:
        with pytest.raises(PhasePlanError, match="empty"):
            PhasePlan(phases=())

    def test_valid_plan(self, plan: PhasePlan, catalogue: SchemaCatalogue) -> None:
        plan.validate(catalogue)

    def test_movements_in_order(self, plan: PhasePlan) -> None:
        assert [m.entity for _, m in plan.movements()] == [
            "role",
            "location",
            "person",
            "patient",
            "encounter",
            "obs",
        ]

    def test_target_moved_later_is_rejected(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict(
            [
                {"name": "people", "movements": ["patient"]},
                {"name": "persons", "movements": ["person"]},
            ]
        )
        with pytest.raises(PhasePlanError, match="patient.person_id"):
            plan.validate(catalogue)

    def test_external_target_is_accepted(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict(
            {
                "external": ["users", "patient", "location"],
                "phases": [{"name": "encounters", "movements": ["encounter"]}],
            }
        )
        plan.validate(catalogue)

    def test_missing_external_is_rejected(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict(
            {
                "external": ["patient", "location"],
                "phases": [{"name": "encounters", "movements": ["encounter"]}],
            }
        )
        with pytest.raises(PhasePlanError, match="encounter.creator"):
            plan.validate(catalogue)

    def test_unknown_external(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict({"external": ["billing"], "phases": PLAN["phases"]})
        with pytest.raises(PhasePlanError, match="external"):
            plan.validate(catalogue)

    def test_entity_moved_twice(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict(
            [
                {"name": "a", "movements": ["person"]},
                {"name": "b", "movements": ["person"]},
            ]
        )
        with pytest.raises(PhasePlanError, match="more than once"):
            plan.validate(catalogue)

    def test_duplicate_phase_name(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict(
            [
                {"name": "a", "movements": ["person"]},
                {"name": "a", "movements": ["role"]},
            ]
        )
        with pytest.raises(PhasePlanError, match="Duplicate phase"):
            plan.validate(catalogue)

    def test_chunked_movement_must_be_alone(self, catalogue: SchemaCatalogue) -> None:
        plan = PhasePlan.from_dict(
            [{"name": "a", "movements": [{"entity": "person", "commit_every": 100}, "patient"]}]
        )
        with pytest.raises(PhasePlanError, match="only movement"):
            plan.validate(catalogue)

    def test_consolidate_needs_a_key(self) -> None:
        catalogue = SchemaCatalogue([EntityType("concept", "concept", "concept_id")])
        plan = PhasePlan.from_dict([{"name": "a", "movements": [{"entity": "concept", "kind": "consolidate"}]}])
        with pytest.raises(PhasePlanError, match="business key"):
            plan.validate(catalogue)

    def test_deferred_target_in_same_phase(self) -> None:
        catalogue = SchemaCatalogue(
            [
                EntityType(
                    "form",
                    "form",
                    "form_id",
                    foreign_keys=(ForeignKey("default_field", "field", deferred=True),),
                ),
                EntityType("field", "field", "field_id", foreign_keys=(ForeignKey("form_id", "form"),)),
            ]
        )
        plan = PhasePlan.from_dict([{"name": "forms", "movements": ["form", "field"]}])
        plan.validate(catalogue)
