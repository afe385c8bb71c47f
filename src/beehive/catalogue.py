"""
Schema catalogue and phase plan.

The catalogue is static configuration describing every entity type the
engine may move. The phase plan is the ordered list of phases a run
executes; it is validated against the catalogue before any work starts so
dependency order is data rather than code layout.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from beehive.exceptions import CatalogueError, PhasePlanError
from beehive.models import EntityType, MigrationPhase, Movement, MovementKind

logger = logging.getLogger(__name__)


class SchemaCatalogue:
    """
    The set of entity types known to the engine.

    Example:
        >>> catalogue = SchemaCatalogue([
        ...     EntityType("person", "person", "person_id"),
        ...     EntityType(
        ...         "patient", "patient", "patient_id",
        ...         foreign_keys=(ForeignKey("person_id", "person", nullable=False),),
        ...     ),
        ... ])
        >>> catalogue["patient"].fk_targets
        frozenset({'person'})
    """

    def __init__(self, entity_types: Iterable[EntityType]) -> None:
        self._types: dict[str, EntityType] = {}
        for entity in entity_types:
            if entity.name in self._types:
                raise CatalogueError(f"Duplicate entity type: {entity.name}")
            self._types[entity.name] = entity
        self._validate()

    def _validate(self) -> None:
        for entity in self._types.values():
            for fk in entity.foreign_keys:
                if fk.target not in self._types:
                    raise CatalogueError(
                        f"{entity.name}.{fk.column} references unknown entity type "
                        f"{fk.target!r}"
                    )
            for column in entity.business_key:
                if column == entity.primary_key:
                    raise CatalogueError(
                        f"{entity.name}: business key cannot contain the primary key"
                    )

    def __getitem__(self, name: str) -> EntityType:
        try:
            return self._types[name]
        except KeyError:
            raise CatalogueError(f"Unknown entity type: {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[EntityType]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)

    @property
    def names(self) -> list[str]:
        return list(self._types)

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Any]]) -> SchemaCatalogue:
        """
        Build a catalogue from a mapping of entity type name to definition.

        See ``EntityType.from_dict`` for the accepted keys.
        """
        return cls(EntityType.from_dict(name, entry) for name, entry in data.items())


@dataclass(frozen=True)
class PhasePlan:
    """
    Ordered list of phases executed by a run.

    Attributes:
        phases: Phases in execution order.
        external: Entity types that are never moved but whose identity
            maps are supplied up front (seed mappings or exclusions).
    """

    phases: tuple[MigrationPhase, ...]
    external: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.phases:
            raise PhasePlanError("Phase plan is empty")

    def __iter__(self) -> Iterator[MigrationPhase]:
        return iter(self.phases)

    def __len__(self) -> int:
        return len(self.phases)

    @property
    def names(self) -> list[str]:
        return [phase.name for phase in self.phases]

    @property
    def final_phase(self) -> MigrationPhase:
        return self.phases[-1]

    def index_of(self, name: str) -> int:
        for i, phase in enumerate(self.phases):
            if phase.name == name:
                return i
        raise PhasePlanError(f"Phase {name!r} is not part of the plan")

    def phase(self, name: str) -> MigrationPhase:
        return self.phases[self.index_of(name)]

    def movements(self) -> Iterator[tuple[MigrationPhase, Movement]]:
        for phase in self.phases:
            for movement in phase.movements:
                yield phase, movement

    def validate(self, catalogue: SchemaCatalogue) -> None:
        """
        Check the plan against the catalogue before a run.

        Phase names must be unique, every entity type is moved at most once,
        every non-deferred foreign key target is moved at an earlier position
        or is external, deferred targets are moved no later than the phase of
        the referencing entity, and chunked movements are alone in their
        phase.

        Raises:
            PhasePlanError: On the first violation found.
        """
        seen_phases: set[str] = set()
        for phase in self.phases:
            if phase.name in seen_phases:
                raise PhasePlanError(f"Duplicate phase name: {phase.name!r}")
            seen_phases.add(phase.name)
            if phase.is_chunked and len(phase.movements) > 1:
                raise PhasePlanError(
                    f"Phase {phase.name!r}: chunked and parallel movements must be "
                    f"the only movement of their phase"
                )

        for name in self.external:
            if name not in catalogue:
                raise PhasePlanError(f"Unknown external entity type: {name!r}")

        moved: set[str] = set(self.external)
        for phase in self.phases:
            phase_entities = set(phase.entities)
            for movement in phase.movements:
                if movement.entity not in catalogue:
                    raise PhasePlanError(
                        f"Phase {phase.name!r} moves unknown entity type {movement.entity!r}"
                    )
                if movement.entity in moved:
                    raise PhasePlanError(
                        f"Entity type {movement.entity!r} is moved more than once"
                    )
                entity = catalogue[movement.entity]
                for fk in entity.foreign_keys:
                    if fk.target == entity.name or fk.target in moved:
                        continue
                    if entity.is_deferred(fk) and fk.target in phase_entities:
                        continue
                    raise PhasePlanError(
                        f"{entity.name}.{fk.column} references {fk.target!r}, which is "
                        f"not moved before phase {phase.name!r}"
                    )
                if movement.kind == MovementKind.CONSOLIDATE:
                    key = movement.business_key or entity.business_key
                    if not key and entity.uuid_column is None:
                        raise PhasePlanError(
                            f"Cannot consolidate {entity.name!r} without a business key "
                            f"or uuid column"
                        )
                moved.add(movement.entity)
        logger.debug("Validated phase plan with %d phases", len(self.phases))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | list[Any]) -> PhasePlan:
        """
        Build a plan from configuration.

        Accepts either a list of phases or a mapping with ``phases`` and an
        optional ``external`` list.
        """
        if isinstance(data, Mapping):
            phases = data.get("phases", ())
            external = frozenset(data.get("external", ()))
        else:
            phases = data
            external = frozenset()
        return cls(
            phases=tuple(MigrationPhase.from_dict(p) for p in phases),
            external=external,
        )


__all__ = [
    "SchemaCatalogue",
    "PhasePlan",
]
