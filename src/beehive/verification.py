"""
Post-merge verification.

Compares source and destination by external identifier after a merge and
lists the source rows that never arrived. Only entity types with a uuid
column can be checked. Rows the run excluded on purpose (system accounts,
rows matched to existing destination rows) are not reported.

Example:
    >>> async with source.connect() as src, destination.connect() as dst:
    ...     report = await find_unmoved(src, dst, [catalogue["person"]])
    >>> report.ok, report.unmoved
    (False, {'person': [(17, '6f1c...')]})
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from beehive.exclusions import ExclusionProvider, StaticExclusions
from beehive.models import EntityType

logger = logging.getLogger(__name__)


@dataclass
class VerificationReport:
    """
    Outcome of a verification pass.

    Attributes:
        checked: Entity types compared, in order.
        skipped: Entity types without a uuid column.
        unmoved: Per checked entity type, ``(source id, uuid)`` of every
            source row whose uuid is missing from the destination.
    """

    checked: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unmoved: dict[str, list[tuple[int, str]]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not any(self.unmoved.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked": list(self.checked),
            "skipped": list(self.skipped),
            "unmoved": {
                entity: [{"id": pk, "uuid": uuid} for pk, uuid in rows]
                for entity, rows in self.unmoved.items()
            },
        }


async def find_unmoved(
    source: AsyncConnection,
    destination: AsyncConnection,
    entities: Iterable[EntityType],
    exclusions: ExclusionProvider | None = None,
) -> VerificationReport:
    """
    List source rows whose uuid does not exist in the destination.

    Args:
        source: Connection to the merged source database.
        destination: Connection to the destination database.
        entities: Entity types to check; those without a uuid column are
            reported as skipped.
        exclusions: Rows left out of the merge on purpose.

    Returns:
        VerificationReport with the unmoved rows of every checked entity type.
    """
    exclusions = exclusions or StaticExclusions()
    report = VerificationReport()
    for entity in entities:
        if entity.uuid_column is None:
            report.skipped.append(entity.name)
            logger.debug("Cannot verify %s, it has no uuid column", entity.name)
            continue

        query = text(
            f"SELECT {entity.primary_key}, {entity.uuid_column} FROM {entity.table} "  # nosec B608
            f"WHERE {entity.uuid_column} IS NOT NULL ORDER BY {entity.primary_key}"
        )
        present = {uuid for _, uuid in await destination.execute(query)}
        excluded = exclusions.excluded_ids(entity.name)
        missing = [
            (int(pk), uuid)
            for pk, uuid in await source.execute(query)
            if uuid not in present and int(pk) not in excluded
        ]

        report.checked.append(entity.name)
        report.unmoved[entity.name] = missing
        if missing:
            logger.warning("%d %s rows were not moved", len(missing), entity.name)
        else:
            logger.info("All %s rows moved successfully", entity.name)
    return report


__all__ = [
    "VerificationReport",
    "find_unmoved",
]
