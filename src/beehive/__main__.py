"""
Merge one source database into a destination database.

Usage:
    python -m beehive --config merge.json
    python -m beehive --config merge.json --dry-run --log-level DEBUG
    python -m beehive --config merge.json --verify

The configuration document names both databases, the source identifier,
the schema catalogue and the phase plan. A run that stops part way can be
started again with the same document; it resumes at the last committed
checkpoint. The run report is printed to stdout as JSON.
With --verify nothing is merged; the source rows whose uuid is missing
from the destination are printed instead.

Exit codes:
    0  merge finished (or dry run rolled back)
    1  merge failed; see the log for the phase and entity type
    2  configuration could not be loaded
    3  the source was already merged
    4  verification found source rows missing from the destination
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from beehive.config import MergeSettings, load_config
from beehive.connection import create_engines
from beehive.engine import MergeEngine
from beehive.exceptions import AlreadyProcessedSourceError, MergeError
from beehive.exclusions import match_by_uuid
from beehive.models import RunReport
from beehive.verification import VerificationReport, find_unmoved

logger = logging.getLogger("beehive")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="beehive",
        description="Merge one medical records database into another",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="JSON merge settings document",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run every phase and roll everything back at the end",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="List source rows missing from the destination instead of merging",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--no-tracing",
        action="store_true",
        help="Do not create OpenTelemetry spans",
    )
    return parser.parse_args(argv)


async def run_merge(settings: MergeSettings, *, dry_run: bool, tracing: bool) -> RunReport:
    """Build engines and run the configured plan once."""
    config = settings.to_merge_config(dry_run=dry_run or None)
    if not tracing:
        config = dataclasses.replace(config, enable_tracing=False)
    catalogue = settings.build_catalogue()
    plan = settings.build_plan()
    source, destination = create_engines(
        settings.source,
        settings.destination,
        workers=config.workers,
    )
    try:
        exclusions = settings.build_exclusions()
        if settings.match_uuids:
            async with source.connect() as src, destination.connect() as dst:
                exclusions = await match_by_uuid(
                    src,
                    dst,
                    [catalogue[name] for name in settings.match_uuids],
                    excluded=settings.exclusions,
                )
        engine = MergeEngine(
            source,
            destination,
            catalogue,
            config,
            exclusions=exclusions,
            progress_callback=lambda p: logger.info(
                "%s: %d/%d rows (%.1f%%, %.0f rows/s)",
                p.entity,
                p.rows_done,
                p.rows_total,
                p.progress_percent,
                p.rows_per_second,
            ),
        )
        return await engine.run(plan)
    finally:
        await source.dispose()
        await destination.dispose()


async def run_verify(settings: MergeSettings) -> VerificationReport:
    """Compare both databases by uuid for every entity type the plan moves."""
    catalogue = settings.build_catalogue()
    plan = settings.build_plan()
    source, destination = create_engines(settings.source, settings.destination)
    try:
        async with source.connect() as src, destination.connect() as dst:
            return await find_unmoved(
                src,
                dst,
                [catalogue[movement.entity] for _, movement in plan.movements()],
                settings.build_exclusions(),
            )
    finally:
        await source.dispose()
        await destination.dispose()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        settings = load_config(args.config)
    except (OSError, ValidationError) as e:
        logger.error("Cannot load %s: %s", args.config, e)
        return 2

    if args.verify:
        verification = asyncio.run(run_verify(settings))
        print(json.dumps(verification.to_dict(), indent=2))
        return 0 if verification.ok else 4

    try:
        report = asyncio.run(
            run_merge(settings, dry_run=args.dry_run, tracing=not args.no_tracing)
        )
    except AlreadyProcessedSourceError as e:
        logger.error("%s", e)
        return 3
    except MergeError as e:
        logger.error("Merge failed: %s", e)
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
