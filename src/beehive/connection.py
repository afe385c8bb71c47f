"""
Connection provider.

Turns ``ConnectionSettings`` into SQLAlchemy async engines. The merge engine
only ever receives engines and never builds connection strings itself.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from beehive.config import ConnectionSettings

logger = logging.getLogger(__name__)


def create_engine(settings: ConnectionSettings, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for one database.

    Args:
        settings: Validated connection settings.
        **kwargs: Passed to ``create_async_engine`` (pool sizing, echo, ...).

    Returns:
        AsyncEngine; connections are opened lazily.
    """
    url = settings.to_url()
    logger.info("Connecting to %s", url.render_as_string(hide_password=True))
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, **kwargs)


def create_engines(
    source: ConnectionSettings,
    destination: ConnectionSettings,
    *,
    workers: int = 1,
) -> tuple[AsyncEngine, AsyncEngine]:
    """
    Create the source and destination engines for a run.

    The pools are sized so every parallel worker gets its own connection pair
    next to the connections the engine itself holds.
    """

    def pool(settings: ConnectionSettings) -> dict[str, Any]:
        if settings.driver.startswith("sqlite"):
            return {}
        return {"pool_size": workers + 1, "max_overflow": 2}

    return create_engine(source, **pool(source)), create_engine(destination, **pool(destination))


__all__ = [
    "create_engine",
    "create_engines",
]
