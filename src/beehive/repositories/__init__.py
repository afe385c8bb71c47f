"""
Repositories for beehive merge state.

- MergeStateRepository: protocol for identity mapping and checkpoint storage
- SQLAlchemyMergeStateRepository: bookkeeping tables in the destination
- InMemoryMergeStateRepository: for tests
"""

from beehive.repositories._connection import execute_with_connection, open_transaction
from beehive.repositories.merge_state import (
    InMemoryMergeStateRepository,
    MergeStateRepository,
    SQLAlchemyMergeStateRepository,
)

__all__ = [
    "MergeStateRepository",
    "SQLAlchemyMergeStateRepository",
    "InMemoryMergeStateRepository",
    "execute_with_connection",
    "open_transaction",
]
