"""
Persistence layer.

Tenant-scoped Store interface with SQL and in-memory implementations.
"""

from techassist.persistence.base import Store
from techassist.persistence.memory import InMemoryStore

__all__ = [
    "Store",
    "InMemoryStore",
    "get_store",
]


def get_store() -> Store:
    """Build the store selected by ``settings.store_backend``."""
    from techassist.config import settings

    if settings.store_backend == "memory":
        return InMemoryStore()

    from techassist.persistence.sql import SqlStore
    return SqlStore()
