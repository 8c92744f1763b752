"""Entity store adapters.

``MemoryStore`` is importable from here; the SQL store lives in
``strata.adapters.store.sql`` and pulls in SQLModel on import.
"""

from ._base import KeyFilter, Predicate, StoreBase, StoreBaseSettings, StoreSession
from .memory import MemoryStore, MemoryStoreMetrics, MemoryStoreSettings

__all__ = [
    "KeyFilter",
    "MemoryStore",
    "MemoryStoreMetrics",
    "MemoryStoreSettings",
    "Predicate",
    "StoreBase",
    "StoreBaseSettings",
    "StoreSession",
]
