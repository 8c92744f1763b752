"""Repository layer for strata.

This module provides an entity-agnostic data-access layer with:
- Repository core with point, predicate and full-collection reads
- Query strategies: standard, chunked, parallel, streaming, memory-mapped
- Query Specification pattern for composable predicates
- A read-through caching decorator with single-flight misses
"""

from ._base import ReadResult, Repository, RepositoryProtocol
from .cache import CachedRepository, CacheEntry, CacheMetrics, SingleFlight
from .options import CacheOptions, QueryOptions, QueryStrategy, RepositorySettings
from .query import (
    EntityStream,
    KeyPartition,
    QueryEngine,
    Snapshot,
    partition_key_space,
)
from .specifications import (
    AndSpecification,
    ComparisonOperator,
    FieldSpecification,
    NotSpecification,
    OrSpecification,
    Specification,
)

__all__ = [
    "AndSpecification",
    "CacheEntry",
    "CacheMetrics",
    "CacheOptions",
    "CachedRepository",
    "ComparisonOperator",
    "EntityStream",
    "FieldSpecification",
    "KeyPartition",
    "NotSpecification",
    "OrSpecification",
    "QueryEngine",
    "QueryOptions",
    "QueryStrategy",
    "ReadResult",
    "Repository",
    "RepositoryProtocol",
    "RepositorySettings",
    "SingleFlight",
    "Snapshot",
    "Specification",
    "partition_key_space",
]
