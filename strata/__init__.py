from .errors import (
    CacheUnavailableError,
    ConcurrencyConflictError,
    ConstraintViolationError,
    EntityNotFoundError,
    InvalidConfigurationError,
    OperationCancelledError,
    RepositoryError,
    StoreError,
)
from .repository import (
    CachedRepository,
    CacheOptions,
    EntityStream,
    QueryOptions,
    QueryStrategy,
    Repository,
    RepositorySettings,
    Snapshot,
)

__version__ = "0.1.0"

__all__ = [
    "CacheOptions",
    "CacheUnavailableError",
    "CachedRepository",
    "ConcurrencyConflictError",
    "ConstraintViolationError",
    "EntityNotFoundError",
    "EntityStream",
    "InvalidConfigurationError",
    "OperationCancelledError",
    "QueryOptions",
    "QueryStrategy",
    "Repository",
    "RepositoryError",
    "RepositorySettings",
    "Snapshot",
    "StoreError",
]
