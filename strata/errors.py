"""Error types for the strata data-access layer.

Every error raised by the layer derives from ``RepositoryError`` so callers can
handle the whole family in one place, while the concrete subclasses keep the
distinctions that matter:

- ``EntityNotFoundError``: point lookup for an identifier that does not exist
- ``InvalidConfigurationError``: rejected options, raised before any store access
- ``StoreError``: the entity store failed (connectivity, constraint, conflict)
- ``OperationCancelledError``: the command timeout elapsed
- ``CacheUnavailableError``: internal to the caching decorator, never surfaced
"""

import typing as t


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(
        self,
        message: str,
        entity_type: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.operation = operation
        super().__init__(message)


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: t.Any) -> None:
        super().__init__(
            f"{entity_type} with ID {entity_id} not found",
            entity_type=entity_type,
            operation="get_by_id",
        )
        self.entity_id = entity_id


class InvalidConfigurationError(RepositoryError, ValueError):
    """Raised when query or cache options are invalid."""

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, operation="configure")
        self.field_name = field_name


class StoreError(RepositoryError):
    """Raised when the entity store fails."""


class ConstraintViolationError(StoreError):
    """Raised when a write violates a store constraint (e.g. duplicate key)."""

    def __init__(self, entity_type: str, entity_id: t.Any, operation: str) -> None:
        super().__init__(
            f"{entity_type} with ID {entity_id} already exists",
            entity_type=entity_type,
            operation=operation,
        )
        self.entity_id = entity_id


class ConcurrencyConflictError(StoreError):
    """Raised when an update or delete targets a missing or changed row."""

    def __init__(
        self,
        entity_type: str,
        entity_id: t.Any,
        operation: str,
        reason: str = "row does not exist",
    ) -> None:
        super().__init__(
            f"Concurrency conflict on {operation} of {entity_type} {entity_id}: {reason}",
            entity_type=entity_type,
            operation=operation,
        )
        self.entity_id = entity_id


class OperationCancelledError(RepositoryError):
    """Raised when an operation exceeds its command timeout."""

    def __init__(self, entity_type: str, operation: str, timeout: float) -> None:
        super().__init__(
            f"{operation} on {entity_type} cancelled after {timeout:g}s",
            entity_type=entity_type,
            operation=operation,
        )
        self.timeout = timeout


class CacheUnavailableError(RepositoryError):
    """The cache backend could not be reached; triggers fail-open reads."""
