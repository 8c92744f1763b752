"""Repository Core.

Provides the entity-agnostic repository contract:
- Point and predicate reads (``get_by_id``, ``exists``, ``find``)
- Full-collection reads under each ``QueryStrategy``
- Single and batched writes delegated to the entity store
- Per-operation success/error counters
- Resource cleanup of the underlying store

The core performs no caching; wrap it in ``CachedRepository`` for that.
"""

import itertools

import typing as t
from contextlib import asynccontextmanager

from strata.adapters.store._base import Predicate, StoreBase, StoreSession
from strata.cleanup import CleanupMixin
from strata.errors import (
    EntityNotFoundError,
    InvalidConfigurationError,
    RepositoryError,
    StoreError,
)
from strata.logger import get_logger

from .options import QueryOptions, QueryStrategy, RepositorySettings
from .query import EntityStream, QueryEngine, Snapshot

logger = get_logger(__name__)

ReadResult = list[t.Any] | Snapshot[t.Any, t.Any] | EntityStream[t.Any]


class RepositoryProtocol[EntityType, IDType](t.Protocol):
    """Contract shared by ``Repository`` and ``CachedRepository``."""

    entity_name: str

    async def get_all(self) -> list[EntityType]: ...

    async def get_by_id(self, entity_id: IDType) -> EntityType: ...

    async def exists(self, entity_id: IDType) -> bool: ...

    async def find(self, predicate: Predicate) -> list[EntityType]: ...

    async def get_all_chunked(self, chunk_size: int) -> list[EntityType]: ...

    async def get_all_parallel(self, partition_count: int) -> list[EntityType]: ...

    def get_all_streaming(self, buffer_size: int) -> EntityStream[EntityType]: ...

    async def get_all_memory_mapped(
        self, refresh: bool = False
    ) -> Snapshot[EntityType, IDType]: ...

    async def get_all_configurable(self, options: QueryOptions) -> ReadResult: ...

    async def add(self, entity: EntityType) -> EntityType: ...

    async def update(self, entity: EntityType) -> EntityType: ...

    async def delete(self, entity: EntityType) -> None: ...

    async def bulk_insert(self, entities: t.Iterable[EntityType]) -> int: ...

    def key(self, entity: EntityType) -> IDType: ...

    def get_metrics(self) -> dict[str, int]: ...

    async def cleanup(self) -> None: ...


class Repository[EntityType, IDType](CleanupMixin):
    """Repository over a single entity store.

    Entity type and identifier accessor are taken from the store. Query
    tuning defaults come from ``settings.query``; the size arguments of the
    strategy methods override them per call and are validated before any
    store access.
    """

    def __init__(
        self,
        store: StoreBase[EntityType, IDType],
        settings: RepositorySettings | None = None,
    ) -> None:
        super().__init__()
        self.store = store
        self.entity_type = store.entity_type
        self.entity_name = store.entity_name
        self.settings = settings or RepositorySettings()
        self.engine: QueryEngine[EntityType, IDType] = QueryEngine(store)
        self._metrics: dict[str, int] = {}
        self.register_resource(store)

    def key(self, entity: EntityType) -> IDType:
        return self.store.key(entity)

    @property
    def query_options(self) -> QueryOptions:
        return self.settings.query

    def _increment_metric(self, operation: str, success: bool = True) -> None:
        """Track operation metrics."""
        metric_key = f"{operation}_{'success' if success else 'error'}"
        self._metrics[metric_key] = self._metrics.get(metric_key, 0) + 1

    def get_metrics(self) -> dict[str, int]:
        """Get repository performance metrics."""
        return self._metrics.copy()

    @asynccontextmanager
    async def _operation(self, operation: str) -> t.AsyncIterator[None]:
        """Count the outcome and normalise foreign store failures to ``StoreError``."""
        try:
            yield
        except RepositoryError:
            self._increment_metric(operation, success=False)
            raise
        except Exception as e:
            self._increment_metric(operation, success=False)
            msg = f"{operation} on {self.entity_name} failed: {e}"
            raise StoreError(msg, entity_type=self.entity_name, operation=operation) from e
        self._increment_metric(operation)

    @asynccontextmanager
    async def _write(
        self, operation: str
    ) -> t.AsyncIterator[StoreSession[EntityType, IDType]]:
        """Session whose staged writes commit only if the block completes in time."""
        async with (
            self._operation(operation),
            self.engine.deadline(self.query_options, operation),
            self.store.session() as session,
        ):
            yield session

    def _options(self, **changes: t.Any) -> QueryOptions:
        return self.query_options.replace(**changes)

    async def get_all(self) -> list[EntityType]:
        """Get every entity with the standard (single scan) strategy."""
        async with self._operation("get_all"):
            return await self.engine.standard(self.query_options)

    async def get_by_id(self, entity_id: IDType) -> EntityType:
        """Get entity by ID.

        Args:
            entity_id: Unique identifier for the entity

        Returns:
            The stored entity

        Raises:
            EntityNotFoundError: If no entity has this identifier
        """
        async with self._operation("get_by_id"):
            options = self.query_options
            async with self.engine.deadline(options, "get_by_id"):
                async with self.store.session() as session:
                    entity = await session.get(entity_id)
            if entity is None:
                raise EntityNotFoundError(self.entity_name, entity_id)
            return entity

    async def exists(self, entity_id: IDType) -> bool:
        async with self._operation("exists"):
            async with self.engine.deadline(self.query_options, "exists"):
                async with self.store.session() as session:
                    return await session.get(entity_id) is not None

    async def find(self, predicate: Predicate) -> list[EntityType]:
        """Entities matching ``predicate``, ordered by identifier.

        Args:
            predicate: A ``Specification`` (pushed down by stores that can) or
                any callable taking an entity and returning a bool
        """
        async with self._operation("find"):
            async with self.engine.deadline(self.query_options, "find"):
                async with self.store.session() as session:
                    return await session.filter(predicate)

    async def get_all_chunked(self, chunk_size: int) -> list[EntityType]:
        options = self._options(chunk_size=chunk_size)
        async with self._operation("get_all_chunked"):
            return await self.engine.chunked(options)

    async def get_all_parallel(self, partition_count: int) -> list[EntityType]:
        options = self._options(parallel_partitions=partition_count)
        async with self._operation("get_all_parallel"):
            return await self.engine.parallel(options)

    def get_all_streaming(self, buffer_size: int) -> EntityStream[EntityType]:
        """Lazy sequence holding at most ``buffer_size`` unread entities.

        Nothing is read until the stream is first iterated. Close the stream
        (or use it as an async context manager) when stopping early.
        """
        options = self._options(streaming_buffer_size=buffer_size)
        self._increment_metric("get_all_streaming")
        return self.engine.streaming(options)

    async def get_all_memory_mapped(
        self, refresh: bool = False
    ) -> Snapshot[EntityType, IDType]:
        """Immutable snapshot loaded once per repository.

        Writes made after loading are not reflected until ``refresh=True``.
        """
        async with self._operation("get_all_memory_mapped"):
            return await self.engine.memory_mapped(self.query_options, refresh=refresh)

    async def get_all_configurable(self, options: QueryOptions) -> ReadResult:
        """Dispatch to the strategy named by ``options.strategy``.

        Streaming returns an ``EntityStream``, memory-mapped a ``Snapshot``,
        every other strategy a list.
        """
        if not isinstance(options, QueryOptions):
            msg = f"Expected QueryOptions, got {type(options).__name__}"
            raise InvalidConfigurationError(msg, field_name="options")

        operation = f"get_all_{options.strategy.value}"
        if options.strategy is QueryStrategy.STREAMING:
            self._increment_metric(operation)
            return self.engine.streaming(options)

        async with self._operation(operation):
            match options.strategy:
                case QueryStrategy.STANDARD:
                    return await self.engine.standard(options)
                case QueryStrategy.CHUNKED:
                    return await self.engine.chunked(options)
                case QueryStrategy.PARALLEL:
                    return await self.engine.parallel(options)
                case QueryStrategy.MEMORY_MAPPED:
                    return await self.engine.memory_mapped(options)

        msg = f"Unsupported strategy: {options.strategy!r}"
        raise InvalidConfigurationError(msg, field_name="strategy")

    async def add(self, entity: EntityType) -> EntityType:
        async with self._write("add") as session:
            await session.add(entity)
        return entity

    async def update(self, entity: EntityType) -> EntityType:
        """Update an existing entity.

        Raises:
            ConcurrencyConflictError: The entity no longer exists or its
                version is stale
        """
        async with self._write("update") as session:
            await session.update(entity)
        return entity

    async def delete(self, entity: EntityType) -> None:
        async with self._write("delete") as session:
            await session.delete(entity)

    async def bulk_insert(self, entities: t.Iterable[EntityType]) -> int:
        """Insert entities in batches of ``bulk_batch_size`` within one session.

        Returns:
            Number of entities inserted
        """
        entities = list(entities)
        if not entities:
            return 0
        batch_size = self.settings.bulk_batch_size
        async with self._write("bulk_insert") as session:
            for batch in itertools.batched(entities, batch_size):
                await session.add_many(batch)
        logger.debug(
            f"Inserted {len(entities)} {self.entity_name} row(s) "
            f"in batches of {batch_size}"
        )
        return len(entities)
