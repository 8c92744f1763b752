"""Repository Caching Implementation.

Provides a read-through caching decorator for any repository:
- Per-operation TTLs with entries stamped against a monotonic clock
- Single-flight coordination so one fetch serves concurrent misses
- Invalidation of collection-level and affected point entries on writes
- Fail-open degradation when the cache backend is unavailable

Entry lifecycle: absent -> populating (single-flight) -> valid ->
expired or invalidated -> absent. Errors are never cached.
"""

import time
from collections import OrderedDict
from uuid import uuid4

import asyncio
import typing as t
from dataclasses import dataclass
from inflection import underscore

from strata.adapters.cache._base import CacheProtocol
from strata.adapters.store._base import Predicate
from strata.cleanup import CleanupMixin
from strata.depends import depends
from strata.errors import CacheUnavailableError, InvalidConfigurationError
from strata.logger import get_logger

from ._base import ReadResult, RepositoryProtocol
from .options import CacheOptions, QueryOptions, QueryStrategy
from .query import EntityStream, Snapshot
from .specifications import Specification

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached read result; valid while the decorator's clock is before ``expires_at``."""

    key: str
    value: t.Any
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class CacheMetrics:
    """Cache performance metrics."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    invalidations: int = 0
    coalesced: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def total_operations(self) -> int:
        """Get total cache operations."""
        return self.hits + self.misses + self.writes


class SingleFlight:
    """At most one in-flight call per key; concurrent callers share its outcome.

    The first caller for a key runs the call. Later callers wait on the same
    future and receive its result, its exception, or a ``CancelledError`` if
    the first caller was cancelled.
    """

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Future[t.Any]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def do(
        self, key: str, call: t.Callable[[], t.Awaitable[t.Any]]
    ) -> tuple[t.Any, bool]:
        """Run or join the call for ``key``.

        Returns:
            Tuple of (result, shared) where ``shared`` is True for callers
            that joined an existing call
        """
        pending = self._calls.get(key)
        if pending is not None:
            return await asyncio.shield(pending), True

        future: asyncio.Future[t.Any] = asyncio.get_running_loop().create_future()
        self._calls[key] = future
        try:
            result = await call()
        except Exception as e:
            future.set_exception(e)
            # Waiters re-raise it; the leader's own raise is what gets reported.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            if not future.done():
                future.cancel()
            if self._calls.get(key) is future:
                del self._calls[key]

    def forget(self, key: str) -> None:
        """Detach ``key`` so the next caller starts a fresh call."""
        self._calls.pop(key, None)


class CachedRepository[EntityType, IDType](CleanupMixin):
    """Repository wrapper that adds read-through caching.

    Exposes the same contract as the wrapped repository. Streaming reads,
    memory-mapped snapshots, ``exists`` and ``find`` with a plain callable are
    forwarded uncached; every other read is cached under a key scoped by
    ``cache_key_prefix`` and the entity name.

    Collection-level keys also carry the collection epoch, a token kept in
    the backend and replaced on every write. A write through any decorator
    sharing the backend therefore retires every collection entry at once,
    while point entries are deleted by key.
    """

    def __init__(
        self,
        wrapped: RepositoryProtocol[EntityType, IDType],
        cache: CacheProtocol | None = None,
        options: CacheOptions | None = None,
        clock: t.Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self.wrapped = wrapped
        self.options = options or CacheOptions()
        self.entity_name = wrapped.entity_name
        self._cache = cache
        self._clock = clock
        self._key_prefix = (
            f"{self.options.cache_key_prefix}:{underscore(self.entity_name)}"
        )
        self._epoch_key = self.cache_key("epoch")
        # Outlives every collection entry stored under the epoch it names.
        self._epoch_ttl = max(
            duration.total_seconds()
            for duration in (
                self.options.default_cache_duration,
                self.options.get_by_id_cache_duration,
                self.options.get_all_cache_duration,
            )
        )
        # Key -> True for collection-level entries, False for point lookups.
        self._tracked: OrderedDict[str, bool] = OrderedDict()
        self._flight = SingleFlight()
        self._generation = 0
        self._metrics = CacheMetrics()
        self.register_resource(wrapped)

    def key(self, entity: EntityType) -> IDType:
        return self.wrapped.key(entity)

    @property
    def enabled(self) -> bool:
        return self.options.enable_caching

    def cache_key(self, operation: str, parameter: t.Any = None) -> str:
        if parameter is None:
            return f"{self._key_prefix}:{operation}"
        return f"{self._key_prefix}:{operation}:{parameter}"

    def point_key(self, entity_id: IDType) -> str:
        """Key of a ``get_by_id`` entry; ``1`` and ``"1"`` get distinct keys."""
        return self.cache_key("get_by_id", repr(entity_id))

    def get_cache_metrics(self) -> CacheMetrics:
        return CacheMetrics(**vars(self._metrics))

    def get_metrics(self) -> dict[str, int]:
        return self.wrapped.get_metrics()

    def _get_cache(self) -> CacheProtocol:
        if self._cache is None:
            from strata.adapters.cache.memory import Cache

            self._cache = depends.get_sync(Cache)
        return self._cache

    async def _backend(
        self, operation: str, call: t.Callable[[CacheProtocol], t.Awaitable[t.Any]]
    ) -> t.Any:
        try:
            return await call(self._get_cache())
        except Exception as e:
            msg = f"Cache {operation} failed: {e}"
            raise CacheUnavailableError(
                msg, entity_type=self.entity_name, operation=operation
            ) from e

    def _degraded(self, error: CacheUnavailableError) -> None:
        self._metrics.errors += 1
        logger.warning(f"{error}; serving {self.entity_name} without cache")

    async def _lookup(self, key: str) -> CacheEntry | None:
        try:
            entry = await self._backend("get", lambda cache: cache.get(key))
        except CacheUnavailableError as e:
            self._degraded(e)
            return None
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            await self._discard([key])
            return None
        return entry

    async def _store(self, key: str, value: t.Any, ttl: float, collection: bool) -> None:
        entry = CacheEntry(key, value, self._clock() + ttl)
        try:
            await self._backend("set", lambda cache: cache.set(key, entry, ttl=ttl))
        except CacheUnavailableError as e:
            self._degraded(e)
            return
        self._metrics.writes += 1
        self._tracked[key] = collection
        self._tracked.move_to_end(key)
        overflow = len(self._tracked) - self.options.max_cached_items
        if overflow > 0:
            evicted = [self._tracked.popitem(last=False)[0] for _ in range(overflow)]
            await self._discard(evicted)

    async def _discard(self, keys: t.Iterable[str]) -> None:
        for key in keys:
            self._tracked.pop(key, None)
            try:
                await self._backend("delete", lambda cache: cache.delete(key))
            except CacheUnavailableError as e:
                self._degraded(e)
                continue
            self._metrics.invalidations += 1

    async def _read(
        self,
        key: str,
        ttl: float,
        fetch: t.Callable[[], t.Awaitable[t.Any]],
        collection: bool = True,
    ) -> t.Any:
        entry = await self._lookup(key)
        if entry is not None:
            self._metrics.hits += 1
            logger.debug(f"Cache hit: {key}")
            return entry.value
        self._metrics.misses += 1
        logger.debug(f"Cache miss: {key}")

        async def populate() -> t.Any:
            generation = self._generation
            value = await fetch()
            # A write completed during the fetch; the value may predate it.
            if generation == self._generation:
                await self._store(key, value, ttl, collection)
            return value

        value, shared = await self._flight.do(key, populate)
        if shared:
            self._metrics.coalesced += 1
        return value

    async def _read_collection(
        self,
        operation: str,
        parameter: t.Any,
        fetch: t.Callable[[], t.Awaitable[t.Any]],
        ttl: float | None = None,
    ) -> t.Any:
        try:
            epoch = await self._backend("get", lambda cache: cache.get(self._epoch_key))
        except CacheUnavailableError as e:
            self._degraded(e)
            return await fetch()
        key = f"{self.cache_key(operation, parameter)}@{epoch or 0}"
        return await self._read(key, self._ttl_all if ttl is None else ttl, fetch)

    async def _advance_epoch(self) -> None:
        epoch = uuid4().hex
        try:
            await self._backend(
                "set",
                lambda cache: cache.set(self._epoch_key, epoch, ttl=self._epoch_ttl),
            )
        except CacheUnavailableError as e:
            self._degraded(e)

    async def _invalidate(self, entity_ids: t.Iterable[IDType]) -> None:
        self._generation += 1
        await self._advance_epoch()
        stale = [key for key, collection in self._tracked.items() if collection]
        stale.extend(self.point_key(entity_id) for entity_id in entity_ids)
        for key in stale:
            self._flight.forget(key)
        await self._discard(stale)

    async def invalidate_all(self) -> None:
        """Retire every collection entry and drop the point entries cached here."""
        self._generation += 1
        await self._advance_epoch()
        stale = list(self._tracked)
        for key in stale:
            self._flight.forget(key)
        await self._discard(stale)
        logger.debug(f"Invalidated {len(stale)} cached {self.entity_name} entr(ies)")

    @staticmethod
    def _check_sizes(**sizes: int) -> None:
        """Reject invalid sizes before the cache is consulted."""
        QueryOptions(**sizes)

    @property
    def _ttl_all(self) -> float:
        return self.options.get_all_cache_duration.total_seconds()

    async def get_all(self) -> list[EntityType]:
        if not self.enabled:
            return await self.wrapped.get_all()
        return await self._read_collection("get_all", "all", self.wrapped.get_all)

    async def get_by_id(self, entity_id: IDType) -> EntityType:
        if not self.enabled:
            return await self.wrapped.get_by_id(entity_id)
        return await self._read(
            self.point_key(entity_id),
            self.options.get_by_id_cache_duration.total_seconds(),
            lambda: self.wrapped.get_by_id(entity_id),
            collection=False,
        )

    async def exists(self, entity_id: IDType) -> bool:
        return await self.wrapped.exists(entity_id)

    async def find(self, predicate: Predicate) -> list[EntityType]:
        if not self.enabled or not isinstance(predicate, Specification):
            return await self.wrapped.find(predicate)
        return await self._read_collection(
            "find",
            predicate.cache_token(),
            lambda: self.wrapped.find(predicate),
            ttl=self.options.default_cache_duration.total_seconds(),
        )

    async def get_all_chunked(self, chunk_size: int) -> list[EntityType]:
        if not self.enabled:
            return await self.wrapped.get_all_chunked(chunk_size)
        self._check_sizes(chunk_size=chunk_size)
        return await self._read_collection(
            "get_all_chunked",
            chunk_size,
            lambda: self.wrapped.get_all_chunked(chunk_size),
        )

    async def get_all_parallel(self, partition_count: int) -> list[EntityType]:
        if not self.enabled:
            return await self.wrapped.get_all_parallel(partition_count)
        self._check_sizes(parallel_partitions=partition_count)
        return await self._read_collection(
            "get_all_parallel",
            partition_count,
            lambda: self.wrapped.get_all_parallel(partition_count),
        )

    def get_all_streaming(self, buffer_size: int) -> EntityStream[EntityType]:
        return self.wrapped.get_all_streaming(buffer_size)

    async def get_all_memory_mapped(
        self, refresh: bool = False
    ) -> Snapshot[EntityType, IDType]:
        return await self.wrapped.get_all_memory_mapped(refresh=refresh)

    async def get_all_configurable(self, options: QueryOptions) -> ReadResult:
        if not isinstance(options, QueryOptions):
            msg = f"Expected QueryOptions, got {type(options).__name__}"
            raise InvalidConfigurationError(msg, field_name="options")

        match options.strategy:
            case QueryStrategy.STANDARD:
                operation, parameter = "get_all", "all"
            case QueryStrategy.CHUNKED:
                operation, parameter = "get_all_chunked", options.chunk_size
            case QueryStrategy.PARALLEL:
                operation, parameter = "get_all_parallel", options.parallel_partitions
            case _:
                return await self.wrapped.get_all_configurable(options)

        if not self.enabled:
            return await self.wrapped.get_all_configurable(options)
        return await self._read_collection(
            operation, parameter, lambda: self.wrapped.get_all_configurable(options)
        )

    async def add(self, entity: EntityType) -> EntityType:
        result = await self.wrapped.add(entity)
        if self.enabled:
            await self._invalidate([self.key(entity)])
        return result

    async def update(self, entity: EntityType) -> EntityType:
        result = await self.wrapped.update(entity)
        if self.enabled:
            await self._invalidate([self.key(entity)])
        return result

    async def delete(self, entity: EntityType) -> None:
        await self.wrapped.delete(entity)
        if self.enabled:
            await self._invalidate([self.key(entity)])

    async def bulk_insert(self, entities: t.Iterable[EntityType]) -> int:
        entities = list(entities)
        inserted = await self.wrapped.bulk_insert(entities)
        if self.enabled and inserted:
            await self._invalidate([self.key(entity) for entity in entities])
        return inserted
