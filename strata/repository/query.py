"""Query Strategy Engine.

Executes full-collection reads against an entity store under one of the
``QueryStrategy`` values:

- standard: a single unbounded scan
- chunked: pages of ``chunk_size`` ordered by identifier, resumed past the
  last key of each page until a short page is returned
- parallel: the key space is split into disjoint hash partitions, each read
  as a chunked scan in its own session; at most ``parallel_partitions``
  sub-scans run at once and results are merged by identifier
- streaming: a lazy, single-pass ``EntityStream`` whose producer never holds
  more than ``streaming_buffer_size`` unread rows
- memory_mapped: the collection is loaded once into an immutable
  ``Snapshot`` kept for the engine's lifetime; writes do not refresh it

Chunked and parallel reads are consistent only when the collection is not
structurally modified during the scan; rows inserted or deleted behind the
cursor may be missed.
"""

import hashlib
import weakref
from datetime import UTC, datetime

import asyncio
import typing as t
from contextlib import asynccontextmanager
from dataclasses import dataclass

from strata.adapters.store._base import KeyFilter, StoreBase, StoreSession
from strata.errors import OperationCancelledError
from strata.logger import get_logger

from .options import QueryOptions

logger = get_logger(__name__)


def stable_hash(value: t.Any) -> int:
    """Process-independent hash of ``str(value)``."""
    digest = hashlib.blake2b(str(value).encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big")


@dataclass(frozen=True)
class KeyPartition:
    """One slice of the key space: keys whose stable hash lands on ``index``."""

    index: int
    count: int

    def __call__(self, key: t.Any) -> bool:
        return stable_hash(key) % self.count == self.index


def partition_key_space(count: int) -> list[KeyPartition]:
    """Disjoint partitions that together accept every key."""
    return [KeyPartition(index, count) for index in range(count)]


class Snapshot[EntityType, IDType]:
    """Immutable, process-local copy of a collection with an identifier index."""

    __slots__ = ("_entities", "_index", "_loaded_at")

    def __init__(
        self,
        entities: t.Iterable[EntityType],
        key: t.Callable[[EntityType], IDType],
        loaded_at: datetime | None = None,
    ) -> None:
        self._entities: tuple[EntityType, ...] = tuple(entities)
        self._index: dict[IDType, EntityType] = {key(e): e for e in self._entities}
        self._loaded_at = loaded_at or datetime.now(UTC)

    @property
    def loaded_at(self) -> datetime:
        return self._loaded_at

    def get(self, entity_id: IDType) -> EntityType | None:
        return self._index.get(entity_id)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._index

    def __getitem__(self, position: int) -> EntityType:
        return self._entities[position]

    def __iter__(self) -> t.Iterator[EntityType]:
        return iter(self._entities)

    def __len__(self) -> int:
        return len(self._entities)

    def __repr__(self) -> str:
        return f"Snapshot(size={len(self)}, loaded_at={self.loaded_at.isoformat()})"


class _End:
    pass


@dataclass
class _Failure:
    error: BaseException


_END = _End()


class _Producer[EntityType]:
    """Read-ahead side of an ``EntityStream``.

    Holds one credit per unread row, queued or being fetched. After the first
    page it waits until at least ``low_water`` credits are free, so a slow
    consumer does not cause one round trip per row. It keeps no reference to
    its stream, so an abandoned stream can be collected and cancel it.
    """

    def __init__(
        self,
        store: StoreBase[EntityType, t.Any],
        key: t.Callable[[EntityType], t.Any],
        buffer_size: int,
        page_timeout: float,
    ) -> None:
        self.store = store
        self.key = key
        self.buffer_size = buffer_size
        self.low_water = max(1, buffer_size // 2)
        self.page_timeout = page_timeout
        self.credits = asyncio.Semaphore(buffer_size)
        self.queue: asyncio.Queue[t.Any] = asyncio.Queue()
        self.in_flight = 0
        self.high_water = 0

    def _note_usage(self) -> None:
        self.high_water = max(self.high_water, self.queue.qsize() + self.in_flight)

    async def _reserve(self) -> int:
        granted = 0
        while granted < self.low_water:
            await self.credits.acquire()
            granted += 1
        while granted < self.buffer_size and not self.credits.locked():
            await self.credits.acquire()
            granted += 1
        return granted

    async def _fetch(
        self, session: StoreSession[EntityType, t.Any], after: t.Any, limit: int
    ) -> list[EntityType]:
        try:
            async with asyncio.timeout(self.page_timeout):
                return await session.scan(after=after, limit=limit)
        except TimeoutError as e:
            raise OperationCancelledError(
                self.store.entity_name, "streaming", self.page_timeout
            ) from e

    async def run(self) -> None:
        try:
            async with self.store.session() as session:
                cursor = None
                while True:
                    granted = await self._reserve()
                    self.in_flight = granted
                    self._note_usage()
                    page = await self._fetch(session, cursor, granted)
                    self.in_flight = 0
                    for _ in range(granted - len(page)):
                        self.credits.release()
                    for row in page:
                        self.queue.put_nowait(row)
                    if len(page) < granted:
                        break
                    cursor = self.key(page[-1])
            self.queue.put_nowait(_END)
        except Exception as e:
            self.queue.put_nowait(_Failure(e))


def _cancel_abandoned(task: asyncio.Task[None]) -> None:
    if not task.done() and not task.get_loop().is_closed():
        task.cancel()


class EntityStream[EntityType]:
    """Lazy, forward-only, single-pass sequence backed by a bounded read-ahead.

    Each row handed to the consumer returns its credit to the producer, so
    the stream never holds more than ``buffer_size`` unread rows. The
    producer starts on first iteration and releases its session when the
    scan is exhausted, when the stream is closed, when the consuming task is
    cancelled, or when the stream is garbage collected.

    Use as ``async with stream: async for entity in stream``, or call
    ``aclose()`` when abandoning a stream early.
    """

    def __init__(
        self,
        store: StoreBase[EntityType, t.Any],
        key: t.Callable[[EntityType], t.Any],
        buffer_size: int,
        page_timeout: float,
    ) -> None:
        self._state = _Producer(store, key, buffer_size, page_timeout)
        self._producer: asyncio.Task[None] | None = None
        self._done = False

    @property
    def buffer_size(self) -> int:
        return self._state.buffer_size

    @property
    def high_water(self) -> int:
        """Most unread rows held at once."""
        return self._state.high_water

    def _start(self) -> None:
        if self._producer is None:
            self._producer = asyncio.create_task(
                self._state.run(),
                name=f"strata-stream-{self._state.store.entity_name}",
            )
            finalizer = weakref.finalize(self, _cancel_abandoned, self._producer)
            finalizer.atexit = False

    def __aiter__(self) -> "EntityStream[EntityType]":
        return self

    async def __anext__(self) -> EntityType:
        if self._done:
            raise StopAsyncIteration
        self._start()
        try:
            item = await self._state.queue.get()
        except asyncio.CancelledError:
            await self.aclose()
            raise
        if isinstance(item, _End):
            self._done = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._done = True
            raise item.error
        self._state.credits.release()
        return item

    async def aclose(self) -> None:
        """Stop the producer and release its session; idempotent."""
        self._done = True
        producer = self._producer
        if producer is None:
            return
        if not producer.done():
            producer.cancel()
            await asyncio.wait([producer])
        elif not producer.cancelled():
            producer.exception()

    async def __aenter__(self) -> "EntityStream[EntityType]":
        return self

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.aclose()


def _first_error(group: BaseExceptionGroup) -> BaseException:
    error = group.exceptions[0]
    return _first_error(error) if isinstance(error, BaseExceptionGroup) else error


class QueryEngine[EntityType, IDType]:
    """Runs full-collection reads against one store."""

    def __init__(
        self,
        store: StoreBase[EntityType, IDType],
        key: t.Callable[[EntityType], IDType] | None = None,
    ) -> None:
        self._store = store
        self._key = key or store.key
        self._snapshot: Snapshot[EntityType, IDType] | None = None
        self._snapshot_lock: asyncio.Lock | None = None

    @property
    def snapshot(self) -> Snapshot[EntityType, IDType] | None:
        return self._snapshot

    @asynccontextmanager
    async def deadline(
        self, options: QueryOptions, operation: str
    ) -> t.AsyncIterator[None]:
        """Bound the enclosed block by ``options.command_timeout``.

        Raises:
            OperationCancelledError: The timeout elapsed
        """
        timeout = asyncio.timeout(options.timeout_seconds)
        try:
            async with timeout:
                yield
        except TimeoutError as e:
            if not timeout.expired():
                raise
            logger.warning(
                f"{operation} on {self._store.entity_name} timed out after "
                f"{options.timeout_seconds:g}s"
            )
            raise OperationCancelledError(
                self._store.entity_name, operation, options.timeout_seconds
            ) from e

    async def scan_pages(
        self,
        session: StoreSession[EntityType, IDType],
        chunk_size: int,
        key_filter: KeyFilter | None = None,
    ) -> list[EntityType]:
        rows: list[EntityType] = []
        cursor: IDType | None = None
        while True:
            page = await session.scan(after=cursor, limit=chunk_size, key_filter=key_filter)
            rows.extend(page)
            if len(page) < chunk_size:
                return rows
            cursor = self._key(page[-1])

    async def standard(self, options: QueryOptions) -> list[EntityType]:
        async with self.deadline(options, "standard"), self._store.session() as session:
            return await session.scan()

    async def chunked(
        self, options: QueryOptions, operation: str = "chunked"
    ) -> list[EntityType]:
        async with self.deadline(options, operation), self._store.session() as session:
            rows = await self.scan_pages(session, options.chunk_size)
        logger.debug(
            f"{operation} read {len(rows)} {self._store.entity_name} row(s) "
            f"in pages of {options.chunk_size}"
        )
        return rows

    async def parallel(self, options: QueryOptions) -> list[EntityType]:
        partitions = partition_key_space(options.parallel_partitions)
        gate = asyncio.Semaphore(len(partitions))

        async def scan_partition(partition: KeyPartition) -> list[EntityType]:
            async with gate, self._store.session() as session:
                return await self.scan_pages(session, options.chunk_size, partition)

        async with self.deadline(options, "parallel"):
            try:
                async with asyncio.TaskGroup() as group:
                    tasks = [group.create_task(scan_partition(p)) for p in partitions]
            except ExceptionGroup as failures:
                raise _first_error(failures) from None

        rows = [row for task in tasks for row in task.result()]
        rows.sort(key=self._key)  # type: ignore[arg-type]
        logger.debug(
            f"parallel read {len(rows)} {self._store.entity_name} row(s) "
            f"across {len(partitions)} partition(s)"
        )
        return rows

    def streaming(self, options: QueryOptions) -> EntityStream[EntityType]:
        return EntityStream(
            self._store,
            self._key,
            options.streaming_buffer_size,
            options.timeout_seconds,
        )

    async def memory_mapped(
        self, options: QueryOptions, refresh: bool = False
    ) -> Snapshot[EntityType, IDType]:
        current = self._snapshot
        if current is not None and not refresh:
            return current
        if self._snapshot_lock is None:
            self._snapshot_lock = asyncio.Lock()
        async with self._snapshot_lock:
            # Another caller loaded while this one waited.
            if self._snapshot is not current and self._snapshot is not None:
                return self._snapshot
            rows = await self.chunked(options, operation="memory_mapped")
            self._snapshot = Snapshot(rows, self._key)
            logger.debug(f"Loaded {self._snapshot!r} of {self._store.entity_name}")
            return self._snapshot
