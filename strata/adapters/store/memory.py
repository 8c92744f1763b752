"""Ordered in-memory entity store.

Rows live in a dict indexed by key with a sorted key list for range scans.
Sessions stage their writes and apply them copy-on-commit, so a session that
fails or is cancelled leaves no partial effect. Reads return deep copies, so
callers never alias stored rows.
"""

import copy
from bisect import bisect_right

import asyncio
import typing as t
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pydantic import Field

from strata.errors import ConcurrencyConflictError, ConstraintViolationError
from strata.logger import get_logger

from ._base import KeyFilter, Predicate, StoreBase, StoreBaseSettings, StoreSession

logger = get_logger(__name__)


class MemoryStoreSettings(StoreBaseSettings):
    latency: float = Field(
        default=0.0,
        ge=0.0,
        description="Simulated round-trip delay per operation in seconds",
    )
    version_field: str | None = Field(
        default=None,
        description="Attribute used for optimistic concurrency checks on update",
    )


@dataclass
class MemoryStoreMetrics:
    sessions_opened: int = 0
    sessions_active: int = 0
    max_sessions_active: int = 0
    commits: int = 0
    round_trips: int = 0
    rows_read: int = 0
    page_sizes: list[int] = field(default_factory=list)


class MemorySession[EntityType, IDType](StoreSession[EntityType, IDType]):
    def __init__(self, store: "MemoryStore[EntityType, IDType]") -> None:
        self._store = store
        self._staged: list[tuple[str, EntityType]] = []

    async def _round_trip(self) -> None:
        self._store.metrics.round_trips += 1
        await asyncio.sleep(self._store.settings.latency)

    def _read(self, rows: t.Iterable[EntityType]) -> list[EntityType]:
        result = [copy.deepcopy(row) for row in rows]
        self._store.metrics.rows_read += len(result)
        return result

    async def get(self, entity_id: IDType) -> EntityType | None:
        await self._round_trip()
        row = self._store._rows.get(entity_id)
        return None if row is None else self._read([row])[0]

    async def scan(
        self,
        after: IDType | None = None,
        limit: int | None = None,
        key_filter: KeyFilter | None = None,
    ) -> list[EntityType]:
        await self._round_trip()
        keys, rows = self._store._keys, self._store._rows
        start = 0 if after is None else bisect_right(keys, after)
        selected: list[EntityType] = []
        for index in range(start, len(keys)):
            if limit is not None and len(selected) == limit:
                break
            if key_filter is None or key_filter(keys[index]):
                selected.append(rows[keys[index]])
        self._store.metrics.page_sizes.append(len(selected))
        return self._read(selected)

    async def filter(self, predicate: Predicate) -> list[EntityType]:
        await self._round_trip()
        rows = self._store._rows
        return self._read(
            rows[entity_id] for entity_id in self._store._keys if predicate(rows[entity_id])
        )

    async def add(self, entity: EntityType) -> None:
        await self._round_trip()
        self._staged.append(("add", copy.deepcopy(entity)))

    async def update(self, entity: EntityType) -> None:
        await self._round_trip()
        self._staged.append(("update", entity))

    async def delete(self, entity: EntityType) -> None:
        await self._round_trip()
        self._staged.append(("delete", entity))

    async def add_many(self, entities: t.Sequence[EntityType]) -> None:
        await self._round_trip()
        self._staged.extend(("add", copy.deepcopy(entity)) for entity in entities)

    def commit(self) -> None:
        if self._staged:
            self._store._apply(self._staged)
        self._staged = []


class MemoryStore[EntityType, IDType](StoreBase[EntityType, IDType]):
    """Ordered key-value store kept in process memory."""

    settings: MemoryStoreSettings

    def __init__(
        self,
        entity_type: type[EntityType],
        key: t.Callable[[EntityType], IDType] | None = None,
        settings: MemoryStoreSettings | None = None,
    ) -> None:
        super().__init__(entity_type, key, settings or MemoryStoreSettings())
        self._rows: dict[IDType, EntityType] = {}
        self._keys: list[IDType] = []
        self.metrics = MemoryStoreMetrics()

    def __len__(self) -> int:
        return len(self._rows)

    @asynccontextmanager
    async def session(self) -> t.AsyncIterator[MemorySession[EntityType, IDType]]:
        metrics = self.metrics
        metrics.sessions_opened += 1
        metrics.sessions_active += 1
        metrics.max_sessions_active = max(
            metrics.max_sessions_active, metrics.sessions_active
        )
        try:
            session = MemorySession(self)
            yield session
            session.commit()
        finally:
            metrics.sessions_active -= 1

    def _apply(self, staged: list[tuple[str, EntityType]]) -> None:
        rows = dict(self._rows)
        version_field = self.settings.version_field
        bumped: list[EntityType] = []

        for operation, entity in staged:
            entity_id = self.key(entity)
            match operation:
                case "add":
                    if entity_id in rows:
                        raise ConstraintViolationError(self.entity_name, entity_id, "add")
                    rows[entity_id] = entity
                case "update":
                    current = rows.get(entity_id)
                    if current is None:
                        raise ConcurrencyConflictError(self.entity_name, entity_id, "update")
                    stored = copy.deepcopy(entity)
                    if version_field is not None:
                        expected = getattr(current, version_field)
                        if getattr(entity, version_field) != expected:
                            raise ConcurrencyConflictError(
                                self.entity_name,
                                entity_id,
                                "update",
                                reason=f"stale {version_field}",
                            )
                        setattr(stored, version_field, expected + 1)
                        bumped.append(entity)
                    rows[entity_id] = stored
                case "delete":
                    if rows.pop(entity_id, None) is None:
                        raise ConcurrencyConflictError(self.entity_name, entity_id, "delete")

        if rows.keys() != self._rows.keys():
            self._keys = sorted(rows)
        self._rows = rows
        for entity in bumped:
            setattr(entity, version_field, getattr(entity, version_field) + 1)  # type: ignore[arg-type]
        self.metrics.commits += 1
        logger.debug(f"Committed {len(staged)} staged write(s) to {self.entity_name}")
