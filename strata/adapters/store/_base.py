"""Entity store contract.

A store is the ordered storage the repository layer reads and writes through.
All access goes through a session acquired with ``async with store.session()``;
writes made through a session are committed when the block exits cleanly and
discarded when it raises or is cancelled.
"""

from abc import ABC, abstractmethod
from operator import attrgetter

import typing as t
from contextlib import AbstractAsyncContextManager
from pydantic import Field

from strata.cleanup import CleanupMixin
from strata.config import Settings

KeyFilter = t.Callable[[t.Any], bool]
Predicate = t.Callable[[t.Any], bool]


class StoreBaseSettings(Settings):
    scan_page_size: int = Field(
        default=1000,
        ge=1,
        description="Rows fetched per internal page when filtering outside the backend",
    )


class StoreSession[EntityType, IDType](ABC):
    """Unit of access to a store; not shared between concurrent tasks."""

    @abstractmethod
    async def get(self, entity_id: IDType) -> EntityType | None:
        """Point lookup by identifier; ``None`` when absent."""

    @abstractmethod
    async def scan(
        self,
        after: IDType | None = None,
        limit: int | None = None,
        key_filter: KeyFilter | None = None,
    ) -> list[EntityType]:
        """Range scan ordered by identifier.

        Args:
            after: Resume cursor; only rows with a key strictly greater are returned
            limit: Maximum rows to return, ``None`` for no bound
            key_filter: Only rows whose key is accepted are returned (and counted
                toward ``limit``)

        Returns:
            Rows in ascending key order. Fewer than ``limit`` rows are returned
            only when the scan is exhausted.
        """

    @abstractmethod
    async def filter(self, predicate: Predicate) -> list[EntityType]:
        """Predicate-filtered scan, ordered by identifier."""

    @abstractmethod
    async def add(self, entity: EntityType) -> None: ...

    @abstractmethod
    async def update(self, entity: EntityType) -> None: ...

    @abstractmethod
    async def delete(self, entity: EntityType) -> None: ...

    @abstractmethod
    async def add_many(self, entities: t.Sequence[EntityType]) -> None:
        """Insert a batch of entities in a single round trip."""


class StoreBase[EntityType, IDType](CleanupMixin, ABC):
    def __init__(
        self,
        entity_type: type[EntityType],
        key: t.Callable[[EntityType], IDType] | None = None,
        settings: StoreBaseSettings | None = None,
    ) -> None:
        super().__init__()
        self.entity_type = entity_type
        self.entity_name = getattr(entity_type, "__name__", str(entity_type))
        self.key: t.Callable[[EntityType], IDType] = key or attrgetter("id")
        self.settings = settings or StoreBaseSettings()

    @abstractmethod
    def session(self) -> AbstractAsyncContextManager[StoreSession[EntityType, IDType]]:
        """Acquire a session; it is released on every exit path."""


async def scan_matching[EntityType, IDType](
    fetch_page: t.Callable[[IDType | None, int], t.Awaitable[list[EntityType]]],
    key: t.Callable[[EntityType], IDType],
    page_size: int,
    after: IDType | None = None,
    limit: int | None = None,
    accept: Predicate | None = None,
    key_filter: KeyFilter | None = None,
) -> list[EntityType]:
    """Filter a backend's raw ordered pages until ``limit`` rows match.

    Used by stores that cannot evaluate a filter natively: raw pages are pulled
    past the cursor and filtered locally, so ``limit`` still counts matching
    rows only.
    """
    matched: list[EntityType] = []
    cursor = after
    while limit is None or len(matched) < limit:
        page = await fetch_page(cursor, page_size)
        for row in page:
            if key_filter is not None and not key_filter(key(row)):
                continue
            if accept is not None and not accept(row):
                continue
            matched.append(row)
            if limit is not None and len(matched) == limit:
                return matched
        if len(page) < page_size:
            break
        cursor = key(page[-1])
    return matched
