"""Shared fixtures for strata tests."""

from uuid import uuid4

import pytest
from dataclasses import dataclass

from strata.adapters.cache.memory import Cache, CacheSettings
from strata.adapters.store.memory import (
    MemoryStore,
    MemoryStoreMetrics,
    MemoryStoreSettings,
)
from strata.repository import Repository


@dataclass
class Widget:
    """Sample entity used across the suite."""

    id: int
    name: str
    price: float = 0.0
    category: str | None = None
    version: int = 0


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_widgets(count: int) -> list[Widget]:
    return [
        Widget(
            id=i,
            name=f"widget-{i:02d}",
            price=float(i),
            category="even" if i % 2 == 0 else "odd",
        )
        for i in range(1, count + 1)
    ]


async def seeded_store(
    entities: list[Widget], settings: MemoryStoreSettings | None = None
) -> MemoryStore[Widget, int]:
    store: MemoryStore[Widget, int] = MemoryStore(Widget, settings=settings)
    async with store.session() as session:
        await session.add_many(entities)
    store.metrics = MemoryStoreMetrics()
    return store


@pytest.fixture
def widgets() -> list[Widget]:
    return make_widgets(25)


@pytest.fixture
async def store(widgets):
    store = await seeded_store(widgets)
    yield store
    await store.cleanup()


@pytest.fixture
async def slow_store(widgets):
    """Store whose every operation takes 10ms."""
    store = await seeded_store(widgets, MemoryStoreSettings(latency=0.01))
    yield store
    await store.cleanup()


@pytest.fixture
def repository(store) -> Repository:
    return Repository(store)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def cache():
    cache = Cache(CacheSettings(namespace=f"test-{uuid4().hex}"))
    yield cache
    await cache.cleanup()
