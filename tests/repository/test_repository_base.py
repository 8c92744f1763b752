"""Tests for the repository core."""

import math
from datetime import timedelta

import pytest
from dataclasses import replace

from strata.adapters.store.memory import MemorySession
from strata.errors import (
    ConcurrencyConflictError,
    ConstraintViolationError,
    EntityNotFoundError,
    InvalidConfigurationError,
    OperationCancelledError,
    StoreError,
)
from strata.repository import (
    EntityStream,
    QueryOptions,
    QueryStrategy,
    Repository,
    RepositorySettings,
    Snapshot,
)
from strata.repository.specifications import equals, greater_than


@pytest.mark.unit
class TestRepositoryReads:
    @pytest.mark.asyncio
    async def test_get_all(self, repository) -> None:
        rows = await repository.get_all()

        assert [w.id for w in rows] == list(range(1, 26))

    @pytest.mark.asyncio
    async def test_get_by_id(self, repository) -> None:
        widget = await repository.get_by_id(12)

        assert widget.name == "widget-12"

    @pytest.mark.asyncio
    async def test_get_by_id_missing(self, repository) -> None:
        with pytest.raises(EntityNotFoundError) as exc_info:
            await repository.get_by_id(404)

        assert exc_info.value.entity_id == 404
        assert exc_info.value.entity_type == "Widget"
        assert repository.get_metrics()["get_by_id_error"] == 1

    @pytest.mark.asyncio
    async def test_exists(self, repository) -> None:
        assert await repository.exists(3)
        assert not await repository.exists(404)

    @pytest.mark.asyncio
    async def test_find_with_callable(self, repository) -> None:
        rows = await repository.find(lambda w: w.price >= 24)

        assert [w.id for w in rows] == [24, 25]

    @pytest.mark.asyncio
    async def test_find_with_specification(self, repository) -> None:
        rows = await repository.find(equals("category", "odd") & greater_than("price", 20))

        assert [w.id for w in rows] == [21, 23, 25]

    @pytest.mark.asyncio
    async def test_find_no_match(self, repository) -> None:
        assert await repository.find(equals("category", "none")) == []


@pytest.mark.unit
class TestRepositoryStrategies:
    @pytest.mark.asyncio
    async def test_chunked_uses_requested_size(self, repository, store) -> None:
        rows = await repository.get_all_chunked(10)

        assert len(rows) == 25
        assert store.metrics.page_sizes == [10, 10, 5]

    @pytest.mark.asyncio
    async def test_parallel(self, repository, store) -> None:
        rows = await repository.get_all_parallel(3)

        assert [w.id for w in rows] == list(range(1, 26))
        assert len({w.id for w in rows}) == 25
        assert store.metrics.max_sessions_active <= 3

    @pytest.mark.asyncio
    async def test_streaming(self, repository) -> None:
        async with repository.get_all_streaming(7) as stream:
            ids = [w.id async for w in stream]

        assert ids == list(range(1, 26))

    @pytest.mark.asyncio
    async def test_memory_mapped_ignores_later_writes(self, repository, widgets) -> None:
        snapshot = await repository.get_all_memory_mapped()
        await repository.add(replace(widgets[0], id=100, name="late"))

        assert 100 not in await repository.get_all_memory_mapped()
        assert 100 in await repository.get_all_memory_mapped(refresh=True)
        assert len(snapshot) == 25

    @pytest.mark.parametrize(
        ("method", "argument", "field_name"),
        [
            ("get_all_chunked", 0, "chunk_size"),
            ("get_all_chunked", -5, "chunk_size"),
            ("get_all_parallel", 0, "parallel_partitions"),
            ("get_all_parallel", -1, "parallel_partitions"),
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_sizes_rejected_before_store_access(
        self, repository, store, method: str, argument: int, field_name: str
    ) -> None:
        with pytest.raises(InvalidConfigurationError) as exc_info:
            await getattr(repository, method)(argument)

        assert exc_info.value.field_name == field_name
        assert store.metrics.sessions_opened == 0

    @pytest.mark.parametrize("buffer_size", [0, -3])
    def test_invalid_buffer_rejected(self, repository, store, buffer_size: int) -> None:
        with pytest.raises(InvalidConfigurationError) as exc_info:
            repository.get_all_streaming(buffer_size)

        assert exc_info.value.field_name == "streaming_buffer_size"
        assert store.metrics.sessions_opened == 0

    @pytest.mark.asyncio
    async def test_timeout(self, slow_store) -> None:
        settings = RepositorySettings(
            query=QueryOptions(command_timeout=timedelta(milliseconds=5))
        )
        repository = Repository(slow_store, settings)

        with pytest.raises(OperationCancelledError):
            await repository.get_all_chunked(1)

        assert repository.get_metrics()["get_all_chunked_error"] == 1
        assert slow_store.metrics.sessions_active == 0


@pytest.mark.unit
class TestConfigurableDispatch:
    @pytest.mark.parametrize(
        "strategy",
        [QueryStrategy.STANDARD, QueryStrategy.CHUNKED, QueryStrategy.PARALLEL],
    )
    @pytest.mark.asyncio
    async def test_list_strategies(self, repository, strategy: QueryStrategy) -> None:
        options = QueryOptions(strategy=strategy, chunk_size=4, parallel_partitions=2)

        rows = await repository.get_all_configurable(options)

        assert isinstance(rows, list)
        assert [w.id for w in rows] == list(range(1, 26))
        assert repository.get_metrics()[f"get_all_{strategy.value}_success"] == 1

    @pytest.mark.asyncio
    async def test_chunked_honours_options(self, repository, store) -> None:
        options = QueryOptions().with_strategy(QueryStrategy.CHUNKED, chunk_size=20)

        await repository.get_all_configurable(options)

        assert store.metrics.page_sizes == [20, 5]

    @pytest.mark.asyncio
    async def test_streaming_returns_stream(self, repository) -> None:
        options = QueryOptions(
            strategy=QueryStrategy.STREAMING, streaming_buffer_size=3
        )

        stream = await repository.get_all_configurable(options)

        assert isinstance(stream, EntityStream)
        assert stream.buffer_size == 3
        async with stream:
            assert len([w async for w in stream]) == 25

    @pytest.mark.asyncio
    async def test_memory_mapped_returns_snapshot(self, repository) -> None:
        options = QueryOptions(strategy=QueryStrategy.MEMORY_MAPPED)

        snapshot = await repository.get_all_configurable(options)

        assert isinstance(snapshot, Snapshot)
        assert snapshot is await repository.get_all_memory_mapped()

    @pytest.mark.asyncio
    async def test_rejects_other_types(self, repository, store) -> None:
        with pytest.raises(InvalidConfigurationError) as exc_info:
            await repository.get_all_configurable({"strategy": "chunked"})  # type: ignore[arg-type]

        assert exc_info.value.field_name == "options"
        assert store.metrics.sessions_opened == 0


@pytest.mark.unit
class TestRepositoryWrites:
    @pytest.mark.asyncio
    async def test_add_returns_entity(self, repository, widgets) -> None:
        new = replace(widgets[0], id=26, name="new")

        assert await repository.add(new) is new
        assert (await repository.get_by_id(26)).name == "new"

    @pytest.mark.asyncio
    async def test_add_duplicate(self, repository, widgets) -> None:
        with pytest.raises(ConstraintViolationError):
            await repository.add(replace(widgets[0]))

        assert repository.get_metrics()["add_error"] == 1

    @pytest.mark.asyncio
    async def test_update(self, repository, widgets) -> None:
        changed = replace(widgets[1], price=99.5)

        assert await repository.update(changed) is changed
        assert (await repository.get_by_id(2)).price == 99.5

    @pytest.mark.asyncio
    async def test_update_missing(self, repository, widgets) -> None:
        with pytest.raises(ConcurrencyConflictError):
            await repository.update(replace(widgets[0], id=404))

    @pytest.mark.asyncio
    async def test_delete(self, repository, widgets) -> None:
        await repository.delete(widgets[2])

        assert not await repository.exists(3)
        assert len(await repository.get_all()) == 24

    @pytest.mark.asyncio
    async def test_delete_missing(self, repository, widgets) -> None:
        with pytest.raises(ConcurrencyConflictError):
            await repository.delete(replace(widgets[0], id=404))

    @pytest.mark.parametrize(("count", "batch_size"), [(10, 3), (10, 5), (1, 1000), (7, 1)])
    @pytest.mark.asyncio
    async def test_bulk_insert_batches(
        self, store, widgets, count: int, batch_size: int
    ) -> None:
        repository = Repository(store, RepositorySettings(bulk_batch_size=batch_size))
        extra = [replace(widgets[0], id=100 + i, name=f"bulk-{i}") for i in range(count)]

        assert await repository.bulk_insert(extra) == count
        assert store.metrics.round_trips == math.ceil(count / batch_size)
        assert store.metrics.sessions_opened == 1
        assert len(store) == 25 + count

    @pytest.mark.asyncio
    async def test_bulk_insert_empty(self, repository, store) -> None:
        assert await repository.bulk_insert([]) == 0
        assert store.metrics.sessions_opened == 0

    @pytest.mark.asyncio
    async def test_bulk_insert_accepts_iterables(self, repository, widgets) -> None:
        extra = (replace(widgets[0], id=100 + i) for i in range(3))

        assert await repository.bulk_insert(extra) == 3
        assert await repository.exists(102)

    @pytest.mark.asyncio
    async def test_bulk_insert_is_all_or_nothing(self, repository, store, widgets) -> None:
        extra = [replace(widgets[0], id=100), replace(widgets[0], id=5)]

        with pytest.raises(ConstraintViolationError):
            await repository.bulk_insert(extra)

        assert len(store) == 25


@pytest.mark.unit
class TestRepositoryLifecycle:
    @pytest.mark.asyncio
    async def test_metrics(self, repository) -> None:
        await repository.get_all()
        await repository.get_all()
        await repository.exists(1)
        with pytest.raises(EntityNotFoundError):
            await repository.get_by_id(404)

        metrics = repository.get_metrics()
        assert metrics["get_all_success"] == 2
        assert metrics["exists_success"] == 1
        assert metrics["get_by_id_error"] == 1

    @pytest.mark.asyncio
    async def test_metrics_are_a_copy(self, repository) -> None:
        await repository.get_all()
        repository.get_metrics()["get_all_success"] = 100

        assert repository.get_metrics()["get_all_success"] == 1

    @pytest.mark.asyncio
    async def test_foreign_store_errors_wrapped(
        self, repository, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_get(self, entity_id):
            raise ConnectionResetError("peer went away")

        monkeypatch.setattr(MemorySession, "get", broken_get)

        with pytest.raises(StoreError, match="peer went away") as exc_info:
            await repository.get_by_id(1)

        assert exc_info.value.operation == "get_by_id"
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    def test_key(self, repository, widgets) -> None:
        assert repository.key(widgets[3]) == 4
        assert repository.entity_name == "Widget"

    @pytest.mark.asyncio
    async def test_cleanup_releases_store(self, repository, store) -> None:
        await repository.cleanup()
        await repository.cleanup()

        assert store._cleaned_up

    @pytest.mark.asyncio
    async def test_context_manager(self, store) -> None:
        async with Repository(store) as repository:
            await repository.get_all()

        assert store._cleaned_up
