"""Tests for query and cache options."""

from datetime import timedelta

import pytest

from strata.errors import InvalidConfigurationError
from strata.repository import (
    CacheOptions,
    QueryOptions,
    QueryStrategy,
    RepositorySettings,
)


@pytest.mark.unit
class TestQueryOptions:
    def test_defaults(self) -> None:
        options = QueryOptions()

        assert options.strategy is QueryStrategy.STANDARD
        assert options.chunk_size == 10_000
        assert options.parallel_partitions == 4
        assert options.streaming_buffer_size == 5_000
        assert options.command_timeout == timedelta(seconds=300)
        assert options.timeout_seconds == 300.0

    @pytest.mark.parametrize(
        "field", ["chunk_size", "parallel_partitions", "streaming_buffer_size"]
    )
    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_sizes_rejected(self, field: str, value: int) -> None:
        with pytest.raises(InvalidConfigurationError) as exc_info:
            QueryOptions(**{field: value})

        assert exc_info.value.field_name == field

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(InvalidConfigurationError) as exc_info:
            QueryOptions(command_timeout=timedelta(0))

        assert exc_info.value.field_name == "command_timeout"

    def test_unknown_strategy_rejected(self) -> None:
        with pytest.raises(InvalidConfigurationError) as exc_info:
            QueryOptions(strategy="sharded")

        assert exc_info.value.field_name == "strategy"

    def test_strategy_from_string(self) -> None:
        assert QueryOptions(strategy="memory_mapped").strategy is QueryStrategy.MEMORY_MAPPED

    def test_frozen(self) -> None:
        options = QueryOptions()

        with pytest.raises(ValueError):
            options.chunk_size = 5

    def test_replace_validates(self) -> None:
        options = QueryOptions(chunk_size=50)

        changed = options.with_strategy(QueryStrategy.CHUNKED, chunk_size=10)
        assert (changed.strategy, changed.chunk_size) == (QueryStrategy.CHUNKED, 10)
        assert options.chunk_size == 50

        with pytest.raises(InvalidConfigurationError):
            options.replace(parallel_partitions=0)

    def test_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STRATA_QUERY_CHUNK_SIZE", "250")
        monkeypatch.setenv("STRATA_QUERY_STRATEGY", "parallel")

        options = QueryOptions()

        assert options.chunk_size == 250
        assert options.strategy is QueryStrategy.PARALLEL


@pytest.mark.unit
class TestCacheOptions:
    def test_defaults(self) -> None:
        options = CacheOptions()

        assert options.enable_caching
        assert options.default_cache_duration == timedelta(minutes=5)
        assert options.get_by_id_cache_duration == timedelta(minutes=10)
        assert options.get_all_cache_duration == timedelta(minutes=2)
        assert options.cache_key_prefix == "repo"
        assert options.max_cached_items == 1000

    @pytest.mark.parametrize(
        "field",
        ["default_cache_duration", "get_by_id_cache_duration", "get_all_cache_duration"],
    )
    def test_durations_must_be_positive(self, field: str) -> None:
        with pytest.raises(InvalidConfigurationError):
            CacheOptions(**{field: timedelta(seconds=-1)})

    def test_prefix_required(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            CacheOptions(cache_key_prefix="")


@pytest.mark.unit
class TestRepositorySettings:
    def test_defaults(self) -> None:
        settings = RepositorySettings()

        assert settings.bulk_batch_size == 1000
        assert settings.query == QueryOptions()

    def test_nested_query_options(self) -> None:
        settings = RepositorySettings(query={"chunk_size": 20})

        assert settings.query.chunk_size == 20

    def test_invalid_batch_size(self) -> None:
        with pytest.raises(InvalidConfigurationError):
            RepositorySettings(bulk_batch_size=0)
