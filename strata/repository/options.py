"""Query and cache configuration.

Options are validated at construction: a non-positive size or duration, an
unknown strategy or an unknown field raises ``InvalidConfigurationError``
before any store access is attempted. Instances are frozen.
"""

from datetime import timedelta
from enum import Enum

import typing as t
from pydantic import Field, field_validator
from pydantic_settings import SettingsConfigDict

from strata.config import Settings, positive_duration


class QueryStrategy(str, Enum):
    """Execution strategy for full-collection reads."""

    STANDARD = "standard"
    CHUNKED = "chunked"
    PARALLEL = "parallel"
    STREAMING = "streaming"
    MEMORY_MAPPED = "memory_mapped"


class QueryOptions(Settings):
    """Per-call tuning for the query engine."""

    model_config = SettingsConfigDict(env_prefix="STRATA_QUERY_", frozen=True)

    strategy: QueryStrategy = QueryStrategy.STANDARD
    chunk_size: int = Field(default=10_000, gt=0, description="Rows per page")
    parallel_partitions: int = Field(
        default=4, gt=0, description="Concurrent sub-scans for parallel reads"
    )
    streaming_buffer_size: int = Field(
        default=5_000, gt=0, description="Maximum unread rows held by a stream"
    )
    command_timeout: timedelta = Field(
        default=timedelta(seconds=300),
        description="Upper bound on a single read, or on each page of a stream",
    )

    @field_validator("command_timeout")
    @classmethod
    def validate_command_timeout(cls, v: timedelta) -> timedelta:
        return positive_duration(v)

    @property
    def timeout_seconds(self) -> float:
        return self.command_timeout.total_seconds()

    def replace(self, **changes: t.Any) -> t.Self:
        """Copy with ``changes`` applied, validated like a fresh instance."""
        return type(self)(**(self.model_dump() | changes))

    def with_strategy(self, strategy: QueryStrategy, **changes: t.Any) -> t.Self:
        return self.replace(strategy=strategy, **changes)


class CacheOptions(Settings):
    """Caching policy for one entity collection, fixed for a decorator's lifetime."""

    model_config = SettingsConfigDict(env_prefix="STRATA_CACHE_", frozen=True)

    enable_caching: bool = True
    default_cache_duration: timedelta = timedelta(minutes=5)
    get_by_id_cache_duration: timedelta = timedelta(minutes=10)
    get_all_cache_duration: timedelta = timedelta(minutes=2)
    cache_key_prefix: str = Field(default="repo", min_length=1)
    max_cached_items: int = Field(
        default=1000,
        gt=0,
        description="Collection-level keys tracked for invalidation",
    )

    @field_validator(
        "default_cache_duration", "get_by_id_cache_duration", "get_all_cache_duration"
    )
    @classmethod
    def validate_duration(cls, v: timedelta) -> timedelta:
        return positive_duration(v)


class RepositorySettings(Settings):
    """Repository configuration settings."""

    model_config = SettingsConfigDict(env_prefix="STRATA_REPOSITORY_")

    query: QueryOptions = Field(default_factory=QueryOptions)
    bulk_batch_size: int = Field(
        default=1000, ge=1, description="Entities per add_many round trip"
    )
