import typing as t
from aiocache.backends.memory import SimpleMemoryCache
from aiocache.serializers import PickleSerializer
from pydantic_settings import SettingsConfigDict

from strata.depends import depends
from strata.logger import get_logger

from ._base import CacheBase, CacheBaseSettings

logger = get_logger(__name__)


class CacheSettings(CacheBaseSettings):
    model_config = SettingsConfigDict(env_prefix="STRATA_CACHE_MEMORY_")


class Cache(CacheBase):
    """Process-local cache; values are pickled so readers never share objects."""

    settings: CacheSettings

    def __init__(self, settings: CacheSettings | None = None, **kwargs: t.Any) -> None:
        super().__init__(settings or CacheSettings())
        self._init_kwargs = kwargs

    async def _create_client(self) -> SimpleMemoryCache:
        cache = SimpleMemoryCache(
            serializer=PickleSerializer(),
            namespace=self.namespace,
            **self._init_kwargs,
        )
        cache.timeout = 0.0
        return cache

    async def _cleanup_resources(self) -> None:
        if self._client is not None:
            try:
                await self._client.clear(namespace=self.namespace)
                await self._client.close()
                logger.debug("Cleaned up memory cache")
            finally:
                self._client = None


depends.set(Cache)
