"""Cache backend contract.

Backends lazily create their client on first use and expose a small async
key/value surface. Values are arbitrary picklable objects; ``ttl`` is in
seconds and ``None`` means the backend default.
"""

import asyncio
import typing as t
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from strata.cleanup import CleanupMixin
from strata.config import Settings


class CacheBaseSettings(Settings):
    model_config = SettingsConfigDict(env_prefix="STRATA_CACHE_BACKEND_")

    namespace: str = Field(default="strata", min_length=1)
    default_ttl: float = Field(
        default=300.0, gt=0, description="Seconds a value lives when no ttl is given"
    )


class CacheProtocol(t.Protocol):
    async def get(self, key: str) -> t.Any: ...

    async def set(self, key: str, value: t.Any, ttl: float | None = None) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def clear(self) -> None: ...


class CacheBase(CleanupMixin):
    def __init__(self, settings: CacheBaseSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or CacheBaseSettings()
        self._client: t.Any = None
        self._client_lock: asyncio.Lock | None = None

    async def _ensure_client(self) -> t.Any:
        if self._client is None:
            if self._client_lock is None:
                self._client_lock = asyncio.Lock()
            async with self._client_lock:
                if self._client is None:
                    self._client = await self._create_client()
        return self._client

    async def _create_client(self) -> t.Any:
        msg = "Subclasses must implement _create_client()"
        raise NotImplementedError(msg)

    async def _cleanup_resources(self) -> None:
        client, self._client = self._client, None
        await self.cleanup_resource(client)

    async def get(self, key: str) -> t.Any:
        """Get cache value; ``None`` when absent or expired."""
        client = await self._ensure_client()
        return await client.get(key)

    async def set(self, key: str, value: t.Any, ttl: float | None = None) -> None:
        client = await self._ensure_client()
        await client.set(key, value, ttl=ttl or self.settings.default_ttl)

    async def delete(self, key: str) -> bool:
        client = await self._ensure_client()
        return bool(await client.delete(key))

    async def exists(self, key: str) -> bool:
        client = await self._ensure_client()
        return bool(await client.exists(key))

    async def clear(self) -> None:
        client = await self._ensure_client()
        await client.clear(namespace=self.namespace)

    @property
    def namespace(self) -> str:
        return f"{self.settings.namespace}:"
