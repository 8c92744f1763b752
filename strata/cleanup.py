"""Resource cleanup for stores, cache backends and repositories.

Components register the long-lived resources they own (engines, cache clients,
wrapped repositories) and release them all through ``cleanup()`` or by being
used as an async context manager.
"""

import asyncio
import typing as t

from .logger import get_logger

logger = get_logger(__name__)


class CleanupMixin:
    """Simple mixin for resource cleanup."""

    def __init__(self) -> None:
        self._resources: list[t.Any] = []
        self._cleaned_up = False
        self._cleanup_lock: asyncio.Lock | None = None

    def register_resource(self, resource: t.Any) -> None:
        """Register a resource for cleanup."""
        if resource not in self._resources:
            self._resources.append(resource)

    async def cleanup_resource(self, resource: t.Any) -> None:
        """Clean up a single resource using common patterns."""
        if resource is None:
            return

        for method_name in ("cleanup", "aclose", "close", "dispose"):
            method = getattr(resource, method_name, None)
            if method is None:
                continue
            result = method()
            if asyncio.iscoroutine(result):
                await result
            logger.debug(f"Cleaned up {type(resource).__name__} using {method_name}()")
            return

    async def _cleanup_resources(self) -> None:
        """Override to release resources not registered with the mixin."""

    async def cleanup(self) -> None:
        """Clean up all registered resources."""
        if self._cleanup_lock is None:
            self._cleanup_lock = asyncio.Lock()

        async with self._cleanup_lock:
            if self._cleaned_up:
                return

            errors = []
            resources = [*self._resources]
            try:
                await self._cleanup_resources()
            except Exception as e:
                errors.append(f"{type(self).__name__}: {e}")
            for resource in resources:
                try:
                    await self.cleanup_resource(resource)
                except Exception as e:
                    errors.append(f"{type(resource).__name__}: {e}")

            self._resources.clear()
            self._cleaned_up = True

            if errors:
                logger.warning(f"Resource cleanup errors: {'; '.join(errors)}")

    async def __aenter__(self) -> t.Self:
        return self

    async def __aexit__(self, exc_type: t.Any, exc_val: t.Any, exc_tb: t.Any) -> None:
        await self.cleanup()
