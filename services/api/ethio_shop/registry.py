"""Process-wide service registry.

One registry is built per process (in create_app) and owns exactly one
DatabaseStore and one CacheStore. Request handlers get the stores through
the dependencies in `ethio_shop.deps`, never through module globals.
"""

import asyncio
import logging

from ethio_shop.schemas.health import ComponentHealth
from ethio_shop.settings import Settings
from ethio_shop.stores.errors import StoreConnectionError
from ethio_shop.stores.postgres import DatabaseConfig, DatabaseStore
from ethio_shop.stores.redis import CacheConfig, CacheStore

logger = logging.getLogger("uvicorn.error")


class ServiceRegistry:
    """Owns the backing-service stores for the lifetime of the process."""

    def __init__(
        self,
        database: DatabaseStore | None = None,
        cache: CacheStore | None = None,
    ) -> None:
        self.database = database or DatabaseStore()
        self.cache = cache or CacheStore()
        self._started = False
        self._stopped = False

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self, settings: Settings) -> None:
        """Connect both stores. Called once, before any handler is reachable.

        With `settings.startup_strict` a failing store aborts startup;
        otherwise the failure is logged and /health reports it.
        """
        if self._started:
            raise RuntimeError("ServiceRegistry.startup() called twice")
        self._started = True
        logger.info(f"Initializing {settings.app_name} services...")

        try:
            await self.database.connect(DatabaseConfig.from_settings(settings))
        except StoreConnectionError:
            if settings.startup_strict:
                raise
            logger.exception("Postgres init failed")

        try:
            await self.cache.connect(CacheConfig.from_settings(settings))
        except StoreConnectionError:
            if settings.startup_strict:
                await self.database.close()
                raise
            logger.exception("Redis init failed")

    async def shutdown(self) -> None:
        """Close both stores once. A failure in one does not skip the other."""
        if self._stopped:
            return
        self._stopped = True
        results = await asyncio.gather(
            self.cache.close(),
            self.database.close(),
            return_exceptions=True,
        )
        for name, result in zip(("cache", "database"), results):
            if isinstance(result, Exception):
                logger.error(f"Error closing {name} store: {result!r}")

    async def health(self) -> dict[str, ComponentHealth]:
        database, cache = await asyncio.gather(
            self.database.health_check(),
            self.cache.health_check(),
        )
        return {database.component: database, cache.component: cache}
