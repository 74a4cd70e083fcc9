"""Shared fixtures: sqlite-backed DatabaseStore and fakeredis-backed CacheStore."""

import asyncio
from collections.abc import Callable

import fakeredis
import pytest
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff

from ethio_shop.stores.postgres import DatabaseConfig, DatabaseStore
from ethio_shop.stores.redis import CacheConfig, CacheStore
from ethio_shop.stores.state import ConnectionState

PRODUCTS_DDL = """
CREATE TABLE products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    price_etb INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
)
"""


@pytest.fixture
def db_config(tmp_path) -> DatabaseConfig:
    return DatabaseConfig(
        url=f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}",
        pool_min=1,
        pool_max=3,
        acquire_timeout=2.0,
        connect_timeout=2.0,
        health_timeout=1.0,
        drain_timeout=2.0,
    )


@pytest.fixture
async def database(db_config):
    store = DatabaseStore(db_config)
    await store.connect()
    await store.query(PRODUCTS_DDL)
    yield store
    await store.close()


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        url="redis://fake:6379/0",
        connect_timeout=1.0,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_max_attempts=100,
        health_timeout=1.0,
        poll_interval=0.05,
    )


@pytest.fixture
def client_factory(redis_server) -> Callable[[CacheConfig], fakeredis.FakeAsyncRedis]:
    """Every logical connection gets its own client on the shared fake server."""

    def factory(config: CacheConfig) -> fakeredis.FakeAsyncRedis:
        return fakeredis.FakeAsyncRedis(
            server=redis_server,
            decode_responses=True,
            retry=Retry(NoBackoff(), 0),
        )

    return factory


@pytest.fixture
async def cache(cache_config, client_factory):
    store = CacheStore(cache_config, client_factory=client_factory)
    await store.connect()
    yield store
    await store.close()


async def _wait_for_state(store, state: ConnectionState, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while store.state != state:
        if loop.time() > deadline:
            pytest.fail(f"{store.name} stayed {store.state.value}, expected {state.value}")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_for_state():
    """Poll until `store.state == state` or fail the test."""
    return _wait_for_state
