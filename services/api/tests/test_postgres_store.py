"""Tests for the relational store (sqlite + aiosqlite stands in for PostgreSQL)."""

import asyncio
import logging
import time
from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncTransaction

from ethio_shop.stores.errors import (
    NotConnectedError,
    PoolExhaustedError,
    QueryError,
    StoreConnectionError,
)
from ethio_shop.stores.postgres import DatabaseConfig, DatabaseStore, TransactionStatus, _CrudHelpers
from ethio_shop.stores.state import ConnectionState


@pytest.mark.asyncio
async def test_connect_moves_to_ready_and_reports_healthy(database: DatabaseStore):
    assert database.state == ConnectionState.READY

    health = await database.health_check()
    assert health.status == "healthy"
    assert health.state == "ready"
    assert health.latency_ms is not None
    assert health.info["pool_max"] == 3
    assert health.info["checked_out"] == 0


@pytest.mark.asyncio
async def test_connect_to_unreachable_store_ends_disconnected(tmp_path):
    config = DatabaseConfig(
        url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'shop.db'}",
        connect_timeout=1.0,
    )
    store = DatabaseStore(config)

    start = time.monotonic()
    with pytest.raises(StoreConnectionError):
        await store.connect()
    assert time.monotonic() - start < 2.0

    assert store.state == ConnectionState.DISCONNECTED
    health = await store.health_check()
    assert health.status == "unhealthy"


@pytest.mark.asyncio
async def test_connect_probe_timeout(db_config, monkeypatch: pytest.MonkeyPatch):
    async def hanging_probe(engine) -> None:
        await asyncio.sleep(10)

    monkeypatch.setattr(DatabaseStore, "_probe", staticmethod(hanging_probe))
    config = DatabaseConfig(url=db_config.url, connect_timeout=0.2)
    store = DatabaseStore(config)

    start = time.monotonic()
    with pytest.raises(StoreConnectionError):
        await store.connect()
    assert time.monotonic() - start < 2.0
    assert store.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_operations_before_connect_raise_not_connected():
    store = DatabaseStore()
    with pytest.raises(NotConnectedError):
        await store.query("SELECT 1")
    with pytest.raises(NotConnectedError):
        await store.find_one("products", {"id": 1})


@pytest.mark.asyncio
async def test_query_returns_rows_and_rowcount(database: DatabaseStore):
    await database.query(
        "INSERT INTO products (title, price_etb) VALUES (:title, :price)",
        {"title": "Habesha kemis", "price": 2500},
    )
    result = await database.query(
        "SELECT title, price_etb FROM products WHERE price_etb > :min_price",
        {"min_price": 1000},
    )
    assert result.rowcount == 1
    assert result.rows == [{"title": "Habesha kemis", "price_etb": 2500}]


@pytest.mark.asyncio
async def test_crud_helpers(database: DatabaseStore):
    created = await database.insert("products", {"title": "Jebena", "price_etb": 800})
    assert created["id"] is not None
    assert created["status"] == "active"

    updated = await database.update(
        "products", {"id": created["id"]}, {"price_etb": 750}, returning=["id", "price_etb"]
    )
    assert updated == {"id": created["id"], "price_etb": 750}

    found = await database.find_one("products", {"title": "Jebena"})
    assert found["price_etb"] == 750

    deleted = await database.delete("products", {"id": created["id"]}, returning=["title"])
    assert deleted == {"title": "Jebena"}
    assert await database.find_one("products", {"id": created["id"]}) is None


@pytest.mark.asyncio
async def test_values_are_bound_not_interpolated(database: DatabaseStore):
    await database.insert("products", {"title": "Mesob", "price_etb": 1200})

    hostile = "x' OR '1'='1"
    assert await database.find_one("products", {"title": hostile}) is None

    row = await database.insert("products", {"title": "'); DROP TABLE products; --", "price_etb": 1})
    assert row["title"] == "'); DROP TABLE products; --"
    assert (await database.query("SELECT COUNT(*) AS n FROM products")).rows == [{"n": 2}]


@pytest.mark.asyncio
async def test_invalid_identifier_is_rejected(database: DatabaseStore):
    with pytest.raises(ValueError):
        await database.find_one("products; DROP TABLE products", {"id": 1})
    with pytest.raises(ValueError):
        await database.insert("products", {"title = 'x' --": "y"})


@pytest.mark.asyncio
async def test_query_error_carries_statement_and_releases_connection(database: DatabaseStore):
    statement = "SELECT * FROM no_such_table"
    with pytest.raises(QueryError) as exc_info:
        await database.query(statement)
    assert exc_info.value.statement == statement
    assert exc_info.value.cause is not None

    health = await database.health_check()
    assert health.info["checked_out"] == 0
    assert database.state == ConnectionState.READY


@pytest.mark.asyncio
async def test_transaction_commits_all_writes(database: DatabaseStore):
    async def place_listing(tx):
        first = await tx.insert("products", {"title": "Coffee beans", "price_etb": 600})
        await tx.update("products", {"id": first["id"]}, {"status": "featured"})
        return first["id"]

    product_id = await database.transaction(place_listing)

    row = await database.find_one("products", {"id": product_id})
    assert row["status"] == "featured"


@pytest.mark.asyncio
async def test_transaction_rolls_back_when_unit_of_work_fails(database: DatabaseStore):
    scopes = []

    async def failing_unit_of_work(tx):
        scopes.append(tx)
        await tx.insert("products", {"title": "Ghost item", "price_etb": 1})
        raise RuntimeError("payment declined")

    with pytest.raises(RuntimeError, match="payment declined"):
        await database.transaction(failing_unit_of_work)

    assert scopes[0].status is TransactionStatus.ROLLED_BACK
    assert await database.find_one("products", {"title": "Ghost item"}) is None


@pytest.mark.asyncio
async def test_begin_context_manager_commits(database: DatabaseStore):
    async with database.begin() as tx:
        await tx.insert("products", {"title": "Netela", "price_etb": 450})
    assert tx.status is TransactionStatus.COMMITTED
    assert await database.find_one("products", {"title": "Netela"}) is not None


@pytest.mark.asyncio
async def test_rollback_failure_does_not_mask_original_error(
    database: DatabaseStore,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
):
    async def broken_rollback(self) -> None:
        raise RuntimeError("rollback broke")

    monkeypatch.setattr(AsyncTransaction, "rollback", broken_rollback)

    async def unit_of_work(tx):
        await tx.insert("products", {"title": "Berbere", "price_etb": 300})
        raise ValueError("original failure")

    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        with pytest.raises(ValueError, match="original failure"):
            await database.transaction(unit_of_work)

    assert "Transaction rollback failed" in caplog.text


@pytest.mark.asyncio
async def test_commit_failure_rolls_back_scope(database: DatabaseStore, monkeypatch: pytest.MonkeyPatch):
    async def failing_commit(self) -> None:
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(AsyncTransaction, "commit", failing_commit)
    scopes = []

    async def unit_of_work(tx):
        scopes.append(tx)
        await tx.insert("products", {"title": "Shiro", "price_etb": 120})

    with pytest.raises(QueryError) as exc_info:
        await database.transaction(unit_of_work)
    assert exc_info.value.statement == "COMMIT"
    assert scopes[0].status is TransactionStatus.ROLLED_BACK

    monkeypatch.undo()
    assert await database.find_one("products", {"title": "Shiro"}) is None


@pytest.mark.asyncio
async def test_pool_exhaustion_raises_distinct_error(tmp_path):
    config = DatabaseConfig(
        url=f"sqlite+aiosqlite:///{tmp_path / 'tiny.db'}",
        pool_min=1,
        pool_max=1,
        acquire_timeout=0.2,
    )
    store = DatabaseStore(config)
    await store.connect()
    try:
        async with store.begin():
            with pytest.raises(PoolExhaustedError):
                await store.query("SELECT 1")
        # The held connection is back; the pool serves again.
        assert (await store.query("SELECT 1 AS one")).rows == [{"one": 1}]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_concurrent_callers_never_exceed_pool_max(database: DatabaseStore):
    active = 0
    peak = 0

    async def unit_of_work(tx):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await tx.query("SELECT 1")
        await asyncio.sleep(0.05)
        active -= 1
        return True

    results = await asyncio.gather(*(database.transaction(unit_of_work) for _ in range(8)))

    assert results == [True] * 8
    assert peak <= database.config.pool_max


@pytest.mark.asyncio
async def test_concurrent_queries_never_exceed_pool_max(database: DatabaseStore):
    checked_out = 0
    peak = 0

    def on_checkout(dbapi_connection, connection_record, connection_proxy) -> None:
        nonlocal checked_out, peak
        checked_out += 1
        peak = max(peak, checked_out)

    def on_checkin(dbapi_connection, connection_record) -> None:
        nonlocal checked_out
        checked_out -= 1

    engine = database._engine.sync_engine
    event.listen(engine, "checkout", on_checkout)
    event.listen(engine, "checkin", on_checkin)

    statement = (
        "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 50000) "
        "SELECT COUNT(*) AS n FROM c"
    )
    results = await asyncio.gather(*(database.query(statement) for _ in range(10)))

    assert all(result.rows == [{"n": 50000}] for result in results)
    assert 1 <= peak <= database.config.pool_max


@pytest.mark.asyncio
async def test_idle_timeout_replaces_only_idle_connections(tmp_path):
    config = DatabaseConfig(
        url=f"sqlite+aiosqlite:///{tmp_path / 'idle.db'}",
        pool_min=1,
        pool_max=1,
        idle_timeout=0.3,
    )
    store = DatabaseStore(config)
    await store.connect()
    opened = []
    event.listen(
        store._engine.sync_engine,
        "connect",
        lambda dbapi_connection, connection_record: opened.append(connection_record),
    )
    try:
        # Busy connection: never idle for more than ~0.05s.
        for _ in range(20):
            await store.query("SELECT 1")
            await asyncio.sleep(0.05)
        assert opened == []

        await asyncio.sleep(0.5)
        assert (await store.query("SELECT 1 AS one")).rows == [{"one": 1}]
        assert len(opened) == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_close_drains_in_flight_work_then_rejects(database: DatabaseStore):
    async def slow_unit_of_work(tx):
        await asyncio.sleep(0.2)
        return await tx.insert("products", {"title": "Late order", "price_etb": 10})

    in_flight = asyncio.create_task(database.transaction(slow_unit_of_work))
    await asyncio.sleep(0.05)
    await database.close()

    row = await in_flight
    assert row["title"] == "Late order"
    assert database.state == ConnectionState.DISCONNECTED
    with pytest.raises(NotConnectedError):
        await database.query("SELECT 1")
    assert (await database.health_check()).status == "unhealthy"


@pytest.mark.asyncio
async def test_transport_fault_demotes_and_probe_restores(database: DatabaseStore):
    database._on_engine_error(
        SimpleNamespace(is_disconnect=True, original_exception=ConnectionResetError())
    )
    assert database.state == ConnectionState.DEGRADED

    health = await database.health_check()
    assert health.status == "healthy"
    assert database.state == ConnectionState.READY


def test_config_hides_password():
    config = DatabaseConfig(url="postgresql+asyncpg://shop:s3cret@db:5432/ethio_shop")
    assert "s3cret" not in str(config)
    assert "s3cret" not in repr(config)
    assert config.database_name == "ethio_shop"


def test_config_rejects_inverted_pool_bounds():
    with pytest.raises(ValueError):
        DatabaseConfig(url="sqlite+aiosqlite://", pool_min=10, pool_max=2)


def test_asyncpg_connect_args():
    config = DatabaseConfig(
        url="postgresql+asyncpg://u:p@db/shop", connect_timeout=3.0, ssl=True
    )
    args = config.driver_connect_args()
    assert args["timeout"] == 3.0
    assert args["ssl"] is True
    assert args["server_settings"] == {"application_name": "ethio-shop-api"}

    kwargs = config.engine_kwargs()
    assert kwargs["pool_size"] == 5
    assert kwargs["max_overflow"] == 15
    assert "pool_recycle" not in kwargs


def test_crud_helpers_require_a_query_implementation():
    with pytest.raises(TypeError):
        _CrudHelpers()
