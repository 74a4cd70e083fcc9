"""PostgreSQL store with async SQLAlchemy.

Handles:
- Bounded connection pool (min/max, idle recycle, acquire timeout)
- Parameterized query execution with unconditional connection release
- Transaction scopes (one connection, commit or rollback, never both)
- Health probing and graceful draining on close

Usage:
    store = DatabaseStore()
    await store.connect(DatabaseConfig.from_settings(get_settings()))

    user = await store.find_one("users", {"email": email})

    async with store.begin() as tx:
        order = await tx.insert("orders", {"buyer_id": user["id"]})
        await tx.update("products", {"id": product_id}, {"status": "sold"})
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, TypeVar

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from ethio_shop.schemas.health import ComponentHealth
from ethio_shop.settings import Settings
from ethio_shop.stores.errors import (
    NotConnectedError,
    PoolExhaustedError,
    QueryError,
    StoreConnectionError,
    TransportError,
)
from ethio_shop.stores.state import ConnectionState, StateTracker
from ethio_shop.stores.statements import build_delete, build_insert, build_select_one, build_update

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

PROBE_STATEMENT = "SELECT 1"

IDLE_SINCE_KEY = "idle_since"


@dataclass(frozen=True, repr=False)
class DatabaseConfig:
    """Pool bounds and timeouts for the relational store (seconds)."""

    url: str
    pool_min: int = 5
    pool_max: int = 20
    idle_timeout: float = 10.0
    acquire_timeout: float = 30.0
    connect_timeout: float = 10.0
    health_timeout: float = 2.0
    drain_timeout: float = 5.0
    ssl: bool = False
    application_name: str = "ethio-shop-api"
    log_statements: bool = False
    connect_args: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.pool_min < 1 or self.pool_min > self.pool_max:
            raise ValueError(f"Invalid pool bounds: min={self.pool_min} max={self.pool_max}")

    @classmethod
    def from_settings(cls, settings: Settings) -> DatabaseConfig:
        return cls(
            url=settings.async_database_url,
            pool_min=settings.db_pool_min,
            pool_max=settings.db_pool_max,
            idle_timeout=settings.db_pool_idle,
            acquire_timeout=settings.db_pool_acquire,
            connect_timeout=settings.db_connect_timeout,
            health_timeout=settings.db_health_timeout,
            drain_timeout=settings.db_drain_timeout,
            ssl=settings.db_ssl,
            application_name=settings.db_application_name,
            log_statements=settings.debug,
        )

    @property
    def database_name(self) -> str:
        return make_url(self.url).database or ""

    def driver_connect_args(self) -> dict[str, object]:
        """Extra DBAPI connect args; asyncpg gets timeout, TLS and application name."""
        args: dict[str, object] = {}
        if self.url.startswith("postgresql+asyncpg"):
            args = {
                "timeout": self.connect_timeout,
                "ssl": self.ssl,
                "server_settings": {"application_name": self.application_name},
            }
        args.update(self.connect_args)
        return args

    def engine_kwargs(self) -> dict[str, Any]:
        # QueuePool keeps up to pool_size idle connections and allows
        # max_overflow more on demand, so pool_max is a hard ceiling.
        return {
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": self.pool_min,
            "max_overflow": self.pool_max - self.pool_min,
            "pool_timeout": self.acquire_timeout,
            "pool_pre_ping": True,
            "connect_args": self.driver_connect_args(),
        }

    def __str__(self) -> str:
        safe_url = make_url(self.url).render_as_string(hide_password=True)
        return (
            f"DatabaseConfig(url={safe_url}, pool_min={self.pool_min}, "
            f"pool_max={self.pool_max}, acquire_timeout={self.acquire_timeout})"
        )

    __repr__ = __str__


@dataclass
class QueryResult:
    """Rows returned by a statement plus the affected/returned row count."""

    rowcount: int
    rows: list[dict[str, Any]]

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


class TransactionStatus(str, Enum):
    """Lifecycle of a TransactionScope. Ends in exactly one of committed or rolled_back."""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class _CrudHelpers(ABC):
    """find_one/insert/update/delete on top of a `query` coroutine."""

    @abstractmethod
    async def query(
        self, statement: str, parameters: Mapping[str, Any] | None = None
    ) -> QueryResult:
        ...

    async def find_one(self, table: str, match: Mapping[str, Any]) -> dict[str, Any] | None:
        sql, params = build_select_one(table, match)
        return (await self.query(sql, params)).first()

    async def insert(
        self,
        table: str,
        fields: Mapping[str, Any],
        returning: Sequence[str] = ("*",),
    ) -> dict[str, Any] | None:
        sql, params = build_insert(table, fields, returning)
        return (await self.query(sql, params)).first()

    async def update(
        self,
        table: str,
        match: Mapping[str, Any],
        fields: Mapping[str, Any],
        returning: Sequence[str] = ("*",),
    ) -> dict[str, Any] | None:
        sql, params = build_update(table, match, fields, returning)
        return (await self.query(sql, params)).first()

    async def delete(
        self,
        table: str,
        match: Mapping[str, Any],
        returning: Sequence[str] = ("*",),
    ) -> dict[str, Any] | None:
        sql, params = build_delete(table, match, returning)
        return (await self.query(sql, params)).first()


class TransactionScope(_CrudHelpers):
    """Unit of work bound to one exclusively held connection.

    Every statement issued through the scope runs on the same connection,
    in the order it was issued.
    """

    def __init__(self, store: DatabaseStore, connection: AsyncConnection) -> None:
        self._store = store
        self._connection = connection
        self.status = TransactionStatus.ACTIVE

    @property
    def connection(self) -> AsyncConnection:
        """The underlying SQLAlchemy connection, for ORM-free bulk work."""
        return self._connection

    async def query(
        self, statement: str, parameters: Mapping[str, Any] | None = None
    ) -> QueryResult:
        if self.status != TransactionStatus.ACTIVE:
            raise RuntimeError(f"Transaction already {self.status.value}")
        return await self._store._execute(self._connection, statement, parameters)


class DatabaseStore(_CrudHelpers):
    """Relational store manager owning the connection pool."""

    name = "database"

    def __init__(self, config: DatabaseConfig | None = None) -> None:
        self._config = config
        self._engine: AsyncEngine | None = None
        self._tracker = StateTracker("PostgreSQL")
        self._closing = False
        self._inflight = 0
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def state(self) -> ConnectionState:
        return self._tracker.state

    @property
    def config(self) -> DatabaseConfig | None:
        return self._config

    # ============================================================
    # Lifecycle
    # ============================================================

    async def connect(self, config: DatabaseConfig | None = None) -> None:
        """Create the pool and run one liveness probe.

        Raises:
            StoreConnectionError: If the probe fails or exceeds the connect timeout.
        """
        if config is not None:
            self._config = config
        if self._config is None:
            raise ValueError("DatabaseStore.connect() needs a DatabaseConfig")
        if self.state == ConnectionState.READY:
            return

        cfg = self._config
        self._tracker.move(ConnectionState.CONNECTING)
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

        engine = create_async_engine(cfg.url, **cfg.engine_kwargs())
        event.listen(engine.sync_engine, "checkin", self._on_checkin)
        event.listen(engine.sync_engine, "checkout", self._on_checkout)
        try:
            await asyncio.wait_for(self._probe(engine), timeout=cfg.connect_timeout)
        except Exception as e:
            await engine.dispose()
            self._tracker.move(ConnectionState.DISCONNECTED)
            logger.error(f"Failed to connect to PostgreSQL ({cfg}): {e!r}")
            raise StoreConnectionError(f"Database connect failed: {e!r}") from e

        event.listen(engine.sync_engine, "handle_error", self._on_engine_error)
        self._engine = engine
        self._closing = False
        self._tracker.move(ConnectionState.READY)
        logger.info(f"Connected to PostgreSQL database: {cfg.database_name}")

    async def close(self) -> None:
        """Drain in-flight operations, then close every pooled connection."""
        if self._engine is None:
            return
        self._closing = True
        cfg = self._config
        if self._inflight:
            logger.info(f"Draining {self._inflight} in-flight database operation(s)")
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=cfg.drain_timeout if cfg else 0)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Database drain timed out with {self._inflight} operation(s) still running"
                )
        await self._engine.dispose()
        self._engine = None
        self._tracker.move(ConnectionState.DISCONNECTED)
        logger.info("PostgreSQL connection closed")

    async def health_check(self) -> ComponentHealth:
        """Probe the database with a short timeout. Never raises."""
        cfg = self._config
        database = cfg.database_name if cfg else ""
        engine = self._engine
        if engine is None or self._closing:
            return ComponentHealth(
                component=self.name,
                status="unhealthy",
                state=self.state.value,
                details="PostgreSQL connection failed",
                error="Database not connected",
                info={"database": database},
            )

        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._probe(engine), timeout=cfg.health_timeout)
        except Exception as e:
            logger.warning(f"Database health check failed: {e!r}")
            return ComponentHealth(
                component=self.name,
                status="unhealthy",
                state=self.state.value,
                details="PostgreSQL connection failed",
                error=repr(e),
                info={"database": database},
            )
        latency_ms = (time.perf_counter() - start) * 1000
        self._mark_recovered()

        pool = engine.sync_engine.pool
        return ComponentHealth(
            component=self.name,
            status="healthy",
            state=self.state.value,
            latency_ms=round(latency_ms, 2),
            details="PostgreSQL connection is healthy",
            info={
                "database": database,
                "pool_size": pool.size(),
                "checked_out": pool.checkedout(),
                "checked_in": pool.checkedin(),
                "pool_max": cfg.pool_max,
            },
        )

    # ============================================================
    # Statements
    # ============================================================

    async def query(
        self, statement: str, parameters: Mapping[str, Any] | None = None
    ) -> QueryResult:
        """Execute one statement on a pooled connection and commit it.

        Raises:
            NotConnectedError: Store is not open.
            PoolExhaustedError: No connection freed up within the acquire timeout.
            TransportError: The connection dropped mid-statement.
            QueryError: The statement itself failed.
        """
        async with self._connection() as conn:
            result = await self._execute(conn, statement, parameters)
            with self._translated("COMMIT"):
                await conn.commit()
            return result

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[TransactionScope]:
        """Transaction scope as an async context manager.

        Commits when the block exits normally. On any exception the scope
        rolls back first and the original exception propagates; a failing
        rollback is logged and does not replace it.
        """
        async with self._connection() as conn:
            with self._translated("BEGIN"):
                trans = await conn.begin()
            scope = TransactionScope(self, conn)
            try:
                yield scope
            except BaseException:
                await self._rollback(trans, scope)
                raise
            try:
                with self._translated("COMMIT"):
                    await trans.commit()
            except BaseException:
                await self._rollback(trans, scope)
                raise
            scope.status = TransactionStatus.COMMITTED

    async def transaction(self, unit_of_work: Callable[[TransactionScope], Awaitable[T]]) -> T:
        """Run `unit_of_work(scope)` atomically and return its result."""
        async with self.begin() as scope:
            return await unit_of_work(scope)

    # ============================================================
    # Internals
    # ============================================================

    def _require_open(self) -> AsyncEngine:
        if (
            self._engine is None
            or self._closing
            or self.state not in (ConnectionState.READY, ConnectionState.DEGRADED)
        ):
            raise NotConnectedError("Database not connected")
        return self._engine

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        engine = self._require_open()
        self._inflight += 1
        self._drained.clear()
        try:
            try:
                conn = await engine.connect()
            except PoolTimeoutError as e:
                raise PoolExhaustedError(
                    f"No database connection available within {self._config.acquire_timeout}s"
                ) from e
            except (DBAPIError, OSError) as e:
                self._mark_degraded()
                raise TransportError(f"Could not reach database: {e!r}") from e
            try:
                yield conn
            finally:
                await conn.close()
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._drained.set()

    async def _execute(
        self,
        conn: AsyncConnection,
        statement: str,
        parameters: Mapping[str, Any] | None,
    ) -> QueryResult:
        start = time.perf_counter()
        with self._translated(statement):
            result = await conn.execute(text(statement), dict(parameters or {}))
            rows = [dict(row._mapping) for row in result.fetchall()] if result.returns_rows else []
        rowcount = result.rowcount if result.rowcount >= 0 else len(rows)
        if self._config.log_statements:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.debug(f"Executed query in {duration_ms:.1f}ms ({rowcount} rows): {statement}")
        self._mark_recovered()
        return QueryResult(rowcount=rowcount, rows=rows)

    @contextmanager
    def _translated(self, statement: str) -> Iterator[None]:
        """Map driver exceptions onto the store's error taxonomy."""
        try:
            yield
        except DBAPIError as e:
            if e.connection_invalidated:
                self._mark_degraded()
                raise TransportError(f"Database connection lost: {e.orig!r}") from e
            logger.error(f"Database query error: {e.orig!r} | statement={statement}")
            raise QueryError(statement, e) from e
        except SQLAlchemyError as e:
            logger.error(f"Database query error: {e!r} | statement={statement}")
            raise QueryError(statement, e) from e
        except OSError as e:
            self._mark_degraded()
            raise TransportError(f"Database connection lost: {e!r}") from e

    async def _rollback(self, trans: AsyncTransaction, scope: TransactionScope) -> None:
        scope.status = TransactionStatus.ROLLED_BACK
        try:
            await trans.rollback()
        except Exception as e:
            logger.error(f"Transaction rollback failed: {e!r}")

    @staticmethod
    async def _probe(engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text(PROBE_STATEMENT))

    @staticmethod
    def _on_checkin(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info[IDLE_SINCE_KEY] = time.monotonic()

    def _on_checkout(self, dbapi_connection: Any, connection_record: Any, connection_proxy: Any) -> None:
        # Connections idle past idle_timeout are replaced on checkout; the
        # pool retries with a fresh connection on DisconnectionError.
        idle_since = connection_record.info.pop(IDLE_SINCE_KEY, None)
        if idle_since is None:
            return
        idle_for = time.monotonic() - idle_since
        if idle_for > self._config.idle_timeout:
            logger.debug(f"Closing database connection idle for {idle_for:.1f}s")
            raise DisconnectionError("connection exceeded idle timeout")

    def _on_engine_error(self, context: Any) -> None:
        # SQLAlchemy "handle_error" hook; runs for statement and connect faults.
        if context.is_disconnect:
            logger.error(f"PostgreSQL transport error: {context.original_exception!r}")
            self._mark_degraded()

    def _mark_degraded(self) -> None:
        if self.state == ConnectionState.READY:
            self._tracker.move(ConnectionState.DEGRADED)

    def _mark_recovered(self) -> None:
        # pool_pre_ping replaces dead connections on checkout, so a completed
        # round trip while degraded means the pool has reconnected.
        if self.state == ConnectionState.DEGRADED:
            self._tracker.move(ConnectionState.READY)
            logger.info("PostgreSQL reconnected")
