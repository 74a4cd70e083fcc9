"""Redis store for caching, counters and pub/sub fan-out.

Handles:
- JSON-serialized key/value and hash entries with optional TTL
- Atomic counters
- Pub/sub on dedicated publisher and subscriber connections
- Reconnection with bounded linear backoff after a transport fault

Three independent clients are kept (key/value, publisher, subscriber) so a
slow subscriber never blocks publishes or cache commands.

Reconnect delays: min(attempt * base_delay, max_delay), up to max_attempts.
After the last attempt the store stays degraded until connect() is called.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
import contextlib
from dataclasses import dataclass
import inspect
import json
import logging
import time
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as redis
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ethio_shop.schemas.health import ComponentHealth
from ethio_shop.settings import Settings
from ethio_shop.stores.errors import (
    NotConnectedError,
    StoreConnectionError,
    TransportError,
    TypeMismatchError,
)
from ethio_shop.stores.state import ConnectionState, StateTracker

logger = logging.getLogger("uvicorn.error")

MessageHandler = Callable[[Any], Awaitable[None] | None]

_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


@dataclass(frozen=True, repr=False)
class CacheConfig:
    """Connection and reconnect settings for the cache store (seconds)."""

    url: str = "redis://localhost:6379/0"
    connect_timeout: float = 5.0
    socket_timeout: float = 5.0
    reconnect_base_delay: float = 0.1
    reconnect_max_delay: float = 3.0
    reconnect_max_attempts: int = 10
    health_timeout: float = 2.0
    poll_interval: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheConfig:
        return cls(
            url=settings.effective_redis_url,
            connect_timeout=settings.redis_connect_timeout,
            socket_timeout=settings.redis_socket_timeout,
            reconnect_base_delay=settings.redis_reconnect_base_delay,
            reconnect_max_delay=settings.redis_reconnect_max_delay,
            reconnect_max_attempts=settings.redis_reconnect_max_attempts,
            health_timeout=settings.redis_health_timeout,
        )

    def __str__(self) -> str:
        parts = urlsplit(self.url)
        netloc = parts.netloc
        if "@" in netloc:
            netloc = "***@" + netloc.rsplit("@", 1)[1]
        safe_url = urlunsplit(parts._replace(netloc=netloc))
        return (
            f"CacheConfig(url={safe_url}, reconnect_max_attempts={self.reconnect_max_attempts}, "
            f"reconnect_max_delay={self.reconnect_max_delay})"
        )

    __repr__ = __str__


ClientFactory = Callable[[CacheConfig], redis.Redis]


def default_client_factory(config: CacheConfig) -> redis.Redis:
    """Build one Redis client with its own connection pool.

    Command-level retries are disabled: a fault surfaces to the caller and
    drives the store's own reconnect loop instead.
    """
    return redis.from_url(
        config.url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=config.connect_timeout,
        socket_timeout=config.socket_timeout,
        retry=Retry(NoBackoff(), 0),
    )


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect attempt `attempt` (1-based)."""
    return min(attempt * base_delay, max_delay)


def _encode(value: Any) -> str:
    return json.dumps(value)


def _decode(raw: str) -> Any:
    # Values written by other clients may not be JSON documents.
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class CacheStore:
    """Cache and messaging client owning the three Redis connections."""

    name = "cache"

    def __init__(
        self,
        config: CacheConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or default_client_factory
        self._client: redis.Redis | None = None
        self._publisher: redis.Redis | None = None
        self._subscriber: redis.Redis | None = None
        self._pubsub: PubSub | None = None
        self._tracker = StateTracker("Redis")

        # channel -> handlers; values are replaced, never mutated in place,
        # so dispatch always sees a complete tuple.
        self._handlers: dict[str, tuple[MessageHandler, ...]] = {}
        self._registry_lock = asyncio.Lock()

        self._delivery_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._reconnect_exhausted = False

    @property
    def state(self) -> ConnectionState:
        return self._tracker.state

    @property
    def config(self) -> CacheConfig | None:
        return self._config

    @property
    def reconnect_exhausted(self) -> bool:
        """True once the reconnect loop gave up; only connect() recovers."""
        return self._reconnect_exhausted

    # ============================================================
    # Lifecycle
    # ============================================================

    async def connect(self, config: CacheConfig | None = None) -> None:
        """Open the key/value, publisher and subscriber connections.

        Raises:
            StoreConnectionError: If any connection fails its ping within the
                connect timeout.
        """
        if config is not None:
            self._config = config
        if self._config is None:
            self._config = CacheConfig()
        if self.state == ConnectionState.READY:
            return

        cfg = self._config
        self._tracker.move(ConnectionState.CONNECTING)
        await self._cancel_background()
        await self._close_connections()

        self._client = self._client_factory(cfg)
        self._publisher = self._client_factory(cfg)
        self._subscriber = self._client_factory(cfg)
        try:
            await asyncio.wait_for(self._reestablish(), timeout=cfg.connect_timeout)
        except Exception as e:
            await self._close_connections()
            self._tracker.move(ConnectionState.DISCONNECTED)
            logger.error(f"Failed to connect to Redis ({cfg}): {e!r}")
            raise StoreConnectionError(f"Redis connect failed: {e!r}") from e

        self._reconnect_attempts = 0
        self._reconnect_exhausted = False
        self._tracker.move(ConnectionState.READY)
        if self._handlers:
            self._ensure_delivery_task()
        logger.info("Redis connected")

    async def close(self) -> None:
        """Stop background tasks and close all three connections."""
        await self._cancel_background()
        await self._close_connections()
        self._handlers = {}
        if self.state != ConnectionState.DISCONNECTED:
            self._tracker.move(ConnectionState.DISCONNECTED)
            logger.info("Redis connections closed")

    async def health_check(self) -> ComponentHealth:
        """Round-trip ping with latency. Never raises."""
        cfg = self._config or CacheConfig()
        info: dict[str, Any] = {
            "reconnect_attempts": self._reconnect_attempts,
            "reconnect_exhausted": self._reconnect_exhausted,
            "subscribed_channels": sorted(self._handlers),
        }
        client = self._client
        if client is None or self.state != ConnectionState.READY:
            details = (
                "Redis reconnection attempts exhausted"
                if self._reconnect_exhausted
                else "Redis connection failed"
            )
            return ComponentHealth(
                component=self.name,
                status="unhealthy",
                state=self.state.value,
                details=details,
                error="Redis not connected",
                info=info,
            )

        start = time.perf_counter()
        try:
            await asyncio.wait_for(client.ping(), timeout=cfg.health_timeout)
        except Exception as e:
            logger.warning(f"Redis health check failed: {e!r}")
            if isinstance(e, _TRANSPORT_ERRORS):
                self._on_transport_error(e)
            return ComponentHealth(
                component=self.name,
                status="unhealthy",
                state=self.state.value,
                details="Redis connection failed",
                error=repr(e),
                info=info,
            )
        latency_ms = (time.perf_counter() - start) * 1000

        try:
            server = await asyncio.wait_for(client.info(), timeout=cfg.health_timeout)
        except (RedisError, asyncio.TimeoutError) as e:
            logger.debug(f"Redis INFO unavailable: {e!r}")
        else:
            info.update(
                {
                    "redis_version": server.get("redis_version", "unknown"),
                    "used_memory": server.get("used_memory_human", "unknown"),
                    "connected_clients": server.get("connected_clients", 0),
                }
            )

        return ComponentHealth(
            component=self.name,
            status="healthy",
            state=self.state.value,
            latency_ms=round(latency_ms, 2),
            details="Redis connection is healthy",
            info=info,
        )

    # ============================================================
    # Key/value operations
    # ============================================================

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store `value` as JSON, expiring after `ttl` seconds when given."""
        if ttl is not None and ttl <= 0:
            raise ValueError(f"ttl must be a positive number of seconds, got {ttl}")
        client = self._require_ready()
        with self._guard():
            await client.set(key, _encode(value), ex=ttl)
        logger.debug(f"Redis SET: {key}")
        return True

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a decoded value; `default` when the key is missing or expired."""
        client = self._require_ready()
        with self._guard():
            raw = await client.get(key)
        logger.debug(f"Redis GET: {key}")
        if raw is None:
            return default
        return _decode(raw)

    async def delete(self, key: str) -> int:
        client = self._require_ready()
        with self._guard():
            removed = await client.delete(key)
        logger.debug(f"Redis DEL: {key}")
        return removed

    async def exists(self, key: str) -> bool:
        client = self._require_ready()
        with self._guard():
            return await client.exists(key) == 1

    async def expire(self, key: str, ttl: int) -> bool:
        """Set a TTL on an existing key. False if the key does not exist."""
        client = self._require_ready()
        with self._guard():
            applied = await client.expire(key, ttl)
        logger.debug(f"Redis EXPIRE: {key} -> {ttl}s")
        return bool(applied)

    async def time_to_live(self, key: str) -> int:
        """Remaining TTL in seconds; -1 when the key never expires, -2 when missing."""
        client = self._require_ready()
        with self._guard():
            return await client.ttl(key)

    async def increment(self, key: str, amount: int = 1) -> int:
        client = self._require_ready()
        with self._guard():
            try:
                return await client.incrby(key, amount)
            except ResponseError as e:
                raise TypeMismatchError(key) from e

    async def decrement(self, key: str, amount: int = 1) -> int:
        client = self._require_ready()
        with self._guard():
            try:
                return await client.decrby(key, amount)
            except ResponseError as e:
                raise TypeMismatchError(key) from e

    async def hash_set(self, key: str, field: str, value: Any) -> bool:
        client = self._require_ready()
        with self._guard():
            await client.hset(key, field, _encode(value))
        logger.debug(f"Redis HSET: {key}.{field}")
        return True

    async def hash_get(self, key: str, field: str, default: Any = None) -> Any:
        client = self._require_ready()
        with self._guard():
            raw = await client.hget(key, field)
        if raw is None:
            return default
        return _decode(raw)

    async def hash_get_all(self, key: str) -> dict[str, Any]:
        client = self._require_ready()
        with self._guard():
            data = await client.hgetall(key)
        return {field: _decode(raw) for field, raw in data.items()}

    async def flush_all(self) -> bool:
        """Delete every key in the database. Maintenance use only."""
        client = self._require_ready()
        with self._guard():
            await client.flushall()
        logger.warning("Redis FLUSHALL executed")
        return True

    # ============================================================
    # Pub/sub
    # ============================================================

    async def publish(self, channel: str, message: Any) -> int:
        """Publish `message` as JSON. Returns the number of receivers (0 is fine)."""
        self._require_ready()
        publisher = self._publisher
        with self._guard():
            receivers = await publisher.publish(channel, _encode(message))
        logger.debug(f"Redis PUBLISH: {channel} ({receivers} receivers)")
        return receivers

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        """Invoke `handler(message)` for every future message on `channel`.

        Handlers may be plain functions or coroutine functions.
        """
        self._require_ready()
        async with self._registry_lock:
            previous = self._handlers.get(channel, ())
            self._handlers[channel] = previous + (handler,)
            if not previous:
                try:
                    with self._guard():
                        await self._pubsub.subscribe(channel)
                except BaseException:
                    self._restore_handlers(channel, previous)
                    raise
        self._ensure_delivery_task()
        logger.debug(f"Redis SUBSCRIBE: {channel}")

    async def unsubscribe(self, channel: str, handler: MessageHandler | None = None) -> bool:
        """Remove `handler` (or every handler) from `channel`.

        Returns:
            True if anything was removed.
        """
        self._require_ready()
        async with self._registry_lock:
            previous = self._handlers.get(channel, ())
            if handler is None:
                remaining: tuple[MessageHandler, ...] = ()
            else:
                # Equality, not identity: `obj.method` is a new object on each access.
                remaining = tuple(h for h in previous if h != handler)
            if len(remaining) == len(previous):
                return False
            self._restore_handlers(channel, remaining)
            if not remaining:
                with self._guard():
                    await self._pubsub.unsubscribe(channel)
        logger.debug(f"Redis UNSUBSCRIBE: {channel}")
        return True

    # ============================================================
    # Internals
    # ============================================================

    def _require_ready(self) -> redis.Redis:
        if self.state != ConnectionState.READY or self._client is None:
            raise NotConnectedError("Redis not connected")
        return self._client

    @contextlib.contextmanager
    def _guard(self) -> Iterator[None]:
        """Turn a transport fault into TransportError and start reconnecting."""
        try:
            yield
        except _TRANSPORT_ERRORS as e:
            self._on_transport_error(e)
            raise TransportError(f"Redis transport error: {e!r}") from e

    def _restore_handlers(self, channel: str, handlers: tuple[MessageHandler, ...]) -> None:
        if handlers:
            self._handlers[channel] = handlers
        else:
            self._handlers.pop(channel, None)

    def _on_transport_error(self, error: BaseException) -> None:
        if self.state != ConnectionState.READY:
            return
        logger.error(f"Redis client error: {error!r}")
        self._tracker.move(ConnectionState.DEGRADED)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_exhausted = False
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_loop(), name="redis-reconnect"
            )

    async def _reconnect_loop(self) -> None:
        cfg = self._config
        for attempt in range(1, cfg.reconnect_max_attempts + 1):
            self._reconnect_attempts = attempt
            delay = backoff_delay(attempt, cfg.reconnect_base_delay, cfg.reconnect_max_delay)
            logger.warning(
                f"Redis reconnecting in {delay:.2f}s "
                f"(attempt {attempt}/{cfg.reconnect_max_attempts})"
            )
            await asyncio.sleep(delay)
            if self.state != ConnectionState.DEGRADED:
                return
            try:
                await asyncio.wait_for(self._reestablish(), timeout=cfg.connect_timeout)
            except (RedisError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Redis reconnect attempt {attempt} failed: {e!r}")
                continue
            self._reconnect_attempts = 0
            self._tracker.move(ConnectionState.READY)
            logger.info("Redis client reconnected and ready")
            return

        self._reconnect_exhausted = True
        logger.error(
            f"Redis reconnection attempts exceeded ({cfg.reconnect_max_attempts}); "
            "staying degraded until connect() is called"
        )

    async def _reestablish(self) -> None:
        """Ping every connection and rebuild the subscription on a fresh PubSub."""
        await self._client.ping()
        await self._publisher.ping()
        await self._subscriber.ping()

        async with self._registry_lock:
            old = self._pubsub
            self._pubsub = self._subscriber.pubsub()
            if old is not None:
                with contextlib.suppress(RedisError, OSError):
                    await old.aclose()
            channels = list(self._handlers)
            if channels:
                await self._pubsub.subscribe(*channels)

    def _ensure_delivery_task(self) -> None:
        if self._delivery_task is None or self._delivery_task.done():
            self._delivery_task = asyncio.get_running_loop().create_task(
                self._deliver_messages(), name="redis-subscriber"
            )

    async def _deliver_messages(self) -> None:
        """Read the subscriber connection and dispatch messages in arrival order."""
        poll_interval = self._config.poll_interval
        while True:
            if not self._handlers:
                # Nothing subscribed; subscribe() starts a new task.
                return
            pubsub = self._pubsub
            if self.state != ConnectionState.READY or pubsub is None or not pubsub.subscribed:
                await asyncio.sleep(min(poll_interval, 0.05))
                continue
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=poll_interval
                )
            except _TRANSPORT_ERRORS as e:
                self._on_transport_error(e)
                continue
            except Exception:
                logger.exception("Redis subscriber loop error; retrying")
                await asyncio.sleep(poll_interval)
                continue
            if message is None or message.get("type") != "message":
                continue
            await self._dispatch(message["channel"], message["data"])

    async def _dispatch(self, channel: str, data: Any) -> None:
        handlers = self._handlers.get(channel, ())
        if not handlers:
            return
        payload = _decode(data)
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Redis subscriber handler failed on channel {channel}")

    async def _cancel_background(self) -> None:
        for task in (self._reconnect_task, self._delivery_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._delivery_task = None

    async def _close_connections(self) -> None:
        if self._pubsub is not None:
            with contextlib.suppress(RedisError, OSError):
                await self._pubsub.aclose()
            self._pubsub = None
        for client in (self._client, self._publisher, self._subscriber):
            if client is not None:
                with contextlib.suppress(RedisError, OSError):
                    await client.aclose()
        self._client = None
        self._publisher = None
        self._subscriber = None
