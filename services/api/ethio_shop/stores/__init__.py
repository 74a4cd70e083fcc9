"""Data stores for persistence, caching and messaging.

Stores handle:
- PostgreSQL: connection pool, parameterized statements, transactions
- Redis: JSON cache entries, counters, hashes, pub/sub, reconnection

No business logic in stores - that belongs in services.
"""

from ethio_shop.stores.errors import (
    NotConnectedError,
    PoolExhaustedError,
    QueryError,
    StoreConnectionError,
    StoreError,
    StoreUnavailableError,
    TransportError,
    TypeMismatchError,
)
from ethio_shop.stores.postgres import DatabaseConfig, DatabaseStore, QueryResult, TransactionScope
from ethio_shop.stores.redis import CacheConfig, CacheStore
from ethio_shop.stores.state import ConnectionState

__all__ = [
    "CacheConfig",
    "CacheStore",
    "ConnectionState",
    "DatabaseConfig",
    "DatabaseStore",
    "NotConnectedError",
    "PoolExhaustedError",
    "QueryError",
    "QueryResult",
    "StoreConnectionError",
    "StoreError",
    "StoreUnavailableError",
    "TransactionScope",
    "TransportError",
    "TypeMismatchError",
]
