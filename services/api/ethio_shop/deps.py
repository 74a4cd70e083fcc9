"""FastAPI dependencies exposing the registry-owned stores to handlers."""

from fastapi import Request

from ethio_shop.registry import ServiceRegistry
from ethio_shop.stores.postgres import DatabaseStore
from ethio_shop.stores.redis import CacheStore


def get_registry(request: Request) -> ServiceRegistry:
    return request.app.state.registry


def get_database(request: Request) -> DatabaseStore:
    return get_registry(request).database


def get_cache(request: Request) -> CacheStore:
    return get_registry(request).cache
