"""Pydantic schemas for API responses."""

from ethio_shop.schemas.errors import ErrorDetail, ErrorResponse, error_response
from ethio_shop.schemas.health import ComponentHealth, HealthReport, HealthStatus

__all__ = [
    "ComponentHealth",
    "ErrorDetail",
    "ErrorResponse",
    "HealthReport",
    "HealthStatus",
    "error_response",
]
