"""Health status schemas for the backing-service stores."""

from typing import Any, Literal

from pydantic import BaseModel, Field

HealthStatus = Literal["healthy", "unhealthy"]


class ComponentHealth(BaseModel):
    """Result of a single store's health probe."""

    component: str
    status: HealthStatus
    state: str
    latency_ms: float | None = None
    details: str = ""
    error: str | None = None
    info: dict[str, Any] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


class HealthReport(BaseModel):
    """Aggregated health for the process-level /health endpoint."""

    status: HealthStatus
    service: str
    version: str
    environment: str
    uptime_seconds: float
    components: dict[str, ComponentHealth]
