"""FastAPI application entry point.

Ethio Shop API - marketplace backend resource layer.
"""

import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ethio_shop.registry import ServiceRegistry
from ethio_shop.schemas.errors import error_response
from ethio_shop.schemas.health import HealthReport
from ethio_shop.settings import Settings, get_settings
from ethio_shop.stores.errors import QueryError, StoreUnavailableError

logger = logging.getLogger("uvicorn.error")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def create_app(
    settings: Settings | None = None,
    registry: ServiceRegistry | None = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Defaults to the cached environment settings.
        registry: Defaults to a fresh registry; tests pass pre-connected stores.
    """
    settings = settings or get_settings()
    registry = registry or ServiceRegistry()
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager.

        Startup connects the stores before requests are served; shutdown runs
        after uvicorn has stopped accepting and drained in-flight requests.
        """
        await registry.startup(settings)
        logger.info(f"{settings.app_name} ready ({settings.environment})")

        yield

        logger.info("Received shutdown signal, closing stores...")
        try:
            await asyncio.wait_for(registry.shutdown(), timeout=settings.shutdown_grace_seconds)
        except asyncio.TimeoutError:
            logger.error("Could not close connections in time, forcefully shutting down")
            raise SystemExit(1)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Backend API for the Ethiopian marketplace",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.registry = registry
    app.state.settings = settings

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        logger.warning(f"{request.method} {request.url.path}: store unavailable: {exc}")
        return error_response(
            503,
            "SERVICE_UNAVAILABLE",
            "Service temporarily unavailable",
            {"reason": str(exc)} if settings.debug else None,
        )

    @app.exception_handler(QueryError)
    async def query_error_handler(request: Request, exc: QueryError) -> JSONResponse:
        return error_response(
            500,
            "INTERNAL_ERROR",
            str(exc) if settings.debug else "Internal server error",
            {"statement": exc.statement} if settings.debug else None,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler returning structured error format."""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return error_response(
            500,
            "INTERNAL_ERROR",
            str(exc) if settings.debug else "Internal server error",
        )

    @app.get("/health", tags=["health"], response_model=HealthReport)
    async def health_check() -> JSONResponse:
        """Aggregate health of every backing store (503 if any is unhealthy)."""
        components = await registry.health()
        healthy = all(component.healthy for component in components.values())
        report = HealthReport(
            status="healthy" if healthy else "unhealthy",
            service=settings.app_name,
            version=settings.app_version,
            environment=settings.environment,
            uptime_seconds=round(time.monotonic() - started_at, 3),
            components=components,
        )
        return JSONResponse(
            status_code=200 if healthy else 503,
            content=report.model_dump(mode="json"),
            headers=NO_CACHE_HEADERS,
        )

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ethio_shop.main:app",
        host=settings.host,
        port=settings.port,
        timeout_graceful_shutdown=int(settings.shutdown_grace_seconds),
    )
