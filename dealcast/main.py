"""FastAPI application entry point.

Dealcast API - marketplace deals to channel posts.
"""

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dealcast.routes import api_router
from dealcast.schemas import ErrorResponse
from dealcast.schemas.common import ERROR_INTERNAL, ERROR_SOURCE_UNAVAILABLE
from dealcast.services.ingestion import SourceUnavailableError
from dealcast.settings import get_settings
from dealcast.stores.postgres import init_db, close_db, ping_db
from dealcast.stores.redis import init_redis, close_redis

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Initialize database (skip in tests if no DB available)
    try:
        await init_db()
        await ping_db()
        logger.info("Postgres connected")
    except Exception:
        logger.exception("Postgres init failed")

    # Initialize Redis (copy store falls back to in-process when unavailable)
    try:
        await init_redis()
    except Exception:
        logger.exception("Redis init failed")

    yield

    # Shutdown
    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Automated deal-to-publication pipeline API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    @app.exception_handler(SourceUnavailableError)
    async def source_unavailable_handler(request: Request, exc: SourceUnavailableError) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse.build(ERROR_SOURCE_UNAVAILABLE, str(exc)),
        )

    # Exception handler for structured error format
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler returning structured error format."""
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse.build(
                ERROR_INTERNAL,
                str(exc) if settings.debug else "Internal server error",
            ),
        )

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, bool]:
        """Health check endpoint."""
        return {"ok": True}

    # Include API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "dealcast.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
