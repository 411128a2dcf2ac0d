"""
FastAPI application factory.

Builds the query API around an existing AuditStore, configures middleware
and includes the routers. Process startup lives in audit_service.__main__;
the listener itself is driven by ServiceLifecycle.
"""

import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from audit_service.config import Settings
from audit_service.routers import health, operations
from audit_service.store import AuditStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(settings: Settings, store: AuditStore) -> FastAPI:
    """
    Create the query application.

    The store is attached to the application state and reaches the
    handlers through dependency injection.
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        # Operations Audit Service API

        Records every operation published on the `portfolio-events` source
        and serves the most recent ones.

        - `GET /`: the 10 most recent operations, newest first
        - `GET /health`, `/health/live`, `/health/ready`: monitoring
        - `GET /metrics`: Prometheus metrics
        """,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.lifecycle = None

    # ========================================================================
    # Middleware
    # ========================================================================

    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Add request timing header for monitoring."""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests."""
        logger.debug(f"{request.method} {request.url.path}")
        return await call_next(request)

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Global exception handler.

        Returns a generic error response; details are only logged.
        """
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    # ========================================================================
    # Routers
    # ========================================================================

    app.include_router(operations.router)
    app.include_router(health.router)

    return app
