"""
FastAPI application entry point.

This is the main application that ties together all components:
- API routes for order invoicing and ledger status
- Database lifecycle management
- Mapping of application errors to HTTP responses
- Logging
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from afipsync import __version__
from afipsync.api.routes import health, orders
from afipsync.config import configure_logging, get_settings
from afipsync.errors import (
    AfipSyncError,
    DomainError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from afipsync.infrastructure.database import close_db, init_db

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases
ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (DomainError, 422),
    (InfrastructureError, 503),
)


def status_for(exc: AfipSyncError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates the ledger tables on startup and releases connections on
    shutdown.
    """
    settings = get_settings()

    logger.info(f"Starting afipsync v{__version__}")
    logger.info(f"Sales point: {settings.sales_point}, concept: {settings.concept}")
    logger.info(f"Debug mode: {settings.debug}")

    await init_db()

    yield  # Application runs here

    logger.info("Shutting down afipsync")
    await close_db()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance ready to serve requests.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="afipsync API",
        description=(
            "Reconciles P2P exchange orders with AFIP electronic invoicing.\n\n"
            "Every SELL order is invoiced at most once; the ledger records "
            "each order's outcome."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.include_router(health.router)
    app.include_router(orders.router, prefix="/api/v1")

    @app.exception_handler(AfipSyncError)
    async def app_error_handler(request: Request, exc: AfipSyncError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")

        # Don't expose internal errors in production
        if settings.debug:
            detail = str(exc)
        else:
            detail = "An internal error occurred"

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": detail,
            },
        )

    return app


# Create the application instance
app = create_app()


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "afipsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
