"""FastAPI application for the virtual try-on service.

This module provides the main FastAPI application with health endpoints,
API routes, error mapping and lifecycle management.

Run with:
    uvicorn tryon.main:app --reload

Examples:
    >>> # Health check
    >>> curl http://localhost:8000/health

    >>> # API docs
    >>> # Open http://localhost:8000/docs

Tests:
    - tests/unit/test_main.py
    - tests/integration/test_api.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tryon import __version__
from tryon.api.v1 import router as v1_router
from tryon.config import ProviderType, get_settings
from tryon.core.orchestrator import GenerationOrchestrator
from tryon.credits import ChangeFeed, LedgerStore
from tryon.database import check_db_connection, close_db, get_session_factory, init_db
from tryon.errors import TryOnError

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Response models
class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: bool
    providers: dict[str, bool]


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str
    code: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup: create tables, then the change feed, ledger and orchestrator
    shared by all requests. Shutdown: end feed subscriptions, close
    provider clients and database connections.
    """
    logger.info(f"Starting try-on service v{__version__}")

    try:
        await init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        # Continue anyway - tables may be managed by alembic

    feed = ChangeFeed()
    ledger = LedgerStore(get_session_factory(), feed=feed, settings=settings)
    orchestrator = GenerationOrchestrator.from_settings(ledger, settings)
    app.state.feed = feed
    app.state.ledger = ledger
    app.state.orchestrator = orchestrator

    yield

    logger.info("Shutting down try-on service")
    feed.close()
    await orchestrator.close()
    await close_db()


app = FastAPI(
    title="Virtual Try-On",
    description="Credit-gated virtual try-on image generation",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router)


# Exception handlers
@app.exception_handler(TryOnError)
async def tryon_error_handler(request: Request, exc: TryOnError):
    """Map terminal try-on errors to their status and localized message."""
    if exc.http_status >= 500:
        logger.error(f"{exc.code}: {exc.detail}")
    else:
        logger.info(f"{exc.code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.message(settings.LOCALE), "code": exc.code},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent response format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "code": None},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc) if settings.DEBUG else "Internal server error", "code": "ERROR"},
    )


# Health endpoints
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Check application health.

    Returns:
        HealthResponse with database and provider status.
    """
    db_healthy = await check_db_connection()

    providers = {
        provider.value: settings.has_provider(provider) for provider in ProviderType
    }

    return HealthResponse(
        status="healthy" if db_healthy else "degraded",
        version=__version__,
        database=db_healthy,
        providers=providers,
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with basic info."""
    return {
        "name": "Virtual Try-On",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# Entry point for development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tryon.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
