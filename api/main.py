"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from api.routes import health, enrichment, bulk, quotas
from api.dependencies import build_bulk_orchestrator
from api.middleware import RateLimitMiddleware, RequestContextMiddleware
from core.config import settings
from core.exceptions import (
    ConflictError,
    EnrichmentException,
    PersistenceError,
    ProviderError,
    QuotaExhaustedError,
    RecordNotFoundError,
    RunNotFoundError,
    ValidationError,
)
from core.logging import setup_logging
from enrichment.scheduler import EnrichmentScheduler
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Record Enrichment API",
    description="Multi-provider record enrichment with consensus scoring and per-field review",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Middleware added last runs first: request context wraps rate limiting
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)

scheduler = None


# Order matters: most specific first
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (RecordNotFoundError, 404),
    (RunNotFoundError, 404),
    (ConflictError, 409),
    (QuotaExhaustedError, 429),
    (ProviderError, 502),
    (PersistenceError, 503),
)


def status_code_for(error: EnrichmentException) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


@app.exception_handler(EnrichmentException)
async def enrichment_exception_handler(request: Request, exc: EnrichmentException):
    status_code = status_code_for(exc)
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] {exc}", extra={"error_context": exc.to_dict()})
    else:
        logger.info(f"[{request_id}] {exc.__class__.__name__}: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "error": exc.__class__.__name__,
            "message": exc.message,
            "context": {k: v for k, v in exc.context.items() if k != "error_timestamp"},
            "request_id": request_id,
        }),
    )


# Include routers
app.include_router(health.router)
app.include_router(enrichment.router)
app.include_router(bulk.router)
app.include_router(quotas.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler
    logger.info("Starting Record Enrichment API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.ENABLE_SCHEDULER:
        scheduler = EnrichmentScheduler(build_bulk_orchestrator())
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Record Enrichment API")
    if scheduler is not None:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Record Enrichment API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "enrich": "/records/{record_id}/enrich",
            "bulk": "/bulk/enrich",
            "quotas": "/quotas"
        }
    }
