"""
Main FastAPI application for the dealership lead routing service.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import leads, negotiations, round_robin, scoring
from .services import get_services, initialize_services
from .middleware.metrics import MetricsMiddleware, metrics_endpoint
from config.logging import configure_logging
from config.settings import get_settings
from lead_routing.errors import (
    ConcurrentModificationError,
    DuplicateLeadError,
    LeadRoutingError,
    NoAgentAvailableError,
    NotFoundError,
    SaleRejectedError,
    StorageUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Lead routing service starting up...")

    session_factory = None
    if settings.database_url:
        from database.session import get_session_factory, init_db
        await init_db(settings.database_url, settings.db_pool_size, settings.db_max_overflow)
        session_factory = get_session_factory()

    initialize_services(session_factory)
    services = get_services()
    await services.load_recovery_rules()
    logger.info("Lead routing service ready")
    yield
    logger.info("Lead routing service shutting down...")

    await services.shutdown()
    if settings.database_url:
        from database.session import close_db
        await close_db()


# ── Error mapping ───────────────────────────────────────────────────────

async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content=exc.to_dict())


async def _duplicate_error(request: Request, exc: DuplicateLeadError):
    return JSONResponse(status_code=409, content=exc.to_dict())


async def _conflict_error(request: Request, exc: ConcurrentModificationError):
    return JSONResponse(status_code=409, content=exc.to_dict())


async def _not_found_error(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"error": "not_found", "message": str(exc), "entity": exc.entity, "entity_id": exc.entity_id},
    )


async def _sale_rejected_error(request: Request, exc: SaleRejectedError):
    return JSONResponse(status_code=422, content={"error": "sale_rejected", "message": str(exc)})


async def _no_agent_error(request: Request, exc: NoAgentAvailableError):
    return JSONResponse(status_code=409, content={"error": "no_agent_available", "message": str(exc)})


async def _storage_error(request: Request, exc: StorageUnavailable):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "storage_unavailable", "message": str(exc), "operation": exc.operation},
    )


async def _lead_routing_error(request: Request, exc: LeadRoutingError):
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        description="Lead qualification, round-robin assignment and negotiation pipeline for dealerships.",
        version=settings.api_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics middleware
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(DuplicateLeadError, _duplicate_error)
    app.add_exception_handler(ConcurrentModificationError, _conflict_error)
    app.add_exception_handler(NotFoundError, _not_found_error)
    app.add_exception_handler(SaleRejectedError, _sale_rejected_error)
    app.add_exception_handler(NoAgentAvailableError, _no_agent_error)
    app.add_exception_handler(StorageUnavailable, _storage_error)
    app.add_exception_handler(LeadRoutingError, _lead_routing_error)

    app.include_router(leads.router, prefix="/api/v1", tags=["Leads"])
    app.include_router(negotiations.router, prefix="/api/v1", tags=["Negotiations"])
    app.include_router(round_robin.router, prefix="/api/v1", tags=["Round Robin"])
    app.include_router(scoring.router, prefix="/api/v1", tags=["Scoring"])

    # --- Prometheus metrics endpoint ---
    app.get("/metrics", tags=["Monitoring"])(metrics_endpoint)

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "operational",
            "docs": "/docs",
        }

    # Health check
    @app.get("/health")
    async def health():
        services = get_services()
        return {
            "status": "healthy" if services.is_ready else "degraded",
            "services": services.health(),
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
