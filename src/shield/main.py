"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the ProcoreError exception handler, lifespan events for database
initialization and Procore service wiring, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.shield.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.shield.api.v1.router import router as v1_router
from src.shield.config import get_settings
from src.shield.core.database import close_db, get_session, init_db
from src.shield.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.shield.entities.repository import AuditLogRepository, EntityRepository
from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.errors import ProcoreError
from src.shield.integrations.procore.repository import (
    CredentialRepository,
    MappingRepository,
    PushHistoryRepository,
    SyncLogRepository,
)
from src.shield.integrations.procore.service import ProcoreIntegrationService


def build_procore_service() -> ProcoreIntegrationService:
    """Wire the Procore integration service over the database-backed stores."""
    settings = get_settings()
    return ProcoreIntegrationService(
        client=ProcoreClient.from_settings(settings),
        credentials=CredentialRepository(get_session),
        mappings=MappingRepository(get_session),
        entities=EntityRepository(get_session),
        push_history=PushHistoryRepository(get_session),
        sync_log=SyncLogRepository(get_session),
        audit=AuditLogRepository(get_session),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the Procore service, close DB on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    app.state.procore_service = build_procore_service()
    log.info("procore.service_initialized")

    yield

    await close_db()


async def procore_error_handler(request: Request, exc: ProcoreError) -> JSONResponse:
    """Render ProcoreError subclasses as {"error": {"code", "message"}}."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Shield API",
        version="0.1.0",
        description="Subcontractor compliance platform with Procore reconciliation",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(ProcoreError, procore_error_handler)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
