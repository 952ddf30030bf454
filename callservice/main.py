"""Main FastAPI application for the call session service."""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callservice.api.admin import router as admin_router
from callservice.api.calls import router as calls_router
from callservice.api.dependencies import create_error_response, error_response_for, get_correlation_id
from callservice.api.provider import router as provider_router
from callservice.api.users import router as users_router
from callservice.api.webhooks import router as webhooks_router
from callservice.config import settings
from callservice.middleware import (
    MetricsMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    get_metrics,
)
from callservice.models.api_models import HealthResponse
from callservice.observability import TracingContextMiddleware, instrument_fastapi_app, setup_observability
from callservice.services.container import Services, build_services
from callservice.services.errors import CallServiceError
from callservice.utils.redaction import install_access_log_redaction

SERVICE_NAME = "call-session-service"
SERVICE_VERSION = "1.0.0"


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    install_access_log_redaction()


configure_logging(settings.log_level)
logger = structlog.get_logger()


def create_app(services: Optional[Services] = None, enable_observability: bool = True) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Prebuilt service graph (tests); built from settings otherwise
        enable_observability: Set up OpenTelemetry on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting call session service", port=settings.port, host=settings.host)

        if enable_observability:
            setup_observability(
                service_name=SERVICE_NAME,
                service_version=SERVICE_VERSION,
                otlp_endpoint=settings.otlp_endpoint
            )
            instrument_fastapi_app(app)

        yield

        logger.info("Shutting down call session service")

    app = FastAPI(
        title="Call Session Service",
        description="Call lifecycle, daily quota and provider webhook correlation for voice companion calls",
        version=SERVICE_VERSION,
        lifespan=lifespan
    )
    app.state.services = services or build_services()

    # Last added is executed first
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(TracingContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    @app.exception_handler(CallServiceError)
    async def handle_service_error(request: Request, exc: CallServiceError) -> JSONResponse:
        logger.warning("Request failed with domain error", error_type=exc.error_type, error=exc.message)
        return error_response_for(exc, request)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in error["loc"] if part != "body") for error in exc.errors()]
        return create_error_response(
            error_type="InvalidInput",
            message="Invalid request",
            correlation_id=get_correlation_id(request),
            status_code=400,
            details={"fields": fields}
        )

    app.include_router(calls_router)
    app.include_router(users_router)
    app.include_router(webhooks_router)
    app.include_router(provider_router)
    app.include_router(admin_router)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version=SERVICE_VERSION
        )

    @app.get("/readyz")
    async def readiness_check(request: Request) -> JSONResponse:
        """Readiness: the database answers."""
        healthy = await request.app.state.services.db.health_check()
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ready" if healthy else "unavailable", "database": healthy}
        )

    @app.get("/metrics")
    async def metrics_endpoint():
        """Application metrics endpoint."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metrics": get_metrics()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "callservice.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False
    )
