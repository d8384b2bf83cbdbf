"""
Main FastAPI application entry point.

This module sets up the FastAPI app with all middleware, routes, and lifecycle events.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry

from .api import healthz_router, logs_router, metrics_router, proxy_router
from .config import Settings, get_settings
from .core.audit import AuditFiles, AuditLogger
from .core.auth import AccessGuard
from .core.crypto import build_cipher_registry, load_or_create_key
from .core.exceptions import AuditProxyException
from .core.metrics import MetricsCollector
from .core.proxy import ProxyEngine
from .core.repository import LogRepository
from .core.session import SessionTracker

SERVICE_VERSION = "0.1.0"


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(
    settings: Settings,
    metrics_registry: Optional[CollectorRegistry] = None,
) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Builds the audit and proxy services, starts the session sweep and
        releases the outbound connection pool on shutdown.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting AuditProxy service", version=app.version)

        metrics_collector = MetricsCollector(metrics_registry)
        app.state.metrics = metrics_collector

        files = AuditFiles(settings.audit)
        ciphers = build_cipher_registry(load_or_create_key(files.key_file), settings.audit.cipher)

        audit = AuditLogger(files, ciphers, metrics_collector)
        app.state.audit = audit

        sessions = SessionTracker(
            timeout_seconds=settings.session.timeout_minutes * 60,
            sweep_interval_seconds=settings.session.sweep_interval_minutes * 60,
            id_length=settings.session.id_length,
        )
        app.state.sessions = sessions
        await sessions.start()

        proxy_engine = ProxyEngine(settings.proxy, sessions, audit, metrics_collector)
        app.state.proxy_engine = proxy_engine
        await proxy_engine.start()

        app.state.repository = LogRepository(files, ciphers, metrics_collector)
        app.state.access_guard = AccessGuard(settings.security)

        try:
            logger.info("AuditProxy service started successfully", log_dir=str(files.log_dir))
            yield
        finally:
            logger.info("Shutting down AuditProxy service")

            await proxy_engine.stop()
            await sessions.stop()

            logger.info("AuditProxy service shutdown complete")

    return lifespan


async def auditproxy_exception_handler(request: Request, exc: AuditProxyException) -> JSONResponse:
    """Handle custom AuditProxy exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "AuditProxy exception occurred",
        error=str(exc),
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )

    headers = {}

    # Add Retry-After header for rate limit errors
    if exc.status_code == 429 and "retry_after" in exc.details:
        headers["Retry-After"] = str(exc.details["retry_after"])

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": str(exc),
            "details": exc.details,
        },
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": str(exc) or "An unexpected error occurred",
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    metrics_registry: Optional[CollectorRegistry] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function ensures all configuration is applied
    whether running via FastAPI CLI or direct execution.
    """
    settings = settings or get_settings()

    configure_logging(settings.log_level)

    lifespan = create_lifespan_handler(settings, metrics_registry)

    app = FastAPI(
        title="AuditProxy",
        description="Audited HTTP forwarding service",
        version=SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Session-ID", "X-Admin-Key"],
        expose_headers=["X-Session-ID"],
        max_age=3600,
    )

    app.add_exception_handler(AuditProxyException, auditproxy_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(proxy_router, prefix="/api", tags=["proxy"])
    app.include_router(logs_router, prefix="/api/logs", tags=["logs"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "AuditProxy",
            "version": app.version,
            "description": "Audited HTTP forwarding service",
            "docs": "/docs",
        }

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "auditproxy.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
