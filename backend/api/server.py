"""
Visa Collect API Server
=======================
FastAPI server for Turkish e-visa intake and PayPal payments:
- Application workflow endpoints (/api/v1/turkey/...)
- PayPal order, capture, refund and webhook endpoints (/api/v1/payment/...)
- Event bus integration for downstream notifications
- Optional reconciliation loop for stale payments
- Health monitoring

Run with: uvicorn api.server:app
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from api.container import ServiceContainer
from api.payment_routes import router as payment_router
from api.responses import failure, success
from api.visa_routes import router as visa_router
from services.errors import VisaServiceError
from tasks.reconciliation import config as reconciliation_config
from tasks.reconciliation import reconciliation_loop

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    API_PREFIX = os.getenv("API_PREFIX", "/api/v1")

    # memory | postgres
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")

    # RabbitMQ (for event bus); empty disables publishing
    RABBITMQ_URL = os.getenv("RABBITMQ_URL", "")
    EVENT_EXCHANGE = os.getenv("EVENT_EXCHANGE", "visa_collect")


config = ServerConfig()


def configure_logging(env: str = config.ENV, level: str = config.LOG_LEVEL):
    renderer = (
        structlog.processors.JSONRenderer()
        if env == "production"
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
    )


configure_logging()
logger = structlog.get_logger().bind(component="server")

START_TIME = datetime.now(timezone.utc)


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    container: ServiceContainer = app.state.container
    logger.info("server_starting", version=VERSION, env=config.ENV, storage=container.storage_backend)

    if container.storage_backend == "postgres":
        from database import init_database

        await init_database()

    if container.event_bus is not None:
        await container.event_bus.initialize()

    reconciler: Optional[asyncio.Task] = None
    if reconciliation_config.ENABLED:
        reconciler = asyncio.create_task(reconciliation_loop(container.orchestrator, container.webhooks))

    yield

    # Cleanup
    logger.info("server_shutting_down")
    if reconciler is not None:
        reconciler.cancel()
        try:
            await reconciler
        except asyncio.CancelledError:
            pass
    await container.close()
    if container.storage_backend == "postgres":
        from database import close_database

        await close_database()


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Visa Collect API",
        description="Turkish e-visa applications with PayPal checkout",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.container = container or ServiceContainer.from_config(
        config.STORAGE_BACKEND,
        rabbitmq_url=config.RABBITMQ_URL,
        exchange=config.EVENT_EXCHANGE,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # -------------------------------------------------------------------------
    # Error handling
    # -------------------------------------------------------------------------

    @app.exception_handler(VisaServiceError)
    async def service_error_handler(request: Request, exc: VisaServiceError):
        if exc.is_operational:
            logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
        else:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return failure(exc.status_code, exc.code, exc.client_message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err["loc"] if part != "body"),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        return failure(400, "VALIDATION_ERROR", "Validation failed", details)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return failure(500, "INTERNAL_SERVER_ERROR", "Something went wrong!")

    # -------------------------------------------------------------------------
    # Health endpoints
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        current: ServiceContainer = app.state.container
        uptime = (datetime.now(timezone.utc) - START_TIME).total_seconds()
        bus = current.event_bus
        return success({
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": uptime,
            "storage": current.storage_backend,
            "paypal_configured": current.gateway.config.is_configured,
            "webhook_verification": current.gateway.verifies_webhooks,
            "notifications_in_flight": current.notifications.pending,
            "rabbitmq_connected": bus.is_connected if bus else False,
        })

    @app.get("/ready")
    async def readiness_check():
        """Readiness probe; fails while the database is unreachable"""
        current: ServiceContainer = app.state.container
        if current.storage_backend == "postgres":
            from database import Database

            if not await Database.ping():
                return failure(503, "NOT_READY", "Database unavailable")
        return {"ready": True}

    @app.get("/live")
    async def liveness_check():
        """Liveness probe"""
        return {"live": True}

    app.include_router(visa_router, prefix=config.API_PREFIX)
    app.include_router(payment_router, prefix=config.API_PREFIX)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )
