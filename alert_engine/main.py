"""
FastAPI application entry point for the alert engine.

This module initializes the FastAPI application with:
- Application state (ConnectionGateway, ConditionConsumer, DeliveryDispatcher,
  EmailDeliveryWorker)
- Exception handlers for consistent error responses
- Logging configuration

Environment Variables:
    ALERT_ENGINE_DB_URL: Database URL
    ALERT_ENGINE_ENV: Environment (production/development, default: development)
    ALERT_ENGINE_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
    JWT_SECRET_KEY: Secret used to verify client tokens
    REDIS_URL: Enables cross-process push fan-out when set
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from alert_engine.api import alerts_ws, delivery_jobs, events, preferences
from alert_engine.config.settings import get_settings
from alert_engine.db.database import SessionLocal
from alert_engine.models import User
from alert_engine.services.condition_consumer import ConditionConsumer
from alert_engine.services.delivery_dispatcher import DeliveryDispatcher
from alert_engine.services.email_worker import EmailDeliveryWorker
from alert_engine.services.exceptions import (
    ConflictError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)
from alert_engine.services.suppression_ledger import SuppressionLedger
from alert_engine.utils.connection_gateway import ConnectionGateway
from alert_engine.utils.logging_config import get_logger, init_logging
from alert_engine.utils.mail_transport import SmtpMailTransport
from alert_engine.utils.push_broker import RedisPushBroker
from alert_engine.utils.template_renderer import TemplateRenderer


def _user_exists(user_id: int) -> bool:
    with SessionLocal() as db:
        return db.get(User, user_id) is not None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Build the gateway, dispatcher, consumer and email worker
    - Shutdown: Stop background tasks and disconnect clients

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    # Startup
    logger = get_logger("api")
    settings = get_settings()
    logger.info("Starting alert engine")

    if not settings.jwt_configured:
        logger.warning("JWT_SECRET_KEY is not set; every client authentication will fail")

    gateway = ConnectionGateway(
        jwt_secret=settings.jwt_secret_key,
        jwt_algorithm=settings.jwt_algorithm,
        event_limit=settings.socket_event_limit,
        event_window_seconds=settings.socket_event_window_seconds,
        join_limit=settings.socket_join_limit,
        join_window_seconds=settings.socket_join_window_seconds,
        user_exists=_user_exists,
        send_timeout_seconds=settings.socket_send_timeout_seconds,
    )
    if settings.redis_configured:
        gateway.broker = RedisPushBroker(
            settings.redis_url, settings.redis_channel, gateway.process_id
        )
        logger.info("Cross-process push fan-out enabled")
    await gateway.start()

    ledger = SuppressionLedger(SessionLocal)
    dispatcher = DeliveryDispatcher(
        SessionLocal, gateway, settings=settings, queue_size=settings.consumer_queue_size
    )
    consumer = ConditionConsumer(SessionLocal, ledger, dispatcher, settings=settings)
    await dispatcher.start()
    await consumer.start()

    email_worker = None
    email_task = None
    if settings.email_worker_enabled:
        transport = SmtpMailTransport.from_settings(
            settings, TemplateRenderer(settings.template_dir or None)
        )
        email_worker = EmailDeliveryWorker(SessionLocal, transport, settings=settings)
        email_task = asyncio.create_task(email_worker.run_forever())

    app.state.gateway = gateway
    app.state.ledger = ledger
    app.state.dispatcher = dispatcher
    app.state.consumer = consumer
    app.state.email_worker = email_worker

    logger.info("Alert engine started successfully")

    yield

    # Shutdown
    logger.info("Shutting down alert engine")
    if email_worker is not None:
        email_worker.stop()
        await email_task
    await consumer.stop()
    await dispatcher.stop()
    await gateway.stop()


# Initialize logging before creating app
init_logging(get_settings())

# Create FastAPI application
app = FastAPI(
    title="Budget Alert Engine",
    description="Evaluates budget state changes into deduplicated alerts and "
                "delivers them over live connections and email.",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


# ============================================================================
# Exception handlers
# ============================================================================

api_logger = get_logger("api")


def _error_response(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    """Uniform error body: {"error", "message", ...extra}."""
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, **extra},
    )


@app.exception_handler(ValidationError)
async def service_validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Service-layer validation errors name the offending field."""
    api_logger.warning(
        "Validation error",
        extra={"path": request.url.path, "method": request.method, "field": exc.field},
    )
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", exc.message, field=exc.field
    )


@app.exception_handler(PydanticValidationError)
async def validation_exception_handler(
    request: Request, exc: PydanticValidationError
) -> JSONResponse:
    """Pydantic errors raised outside request parsing (e.g. building responses)."""
    details = exc.errors(include_url=False, include_context=False)
    api_logger.warning(
        "Validation error",
        extra={"path": request.url.path, "method": request.method, "errors": details},
    )
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation Error",
        "Request validation failed",
        details=details,
    )


@app.exception_handler(NotFoundError)
async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, "Not Found", str(exc))


@app.exception_handler(ConflictError)
async def conflict_exception_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return _error_response(
        status.HTTP_409_CONFLICT, "Conflict", exc.message, status=exc.current_status
    )


@app.exception_handler(TransientInfraError)
async def transient_exception_handler(
    request: Request, exc: TransientInfraError
) -> JSONResponse:
    """The ledger or database stayed unreachable after retries."""
    api_logger.error(
        "Infrastructure unavailable",
        extra={"path": request.url.path, "operation": exc.operation, "attempts": exc.attempts},
    )
    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable", "Please try again later."
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    get_logger("db").error(
        "Database error",
        extra={"path": request.url.path, "method": request.method, "error": str(exc)},
    )
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Database Error",
        "An error occurred while accessing the database. Please try again later.",
    )


# ============================================================================
# Routes
# ============================================================================

@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """Liveness check with the number of live connections in this process."""
    gateway = getattr(request.app.state, "gateway", None)
    return {
        "status": "healthy",
        "connections": gateway.get_connection_count() if gateway else 0,
    }


app.include_router(preferences.router, prefix="/api")
app.include_router(delivery_jobs.router, prefix="/api")
app.include_router(events.router, prefix="/api")
app.include_router(alerts_ws.router)
