"""
Main FastAPI application.

Payment transaction engine API with:
- CORS configuration
- Engine error to JSON error body mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from property_payments.config import Settings, get_settings
from property_payments.core.engine import PaymentEngine
from property_payments.core.exceptions import GatewayError, PaymentEngineError
from property_payments.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from property_payments.monitoring.health import HealthCheck
from property_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    gateway_router,
    monitoring_router,
    transaction_router,
    user_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the engine from settings unless one was injected.
    """
    settings: Settings = app.state.settings
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    db_engine = None
    if app.state.engine is None:
        db_engine = create_engine_from_settings(settings)
        await init_db(db_engine)
        logger.info("database_initialized")
        session_factory = create_session_factory(db_engine)
        app.state.engine = PaymentEngine.from_settings(settings, session_factory=session_factory)
        if app.state.health_check is None:
            app.state.health_check = HealthCheck(
                settings, session_factory=session_factory, registry=app.state.engine.registry
            )

    yield

    logger.info("application_shutdown")
    if db_engine is not None:
        await app.state.engine.close()
        await db_engine.dispose()
        logger.info("database_connections_closed")


def create_app(
    engine: Optional[PaymentEngine] = None,
    settings: Optional[Settings] = None,
    health_check: Optional[HealthCheck] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        engine: Pre-built engine (tests); built from settings at startup if None
        settings: Settings override
        health_check: Health check service override
    """
    settings = settings or (engine.settings if engine else get_settings())

    app = FastAPI(
        title="Property Payments Engine",
        description=(
            "Transaction lifecycle engine for property deposits, full payments, "
            "installments and agent commissions across Paystack, Flutterwave, "
            "Stripe and offline settlement."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.engine = engine
    # Without an engine the lifespan builds the default health check next to it
    if health_check is None and engine is not None:
        health_check = HealthCheck(
            settings, session_factory=engine.store.session_factory, registry=engine.registry
        )
    app.state.health_check = health_check

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentEngineError)
    async def engine_error_handler(request: Request, exc: PaymentEngineError) -> JSONResponse:
        log = logger.error if isinstance(exc, GatewayError) or exc.http_status >= 500 else logger.warning
        log(
            "engine_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"code": "invalid_input", "message": message, "type": "InvalidInput"}},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalError",
                }
            },
        )

    app.include_router(transaction_router)
    app.include_router(user_router)
    app.include_router(webhook_router)
    app.include_router(gateway_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "property_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
