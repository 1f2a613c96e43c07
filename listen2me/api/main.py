"""
Listen2Me - FastAPI Application
===============================

App factory hosting the gateway websocket and the control API.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from listen2me.api import control
from listen2me.core.config import settings
from listen2me.core.database import AsyncSessionLocal, close_db, init_db
from listen2me.core.schemas import ErrorResponse, HealthResponse
from listen2me.core.services import Services, build_services

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Build the service container and start the scheduler

    Shutdown:
    - Stop the scheduler, close gateway sockets and the LLM client
    - Dispose the database engine
    """
    logger.info("Starting Listen2Me", version=settings.APP_VERSION, port=settings.PORT)

    owns_services = app.state.services is None
    if owns_services:
        await init_db()
        logger.info("Database initialized")
        app.state.services = build_services(settings, AsyncSessionLocal)

    services: Services = app.state.services
    await services.start()

    yield

    logger.info("Shutting down Listen2Me")
    await services.shutdown()
    if owns_services:
        await close_db()
        logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Prebuilt service container. When omitted the lifespan
            builds one from settings.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Group chat listener that extracts todos, notifications and activities",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.services = services

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """Application, database and gateway health."""
        services: Optional[Services] = request.app.state.services
        database = "unknown"
        gateway_connected = False
        if services is not None:
            try:
                await services.storage.ping()
                database = "connected"
            except Exception as e:
                logger.warning("health_database_unreachable", error=str(e))
                database = "unreachable"
            gateway_connected = services.connections.gateway_count > 0

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            gateway_connected=gateway_connected,
        )

    app.include_router(control.router)

    # ==========================================================================
    # WebSocket Endpoints
    # ==========================================================================

    @app.websocket("/")
    async def gateway_websocket(websocket: WebSocket):
        """Reverse websocket endpoint for the OneBot gateway."""
        await websocket.app.state.services.connections.serve(websocket)

    @app.websocket("/onebot/v11/ws")
    async def onebot_websocket(websocket: WebSocket):
        """Same endpoint under the conventional OneBot path."""
        await websocket.app.state.services.connections.serve(websocket)

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Server
# ==========================================================================

def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "listen2me.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level="debug" if settings.DEBUG else "info",
    )


if __name__ == "__main__":
    run()
