from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import Optional
import time
import uuid
from lifestream.core.config import settings
from lifestream.core.logging import logger
from lifestream.core.exceptions import (
    LifeStreamError,
    lifestream_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler
)
from lifestream.api.v1.api import api_router
from lifestream.database import engine as default_engine, init_db, make_session_factory
from lifestream.realtime.endpoint import router as socket_router
from lifestream.realtime.manager import ConnectionManager


def create_app(engine: Optional[AsyncEngine] = None) -> FastAPI:
    """Build the API application around ``engine`` (the configured database by default)."""
    bind = engine or default_engine

    app = FastAPI(
        title=settings.APP_NAME,
        description="Real-time blood donation coordination API",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
    )

    # Per-application state; rooms live only as long as this process
    app.state.engine = bind
    app.state.session_factory = make_session_factory(bind)
    app.state.connection_manager = ConnectionManager()

    # Add exception handlers
    app.add_exception_handler(LifeStreamError, lifestream_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={"request_id": request_id}
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"Response: {response.status_code} - {process_time:.3f}s",
            extra={"request_id": request_id}
        )
        response.headers["X-Request-ID"] = request_id
        return response

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(socket_router)

    @app.on_event("startup")
    async def startup_event():
        """Initialize application on startup."""
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        if not settings.SECRET_KEY:
            logger.warning("SECRET_KEY is empty; every token will be rejected")

        if settings.AUTO_CREATE_TABLES:
            try:
                await init_db(bind)
                logger.info("Database initialized successfully")
            except Exception as e:
                logger.error(f"Database initialization failed: {e}")
                raise

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on application shutdown."""
        logger.info(f"Application shutting down ({app.state.connection_manager.session_count} open session(s))")
        await bind.dispose()

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "message": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "environment": settings.ENVIRONMENT,
            "websocket": "/ws",
            "docs": "/docs" if settings.DEBUG else "disabled"
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "connections": app.state.connection_manager.session_count
        }

    return app


app = create_app()
