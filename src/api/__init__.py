"""
REST API Layer for ListLoop.

Provides:
- FastAPI application with CORS middleware
- Learning loop endpoints under /api/v1 (see src.api.routes)
- Envelope-shaped error handling for domain and HTTP errors
- Health check at /health for infrastructure probes
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from src.api.auth import validate_secrets
from src.api.routes import router
from src.api.schemas import error_response
from src.lib.clock import utc_now
from src.lib.database import dispose_engine, get_session_factory, init_models
from src.lib.errors import (
    AUTH_REQUIRED,
    CALIBRATION_FAILED,
    FORBIDDEN,
    INTERNAL_ERROR,
    NOT_FOUND,
    VALIDATION_ERROR,
)
from src.lib.exceptions import CalibrationError, NotFoundError, ValidationError
from src.services.anomaly_detection import AnomalyDetectionService, get_anomaly_service
from src.services.listing_source import InMemoryListingReader, ListingReader
from src.services.tool_calibration import ToolCalibrationService, get_calibration_service
from src.services.tool_usage import NullToolUsageProvider, ToolUsageProvider

logger = logging.getLogger(__name__)

_ALLOWED_HEADERS: list[str] = [
    "Authorization",
    "Content-Type",
    "Accept",
    "Accept-Language",
    "X-Request-ID",
]

# Paths that do NOT require authentication
_PUBLIC_PATHS: frozenset[str] = frozenset({
    "/health",
    "/api/v1/health",
    "/docs",
    "/redoc",
    "/openapi.json",
})

_HTTP_ERROR_CODES: dict[int, str] = {
    401: AUTH_REQUIRED,
    403: FORBIDDEN,
    404: NOT_FOUND,
    422: VALIDATION_ERROR,
}


async def _auth_gate_dispatch(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Deny unauthenticated requests by default."""
    # CORS preflight (OPTIONS) must pass through
    if request.method == "OPTIONS":
        return await call_next(request)
    path = request.url.path.rstrip("/") or "/"
    if path not in _PUBLIC_PATHS:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return JSONResponse(
                status_code=401,
                content=error_response(AUTH_REQUIRED),
                headers={"WWW-Authenticate": "Bearer"},
            )
    return await call_next(request)


def create_app(
    listing_reader: ListingReader | None = None,
    tool_usage_provider: ToolUsageProvider | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    calibration_service: ToolCalibrationService | None = None,
    anomaly_service: AnomalyDetectionService | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Collaborators default to the process-wide database and services. With
    an explicit session_factory, calibration and anomaly services are
    built on it unless passed in as well.

    Returns:
        Configured FastAPI application instance.
    """
    validate_secrets()

    environment = os.getenv("LISTLOOP_ENVIRONMENT", "development")
    is_production = environment == "production"
    manage_database = session_factory is None

    if session_factory is None:
        session_factory = get_session_factory()
        calibration_service = calibration_service or get_calibration_service()
        anomaly_service = anomaly_service or get_anomaly_service()
    else:
        calibration_service = calibration_service or ToolCalibrationService(
            session_factory=session_factory, clock=clock
        )
        anomaly_service = anomaly_service or AnomalyDetectionService(
            session_factory=session_factory, clock=clock
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_database:
            await init_models()
        yield
        if manage_database:
            await dispose_engine()

    app = FastAPI(
        title="ListLoop",
        description="Learning loop for marketplace listing research",
        version="0.1.0",
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory
    app.state.listing_reader = listing_reader or InMemoryListingReader()
    app.state.tool_usage_provider = tool_usage_provider or NullToolUsageProvider()
    app.state.calibration_service = calibration_service
    app.state.anomaly_service = anomaly_service
    app.state.clock = clock

    # -------------------------------------------------------------------------
    # Exception handlers
    # -------------------------------------------------------------------------
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=error_response(NOT_FOUND, str(exc)))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content=error_response(VALIDATION_ERROR, str(exc)))

    @app.exception_handler(CalibrationError)
    async def calibration_handler(request: Request, exc: CalibrationError) -> JSONResponse:
        logger.error("Calibration failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content=error_response(CALIBRATION_FAILED))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError,
    ) -> JSONResponse:
        logger.warning("Request validation failed on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=422, content=error_response(VALIDATION_ERROR))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException,
    ) -> JSONResponse:
        code = _HTTP_ERROR_CODES.get(exc.status_code, INTERNAL_ERROR)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception,
    ) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s", request.method, request.url.path,
        )
        return JSONResponse(status_code=500, content=error_response(INTERNAL_ERROR))

    # -------------------------------------------------------------------------
    # CORS Middleware
    # -------------------------------------------------------------------------
    # Configurable via LISTLOOP_CORS_ORIGINS (comma-separated origins).
    # Default: empty (no cross-origin requests allowed).
    cors_origins_env = os.getenv("LISTLOOP_CORS_ORIGINS", "")
    cors_origins: list[str] = [
        origin.strip()
        for origin in cors_origins_env.split(",")
        if origin.strip()
    ]

    if is_production and "*" in cors_origins:
        raise ValueError(
            "LISTLOOP_CORS_ORIGINS contains wildcard '*' which is forbidden in production. "
            "Specify explicit origins instead."
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=_ALLOWED_HEADERS,
    )

    if cors_origins:
        logger.info("CORS enabled for origins: %s", cors_origins)
    else:
        logger.info("CORS: no origins configured (restrictive default)")

    app.add_middleware(BaseHTTPMiddleware, dispatch=_auth_gate_dispatch)

    app.include_router(router)

    # Root-level health check (Docker healthcheck / load balancer probes)
    @app.get("/health")
    async def root_health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


__all__ = ["create_app", "router"]
