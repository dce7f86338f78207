# api/app.py
"""Application factory for the HTTP surface.

The service container is opened by the lifespan on startup and always closed
on shutdown. Every error leaves the process in the same envelope:
``{success: false, error, requestId, timestamp}``, with diagnostic details only
in development.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError as FastAPIRequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import GatewaySettings
from core.cache_store import utc_now_iso
from core.exceptions import GatewayError, RequestValidationError
from core.service_lifecycle import ServiceContainer, service_lifespan

from .routes import ai_models, callbacks, generation, health, memory
from .security import FixedWindowRateLimiter, client_identifier

logger = structlog.get_logger(__name__)

RATE_LIMIT_EXEMPT_PATHS = frozenset({"/health", "/novel-generation/health"})
CORS_HEADERS = [
    "Origin",
    "X-Requested-With",
    "Content-Type",
    "Accept",
    "Authorization",
    "X-Signature",
    "X-Timestamp",
]


def error_response(
    request: Request,
    status_code: int,
    error: str,
    settings: GatewaySettings,
    details: Any = None,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> JSONResponse:
    content: dict[str, Any] = {"success": False, "error": error, **extra}
    if details and settings.is_development:
        content["details"] = details
    content["requestId"] = getattr(request.state, "request_id", None)
    content["timestamp"] = utc_now_iso()
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def create_app(settings: GatewaySettings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    if container is None:
        container = ServiceContainer.from_settings(settings or GatewaySettings())
    settings = container.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with service_lifespan(container):
            yield

    app = FastAPI(title="Novel Gateway", version="0.1.0", lifespan=lifespan)
    app.state.container = container
    app.state.rate_limiter = FixedWindowRateLimiter(settings.RATE_LIMIT_WINDOW_SECONDS, settings.RATE_LIMIT_MAX_REQUESTS)
    trusted_proxies = settings.trusted_proxies

    @app.middleware("http")
    async def rate_limit_and_log(request: Request, call_next):
        client = client_identifier(request, trusted_proxies)
        if request.method != "OPTIONS" and request.url.path not in RATE_LIMIT_EXEMPT_PATHS:
            retry_after = request.app.state.rate_limiter.hit(client)
            if retry_after is not None:
                logger.warning("Rate limit exceeded", client=client, path=request.url.path)
                return error_response(
                    request,
                    429,
                    "Rate limit exceeded. Please try again later.",
                    settings,
                    headers={"Retry-After": str(retry_after)},
                    retryAfter=retry_after,
                )

        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} - {response.status_code}",
            duration_ms=int((time.monotonic() - started) * 1000),
            client=client,
        )
        return response

    # No configured origins means no cross-origin access
    origins = settings.allowed_origins
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=CORS_HEADERS,
        max_age=86400,
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        extra: dict[str, Any] = {}
        if isinstance(exc, RequestValidationError) and exc.errors:
            extra["errors"] = exc.errors
        if exc.status_code >= 500:
            logger.error(f"Request failed: {exc}", path=request.url.path)
        return error_response(request, exc.status_code, exc.message, settings, details=exc.details or None, **extra)

    @app.exception_handler(FastAPIRequestValidationError)
    async def request_validation_handler(request: Request, exc: FastAPIRequestValidationError) -> JSONResponse:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return error_response(request, 400, "Invalid request parameters", settings, errors=errors)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error: {exc}", path=request.url.path, exc_info=True)
        return error_response(
            request,
            500,
            "Internal server error",
            settings,
            details={"message": str(exc), "type": type(exc).__name__},
        )

    app.include_router(health.router)
    app.include_router(generation.router)
    app.include_router(memory.router)
    app.include_router(ai_models.router)
    app.include_router(callbacks.router)
    return app
