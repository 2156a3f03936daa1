"""HTTP middleware for the inspector: CORS, rate limiting, JSON errors.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight
2. Rate limiting -- POST /webhook only, keyed on client IP

Every error leaves the server as ``{"success": false, "error", "code"}``;
stack traces are logged, never returned.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from webhook_inspector.config import Settings
from webhook_inspector.errors import ErrorCode, WebhookInspectorError

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP, honouring X-Forwarded-For when configured."""
    settings: Settings | None = getattr(request.app.state, "settings", None)
    if settings is not None and settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def build_limiter() -> Limiter:
    """One limiter per app, so separate apps never share counters."""
    return Limiter(key_func=get_client_ip)


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    logger.warning("Rate limit exceeded for %s on %s", get_client_ip(request), request.url.path)
    return JSONResponse(
        {
            "success": False,
            "error": "Too many webhook requests, please try again later.",
            "code": ErrorCode.RATE_LIMIT_EXCEEDED.value,
            "retry_after": retry_after,
        },
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


async def _inspector_error_handler(request: Request, exc: WebhookInspectorError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        {
            "success": False,
            "error": f"{field}: {message}" if field else message,
            "code": ErrorCode.VALIDATION_ERROR.value,
        },
        status_code=422,
    )


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {
            "success": False,
            "error": "Internal server error",
            "code": ErrorCode.PROCESSING_ERROR.value,
        },
        status_code=500,
    )


def install_security_middleware(app: FastAPI, settings: Settings, limiter: Limiter) -> None:
    """Install middleware and error handlers on the FastAPI app.

    Middleware is added in reverse order (last added = outermost = runs first).
    """
    # 2. Rate limiting (applied per route via @limiter.limit)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(WebhookInspectorError, _inspector_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    # 1. CORS middleware (outermost -- runs first, handles OPTIONS preflight)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
