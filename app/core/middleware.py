"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (handshake tokens masked)
- Global error handling
- Security headers on every response, webhook rejections included
"""
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    REDACTED,
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException, WebhookException

logger = get_logger(__name__)

# Handshake query params that carry a shared token. The challenge values are public.
_SECRET_QUERY_PARAMS = frozenset({"hub.verify_token", "hub_verify_token", "verify_token"})

WEBHOOK_PATH_PREFIX = "/webhooks/"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        # Get correlation ID from header or generate new one
        correlation_id = request.headers.get("X-Correlation-ID")
        correlation_id = set_correlation_id(correlation_id)

        # Add to request state for access in handlers
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        return response


def _safe_query_params(request: Request) -> dict[str, str]:
    """Query params for logging, with verify tokens replaced"""
    return {
        key: REDACTED if key in _SECRET_QUERY_PARAMS else value
        for key, value in request.query_params.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.time()
        path = request.url.path

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": _safe_query_params(request),
                "client_host": request.client.host if request.client else None,
                "content_length": request.headers.get("content-length"),
            }
        )

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            log_level = "info" if response.status_code < 400 else "warning"
            getattr(logger, log_level)(
                f"Request completed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_seconds": round(duration, 4),
                }
            )

            return response
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(duration, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    headers = {"X-Correlation-ID": get_correlation_id()}
    if isinstance(exc, WebhookException):
        headers.update(exc.headers)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions. Nothing internal reaches the caller."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    if request.url.path.startswith(WEBHOOK_PATH_PREFIX):
        content = {"status": "error", "message": "Internal server error"}
    else:
        content = {
            "error": {
                "code": "ERR_1000",
                "message": "An unexpected error occurred",
                "details": {}
            }
        }

    return JSONResponse(
        status_code=500,
        content=content,
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Attach security headers to every response.

    Webhook senders are servers, so the policy is maximally restrictive:
    nothing may be framed, sniffed or loaded. HSTS and CSP are skipped in DEBUG
    so local development over plain HTTP keeps working. Also reports the handler
    time in X-Response-Time and strips headers that fingerprint the server.
    """

    STATIC_HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    }

    STRIPPED_HEADERS = ("Server", "X-Powered-By")

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)

        for name, value in self.STATIC_HEADERS.items():
            response.headers[name] = value

        if not self._debug:
            response.headers["Content-Security-Policy"] = "default-src 'none'"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"

        for name in self.STRIPPED_HEADERS:
            if name in response.headers:
                del response.headers[name]

        return response


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # In Starlette the last middleware added is the outermost one.
    # Request order: SecurityHeaders -> CorrelationId -> RequestLogging -> app
    # SecurityHeaders is outermost so that error responses get the headers too.
    # Rate limiting lives in the SecurityGate, inside the webhook pipeline,
    # because its limits depend on the resolved platform.
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
