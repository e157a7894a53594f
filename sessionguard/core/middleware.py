"""
FastAPI middleware for request/response logging and error handling.

Every request gets an ``X-Request-ID`` and a timing entry on the
performance logger; every refresh rejection is turned into a 401 envelope
that also clears the refresh cookie.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from sessionguard.core.error_handling import (
    RefreshTokenError,
    create_error_response,
    handle_database_error,
    handle_refresh_token_error,
    handle_validation_error,
    log_exception,
    sanitize_error_details,
)
from sessionguard.core.logging import (
    app_logger,
    generate_request_id,
    get_client_ip,
    performance_event_logger,
)
from sessionguard.core.settings import settings


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging and performance monitoring."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        request.state.request_id = request_id

        client_ip = get_client_ip(request)
        method = request.method
        path = request.url.path

        start_time = time.time()

        app_logger.info(
            f"Request started: {method} {path}",
            extra={
                "event_type": "request_start",
                "request_id": request_id,
                "method": method,
                "endpoint": path,
                "client_ip": client_ip,
                "user_agent": request.headers.get("user-agent", "unknown"),
            }
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            log_exception(request, exc, {"response_time": time.time() - start_time})
            raise

        performance_event_logger.log_request(
            method=method,
            endpoint=path,
            status_code=response.status_code,
            response_time=time.time() - start_time,
            user_id=getattr(request.state, "user_id", None),
            client_ip=client_ip,
            request_id=request_id,
        )

        response.headers["X-Request-ID"] = request_id
        return response


class ErrorHandlerMiddleware:
    """Centralized error handling middleware."""

    def __init__(self, app: FastAPI):
        self.app = app
        self.settings = settings
        self._register_exception_handlers()

    def _register_exception_handlers(self):
        """Register all exception handlers."""

        @self.app.exception_handler(RefreshTokenError)
        async def refresh_token_error_handler(request: Request, exc: RefreshTokenError):
            return handle_refresh_token_error(
                request,
                exc,
                cookie_name=self.settings.refresh_cookie_name,
                cookie_path=self.settings.refresh_cookie_path,
            )

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_error_handler(request: Request, exc: RequestValidationError):
            return handle_validation_error(request, exc.errors())

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            return create_error_response(
                request=request,
                status_code=exc.status_code,
                error=exc.detail or "HTTP error occurred",
                error_code="HTTP_ERROR",
                headers=getattr(exc, "headers", None),
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            log_exception(
                request,
                exc,
                {"severity": "high", "unexpected": True}
            )

            if "database" in str(exc).lower() or "sql" in str(exc).lower():
                return handle_database_error(request, exc)

            is_production = self.settings.environment == "production"
            error_details = sanitize_error_details(str(exc), is_production=is_production)

            return create_error_response(
                request=request,
                status_code=500,
                error="Internal server error",
                error_code="INTERNAL_ERROR",
                details=None if is_production else error_details,
            )


def setup_middleware(app: FastAPI):
    """Setup all middleware for the application."""

    ErrorHandlerMiddleware(app)

    app.add_middleware(RequestLoggingMiddleware)

    app_logger.info("All middleware configured successfully")
