"""
Centralized error handling and response management.

The refresh-token domain raises plain exceptions (no HTTP types) so the
coordinator can be driven from any caller. This module owns the mapping of
those exceptions to the standardized error envelope, and the generic
fallbacks for everything else.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from sessionguard.core.logging import (
    app_logger,
    get_client_ip,
    security_event_logger,
    security_logger,
)
from sessionguard.src.models.refresh_tokens import RevocationReason


class RefreshTokenError(Exception):
    """Base class for every refresh rejection the caller must act on."""

    error_code = "REFRESH_TOKEN_ERROR"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidTokenError(RefreshTokenError):
    """
    Token unknown, purged, revoked by logout, or expired.

    The caller should force re-authentication; no security response was
    triggered.
    """

    error_code = "INVALID_REFRESH_TOKEN"

    def __init__(self, detail: str = "Invalid or expired refresh token"):
        super().__init__(detail)


class SecurityViolationError(RefreshTokenError):
    """
    Reuse, family compromise or suspicious activity was detected.

    The whole token family has been revoked; the caller must sign the user
    out on every device holding a token from that family.
    """

    error_code = "SECURITY_VIOLATION"

    def __init__(
        self,
        family_id: str,
        reason: RevocationReason,
        detail: str = "Security violation detected - please re-authenticate",
        user_id: Optional[int] = None,
    ):
        super().__init__(detail)
        self.family_id = family_id
        self.reason = reason
        self.user_id = user_id


class TooManySessionsError(SecurityViolationError):
    """Concurrent-session cap exceeded; handled exactly like a violation."""

    error_code = "TOO_MANY_SESSIONS"

    def __init__(self, family_id: str, limit: int, user_id: Optional[int] = None):
        super().__init__(
            family_id,
            RevocationReason.SESSION_LIMIT,
            detail=f"Too many active sessions (limit {limit}) - please re-authenticate",
            user_id=user_id,
        )
        self.limit = limit


class StandardErrorResponse(BaseModel):
    """Standardized error response schema."""
    model_config = ConfigDict(ser_json_timedelta='iso8601')

    success: bool = False
    error: str
    detail: Optional[str] = None  # Alias for 'error' for FastAPI compatibility
    error_code: Optional[str] = None
    details: Optional[Union[str, Dict[str, Any]]] = None
    field_errors: Optional[Dict[str, List[str]]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None

    def __init__(self, **data):
        super().__init__(**data)
        if self.detail is None:
            object.__setattr__(self, 'detail', self.error)


def create_error_response(
    request: Request,
    status_code: int,
    error: str,
    error_code: Optional[str] = None,
    details: Optional[Union[str, Dict[str, Any]]] = None,
    field_errors: Optional[Dict[str, List[str]]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Create standardized error response."""

    request_id = getattr(request.state, "request_id", None)

    response_data = StandardErrorResponse(
        error=error,
        error_code=error_code,
        details=details,
        field_errors=field_errors,
        request_id=request_id
    )

    app_logger.warning(
        f"API Error: {error}",
        extra={
            "status_code": status_code,
            "error_code": error_code,
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "client_ip": getattr(request.client, "host", "unknown")
        }
    )

    return JSONResponse(
        status_code=status_code,
        content=response_data.model_dump(mode='json'),
        headers=headers,
    )


SENSITIVE_PATTERNS = [
    r'password["\s]*[:=]["\s]*[^"\s]+',
    r'token["\s]*[:=]["\s]*[^"\s]+',
    r'secret["\s]*[:=]["\s]*[^"\s]+',
    r'key["\s]*[:=]["\s]*[^"\s]+'
]


def sanitize_error_details(
    error_details: Any,
    is_production: bool = True
) -> Union[str, Dict[str, Any]]:
    """
    Sanitize error details to prevent information leakage.

    Credential-looking fragments of a message are redacted in every
    environment. Production additionally truncates messages and keeps only
    known-safe keys of structured details.
    """

    if isinstance(error_details, str):
        sanitized = error_details
        for pattern in SENSITIVE_PATTERNS:
            sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

        return sanitized[:500] if is_production else sanitized

    if not is_production:
        return error_details

    if isinstance(error_details, dict):
        sanitized = {}
        safe_keys = {
            "field", "code", "type", "message", "input", "ctx"
        }

        for key, value in error_details.items():
            if key.lower() in safe_keys:
                sanitized[key] = str(value)[:200]

        return sanitized

    return "Internal server error"


class ErrorCategory:
    """Error categorization for monitoring and alerting."""

    SECURITY = "security"
    TOKEN = "token"
    VALIDATION = "validation"
    DATABASE = "database"
    EXTERNAL_SERVICE = "external_service"
    INTERNAL = "internal"


def categorize_exception(exception: Exception) -> str:
    """Categorize exception for monitoring purposes."""

    exception_name = exception.__class__.__name__.lower()

    if isinstance(exception, SecurityViolationError):
        return ErrorCategory.SECURITY
    elif isinstance(exception, RefreshTokenError):
        return ErrorCategory.TOKEN
    elif "validation" in exception_name or "pydantic" in exception_name:
        return ErrorCategory.VALIDATION
    elif "database" in exception_name or "sql" in exception_name:
        return ErrorCategory.DATABASE
    elif "connection" in exception_name or "timeout" in exception_name:
        return ErrorCategory.EXTERNAL_SERVICE
    else:
        return ErrorCategory.INTERNAL


def log_exception(
    request: Request,
    exception: Exception,
    context: Optional[Dict[str, Any]] = None
):
    """Log exception with security and operational context."""

    error_category = categorize_exception(exception)
    request_id = getattr(request.state, "request_id", None)

    log_context = {
        "error_category": error_category,
        "exception_type": exception.__class__.__name__,
        "request_id": request_id,
        "path": request.url.path,
        "method": request.method,
        "client_ip": getattr(request.client, "host", "unknown"),
        "user_agent": request.headers.get("user-agent", "unknown"),
        **(context or {})
    }

    if error_category == ErrorCategory.SECURITY:
        security_logger.error(
            f"Security exception: {str(exception)}",
            extra=log_context
        )
    elif error_category in [ErrorCategory.DATABASE, ErrorCategory.INTERNAL]:
        app_logger.error(
            f"System exception: {str(exception)}",
            extra=log_context,
            exc_info=True
        )
    else:
        app_logger.warning(
            f"Application exception: {str(exception)}",
            extra=log_context
        )


def handle_validation_error(
    request: Request,
    validation_errors: List[Dict[str, Any]]
) -> JSONResponse:
    """Handle Pydantic validation errors with detailed field information."""

    field_errors = {}
    for error in validation_errors:
        field = ".".join(str(loc) for loc in error.get("loc", []))
        message = error.get("msg", "Invalid value")

        if field not in field_errors:
            field_errors[field] = []
        field_errors[field].append(message)

    return create_error_response(
        request=request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error="Validation failed",
        error_code="VALIDATION_ERROR",
        field_errors=field_errors
    )


def handle_refresh_token_error(
    request: Request,
    error: RefreshTokenError,
    cookie_name: str,
    cookie_path: str,
) -> JSONResponse:
    """
    Map a refresh rejection to a 401 and drop the refresh cookie.

    Security violations get an extra entry on the security logger carrying
    the family id, so the revocation can be correlated with the request.
    """

    if isinstance(error, SecurityViolationError):
        security_event_logger.security_violation(
            violation_type=error.reason.value,
            details=error.detail,
            client_ip=get_client_ip(request),
            user_id=error.user_id,
            endpoint=request.url.path,
            request_id=getattr(request.state, "request_id", None),
            family_id=error.family_id,
            severity="high",
        )

    response = create_error_response(
        request=request,
        status_code=error.status_code,
        error=error.detail,
        error_code=error.error_code,
        headers={"WWW-Authenticate": "Bearer"},
    )
    response.delete_cookie(key=cookie_name, path=cookie_path)
    return response


def handle_database_error(
    request: Request,
    db_error: Exception
) -> JSONResponse:
    """Handle database errors with appropriate logging and user-friendly messages."""

    app_logger.error(
        f"Database error: {str(db_error)}",
        extra={
            "error_category": ErrorCategory.DATABASE,
            "request_id": getattr(request.state, "request_id", None),
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True
    )

    return create_error_response(
        request=request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="A database error occurred",
        error_code="DATABASE_ERROR",
        details="Please try again later"
    )
