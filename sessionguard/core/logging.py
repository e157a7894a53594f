"""
Structured logging configuration with security event tracking.

Refresh-token rotation produces security signals (reuse, family compromise,
fingerprint drift) that operators need to see separately from ordinary
request traffic, so they go to a dedicated ``security`` logger. Raw refresh
tokens are never passed to any logger; records are identified by id and
family id only.
"""

import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger


class SecurityContextFilter(logging.Filter):
    """Add security context to log records."""

    def filter(self, record):
        if not hasattr(record, 'event_type'):
            record.event_type = 'application'
        if not hasattr(record, 'request_id'):
            record.request_id = None
        if not hasattr(record, 'user_id'):
            record.user_id = None
        if not hasattr(record, 'client_ip'):
            record.client_ip = None

        return True


class PerformanceContextFilter(logging.Filter):
    """Add performance monitoring context to log records."""

    def filter(self, record):
        if not hasattr(record, 'response_time'):
            record.response_time = None
        if not hasattr(record, 'status_code'):
            record.status_code = None
        if not hasattr(record, 'endpoint'):
            record.endpoint = None

        return True


class CustomJSONFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with security and token-family context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')

        log_record['app_name'] = 'sessionguard'
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')
        log_record['version'] = os.getenv('APP_VERSION', '0.1.0')

        log_record['level'] = record.levelname

        security_fields = [
            'event_type', 'user_id', 'client_ip', 'request_id',
            'endpoint', 'method', 'user_agent', 'token_id', 'family_id',
            'reason', 'security_context'
        ]
        for field in security_fields:
            if hasattr(record, field) and getattr(record, field) is not None:
                log_record[field] = getattr(record, field)

        performance_fields = ['response_time', 'status_code']
        for field in performance_fields:
            if hasattr(record, field) and getattr(record, field) is not None:
                log_record[field] = getattr(record, field)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_json: bool = True,
) -> None:
    """Setup logging handlers for the named application loggers."""

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

    if enable_json:
        formatter = CustomJSONFormatter(
            fmt='%(timestamp)s %(level)s %(name)s %(message)s'
        )
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SecurityContextFilter())
    console_handler.addFilter(PerformanceContextFilter())
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(SecurityContextFilter())
        file_handler.addFilter(PerformanceContextFilter())
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        handlers=handlers,
        force=True
    )

    for logger_name in ('app', 'security', 'performance', 'audit', 'database'):
        logger = logging.getLogger(logger_name)
        logger.setLevel(getattr(logging, log_level.upper()))
        logger.propagate = False
        logger.handlers.clear()

        for handler in handlers:
            logger.addHandler(handler)


app_logger = logging.getLogger('app')
security_logger = logging.getLogger('security')
performance_logger = logging.getLogger('performance')
audit_logger = logging.getLogger('audit')


class SecurityEventLogger:
    """Specialized logger for refresh-token security events."""

    def __init__(self):
        self.logger = security_logger

    def token_reuse(self, token_id: str, family_id: str, user_id: int, client_ip: Optional[str], user_agent: Optional[str]):
        """A consumed refresh token was presented again."""
        self.logger.error(
            "Refresh token reuse detected",
            extra={
                'event_type': 'token_reuse',
                'token_id': token_id,
                'family_id': family_id,
                'user_id': user_id,
                'client_ip': client_ip,
                'user_agent': user_agent,
            }
        )

    def fingerprint_mismatch(
        self,
        token_id: str,
        family_id: str,
        user_id: int,
        stored: tuple,
        presented: tuple,
    ):
        """Client fingerprint differs from the one captured at issue time."""
        self.logger.warning(
            "Client fingerprint changed during refresh",
            extra={
                'event_type': 'fingerprint_mismatch',
                'token_id': token_id,
                'family_id': family_id,
                'user_id': user_id,
                'client_ip': presented[0],
                'user_agent': presented[1],
                'security_context': {
                    'stored_ip': stored[0],
                    'stored_user_agent': stored[1],
                },
            }
        )

    def family_revoked(self, family_id: str, user_id: int, reason: str, revoked: int):
        """Theft response shut down a whole token family."""
        self.logger.error(
            f"Token family revoked: {reason}",
            extra={
                'event_type': 'family_revoked',
                'family_id': family_id,
                'user_id': user_id,
                'reason': reason,
                'security_context': {'revoked_count': revoked},
            }
        )

    def revoked_family_replay(self, family_id: str, user_id: int, reason: str):
        """A token from a family that was already shut down came back."""
        self.logger.warning(
            f"Token from revoked family presented: {reason}",
            extra={
                'event_type': 'revoked_family_replay',
                'family_id': family_id,
                'user_id': user_id,
                'reason': reason,
            }
        )

    def security_violation(
        self,
        violation_type: str,
        details: str,
        client_ip: Optional[str],
        user_id: Optional[int],
        endpoint: Optional[str] = None,
        request_id: Optional[str] = None,
        family_id: Optional[str] = None,
        severity: str = "medium"
    ):
        """Log security violation."""
        log_level = {
            "low": self.logger.info,
            "medium": self.logger.warning,
            "high": self.logger.error,
            "critical": self.logger.critical
        }.get(severity, self.logger.warning)

        log_level(
            f"Security violation: {violation_type}",
            extra={
                'event_type': 'security_violation',
                'violation_type': violation_type,
                'details': details,
                'client_ip': client_ip,
                'user_id': user_id,
                'endpoint': endpoint,
                'request_id': request_id,
                'family_id': family_id,
                'severity': severity
            }
        )


class PerformanceLogger:
    """Specialized logger for performance monitoring."""

    def __init__(self):
        self.logger = performance_logger

    def log_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        response_time: float,
        user_id: Optional[int],
        client_ip: str,
        request_id: str,
    ):
        """Log request performance metrics."""
        self.logger.info(
            f"{method} {endpoint} - {status_code} - {response_time:.3f}s",
            extra={
                'event_type': 'api_request',
                'method': method,
                'endpoint': endpoint,
                'status_code': status_code,
                'response_time': response_time,
                'user_id': user_id,
                'client_ip': client_ip,
                'request_id': request_id,
            }
        )


class AuditLogger:
    """Specialized logger for audit trails."""

    def __init__(self):
        self.logger = audit_logger

    def log_data_modification(
        self,
        user_id: Optional[int],
        resource_type: str,
        resource_id: str,
        action: str,
        changes: Dict[str, Any],
    ):
        """Log data modification events."""
        self.logger.info(
            f"Data modification: {action} {resource_type} {resource_id}",
            extra={
                'event_type': 'data_modification',
                'user_id': user_id,
                'resource_type': resource_type,
                'resource_id': resource_id,
                'action': action,
                'changes': changes,
            }
        )


security_event_logger = SecurityEventLogger()
performance_event_logger = PerformanceLogger()
audit_event_logger = AuditLogger()


def generate_request_id() -> str:
    """Generate unique request ID for tracing."""
    return str(uuid.uuid4())


def get_client_ip(request) -> str:
    """Extract client IP from request with proxy support."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return getattr(request.client, "host", "unknown")


# Initialize logging on module import
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE")
enable_json = os.getenv("LOG_FORMAT", "json").lower() == "json"

setup_logging(
    log_level=log_level,
    log_file=log_file,
    enable_json=enable_json
)
