"""
Audit logging for AT Protocol OAuth authentication events.

Security-relevant auth events (logins, callbacks, logouts, dead sessions)
are written to stdout as single-line structured JSON, using Python's
logging infrastructure (Logger, Handler, Formatter, Filter).

Never logs tokens, cookie values, authorization codes or state payloads.
Subject DIDs and handles are logged; they are public identifiers.

Configuration via environment variables:
- AUDIT_LOG_ENABLED: Enable/disable audit logging (default: true)
- AUDIT_LOG_LEVEL: Minimum severity to log - CRITICAL, HIGH, MEDIUM, LOW (default: MEDIUM)
- AUDIT_LOG_INCLUDE_LOW: Include LOW severity events (default: false)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from oauth_types import DEFAULT_LOGGER_NAME


class AuditSeverity(Enum):
    """Severity levels for audit events mapped to Python logging levels."""
    CRITICAL = logging.CRITICAL  # Session destroyed for security reasons
    HIGH = logging.ERROR         # Failed callbacks, logout failures
    MEDIUM = logging.WARNING     # Completed logins, logouts, rejected input
    LOW = logging.INFO           # Login started


class AuthEvent(Enum):
    """Auth event types with their default severity."""
    LOGIN_STARTED = ("login_started", AuditSeverity.LOW)
    LOGIN_REJECTED = ("login_rejected", AuditSeverity.MEDIUM)
    CALLBACK_COMPLETED = ("callback_completed", AuditSeverity.MEDIUM)
    CALLBACK_FAILED = ("callback_failed", AuditSeverity.HIGH)
    ISSUER_MISMATCH_REDIRECT = ("issuer_mismatch_redirect", AuditSeverity.MEDIUM)
    LOGOUT = ("logout", AuditSeverity.MEDIUM)
    LOGOUT_FAILED = ("logout_failed", AuditSeverity.HIGH)
    SESSION_RESTORE_FAILED = ("session_restore_failed", AuditSeverity.HIGH)

    @property
    def event_type(self) -> str:
        return self.value[0]

    @property
    def severity(self) -> AuditSeverity:
        return self.value[1]


class AuditLogFilter(logging.Filter):
    """Drops audit records below the configured severity."""

    def __init__(self, min_severity: AuditSeverity, include_low: bool = False):
        super().__init__()
        self.min_severity = min_severity
        self.include_low = include_low

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'audit_event'):
            return True  # Pass through non-audit logs

        severity = getattr(record, 'audit_severity', None)
        if severity is None:
            return True

        if severity == AuditSeverity.LOW:
            return self.include_low

        return severity.value >= self.min_severity.value


class AuditLogFormatter(logging.Formatter):
    """
    Formats audit records as `AUDIT: {json}`.

    Error messages are truncated and redacted when they look like they carry
    credentials.
    """

    SENSITIVE_PATTERNS = (
        "access_token",
        "refresh_token",
        "session_token",
        "token=",
        "code=",
        "secret",
        "password",
        "bearer ",
        "dpop ",
        "authorization:",
        "cookie",
    )
    MAX_ERROR_LENGTH = 500

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'audit_event'):
            return super().format(record)

        event = dict(record.audit_event)
        if event.get('error_message'):
            event['error_message'] = self.sanitize_error_message(event['error_message'])

        try:
            return f"AUDIT: {json.dumps(event, ensure_ascii=False)}"
        except (TypeError, ValueError) as e:
            return f"AUDIT: {{\"error\": \"Failed to serialize audit event: {type(e).__name__}\"}}"

    @classmethod
    def sanitize_error_message(cls, error_message: str) -> str:
        """
        Sanitize an error message for the audit trail.

        Args:
            error_message: The raw error message

        Returns:
            A message safe for logging
        """
        if len(error_message) > cls.MAX_ERROR_LENGTH:
            error_message = error_message[:cls.MAX_ERROR_LENGTH - 3] + "..."

        lower_msg = error_message.lower()
        for pattern in cls.SENSITIVE_PATTERNS:
            if pattern in lower_msg:
                return "Error occurred (details redacted for security)"

        return error_message


class AuditLogHandler(logging.StreamHandler):
    """Writes audit records to stdout, flushing after each one."""

    def __init__(self):
        super().__init__(stream=sys.stdout)
        self.setFormatter(AuditLogFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            # Follow sys.stdout if it was replaced after construction
            self.stream = sys.stdout
            super().emit(record)
            self.flush()
        except Exception:
            self.handleError(record)


class AuditLogger:
    """
    Audit logger for auth events.

    Uses a dedicated, non-propagating logger so audit lines never mix with
    the application's own log handlers.
    """

    LOGGER_NAME = f"{DEFAULT_LOGGER_NAME}.audit"

    def __init__(self):
        """Initialize the audit logger with configuration from environment."""
        self.enabled = os.getenv("AUDIT_LOG_ENABLED", "true").lower() in ("true", "1", "yes")

        level_str = os.getenv("AUDIT_LOG_LEVEL", "MEDIUM").upper()
        try:
            self.min_severity = AuditSeverity[level_str]
        except KeyError:
            logging.getLogger(DEFAULT_LOGGER_NAME).warning(
                f"Invalid AUDIT_LOG_LEVEL '{level_str}', defaulting to MEDIUM"
            )
            self.min_severity = AuditSeverity.MEDIUM

        self.include_low = os.getenv("AUDIT_LOG_INCLUDE_LOW", "false").lower() in ("true", "1", "yes")

        self.logger = logging.getLogger(self.LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)  # Let filter handle actual filtering
        self.logger.propagate = False

        # One handler per process, whatever the number of AuditLogger instances
        for existing in [h for h in self.logger.handlers if isinstance(h, AuditLogHandler)]:
            self.logger.removeHandler(existing)

        handler = AuditLogHandler()
        handler.addFilter(AuditLogFilter(self.min_severity, self.include_low))
        self.logger.addHandler(handler)

    def should_log(self, severity: AuditSeverity) -> bool:
        """
        Determine if an event should be logged based on configuration.

        Args:
            severity: The severity level of the event

        Returns:
            True if the event should be logged, False otherwise
        """
        if not self.enabled:
            return False

        if severity == AuditSeverity.LOW:
            return self.include_low

        return severity.value >= self.min_severity.value

    def log_event(
        self,
        event: AuthEvent,
        status: str,
        did: Optional[str] = None,
        handle: Optional[str] = None,
        flow_mode: Optional[str] = None,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        additional_safe_fields: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log an auth audit event with safe fields only.

        Args:
            event: The auth event
            status: "success" or "failure"
            did: Subject DID
            handle: Identity handle or authorization server URL
            flow_mode: Callback delivery mode (web, mobile, pwa)
            status_code: HTTP status code returned
            error_message: Error message (sanitized before output)
            source_ip: Client IP address
            user_agent: Client user agent
            severity: Override for the event's default severity
            additional_safe_fields: Additional known-safe fields to include
        """
        severity = severity or event.severity
        if not self.should_log(severity):
            return

        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event.event_type,
            "severity": severity.name,
            "status": status,
        }

        optional_fields = {
            "did": did,
            "handle": handle,
            "flow_mode": flow_mode,
            "status_code": status_code,
            "error_message": error_message,
            "source_ip": source_ip,
            "user_agent": user_agent,
        }
        record.update({k: v for k, v in optional_fields.items() if v is not None})

        if additional_safe_fields:
            record.update(additional_safe_fields)

        extra = {
            'audit_event': record,
            'audit_severity': severity
        }
        self.logger.log(severity.value, "Audit event", extra=extra)


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """
    Get the global audit logger instance.

    Returns:
        The global AuditLogger instance
    """
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
