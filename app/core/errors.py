"""
Gateway error taxonomy plus error aggregation for low-noise reporting.

IVR failures carry the short sentence spoken to the caller; admin failures
carry the HTTP status and error code returned in the JSON body.
"""
import hashlib
import time
from enum import Enum
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class GatewayError(Exception):
    """Base class for every failure the gateway reports on purpose."""

    code = "gateway_error"
    status_code = 400
    caller_message = "Sorry, something went wrong. Goodbye."

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.caller_message)
        self.detail = detail or self.caller_message


# --- IVR flow ---

class NotRegistered(GatewayError):
    code = "not_registered"
    status_code = 404
    caller_message = "You are not registered."


class SessionActive(GatewayError):
    code = "session_active"
    status_code = 409
    caller_message = "A call is already in progress for this number."


class SessionExpiredOrMissing(GatewayError):
    code = "session_expired"
    status_code = 410
    caller_message = "Session expired."


class InvalidPin(GatewayError):
    code = "invalid_pin"
    status_code = 403
    caller_message = "Invalid PIN."


class OtpError(GatewayError):
    code = "otp_failed"
    status_code = 403
    caller_message = "OTP failed."


class OtpExpired(OtpError):
    code = "otp_expired"
    caller_message = "Your code has expired."


class OtpMismatch(OtpError):
    code = "otp_mismatch"
    caller_message = "The code you entered is incorrect."


class OtpNotFound(OtpError):
    code = "otp_not_found"
    caller_message = "No code is pending for this call."


class InvalidDestination(GatewayError):
    code = "invalid_destination"
    status_code = 422
    caller_message = "That number is not valid."


class InsufficientMinutes(GatewayError):
    code = "insufficient_minutes"
    status_code = 402
    caller_message = "You have no minutes remaining."


class DuplicateSettlement(GatewayError):
    code = "duplicate_settlement"
    status_code = 200


class SessionStoreError(GatewayError):
    code = "session_store_unavailable"
    status_code = 503
    caller_message = "Service temporarily unavailable. Please try again later."


# --- Admin ---

class Unauthorized(GatewayError):
    code = "unauthorized"
    status_code = 401
    caller_message = "Unauthorized"


class AccountNotFound(GatewayError):
    code = "account_not_found"
    status_code = 404
    caller_message = "User not found"


class InvalidPlan(GatewayError):
    code = "invalid_plan"
    status_code = 400
    caller_message = "Invalid plan"


class AccountConflict(GatewayError):
    code = "account_conflict"
    status_code = 409
    caller_message = "An account with this phone or email already exists"


class ErrorSeverity(Enum):
    """Error severity levels for smart alerting."""
    LOW = "low"           # validation errors, expected failures
    MEDIUM = "medium"     # timeouts, recoverable errors
    HIGH = "high"         # auth failures, store outages
    CRITICAL = "critical" # lost usage, needs manual reconciliation


class ErrorPattern:
    """Track error patterns to reduce duplicate logging."""

    def __init__(self, error_type: str, message: str, context: Dict[str, Any]):
        self.error_type = error_type
        self.message = message[:100]
        self.endpoint = str(context.get("endpoint", ""))
        self.fingerprint = self._generate_fingerprint()
        self.first_seen = time.time()
        self.last_seen = self.first_seen
        self.count = 1

    def _generate_fingerprint(self) -> str:
        content = f"{self.error_type}:{self.message}:{self.endpoint}"
        return hashlib.md5(content.encode(), usedforsecurity=False).hexdigest()[:8]

    def update(self):
        self.last_seen = time.time()
        self.count += 1


class ErrorAggregator:
    """Aggregate and deduplicate errors so repeated failures don't flood logs."""

    def __init__(self, log_threshold: int = 10, time_window: int = 300):
        self.log_threshold = log_threshold
        self.time_window = time_window
        self.patterns: Dict[str, ErrorPattern] = {}

    def should_log(self, pattern: ErrorPattern, severity: ErrorSeverity) -> bool:
        if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            return True
        if pattern.count == 1:
            return True
        if severity == ErrorSeverity.MEDIUM:
            return pattern.count % self.log_threshold == 0
        return pattern.count % (self.log_threshold * 5) == 0

    def _prune(self):
        cutoff = time.time() - self.time_window
        for fingerprint in [f for f, p in self.patterns.items() if p.last_seen < cutoff]:
            del self.patterns[fingerprint]

    def log_error(self, error: Exception, context: Optional[Dict[str, Any]] = None,
                  severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> str:
        context = context or {}
        self._prune()
        pattern = ErrorPattern(type(error).__name__, str(error), context)
        fingerprint = pattern.fingerprint

        if fingerprint in self.patterns:
            self.patterns[fingerprint].update()
            pattern = self.patterns[fingerprint]
        else:
            self.patterns[fingerprint] = pattern

        if self.should_log(pattern, severity):
            logger.error(
                "aggregated_error",
                error_hash=fingerprint,
                error_type=pattern.error_type,
                error=str(error),
                count=pattern.count,
                severity=severity.value,
                **context
            )

        return fingerprint

    def get_error_summary(self) -> Dict[str, Any]:
        now = time.time()
        recent = [p for p in self.patterns.values() if now - p.last_seen < self.time_window]
        top = sorted(recent, key=lambda p: p.count, reverse=True)[:5]
        return {
            "total_unique_errors": len(recent),
            "total_error_count": sum(p.count for p in recent),
            "top_errors": [
                {"fingerprint": p.fingerprint, "type": p.error_type, "message": p.message, "count": p.count}
                for p in top
            ],
        }


# Global error aggregator instance
error_aggregator = ErrorAggregator()


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None,
              severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> str:
    """Convenience function to log errors through the global aggregator."""
    return error_aggregator.log_error(error, context, severity)
