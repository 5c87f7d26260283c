"""
Structured logging with correlation IDs and caller-data redaction.

Core code and the error aggregator log through structlog with the request's
correlation id and call context bound; service modules use plain stdlib
loggers with phone numbers masked at the call site.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from fastapi import Request

# Request correlation context
request_id: ContextVar[str] = ContextVar('request_id', default="")
call_context: ContextVar[Dict[str, Any]] = ContextVar('call_context', default={})

# Never logged in clear
SECRET_KEYS = frozenset({"pin", "otp", "code", "digits", "auth_token", "api_key"})
PHONE_KEYS = frozenset({"phone", "caller", "destination", "from_number"})


def mask_phone(s: str | None) -> str:
    if not s:
        return ""
    s = s.strip()
    if s.startswith("+") and len(s) > 4:
        return s[:3] + "****" + s[-3:]
    if len(s) > 4:
        return s[:2] + "****" + s[-2:]
    return s


def mask_email(s: str | None) -> str:
    if not s:
        return ""
    name, _, domain = s.partition("@")
    return f"{name[:2]}***@{domain}" if domain else "***"


class RedactionProcessor:
    """Mask phone numbers and emails, drop PINs and codes."""

    def __call__(self, logger, method_name, event_dict):
        for key in list(event_dict):
            value = event_dict[key]
            if key in SECRET_KEYS and value:
                event_dict[key] = "[redacted]"
            elif key in PHONE_KEYS and isinstance(value, str):
                event_dict[key] = mask_phone(value)
            elif key in ("email", "recipient") and isinstance(value, str):
                event_dict[key] = mask_email(value)
        return event_dict


class TokenEfficientProcessor:
    """Processor to keep logs concise."""

    def __init__(self, max_length: int = 200):
        self.max_length = max_length

    def __call__(self, logger, method_name, event_dict):
        for key in ('event', 'message', 'error'):
            if key in event_dict:
                event_dict[key] = str(event_dict[key])[:self.max_length]
        return event_dict


class CorrelationProcessor:
    """Add correlation ID and call context to all logs."""

    def __call__(self, logger, method_name, event_dict):
        correlation_id = request_id.get("")
        if correlation_id:
            event_dict['correlation_id'] = correlation_id

        context = call_context.get({})
        for key, value in context.items():
            event_dict.setdefault(key, value)

        return event_dict


def setup_logging(debug: bool = False, max_log_length: int = 200, level: str = "INFO"):
    """Configure structured logging for the application."""

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        CorrelationProcessor(),
        RedactionProcessor(),
        TokenEfficientProcessor(max_length=max_log_length),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )


def get_logger(name: str = __name__):
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: str):
    """Set correlation ID for current request context."""
    request_id.set(correlation_id)


def set_call_context(caller: Optional[str] = None, endpoint: Optional[str] = None,
                     method: Optional[str] = None, **kwargs):
    """Merge call details into the current request's log context."""
    context = dict(call_context.get({}))
    if caller:
        context['caller'] = mask_phone(caller)
    if endpoint:
        context['endpoint'] = endpoint
    if method:
        context['method'] = method
    context.update(kwargs)
    call_context.set(context)


def clear_context():
    """Clear correlation ID and call context."""
    request_id.set("")
    call_context.set({})


class LoggingMiddleware:
    """FastAPI middleware: correlation id per request, slow/failed requests always logged."""

    SLOW_SECONDS = 2.0

    def __init__(self, log_requests: bool = False):
        self.log_requests = log_requests
        self.logger = get_logger("middleware")

    async def __call__(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())[:8]
        set_correlation_id(correlation_id)
        set_call_context(endpoint=request.url.path, method=request.method)
        request.state.correlation_id = correlation_id

        started = time.perf_counter()

        if self.log_requests:
            self.logger.info("request_start", path=request.url.path, method=request.method)

        try:
            response = await call_next(request)

            duration = time.perf_counter() - started
            if self.log_requests or duration > self.SLOW_SECONDS or response.status_code >= 400:
                self.logger.info(
                    "request_complete",
                    status_code=response.status_code,
                    duration=round(duration, 3),
                    slow=duration > self.SLOW_SECONDS,
                )

            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as e:
            self.logger.error(
                "request_error",
                error=str(e),
                duration=round(time.perf_counter() - started, 3),
                error_type=type(e).__name__,
            )
            raise
        finally:
            clear_context()
