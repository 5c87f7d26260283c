# app/api/auth.py
import secrets

from fastapi import Header

from app.core.config import settings
from app.core.errors import Unauthorized, ErrorSeverity, log_error


def require_admin_key(x_admin_key: str = Header(default="")) -> bool:
    """Shared-secret gate for the admin API. Fails closed when no key is configured."""
    expected = settings.ADMIN_KEY or ""
    if not expected or not secrets.compare_digest(x_admin_key, expected):
        log_error(Exception("Admin key validation failed"),
                  {"component": "admin_auth", "has_key": bool(x_admin_key)},
                  ErrorSeverity.MEDIUM)
        raise Unauthorized()
    return True
