# app/services/notifications.py
"""
Outbound email notifications (OTP codes, call summaries, account changes).

Delivery is fire-and-forget: a failed send is logged and never changes the
outcome of the call flow or the ledger.
"""
from __future__ import annotations
import html
import logging
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.core.errors import ErrorSeverity, log_error
from app.core.logging import mask_email
from app.utils.timeout_protection import with_timeout

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def render_email(subject: str, context: Dict[str, Any]) -> str:
    """Small inline HTML body: a title, an optional message and a table of fields."""
    title = html.escape(str(context.get("title") or subject))
    message = context.get("message")
    rows = "".join(
        f"<tr><td style=\"padding:4px 12px;color:#555\">{html.escape(str(k))}</td>"
        f"<td style=\"padding:4px 12px\"><b>{html.escape(str(v))}</b></td></tr>"
        for k, v in context.items()
        if k not in ("title", "message") and v is not None
    )
    body = f"<p>{html.escape(str(message))}</p>" if message else ""
    return f"""<!doctype html>
<html><body style="font-family:Arial,sans-serif">
  <h2>{title}</h2>
  {body}
  <table>{rows}</table>
</body></html>"""


class Notifier:
    """notify(recipient, subject, context) -> True when handed off for delivery."""

    async def notify(self, recipient: str, subject: str, context: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def dispatch(self, recipient: Optional[str], subject: str, context: Dict[str, Any]) -> bool:
        """Bounded, never-raising wrapper used from webhook handlers."""
        if not recipient:
            logger.warning("[notify] no recipient for '%s'", subject)
            return False
        return bool(await with_timeout(
            self.notify(recipient, subject, context),
            timeout_seconds=settings.EMAIL_TIMEOUT,
            default_value=False,
        ))


class LogNotifier(Notifier):
    """Used when email is not configured; records what would have been sent."""

    def __init__(self):
        self.sent: list[tuple[str, str, Dict[str, Any]]] = []

    async def notify(self, recipient: str, subject: str, context: Dict[str, Any]) -> bool:
        self.sent.append((recipient, subject, context))
        logger.info("[notify] (log only) to=%s subject='%s'", mask_email(recipient), subject)
        return True


class SendGridNotifier(Notifier):

    def __init__(self, api_key: str, from_email: str, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.from_email = from_email
        self._client = client

    def _payload(self, recipient: str, subject: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": render_email(subject, context)}],
        }

    async def notify(self, recipient: str, subject: str, context: Dict[str, Any]) -> bool:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload = self._payload(recipient, subject, context)
        try:
            if self._client is not None:
                resp = await self._client.post(SENDGRID_URL, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(5.0, connect=2.0)) as client:
                    resp = await client.post(SENDGRID_URL, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            log_error(e, {"component": "sendgrid", "status": e.response.status_code,
                          "body": e.response.text[:200]}, ErrorSeverity.MEDIUM)
            return False
        except httpx.HTTPError as e:
            log_error(e, {"component": "sendgrid"}, ErrorSeverity.MEDIUM)
            return False

        logger.info("[notify] sent '%s' to %s", subject, mask_email(recipient))
        return True


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """FastAPI dependency: SendGrid when configured, log-only otherwise."""
    global _notifier
    if _notifier is None:
        if settings.SENDGRID_API_KEY and settings.EMAIL_FROM:
            _notifier = SendGridNotifier(settings.SENDGRID_API_KEY, settings.EMAIL_FROM)
        else:
            logger.warning("SENDGRID_API_KEY/EMAIL_FROM not set, emails will only be logged")
            _notifier = LogNotifier()
    return _notifier
