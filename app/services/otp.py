# app/services/otp.py
"""
One-time codes bound to a caller's phone number.

Only one code is live per caller. Verification pops the record, so a code is
gone after the first check whatever the result.
"""
from __future__ import annotations
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from app.core.errors import OtpError, OtpExpired, OtpMismatch, OtpNotFound
from app.core.logging import mask_phone
from app.services.redis_session import OTP_KEY, SessionStore

logger = logging.getLogger(__name__)

# Keep the record a little past expiry so late entries report "expired", not "not found"
EXPIRY_GRACE_SECONDS = 60


class OtpReason(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"


_ERRORS: dict[OtpReason, type[OtpError]] = {
    OtpReason.EXPIRED: OtpExpired,
    OtpReason.NOT_FOUND: OtpNotFound,
    OtpReason.MISMATCH: OtpMismatch,
}


@dataclass(frozen=True)
class OtpCheck:
    ok: bool
    reason: OtpReason

    def error(self) -> Optional[OtpError]:
        if self.ok:
            return None
        return _ERRORS[self.reason]()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpService:

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_seconds: int = 300,
        length: int = 6,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.length = length
        self.clock = clock

    def _generate(self) -> str:
        return f"{secrets.randbelow(10 ** self.length):0{self.length}d}"

    async def issue(self, caller: str) -> str:
        """Store a fresh code for `caller`, replacing any pending one."""
        code = self._generate()
        expires_at = self.clock() + timedelta(seconds=self.ttl_seconds)
        await self.store.put(
            OTP_KEY.format(caller=caller),
            {"code": code, "expires_at": expires_at.isoformat()},
            self.ttl_seconds + EXPIRY_GRACE_SECONDS,
        )
        logger.info("[otp] issued for %s, expires %s", mask_phone(caller), expires_at.isoformat())
        return code

    async def verify(self, caller: str, entered: str) -> OtpCheck:
        record = await self.store.pop(OTP_KEY.format(caller=caller))
        if not record:
            logger.info("[otp] no pending code for %s", mask_phone(caller))
            return OtpCheck(False, OtpReason.NOT_FOUND)

        try:
            expires_at = datetime.fromisoformat(record["expires_at"])
            code = str(record["code"])
        except (KeyError, TypeError, ValueError):
            logger.warning("[otp] malformed record for %s", mask_phone(caller))
            return OtpCheck(False, OtpReason.NOT_FOUND)

        if self.clock() > expires_at:
            logger.info("[otp] expired code for %s", mask_phone(caller))
            return OtpCheck(False, OtpReason.EXPIRED)

        if not secrets.compare_digest((entered or "").encode(), code.encode()):
            logger.info("[otp] mismatch for %s", mask_phone(caller))
            return OtpCheck(False, OtpReason.MISMATCH)

        logger.info("[otp] verified for %s", mask_phone(caller))
        return OtpCheck(True, OtpReason.OK)
