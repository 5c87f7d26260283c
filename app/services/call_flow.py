# app/services/call_flow.py
"""
Call session state machine.

    (none) -> PIN_ENTRY -> OTP_PENDING -> DESTINATION_PENDING -> IN_CALL -> settled

Every webhook is stateless: the session is loaded from the TTL store, advanced
one step and written back with a fresh TTL. Any failure during the IVR part
ends the session and tells the caller why.
"""
from __future__ import annotations
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import (
    GatewayError,
    InsufficientMinutes,
    InvalidDestination,
    InvalidPin,
    NotRegistered,
    SessionActive,
    SessionExpiredOrMissing,
)
from app.core.logging import mask_phone
from app.crud.account import get_account_by_phone
from app.db.models.account import Account
from app.services.billing import BillingEngine, SettlementResult, available_seconds
from app.services.instructions import CollectDigits, Dial, Hangup, Instruction, Redirect, Speak
from app.services.notifications import Notifier
from app.services.otp import OtpService
from app.services.phone_numbers import normalize_destination
from app.services.redis_session import CallSession, SessionStore, Stage

logger = logging.getLogger(__name__)

COLLECT_TARGET = "/twilio/voice/collect"
COMPLETION_TARGET = "/twilio/voice/dial-status"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mint_leg_ref(session: CallSession) -> str:
    """Synthetic leg id for carriers that don't send one: caller + session start."""
    return f"{session.caller}:{int(session.created_at.timestamp() * 1000)}"


class CallFlow:

    def __init__(
        self,
        *,
        db: AsyncSession,
        store: SessionStore,
        notifier: Notifier,
        otp: OtpService,
        billing: BillingEngine,
        config: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.store = store
        self.notifier = notifier
        self.otp = otp
        self.billing = billing
        self.config = config
        self.clock = clock

    # ---------- prompts ----------

    def _collect(self, count: int, prompt: str, finish_on_key: Optional[str] = None) -> list[Instruction]:
        # Gather falls through on timeout; the redirect turns that into an empty entry
        return [
            CollectDigits(
                count=count,
                next_target=COLLECT_TARGET,
                timeout=self.config.GATHER_TIMEOUT,
                prompt=prompt,
                finish_on_key=finish_on_key,
            ),
            Redirect(COLLECT_TARGET),
        ]

    def _ask_pin(self, greeting: bool = False) -> list[Instruction]:
        n = self.config.PIN_LENGTH
        text = f"Welcome. Enter your {n} digit PIN." if greeting else f"Please enter your {n} digit PIN."
        return self._collect(n, text)

    def _ask_otp(self) -> list[Instruction]:
        return self._collect(
            self.config.OTP_LENGTH,
            f"A code has been sent to your email. Enter the {self.config.OTP_LENGTH} digit code.",
        )

    def _ask_destination(self) -> list[Instruction]:
        return self._collect(
            self.config.DESTINATION_MAX_DIGITS,
            "Enter the number you wish to call, followed by the pound key.",
            finish_on_key="#",
        )

    @staticmethod
    def _say_and_hang_up(text: str) -> list[Instruction]:
        return [Speak(text), Hangup()]

    async def _reject(self, caller: str, err: GatewayError, *, end_session: bool = True) -> list[Instruction]:
        logger.info("[flow] %s rejected: %s", mask_phone(caller), err.code)
        if end_session:
            await self.store.end_call(caller)
        return self._say_and_hang_up(err.caller_message)

    async def _account(self, caller: str) -> Account:
        account = await get_account_by_phone(self.db, caller)
        if account is None:
            raise NotRegistered()
        return account

    # ---------- events ----------

    async def on_call_start(self, caller: str) -> list[Instruction]:
        try:
            await self._account(caller)
        except NotRegistered as e:
            return await self._reject(caller, e, end_session=False)

        session = CallSession(caller=caller, created_at=self.clock())
        try:
            created = await self.store.start_call(session, self.config.PIN_ENTRY_TTL)
        except GatewayError as e:
            return await self._reject(caller, e, end_session=False)

        if not created:
            # the live session belongs to another in-flight call; leave it alone
            return await self._reject(caller, SessionActive(), end_session=False)

        logger.info("[flow] session started for %s", mask_phone(caller))
        return self._ask_pin(greeting=True)

    async def on_digits(self, caller: str, digits: str) -> list[Instruction]:
        session = await self.store.load_call(caller)
        if session is None:
            return self._say_and_hang_up(SessionExpiredOrMissing.caller_message)

        digits = (digits or "").strip()
        logger.info("[flow] %s stage=%s attempts=%d entered=%d digits",
                    mask_phone(caller), session.stage.value, session.attempts, len(digits))

        handlers = {
            Stage.PIN_ENTRY: self._on_pin,
            Stage.OTP_PENDING: self._on_otp,
            Stage.DESTINATION_PENDING: self._on_destination,
            Stage.IN_CALL: self._on_in_call,
        }
        try:
            return await handlers[session.stage](session, digits)
        except GatewayError as e:
            return await self._reject(caller, e)

    async def _on_pin(self, session: CallSession, digits: str) -> list[Instruction]:
        session.attempts += 1
        if session.attempts > self.config.MAX_PIN_ATTEMPTS:
            raise InvalidPin("Too many PIN attempts")

        if len(digits) < self.config.PIN_LENGTH or not digits.isdigit():
            await self.store.save_call(session, self.config.PIN_ENTRY_TTL)
            return self._ask_pin()

        account = await self._account(session.caller)
        if not secrets.compare_digest(digits.encode(), account.pin.encode()):
            raise InvalidPin()

        code = await self.otp.issue(session.caller)
        await self.notifier.dispatch(account.email, "Your OTP Code", {
            "title": "Your OTP Code",
            "message": f"OTP: {code}",
            "valid_for": f"{self.config.OTP_TTL // 60} minutes",
        })

        session.stage = Stage.OTP_PENDING
        session.pin = account.pin
        session.attempts = 0
        await self.store.save_call(session, self.config.OTP_ENTRY_TTL)
        return self._ask_otp()

    async def _on_otp(self, session: CallSession, digits: str) -> list[Instruction]:
        check = await self.otp.verify(session.caller, digits)
        if not check.ok:
            raise check.error()

        session.stage = Stage.DESTINATION_PENDING
        session.attempts = 0
        await self.store.save_call(session, self.config.DESTINATION_TTL)
        return self._ask_destination()

    async def _on_destination(self, session: CallSession, digits: str) -> list[Instruction]:
        number = normalize_destination(digits, self.config.INTERNATIONAL_PREFIX)
        if number is None:
            session.attempts += 1
            if session.attempts > self.config.MAX_PIN_ATTEMPTS:
                raise InvalidDestination()
            await self.store.save_call(session, self.config.DESTINATION_TTL)
            return [Speak(InvalidDestination.caller_message)] + self._ask_destination()

        account = await self._account(session.caller)
        funded = available_seconds(account, self.billing.rate, self.clock())
        if funded <= 0:
            raise InsufficientMinutes()

        limit = min(funded, self.config.MAX_CALL_SECONDS)
        session.stage = Stage.IN_CALL
        session.destination = number
        session.leg_ref = mint_leg_ref(session)
        await self.store.save_call(session, limit + self.config.INCALL_GRACE_SECONDS)

        logger.info("[flow] dialing for %s, limit=%ss leg=%s", mask_phone(session.caller), limit, session.leg_ref)
        return [
            Speak("Connecting your call."),
            Dial(
                number=number,
                max_duration_seconds=limit,
                completion_target=f"{COMPLETION_TARGET}?leg={quote(session.leg_ref, safe='')}",
            ),
        ]

    async def _on_in_call(self, session: CallSession, digits: str) -> list[Instruction]:
        return [Speak("Your call is already in progress.")]

    async def on_call_completed(
        self,
        caller: str,
        *,
        leg_id: Optional[str],
        leg_ref: Optional[str],
        carrier_status: str,
        duration_seconds: int,
    ) -> tuple[list[Instruction], Optional[SettlementResult]]:
        """
        Bill the leg, then drop the session. The session is removed even when
        billing raises; the error still propagates so the carrier redelivers.
        """
        session = await self.store.load_call(caller)
        leg = leg_id or leg_ref or (session.leg_ref if session else None)

        try:
            if not leg:
                logger.error("[flow] completion for %s without leg id; usage needs reconciliation "
                             "(status=%s duration=%s)", mask_phone(caller), carrier_status, duration_seconds)
                result = None
            else:
                result = await self.billing.settle_with_retry(
                    self.db,
                    caller_phone=caller,
                    leg_id=leg,
                    duration_seconds=duration_seconds,
                    carrier_status=carrier_status,
                )
        finally:
            if self._owns_session(session, leg_ref):
                await self.store.end_call(caller)

        return [Hangup()], result

    @staticmethod
    def _owns_session(session: Optional[CallSession], leg_ref: Optional[str]) -> bool:
        # a newer call's session (different leg, or not yet dialed) is not ours to end
        if session is None:
            return False
        if leg_ref:
            return session.leg_ref == leg_ref
        return session.stage == Stage.IN_CALL
