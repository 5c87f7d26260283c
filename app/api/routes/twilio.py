# app/api/routes/twilio.py
import logging

from fastapi import APIRouter, Depends, Form, Query
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ErrorSeverity, log_error
from app.core.logging import mask_phone, set_call_context
from app.db.session import get_session
from app.services.billing import BillingEngine
from app.services.call_flow import CallFlow
from app.services.instructions import Hangup, Instruction, render_twiml
from app.services.notifications import Notifier, get_notifier
from app.services.otp import OtpService
from app.services.phone_numbers import caller_key
from app.services.redis_session import SessionStore, get_session_store

router = APIRouter(prefix="/twilio", tags=["twilio"])
TWIML_CT = "application/xml"

logger = logging.getLogger("uvicorn.error")


def _twiml(instructions: list[Instruction], status_code: int = 200) -> Response:
    xml = render_twiml(
        instructions,
        base_url=settings.PUBLIC_BASE_URL,
        caller_id=settings.TWILIO_PHONE_NUMBER,
    )
    return Response(content=xml, media_type=TWIML_CT, status_code=status_code)


def get_billing_engine(notifier: Notifier = Depends(get_notifier)) -> BillingEngine:
    return BillingEngine(
        rate=settings.RATE_PER_MINUTE,
        notifier=notifier,
        max_retries=settings.SETTLEMENT_MAX_RETRIES,
    )


def get_call_flow(
    db: AsyncSession = Depends(get_session),
    store: SessionStore = Depends(get_session_store),
    notifier: Notifier = Depends(get_notifier),
    billing: BillingEngine = Depends(get_billing_engine),
) -> CallFlow:
    return CallFlow(
        db=db,
        store=store,
        notifier=notifier,
        otp=OtpService(store, ttl_seconds=settings.OTP_TTL, length=settings.OTP_LENGTH),
        billing=billing,
        config=settings,
    )


def _caller(raw: str) -> str:
    caller = caller_key(raw, settings.DEFAULT_REGION)
    set_call_context(caller=caller)
    return caller


@router.post("/voice")
async def voice_entry(
    From: str = Form(default=""),
    CallSid: str = Form(default=""),
    flow: CallFlow = Depends(get_call_flow),
):
    """Inbound call: start a PIN-entry session for a registered caller."""
    caller = _caller(From)
    logger.info("[voice] start call=%s from=%s", CallSid, mask_phone(caller))
    return _twiml(await flow.on_call_start(caller))


@router.post("/voice/collect")
async def voice_collect(
    From: str = Form(default=""),
    CallSid: str = Form(default=""),
    Digits: str = Form(default=""),
    flow: CallFlow = Depends(get_call_flow),
):
    """Digits gathered (or a gather timeout redirect with no digits)."""
    caller = _caller(From)
    logger.info("[collect] call=%s from=%s digits=%d", CallSid, mask_phone(caller), len(Digits))
    return _twiml(await flow.on_digits(caller, Digits))


@router.post("/voice/dial-status")
async def dial_status(
    From: str = Form(default=""),
    DialCallSid: str = Form(default=""),
    DialCallStatus: str = Form(default=""),
    DialCallDuration: int = Form(default=0),
    leg: str = Query(default=""),
    flow: CallFlow = Depends(get_call_flow),
):
    """<Dial> action callback: settle the leg and end the session."""
    caller = _caller(From)
    logger.info("[dial-status] from=%s leg=%s status=%s duration=%s",
                mask_phone(caller), DialCallSid or leg, DialCallStatus, DialCallDuration)
    try:
        instructions, _ = await flow.on_call_completed(
            caller,
            leg_id=DialCallSid or None,
            leg_ref=leg or None,
            carrier_status=DialCallStatus,
            duration_seconds=DialCallDuration,
        )
    except SQLAlchemyError as e:
        # billing already retried and logged for reconciliation; ask the carrier to redeliver
        log_error(e, {"endpoint": "/twilio/voice/dial-status", "leg": DialCallSid or leg},
                  ErrorSeverity.HIGH)
        return _twiml([Hangup()], status_code=503)
    return _twiml(instructions)
