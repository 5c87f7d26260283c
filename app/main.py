# app/main.py
from __future__ import annotations

# Load .env early so os.getenv works everywhere
from dotenv import load_dotenv
load_dotenv()

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl

import sqlalchemy as sa
from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse, Response as FastResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.request_validator import RequestValidator

from app.core.config import settings
from app.core.errors import GatewayError, ErrorSeverity, error_aggregator, log_error
from app.core.logging import setup_logging, LoggingMiddleware, get_logger
from app.db.session import AsyncSessionLocal, get_session
from app.services.billing import purge_settlements
from app.services.redis_session import get_session_store

# Routers
from app.api.routes.admin import router as admin_router
from app.api.routes.twilio import router as twilio_router

setup_logging(debug=settings.is_development, max_log_length=settings.MAX_LOG_LENGTH, level=settings.LOG_LEVEL)
logger = get_logger(__name__)

app = FastAPI(title="Teld", description="Prepaid voice-calling gateway")

REJECT_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response><Reject/></Response>'

app.middleware("http")(LoggingMiddleware(log_requests=settings.LOG_REQUESTS))


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.info("gateway_error", error_code=exc.code, path=request.url.path)
    return JSONResponse({"error": exc.code, "detail": exc.detail}, status_code=exc.status_code)


# -------- Health / readiness (public) --------
@app.get("/healthz", include_in_schema=False)
async def healthz():
    return {"ok": True}


@app.get("/readyz", include_in_schema=False)
async def readyz(db: AsyncSession = Depends(get_session)):
    await db.execute(sa.text("SELECT 1"))
    store_ok = await get_session_store().ping()
    return {"db": "ok", "session_store": "ok" if store_ok else "degraded"}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return {"status": "healthy", "errors": error_aggregator.get_error_summary()}


# -------- Twilio webhook signature gate --------
def _signature_candidates(request: Request) -> list[str]:
    received = str(request.url)
    urls = [received, received.replace("http://", "https://", 1)]
    if settings.PUBLIC_BASE_URL:
        path = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        urls.append(settings.webhook_url(path))
    return urls


@app.middleware("http")
async def verify_twilio_signature(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/twilio/"):
        return await call_next(request)

    if not settings.TWILIO_AUTH_TOKEN or settings.is_test:
        return await call_next(request)

    body_bytes = await request.body()  # Starlette caches; downstream can still read
    form = dict(parse_qsl(body_bytes.decode(errors="ignore")))
    sig = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)

    if not any(validator.validate(url, form, sig) for url in _signature_candidates(request)):
        log_error(Exception("Twilio signature validation failed"),
                  {"endpoint": path, "signature_present": bool(sig)},
                  ErrorSeverity.MEDIUM)
        return FastResponse(content=REJECT_TWIML, media_type="application/xml", status_code=403)

    return await call_next(request)


# -------- Include routers --------
app.include_router(twilio_router)
app.include_router(admin_router)


# -------- Application startup/shutdown events --------
@app.on_event("startup")
async def startup_event():
    """Drop settlement dedup records past the retention window."""
    logger.info("Application startup")
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.SETTLEMENT_RETENTION_DAYS)
    try:
        async with AsyncSessionLocal() as db:
            await purge_settlements(db, older_than=cutoff)
    except SQLAlchemyError as e:
        log_error(e, {"component": "startup", "task": "purge_settlements"}, ErrorSeverity.MEDIUM)
