#!/usr/bin/env python3
"""
AWS Lambda entry points for the Teld gateway.
Mangum adapts API Gateway events to the FastAPI ASGI app; the settlement
purge runs from a scheduled (EventBridge) invocation since Lambda skips startup.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from mangum import Mangum

from app.core.config import settings
from app.db.session import AsyncSessionLocal
from app.main import app
from app.services.billing import purge_settlements

logger = logging.getLogger(__name__)

asgi_handler = Mangum(app, lifespan="off")


def lambda_handler(event, context):
    """AWS Lambda handler that wraps the FastAPI application."""
    logger.info("Processing Lambda event: %s %s",
                event.get("httpMethod", "UNKNOWN"), event.get("path", "/"))
    response = asgi_handler(event, context)
    logger.info("Lambda response status: %s", response.get("statusCode", "unknown"))
    return response


async def _purge() -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.SETTLEMENT_RETENTION_DAYS)
    async with AsyncSessionLocal() as db:
        return await purge_settlements(db, older_than=cutoff)


def purge_handler(event, context):
    """Scheduled job: drop settlement records past the retention window."""
    removed = asyncio.run(_purge())
    return {"purged": removed}
