# app/utils/timeout_protection.py
"""
Timeout protection for work done inside a webhook.
Twilio waits roughly 15 seconds for TwiML; collaborators must not eat that budget.
"""
import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

async def with_timeout(coro, timeout_seconds: float = 3.0, default_value: Any = None):
    """
    Execute a coroutine with a timeout, returning default_value if it times out or fails.

    Only for fire-and-forget collaborators (notifications); the failure is logged.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Operation timed out after {timeout_seconds}s, using default value")
        return default_value
    except Exception as e:
        logger.error(f"Operation failed with error: {e}, using default value")
        return default_value
