# app/services/redis_session.py
"""
Redis-based session storage for Twilio voice calls.

Call sessions and one-time codes live here, never in process memory, so any
worker can pick up the next webhook for a caller. TTL is authoritative: an
expired key is indistinguishable from a deleted one.
"""
from __future__ import annotations
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from app.core.config import settings
from app.core.errors import SessionStoreError, ErrorSeverity, log_error
from app.core.logging import mask_phone

logger = logging.getLogger(__name__)

CALL_KEY = "call:{caller}"
OTP_KEY = "otp:{caller}"


class Stage(str, Enum):
    PIN_ENTRY = "pin_entry"
    OTP_PENDING = "otp_pending"
    DESTINATION_PENDING = "destination_pending"
    IN_CALL = "in_call"


@dataclass
class CallSession:
    caller: str
    stage: Stage = Stage.PIN_ENTRY
    attempts: int = 0
    pin: Optional[str] = None
    destination: Optional[str] = None
    leg_ref: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return CALL_KEY.format(caller=self.caller)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for Redis storage"""
        result = asdict(self)
        result["stage"] = self.stage.value
        result["created_at"] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallSession":
        """Create from dict loaded from Redis"""
        data = dict(data)
        data["stage"] = Stage(data["stage"])
        if isinstance(data.get("created_at"), str):
            data["created_at"] = datetime.fromisoformat(data["created_at"])
        return cls(**data)


class SessionStore:
    """
    Key/value store with per-key expiry.

    Reads fail open (an unreachable store looks like "no session"); writes
    raise SessionStoreError so the caller is told to try again later.
    """

    async def put(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        raise NotImplementedError

    async def create(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        """Set only if absent. Returns False when the key already exists."""
        raise NotImplementedError

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    # --- CallSession helpers ---

    async def load_call(self, caller: str) -> Optional[CallSession]:
        data = await self.get(CALL_KEY.format(caller=caller))
        if not data:
            return None
        try:
            return CallSession.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            # unreadable record behaves like no session
            logger.warning("Discarding malformed session for %s: %s", mask_phone(caller), e)
            return None

    async def save_call(self, session: CallSession, ttl: int) -> None:
        await self.put(session.key, session.to_dict(), ttl)
        logger.debug("Saved session: %s stage=%s ttl=%s", mask_phone(session.caller), session.stage.value, ttl)

    async def start_call(self, session: CallSession, ttl: int) -> bool:
        return await self.create(session.key, session.to_dict(), ttl)

    async def end_call(self, caller: str) -> None:
        await self.delete(CALL_KEY.format(caller=caller))
        logger.info("Reset session: %s", mask_phone(caller))


class RedisSessionStore(SessionStore):

    def __init__(self, client: redis.Redis):
        self.client = client

    async def put(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        try:
            await self.client.set(key, json.dumps(value), ex=ttl)
        except redis.RedisError as e:
            log_error(e, {"component": "session_store", "op": "put"}, ErrorSeverity.HIGH)
            raise SessionStoreError() from e

    async def create(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        try:
            created = await self.client.set(key, json.dumps(value), ex=ttl, nx=True)
        except redis.RedisError as e:
            log_error(e, {"component": "session_store", "op": "create"}, ErrorSeverity.HIGH)
            raise SessionStoreError() from e
        return bool(created)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.get(key)
        except redis.RedisError as e:
            log_error(e, {"component": "session_store", "op": "get"}, ErrorSeverity.HIGH)
            return None
        return _decode(key, raw)

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.client.getdel(key)
        except redis.RedisError as e:
            log_error(e, {"component": "session_store", "op": "pop"}, ErrorSeverity.HIGH)
            return None
        return _decode(key, raw)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except redis.RedisError as e:
            # TTL cleans up whatever we failed to remove
            log_error(e, {"component": "session_store", "op": "delete"}, ErrorSeverity.MEDIUM)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError:
            return False


def _decode(key: str, raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Ignoring non-JSON value at %s", key.split(":", 1)[0])
        return None


class MemorySessionStore(SessionStore):
    """In-process TTL store for development and tests (single worker only)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, tuple[float, str]] = {}
        self._lock = asyncio.Lock()

    def _purge(self) -> None:
        now = self._clock()
        expired = [k for k, (expires, _) in self._data.items() if expires <= now]
        for k in expired:
            self._data.pop(k, None)

    async def put(self, key: str, value: Dict[str, Any], ttl: int) -> None:
        async with self._lock:
            self._data[key] = (self._clock() + ttl, json.dumps(value))

    async def create(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        async with self._lock:
            self._purge()
            if key in self._data:
                return False
            self._data[key] = (self._clock() + ttl, json.dumps(value))
            return True

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            self._purge()
            entry = self._data.get(key)
        return json.loads(entry[1]) if entry else None

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            self._purge()
            entry = self._data.pop(key, None)
        return json.loads(entry[1]) if entry else None

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        return entry[0] - self._clock() if entry else None


# Store singleton
_store: Optional[SessionStore] = None


def get_redis_client(redis_url: str) -> redis.Redis:
    """Create the Redis client with short timeouts; webhooks must answer fast."""
    # Upstash requires TLS
    if "upstash.io" in redis_url and redis_url.startswith("redis://"):
        redis_url = redis_url.replace("redis://", "rediss://", 1)
        logger.info("Converted Redis URL to SSL for Upstash")

    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=3,
        socket_timeout=2,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def get_session_store() -> SessionStore:
    """FastAPI dependency: Redis when configured, in-memory otherwise."""
    global _store
    if _store is None:
        if settings.REDIS_URL:
            _store = RedisSessionStore(get_redis_client(settings.REDIS_URL))
            logger.info("Redis session store: %s", settings.REDIS_URL.split('@')[-1])
        else:
            if settings.is_production:
                logger.warning("REDIS_URL not set, sessions are local to this worker")
            _store = MemorySessionStore()
    return _store
