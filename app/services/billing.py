# app/services/billing.py
"""
Settlement of completed call legs against plans and wallet.

Minutes come out of active plans closest-to-expiry first; whatever is left is
charged to the wallet at the configured per-minute rate, never below zero.
Each leg is billed at most once: the settlement row keyed by leg id is written
in the same transaction as the debit.
"""
from __future__ import annotations
import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Iterable, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateSettlement, ErrorSeverity, log_error
from app.core.logging import mask_phone
from app.crud.account import get_account_by_phone
from app.db.models.account import Account, Plan, as_utc
from app.db.models.settlement import Settlement
from app.services.notifications import Notifier

logger = logging.getLogger(__name__)

QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")
COMPLETED_STATUSES = frozenset({"completed", "answered"})


def _q(value: Decimal) -> Decimal:
    return value.quantize(QUANTUM, rounding=ROUND_HALF_UP)


def seconds_to_minutes(seconds: int) -> Decimal:
    return _q(Decimal(seconds) / Decimal(60))


@dataclass(frozen=True)
class PlanDraw:
    plan: Plan
    minutes: Decimal


@dataclass
class Allocation:
    minutes_billed: Decimal
    draws: list[PlanDraw] = field(default_factory=list)
    wallet_minutes: Decimal = ZERO
    wallet_charge: Decimal = ZERO   # what the overflow costs at the rate
    wallet_debit: Decimal = ZERO    # what the wallet can actually cover

    @property
    def plan_minutes_used(self) -> Decimal:
        return sum((d.minutes for d in self.draws), ZERO)

    @property
    def uncollected(self) -> Decimal:
        return self.wallet_charge - self.wallet_debit


def allocate_usage(
    plans: Iterable[Plan],
    wallet_balance: Decimal,
    minutes: Decimal,
    rate: Decimal,
    now: datetime,
) -> Allocation:
    """
    Decide how `minutes` of talk time is paid for. Pure: nothing is mutated.

    Expired plans are skipped, not removed.
    """
    alloc = Allocation(minutes_billed=minutes)
    remaining = minutes

    active = sorted(
        (p for p in plans if p.is_active(now) and p.minutes_remaining > ZERO),
        key=lambda p: as_utc(p.expires_at),
    )
    for plan in active:
        if remaining <= ZERO:
            break
        used = min(plan.minutes_remaining, remaining)
        alloc.draws.append(PlanDraw(plan=plan, minutes=used))
        remaining -= used

    if remaining > ZERO:
        alloc.wallet_minutes = remaining
        alloc.wallet_charge = _q(remaining * rate) if rate > ZERO else ZERO
        alloc.wallet_debit = min(alloc.wallet_charge, max(wallet_balance, ZERO))

    return alloc


def apply_allocation(account: Account, alloc: Allocation) -> None:
    for draw in alloc.draws:
        draw.plan.minutes_remaining = draw.plan.minutes_remaining - draw.minutes
    account.wallet_balance = max(account.wallet_balance - alloc.wallet_debit, ZERO)
    account.total_minutes_used = account.total_minutes_used + alloc.minutes_billed


def available_seconds(account: Account, rate: Decimal, now: datetime) -> int:
    """Funded talk time: active plan minutes plus what the wallet buys at `rate`."""
    minutes = account.active_minutes(now)
    if rate > ZERO and account.wallet_balance > ZERO:
        minutes += account.wallet_balance / rate
    return max(math.floor(minutes * 60), 0)


class SettlementStatus(str, Enum):
    SETTLED = "settled"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"          # not completed / nothing to bill
    NO_ACCOUNT = "no_account"


@dataclass(frozen=True)
class SettlementResult:
    status: SettlementStatus
    leg_id: str
    minutes_billed: Decimal = ZERO
    plan_minutes_used: Decimal = ZERO
    wallet_debit: Decimal = ZERO
    wallet_balance: Optional[Decimal] = None
    plan_minutes_remaining: Optional[Decimal] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _ensure_unsettled(db: AsyncSession, leg_id: str) -> None:
    seen = await db.scalar(sa.select(Settlement.id).where(Settlement.leg_id == leg_id))
    if seen is not None:
        raise DuplicateSettlement(leg_id)


class BillingEngine:

    def __init__(
        self,
        *,
        rate: Decimal,
        notifier: Notifier,
        clock: Callable[[], datetime] = _utcnow,
        max_retries: int = 2,
    ):
        self.rate = Decimal(rate)
        self.notifier = notifier
        self.clock = clock
        self.max_retries = max_retries

    async def settle(
        self,
        db: AsyncSession,
        *,
        caller_phone: str,
        leg_id: str,
        duration_seconds: int,
        carrier_status: str,
    ) -> SettlementResult:
        if not leg_id:
            raise ValueError("leg_id is required for settlement")

        status = (carrier_status or "").strip().lower()
        if status not in COMPLETED_STATUSES or duration_seconds <= 0:
            logger.info("[billing] nothing to bill leg=%s status=%s duration=%s",
                        leg_id, status or "-", duration_seconds)
            return SettlementResult(SettlementStatus.SKIPPED, leg_id)

        try:
            await _ensure_unsettled(db, leg_id)
        except DuplicateSettlement:
            logger.info("[billing] duplicate completion ignored leg=%s", leg_id)
            return SettlementResult(SettlementStatus.DUPLICATE, leg_id)

        account = await get_account_by_phone(db, caller_phone, for_update=True)
        if account is None:
            await db.rollback()
            logger.warning("[billing] no account for %s, leg=%s not billed",
                           mask_phone(caller_phone), leg_id)
            return SettlementResult(SettlementStatus.NO_ACCOUNT, leg_id)

        now = self.clock()
        minutes = seconds_to_minutes(duration_seconds)
        alloc = allocate_usage(account.plans, account.wallet_balance, minutes, self.rate, now)
        apply_allocation(account, alloc)

        db.add(Settlement(
            leg_id=leg_id,
            account_id=account.id,
            duration_seconds=duration_seconds,
            minutes_billed=alloc.minutes_billed,
            plan_minutes_used=alloc.plan_minutes_used,
            wallet_debit=alloc.wallet_debit,
            settled_at=now,
        ))

        try:
            await db.commit()
        except IntegrityError:
            # a concurrent delivery of the same leg won the insert
            await db.rollback()
            logger.info("[billing] duplicate completion lost race leg=%s", leg_id)
            return SettlementResult(SettlementStatus.DUPLICATE, leg_id)

        if alloc.uncollected > ZERO:
            logger.warning("[billing] wallet short by %s for %s leg=%s",
                           alloc.uncollected, mask_phone(caller_phone), leg_id)

        result = SettlementResult(
            status=SettlementStatus.SETTLED,
            leg_id=leg_id,
            minutes_billed=alloc.minutes_billed,
            plan_minutes_used=alloc.plan_minutes_used,
            wallet_debit=alloc.wallet_debit,
            wallet_balance=account.wallet_balance,
            plan_minutes_remaining=account.active_minutes(now),
        )
        logger.info("[billing] settled leg=%s minutes=%s plan=%s wallet=%s balance=%s",
                    leg_id, result.minutes_billed, result.plan_minutes_used,
                    result.wallet_debit, result.wallet_balance)

        await self.notifier.dispatch(account.email, "Call Summary", {
            "title": "Call Summary",
            "message": f"Used {result.minutes_billed:.2f} minutes.",
            "minutes_from_plans": f"{result.plan_minutes_used:.2f}",
            "wallet_charged": f"${result.wallet_debit:.2f}",
            "wallet_balance": f"${result.wallet_balance:.2f}",
            "plan_minutes_remaining": f"{result.plan_minutes_remaining:.2f}",
        })
        return result

    async def settle_with_retry(self, db: AsyncSession, **kwargs) -> SettlementResult:
        """
        At-least-once settlement. The leg-id dedup makes every retry safe.
        Raises after the last attempt, once the failure is logged for reconciliation.
        """
        attempt = 0
        while True:
            try:
                return await self.settle(db, **kwargs)
            except SQLAlchemyError as e:
                await db.rollback()
                logger.warning("[billing] attempt %d failed leg=%s: %s",
                               attempt + 1, kwargs.get("leg_id"), e)
                if attempt >= self.max_retries:
                    log_error(e, {
                        "component": "billing",
                        "alert": "settlement_unreconciled",
                        "caller": kwargs.get("caller_phone"),
                        "leg_id": kwargs.get("leg_id"),
                        "duration_seconds": kwargs.get("duration_seconds"),
                        "carrier_status": kwargs.get("carrier_status"),
                        "attempts": attempt + 1,
                    }, ErrorSeverity.CRITICAL)
                    raise

            # Exponential backoff between retries (0.1s, 0.2s, 0.4s)
            await asyncio.sleep(0.1 * (2 ** attempt))
            attempt += 1


async def purge_settlements(db: AsyncSession, *, older_than: datetime) -> int:
    """Drop dedup records past the retention window."""
    res = await db.execute(sa.delete(Settlement).where(Settlement.settled_at < older_than))
    await db.commit()
    removed = res.rowcount or 0
    if removed:
        logger.info("[billing] purged %d settlement records older than %s", removed, older_than.isoformat())
    return removed
