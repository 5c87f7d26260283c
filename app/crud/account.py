# app/crud/account.py

from __future__ import annotations
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core.errors import AccountConflict, AccountNotFound, InvalidPlan
from app.core.plans import lookup_plan
from app.db.models.account import Account, Plan

PIN_ALPHABET = string.digits
REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def generate_pin(length: int = 6) -> str:
    # no leading zero so the PIN always has the full digit count when read back
    first = secrets.choice("123456789")
    return first + "".join(secrets.choice(PIN_ALPHABET) for _ in range(length - 1))


def generate_referral_code(length: int = 6) -> str:
    return "".join(secrets.choice(REFERRAL_ALPHABET) for _ in range(length))


async def get_account_by_phone(db: AsyncSession, phone: str, *, for_update: bool = False) -> Optional[Account]:
    stmt = sa.select(Account).where(Account.phone == phone)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    res = await db.execute(stmt)
    return res.scalar_one_or_none()


async def get_account_by_email(db: AsyncSession, email: str, *, for_update: bool = False) -> Optional[Account]:
    stmt = sa.select(Account).where(Account.email == email.strip().lower())
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    res = await db.execute(stmt)
    return res.scalar_one_or_none()


async def _unused_value(db: AsyncSession, column, make) -> str:
    while True:
        candidate = make()
        res = await db.execute(sa.select(sa.func.count()).where(column == candidate))
        if res.scalar_one() == 0:
            return candidate


async def create_account(
    db: AsyncSession,
    *,
    phone: str,
    email: str,
    amount: Decimal = Decimal("0"),
    cap: Optional[Decimal] = None,
    plan_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Account:
    """
    Provision a subscriber with a unique PIN and referral code.
    The phone must already be E.164-normalized; the opening balance is held to `cap`.
    """
    now = now or datetime.now(timezone.utc)
    email = email.strip().lower()

    plan = None
    if plan_name:
        plan = lookup_plan(plan_name)
        if plan is None:
            raise InvalidPlan(f"Unknown plan: {plan_name}")

    existing = await db.execute(
        sa.select(Account.id).where(sa.or_(Account.phone == phone, Account.email == email))
    )
    if existing.first():
        raise AccountConflict()

    obj = Account(
        phone=phone,
        email=email,
        pin=await _unused_value(db, Account.pin, generate_pin),
        referral_code=await _unused_value(db, Account.referral_code, generate_referral_code),
        wallet_balance=amount if cap is None else min(amount, cap),
        total_minutes_used=Decimal("0"),
        created_at=now,
    )
    obj.plans = []
    if plan:
        name, spec = plan
        obj.plans.append(Plan(
            name=name,
            minutes_granted=Decimal(spec.minutes),
            minutes_remaining=Decimal(spec.minutes),
            purchased_at=now,
            expires_at=spec.expiry_from(now),
        ))
    db.add(obj)

    try:
        await db.commit()
    except IntegrityError:
        # concurrent create on the same phone/email (or a PIN collision race)
        await db.rollback()
        raise AccountConflict()
    await db.refresh(obj, attribute_names=["plans"])
    return obj


async def top_up(db: AsyncSession, *, email: str, amount: Decimal, cap: Decimal) -> Account:
    """Credit the wallet under a row lock; the balance never exceeds `cap`."""
    obj = await get_account_by_email(db, email, for_update=True)
    if not obj:
        await db.rollback()
        raise AccountNotFound()

    obj.wallet_balance = min(obj.wallet_balance + amount, cap)
    await db.commit()
    return obj


async def grant_plan(db: AsyncSession, *, email: str, plan_name: str,
                     now: Optional[datetime] = None) -> tuple[Account, Plan]:
    """Append a fresh plan grant; earlier grants are kept for the audit trail."""
    now = now or datetime.now(timezone.utc)
    found = lookup_plan(plan_name)
    if found is None:
        raise InvalidPlan(f"Unknown plan: {plan_name}")
    name, spec = found

    obj = await get_account_by_email(db, email, for_update=True)
    if not obj:
        await db.rollback()
        raise AccountNotFound()

    plan = Plan(
        account_id=obj.id,
        name=name,
        minutes_granted=Decimal(spec.minutes),
        minutes_remaining=Decimal(spec.minutes),
        purchased_at=now,
        expires_at=spec.expiry_from(now),
    )
    db.add(plan)
    await db.commit()
    await db.refresh(obj, attribute_names=["plans"])
    return obj, plan


async def list_accounts(
    db: AsyncSession, *, limit: int = 100, offset: int = 0
) -> Sequence[Account]:
    stmt = sa.select(Account).order_by(Account.id.desc()).offset(offset).limit(limit)
    res = await db.execute(stmt)
    return res.scalars().all()
