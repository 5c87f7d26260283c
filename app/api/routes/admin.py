# app/api/routes/admin.py
from __future__ import annotations
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import require_admin_key
from app.core.config import settings
from app.core.logging import get_logger, mask_phone
from app.crud.account import create_account, grant_plan, list_accounts, top_up
from app.db.models.account import Account
from app.db.session import get_session
from app.schemas.account import (
    AccountCreate,
    AccountCreated,
    AccountOut,
    PlanGrantOut,
    PlanGrantRequest,
    PlanOut,
    TopUpOut,
    TopUpRequest,
)
from app.services.notifications import Notifier, get_notifier

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])

logger = get_logger(__name__)


def _account_out(account: Account, model=AccountOut, **extra):
    now = datetime.now(timezone.utc)
    return model.model_validate({
        **{c: getattr(account, c) for c in (
            "id", "phone", "email", "referral_code", "wallet_balance",
            "total_minutes_used", "created_at",
        )},
        "active_plan_minutes": account.active_minutes(now),
        "plans": [PlanOut.model_validate(p) for p in account.plans],
        **extra,
    })


@router.post("/accounts", response_model=AccountCreated, status_code=status.HTTP_201_CREATED)
async def create_account_ep(
    payload: AccountCreate,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    account = await create_account(
        db,
        phone=payload.phone,
        email=payload.email,
        amount=payload.amount,
        cap=settings.WALLET_CAP,
        plan_name=payload.plan,
    )
    logger.info("account_created", account_id=account.id, phone=mask_phone(account.phone))

    out = _account_out(account, AccountCreated, pin=account.pin)
    await notifier.dispatch(account.email, "Account Created", {
        "title": "Account Created",
        "message": "Your calling account is ready.",
        "pin": account.pin,
        "balance": f"{account.wallet_balance:.2f}",
        "plan": account.plans[0].name if account.plans else "Wallet Only",
        "plan_minutes": f"{out.active_plan_minutes:.0f}",
        "referral_code": account.referral_code,
    })
    return out


@router.post("/topup", response_model=TopUpOut)
async def topup_ep(
    payload: TopUpRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    account = await top_up(db, email=payload.email, amount=payload.amount, cap=settings.WALLET_CAP)
    logger.info("wallet_topped_up", account_id=account.id, amount=str(payload.amount))

    await notifier.dispatch(account.email, "Wallet Top-up", {
        "title": "Wallet Top-up",
        "message": f"Your account has been topped up by ${payload.amount:.2f}. "
                   f"Current balance: ${account.wallet_balance:.2f}.",
    })
    return TopUpOut(balance=account.wallet_balance)


@router.post("/plans", response_model=PlanGrantOut)
async def grant_plan_ep(
    payload: PlanGrantRequest,
    db: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    account, plan = await grant_plan(db, email=payload.email, plan_name=payload.plan)
    active = account.active_minutes(datetime.now(timezone.utc))
    logger.info("plan_granted", account_id=account.id, plan=plan.name)

    await notifier.dispatch(account.email, "Plan Activated", {
        "title": "Plan Activated",
        "message": f"Your plan {plan.name} is now active.",
        "minutes": f"{plan.minutes_granted:.0f}",
        "expires": plan.expires_at.isoformat(),
    })
    return PlanGrantOut(plan=PlanOut.model_validate(plan), active_plan_minutes=active)


@router.get("/accounts", response_model=list[AccountOut])
async def list_accounts_ep(limit: int = 100, offset: int = 0, db: AsyncSession = Depends(get_session)):
    return [_account_out(a) for a in await list_accounts(db, limit=limit, offset=offset)]
