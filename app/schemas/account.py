# app/schemas/account.py
from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.core.config import settings
from app.services.phone_numbers import normalize_e164


class AccountCreate(BaseModel):
    phone: str = Field(..., description="Caller ID the account dials in from")
    email: EmailStr
    amount: Decimal = Field(default=Decimal("0"), ge=0, description="Initial wallet balance")
    plan: Optional[str] = Field(default=None, description="Optional plan to grant on creation")

    @field_validator("phone")
    @classmethod
    def _e164(cls, v: str) -> str:
        normalized = normalize_e164(v, settings.DEFAULT_REGION)
        if not normalized:
            raise ValueError("phone must be a valid phone number")
        return normalized

    @field_validator("email")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


class TopUpRequest(BaseModel):
    email: EmailStr
    amount: Decimal = Field(..., gt=0)


class PlanGrantRequest(BaseModel):
    email: EmailStr
    plan: str


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    minutes_granted: Decimal
    minutes_remaining: Decimal
    purchased_at: datetime
    expires_at: datetime


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone: str
    email: str
    referral_code: str
    wallet_balance: Decimal
    total_minutes_used: Decimal
    active_plan_minutes: Decimal = Decimal("0")
    plans: list[PlanOut] = Field(default_factory=list)
    created_at: datetime


class AccountCreated(AccountOut):
    pin: str


class TopUpOut(BaseModel):
    message: str = "Top-up successful"
    balance: Decimal


class PlanGrantOut(BaseModel):
    message: str = "Plan activated"
    plan: PlanOut
    active_plan_minutes: Decimal
