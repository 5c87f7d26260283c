# app/db/models/account.py

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base

# Four fractional digits for both money and minutes
Amount = sa.Numeric(14, 4)


def as_utc(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True)
    phone: Mapped[str] = mapped_column(sa.String(20), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False, unique=True)
    pin: Mapped[str] = mapped_column(sa.String(6), nullable=False, unique=True)
    referral_code: Mapped[str] = mapped_column(sa.String(12), nullable=False, unique=True)

    wallet_balance: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))
    total_minutes_used: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # Never deleted, only drained
    plans: Mapped[list["Plan"]] = relationship(
        back_populates="account",
        order_by="Plan.expires_at",
        lazy="selectin",
    )

    def active_plans(self, now: datetime) -> list["Plan"]:
        """Active plans, closest expiry first."""
        active = [p for p in self.plans if p.is_active(now)]
        return sorted(active, key=lambda p: as_utc(p.expires_at))

    def active_minutes(self, now: datetime) -> Decimal:
        return sum((p.minutes_remaining for p in self.active_plans(now)), Decimal("0"))


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (
        sa.CheckConstraint("minutes_remaining >= 0", name="ck_plans_minutes_remaining_nonneg"),
        sa.Index("ix_plans_account_id_expires_at", "account_id", "expires_at"),
    )

    id: Mapped[int] = mapped_column(sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(sa.BigInteger, sa.ForeignKey("accounts.id"), nullable=False)

    name: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    minutes_granted: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    minutes_remaining: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    purchased_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)

    account: Mapped[Account] = relationship(back_populates="plans")

    def is_active(self, now: datetime) -> bool:
        return as_utc(self.expires_at) > now
