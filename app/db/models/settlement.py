# app/db/models/settlement.py

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.session import Base
from app.db.models.account import Amount


class Settlement(Base):
    """One row per billed call leg; the unique leg_id is the dedup key."""

    __tablename__ = "settlements"
    __table_args__ = (
        sa.Index("ix_settlements_settled_at", "settled_at"),
    )

    id: Mapped[int] = mapped_column(sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True)
    leg_id: Mapped[str] = mapped_column(sa.String(128), nullable=False, unique=True)
    account_id: Mapped[int] = mapped_column(sa.BigInteger, sa.ForeignKey("accounts.id"), nullable=False)

    duration_seconds: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    minutes_billed: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    plan_minutes_used: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    wallet_debit: Mapped[Decimal] = mapped_column(Amount, nullable=False)

    settled_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
