# app/core/plans.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal


@dataclass(frozen=True)
class PlanSpec:
    price: Decimal
    minutes: int
    days: int

    def expiry_from(self, start: datetime) -> datetime:
        return start + timedelta(days=self.days)


PLANS: dict[str, PlanSpec] = {
    "DAILY_1": PlanSpec(price=Decimal("1"), minutes=20, days=1),
    "DAILY_2": PlanSpec(price=Decimal("2"), minutes=45, days=1),
    "WEEKLY_5": PlanSpec(price=Decimal("5"), minutes=110, days=7),
    "WEEKLY_10": PlanSpec(price=Decimal("10"), minutes=240, days=7),
    "MONTHLY_20": PlanSpec(price=Decimal("20"), minutes=500, days=30),
    "MONTHLY_35": PlanSpec(price=Decimal("35"), minutes=950, days=30),
    "MONTHLY_50": PlanSpec(price=Decimal("50"), minutes=1500, days=30),
    "STUDENT": PlanSpec(price=Decimal("10"), minutes=250, days=30),
}


def lookup_plan(name: str | None) -> tuple[str, PlanSpec] | None:
    """Case-insensitive catalog lookup; returns (canonical_name, spec)."""
    if not name:
        return None
    key = name.strip().upper()
    spec = PLANS.get(key)
    return (key, spec) if spec else None
