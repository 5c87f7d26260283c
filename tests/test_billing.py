#!/usr/bin/env python3
"""
Billing engine tests: plan-before-wallet allocation, expiry ordering,
idempotent settlement per leg and the retry/reconciliation path.
"""

import pytest
import sys
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

# Add app to Python path for testing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError

from app.core.errors import ErrorSeverity
from app.db.models.account import Account, Plan
from app.db.models.settlement import Settlement
from app.services.billing import (
    BillingEngine,
    SettlementStatus,
    allocate_usage,
    available_seconds,
    purge_settlements,
    seconds_to_minutes,
)
from app.services.notifications import LogNotifier
from conftest import CALLER

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
RATE = Decimal("0.10")


def _plan(minutes, days, name="P"):
    return Plan(
        name=name,
        minutes_granted=Decimal(minutes),
        minutes_remaining=Decimal(minutes),
        purchased_at=NOW,
        expires_at=NOW + timedelta(days=days),
    )


def _account(wallet="0", plans=()):
    account = Account(
        phone=CALLER,
        email="caller@example.com",
        pin="123456",
        referral_code="ABC123",
        wallet_balance=Decimal(wallet),
        total_minutes_used=Decimal("0"),
        created_at=NOW,
    )
    account.plans = list(plans)
    return account


class TestAllocation:
    """Pure allocation of talk time to plans and wallet"""

    @pytest.mark.unit
    def test_usage_within_first_plan(self):
        soon, later = _plan(100, 1), _plan(100, 7)
        alloc = allocate_usage([soon, later], Decimal("5"), Decimal("30"), RATE, NOW)

        assert [(d.plan, d.minutes) for d in alloc.draws] == [(soon, Decimal("30"))]
        assert alloc.wallet_debit == 0
        # pure: nothing mutated yet
        assert soon.minutes_remaining == Decimal("100")

    @pytest.mark.unit
    def test_usage_spills_into_second_plan(self):
        soon, later = _plan(100, 1), _plan(100, 7)
        alloc = allocate_usage([soon, later], Decimal("5"), Decimal("150"), RATE, NOW)

        assert [d.minutes for d in alloc.draws] == [Decimal("100"), Decimal("50")]
        assert alloc.plan_minutes_used == Decimal("150")
        assert alloc.wallet_debit == 0

    @pytest.mark.unit
    def test_plans_drained_by_expiry_not_list_order(self):
        later, soon = _plan(100, 30, "LATER"), _plan(100, 1, "SOON")
        alloc = allocate_usage([later, soon], Decimal("0"), Decimal("40"), RATE, NOW)

        assert alloc.draws[0].plan is soon
        assert len(alloc.draws) == 1

    @pytest.mark.unit
    def test_overflow_charges_wallet_and_floors_at_zero(self):
        alloc = allocate_usage([_plan(100, 1), _plan(100, 7)], Decimal("3"), Decimal("250"), RATE, NOW)

        assert alloc.wallet_minutes == Decimal("50")
        assert alloc.wallet_charge == Decimal("5.0000")
        assert alloc.wallet_debit == Decimal("3")
        assert alloc.uncollected == Decimal("2.0000")

    @pytest.mark.unit
    def test_expired_plan_is_skipped(self):
        expired = _plan(100, -1)
        alloc = allocate_usage([expired], Decimal("10"), Decimal("10"), RATE, NOW)

        assert alloc.draws == []
        assert alloc.wallet_debit == Decimal("1.0000")

    @pytest.mark.unit
    def test_zero_rate_makes_overflow_free(self):
        alloc = allocate_usage([], Decimal("10"), Decimal("10"), Decimal("0"), NOW)
        assert alloc.wallet_minutes == Decimal("10")
        assert alloc.wallet_debit == 0

    @pytest.mark.unit
    def test_seconds_to_minutes_rounds_to_four_places(self):
        assert seconds_to_minutes(90) == Decimal("1.5000")
        assert seconds_to_minutes(100) == Decimal("1.6667")


class TestAvailableSeconds:

    @pytest.mark.unit
    def test_plans_plus_wallet(self):
        account = _account(wallet="5", plans=[_plan(45, 1)])
        # 45 plan minutes + 50 wallet minutes
        assert available_seconds(account, RATE, NOW) == 95 * 60

    @pytest.mark.unit
    def test_expired_plans_do_not_count(self):
        account = _account(wallet="0", plans=[_plan(45, -1)])
        assert available_seconds(account, RATE, NOW) == 0

    @pytest.mark.unit
    def test_zero_rate_ignores_wallet(self):
        account = _account(wallet="5", plans=[_plan(10, 1)])
        assert available_seconds(account, Decimal("0"), NOW) == 600

    @pytest.mark.unit
    def test_fractional_seconds_are_floored(self):
        account = _account(wallet="0.01", plans=[])
        # $0.01 at $0.10/min buys 6 seconds
        assert available_seconds(account, RATE, NOW) == 6


class TestSettlement:
    """Settlement against the database"""

    async def _reload(self, session_factory, account_id):
        async with session_factory() as s:
            account = await s.get(Account, account_id)
            await s.refresh(account, attribute_names=["plans"])
            return account

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_worked_example_plan_then_wallet(self, db, session_factory, make_account, billing, notifier):
        account_id = await make_account(wallet="5.00", plans=[("DAILY_2", 45, 1)])

        result = await billing.settle(db, caller_phone=CALLER, leg_id="CA-leg-1",
                                      duration_seconds=50 * 60, carrier_status="completed")

        assert result.status == SettlementStatus.SETTLED
        assert result.plan_minutes_used == Decimal("45")
        assert result.wallet_debit == Decimal("0.5000")

        account = await self._reload(session_factory, account_id)
        assert account.plans[0].minutes_remaining == 0
        assert account.wallet_balance == Decimal("4.50")
        assert account.total_minutes_used == Decimal("50")

        summaries = [s for s in notifier.sent if s[1] == "Call Summary"]
        assert len(summaries) == 1
        assert summaries[0][0] == "caller@example.com"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_same_leg_is_billed_once(self, db, session_factory, make_account, billing):
        account_id = await make_account(wallet="0", plans=[("WEEKLY_5", 110, 7)])

        first = await billing.settle(db, caller_phone=CALLER, leg_id="CA-dup",
                                     duration_seconds=600, carrier_status="completed")
        second = await billing.settle(db, caller_phone=CALLER, leg_id="CA-dup",
                                      duration_seconds=600, carrier_status="completed")

        assert first.status == SettlementStatus.SETTLED
        assert second.status == SettlementStatus.DUPLICATE

        account = await self._reload(session_factory, account_id)
        assert account.plans[0].minutes_remaining == Decimal("100")
        assert account.total_minutes_used == Decimal("10")

        async with session_factory() as s:
            count = await s.scalar(sa.select(sa.func.count()).select_from(Settlement))
        assert count == 1

    @pytest.mark.asyncio
    @pytest.mark.integration
    @pytest.mark.parametrize("status,duration", [
        ("busy", 0),
        ("no-answer", 0),
        ("failed", 30),
        ("completed", 0),
    ])
    async def test_unbilled_outcomes_change_nothing(self, db, session_factory, make_account, billing,
                                                    status, duration):
        account_id = await make_account(wallet="5", plans=[("DAILY_1", 20, 1)])

        result = await billing.settle(db, caller_phone=CALLER, leg_id="CA-skip",
                                      duration_seconds=duration, carrier_status=status)

        assert result.status == SettlementStatus.SKIPPED
        account = await self._reload(session_factory, account_id)
        assert account.wallet_balance == Decimal("5")
        assert account.plans[0].minutes_remaining == Decimal("20")

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_expired_plan_left_untouched(self, db, session_factory, make_account, billing):
        account_id = await make_account(wallet="10", plans=[("DAILY_1", 20, -1)])

        await billing.settle(db, caller_phone=CALLER, leg_id="CA-exp",
                             duration_seconds=600, carrier_status="completed")

        account = await self._reload(session_factory, account_id)
        assert account.plans[0].minutes_remaining == Decimal("20")
        assert account.wallet_balance == Decimal("9")

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_wallet_never_goes_negative(self, db, session_factory, make_account, billing):
        account_id = await make_account(wallet="0.20", plans=[])

        result = await billing.settle(db, caller_phone=CALLER, leg_id="CA-short",
                                      duration_seconds=30 * 60, carrier_status="completed")

        assert result.wallet_debit == Decimal("0.20")
        account = await self._reload(session_factory, account_id)
        assert account.wallet_balance == 0

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unknown_caller_is_acknowledged(self, db, billing):
        result = await billing.settle(db, caller_phone="+19995550000", leg_id="CA-ghost",
                                      duration_seconds=60, carrier_status="completed")
        assert result.status == SettlementStatus.NO_ACCOUNT

    @pytest.mark.asyncio
    async def test_missing_leg_id_is_rejected(self, db, billing):
        with pytest.raises(ValueError):
            await billing.settle(db, caller_phone=CALLER, leg_id="",
                                 duration_seconds=60, carrier_status="completed")

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_purge_drops_old_records_only(self, db, session_factory, make_account, clock):
        account_id = await make_account()
        db.add_all([
            Settlement(leg_id="old", account_id=account_id, duration_seconds=60,
                       minutes_billed=Decimal("1"), plan_minutes_used=Decimal("0"),
                       wallet_debit=Decimal("0"), settled_at=clock() - timedelta(days=40)),
            Settlement(leg_id="new", account_id=account_id, duration_seconds=60,
                       minutes_billed=Decimal("1"), plan_minutes_used=Decimal("0"),
                       wallet_debit=Decimal("0"), settled_at=clock() - timedelta(days=1)),
        ])
        await db.commit()

        removed = await purge_settlements(db, older_than=clock() - timedelta(days=30))

        assert removed == 1
        async with session_factory() as s:
            legs = (await s.scalars(sa.select(Settlement.leg_id))).all()
        assert legs == ["new"]


class TestSettleWithRetry:

    def _engine(self, max_retries=2):
        return BillingEngine(rate=RATE, notifier=LogNotifier(), max_retries=max_retries)

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        engine = self._engine()
        ok = object()
        engine.settle = AsyncMock(side_effect=[OperationalError("UPDATE", {}, Exception("down")), ok])
        db = AsyncMock()

        with patch("app.services.billing.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await engine.settle_with_retry(db, caller_phone=CALLER, leg_id="CA-1",
                                                    duration_seconds=60, carrier_status="completed")

        assert result is ok
        assert engine.settle.await_count == 2
        sleep.assert_awaited_once_with(0.1)
        db.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_logged_for_reconciliation(self):
        engine = self._engine(max_retries=2)
        engine.settle = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("down")))
        db = AsyncMock()

        with patch("app.services.billing.asyncio.sleep", new=AsyncMock()) as sleep, \
             patch("app.services.billing.log_error") as log_error:
            with pytest.raises(OperationalError):
                await engine.settle_with_retry(db, caller_phone=CALLER, leg_id="CA-lost",
                                               duration_seconds=120, carrier_status="completed")

        assert engine.settle.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2]

        log_error.assert_called_once()
        _, context, severity = log_error.call_args.args
        assert severity == ErrorSeverity.CRITICAL
        assert context["alert"] == "settlement_unreconciled"
        assert context["leg_id"] == "CA-lost"
        assert context["duration_seconds"] == 120
