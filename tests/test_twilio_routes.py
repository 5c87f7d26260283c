#!/usr/bin/env python3
"""
Twilio webhook tests: TwiML responses for each step of a call, settlement
through the dial-status callback, and signature validation.
"""

import pytest
import sys
import os
import re
from decimal import Decimal
from unittest.mock import AsyncMock

# Add app to Python path for testing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from twilio.request_validator import RequestValidator

from app.core.config import settings
from app.db.models.account import Account
from app.db.models.settlement import Settlement
from app.services.billing import BillingEngine
from conftest import CALLER, PIN, last_otp


def _dial_action(xml: str) -> str:
    match = re.search(r'<Dial[^>]*action="([^"]+)"', xml)
    assert match, xml
    return match.group(1)


async def _connect(client, notifier, destination="014165550199"):
    await client.post("/twilio/voice", data={"From": CALLER, "CallSid": "CA-parent"})
    await client.post("/twilio/voice/collect", data={"From": CALLER, "Digits": PIN})
    await client.post("/twilio/voice/collect", data={"From": CALLER, "Digits": last_otp(notifier)})
    return await client.post("/twilio/voice/collect", data={"From": CALLER, "Digits": destination})


class TestVoiceWebhooks:

    @pytest.mark.asyncio
    async def test_unregistered_caller(self, client):
        r = await client.post("/twilio/voice", data={"From": "+19995550000", "CallSid": "CA1"})

        assert r.status_code == 200
        assert "xml" in r.headers["content-type"]
        assert "You are not registered." in r.text
        assert "<Hangup" in r.text

    @pytest.mark.asyncio
    async def test_call_start_gathers_pin(self, client, make_account):
        await make_account()
        r = await client.post("/twilio/voice", data={"From": CALLER, "CallSid": "CA1"})

        assert r.status_code == 200
        assert "<Gather" in r.text
        assert 'numDigits="6"' in r.text
        assert 'action="/twilio/voice/collect"' in r.text
        assert "Welcome. Enter your 6 digit PIN." in r.text
        assert "<Redirect" in r.text

    @pytest.mark.asyncio
    async def test_caller_id_is_normalized(self, client, make_account, store):
        await make_account()
        await client.post("/twilio/voice", data={"From": "(416) 555-1234", "CallSid": "CA1"})
        assert await store.load_call(CALLER) is not None

    @pytest.mark.asyncio
    async def test_full_call_to_dial(self, client, notifier, make_account):
        await make_account(wallet="5", plans=[("DAILY_2", 45, 1)])

        r = await _connect(client, notifier)

        assert r.status_code == 200
        assert "Connecting your call." in r.text
        assert "<Number>+14165550199</Number>" in r.text
        assert 'timeLimit="5700"' in r.text
        assert 'callerId="+15551234567"' in r.text
        assert _dial_action(r.text).startswith("/twilio/voice/dial-status?leg=")

    @pytest.mark.asyncio
    async def test_collect_without_session(self, client):
        r = await client.post("/twilio/voice/collect", data={"From": CALLER, "Digits": "123456"})
        assert "Session expired." in r.text


class TestDialStatus:

    @pytest.mark.asyncio
    async def test_completed_call_is_billed_once(self, client, notifier, store, session_factory, make_account):
        account_id = await make_account(wallet="5", plans=[("DAILY_2", 45, 1)])
        r = await _connect(client, notifier)
        action = _dial_action(r.text)
        form = {"From": CALLER, "DialCallSid": "CA-child", "DialCallStatus": "completed",
                "DialCallDuration": "3000"}

        first = await client.post(action, data=form)
        second = await client.post(action, data=form)

        assert first.status_code == 200 and "<Hangup" in first.text
        assert second.status_code == 200
        assert await store.load_call(CALLER) is None

        async with session_factory() as s:
            account = await s.get(Account, account_id)
            assert account.plans[0].minutes_remaining == 0
            assert account.wallet_balance == Decimal("4.50")
            legs = (await s.scalars(sa.select(Settlement.leg_id))).all()
        assert legs == ["CA-child"]

    @pytest.mark.asyncio
    async def test_minted_leg_used_when_carrier_omits_sid(self, client, notifier, session_factory, make_account):
        await make_account(plans=[("DAILY_2", 45, 1)])
        r = await _connect(client, notifier)

        await client.post(_dial_action(r.text), data={
            "From": CALLER, "DialCallStatus": "completed", "DialCallDuration": "60",
        })

        async with session_factory() as s:
            leg = await s.scalar(sa.select(Settlement.leg_id))
        assert leg.startswith(f"{CALLER}:")

    @pytest.mark.asyncio
    async def test_database_outage_asks_for_redelivery(self, client, notifier, store, make_account):
        from app.main import app
        from app.api.routes.twilio import get_billing_engine

        await make_account(plans=[("DAILY_2", 45, 1)])
        r = await _connect(client, notifier)

        broken = BillingEngine(rate=Decimal("0.10"), notifier=notifier, max_retries=0)
        broken.settle = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("down")))
        app.dependency_overrides[get_billing_engine] = lambda: broken

        resp = await client.post(_dial_action(r.text), data={
            "From": CALLER, "DialCallSid": "CA-child", "DialCallStatus": "completed",
            "DialCallDuration": "60",
        })

        assert resp.status_code == 503
        assert await store.load_call(CALLER) is None


class TestSignatureValidation:

    URL = "http://testserver/twilio/voice"

    @pytest.fixture
    def enforced(self, monkeypatch):
        monkeypatch.setattr(settings, "APP_ENV", "production")
        monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "twilio_secret")

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client, enforced):
        r = await client.post("/twilio/voice", data={"From": CALLER, "CallSid": "CA1"})

        assert r.status_code == 403
        assert "<Reject" in r.text

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, client, enforced):
        params = {"From": "+19995550000", "CallSid": "CA1"}
        signature = RequestValidator("twilio_secret").compute_signature(self.URL, params)

        r = await client.post("/twilio/voice", data=params, headers={"X-Twilio-Signature": signature})

        assert r.status_code == 200
        assert "You are not registered." in r.text

    @pytest.mark.asyncio
    async def test_admin_routes_not_signature_checked(self, client, enforced):
        r = await client.get("/admin/accounts", headers={"X-Admin-Key": "test_admin_key"})
        assert r.status_code == 200
