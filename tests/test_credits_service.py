"""Credit ledger: bonus, daily top-up, consumption, unlimited plans and admin overrides."""

import asyncio
from datetime import datetime, timedelta

import pytest

from fulfillment.core.exceptions import InsufficientCreditsError, ValidationError
from fulfillment.models.audit_log import AuditLog
from fulfillment.models.credit_account import CreditAccount
from fulfillment.models.outbox_item import OutboxItem
from fulfillment.services import credits as credits_service

pytestmark = pytest.mark.asyncio


async def _set(uid: str, **fields):
    await CreditAccount.get_motor_collection().update_one({"uid": uid}, {"$set": fields})


async def test_first_read_grants_bonus():
    account = await credits_service.get_account("new-user")
    assert account.credits == 3
    assert account.last_payment_ref == "INIT_BONUS"
    item = await OutboxItem.find_one(OutboxItem.doc_id == "new-user")
    assert item.operation == "create"
    assert item.collection == "users"


async def test_daily_reset_tops_up_to_floor():
    await credits_service.get_account("u1")
    await _set("u1", credits=1, last_daily_reset=datetime.utcnow() - timedelta(days=1))
    account = await credits_service.get_account("u1")
    assert account.credits == 3
    assert account.last_daily_reset.date() == datetime.utcnow().date()


async def test_daily_reset_keeps_purchased_credits():
    await credits_service.get_account("u1")
    await _set("u1", credits=25, last_daily_reset=datetime.utcnow() - timedelta(days=2))
    account = await credits_service.get_account("u1")
    assert account.credits == 25
    assert account.last_daily_reset.date() == datetime.utcnow().date()


async def test_no_reset_within_same_day():
    await credits_service.get_account("u1")
    await _set("u1", credits=0)
    assert (await credits_service.get_account("u1")).credits == 0


async def test_consume_decrements():
    await credits_service.get_account("u1")
    assert await credits_service.consume_one("u1") == 2
    assert await credits_service.consume_one("u1") == 1


async def test_consume_with_empty_balance_fails():
    await credits_service.get_account("u1")
    await _set("u1", credits=0, last_daily_reset=datetime.utcnow())
    with pytest.raises(InsufficientCreditsError):
        await credits_service.consume_one("u1")
    assert (await credits_service.get_balance("u1"))["credits"] == 0


async def test_concurrent_consume_never_overdraws():
    await credits_service.get_account("u1")
    results = await asyncio.gather(
        *[credits_service.consume_one("u1") for _ in range(5)], return_exceptions=True
    )
    failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(failures) == 2
    assert (await credits_service.get_balance("u1"))["credits"] == 0


async def test_fulfillment_creates_account_at_zero_plus_plan():
    account = await credits_service.apply_fulfillment("buyer", "pro", "txn_1")
    assert account.credits == 19
    assert account.last_payment_ref == "txn_1"


async def test_fulfillment_adds_to_existing_balance():
    await credits_service.get_account("u1")
    account = await credits_service.apply_fulfillment("u1", "starter", "txn_2")
    assert account.credits == 6


async def test_unlimited_plan_consumption_does_not_decrement():
    account = await credits_service.apply_fulfillment("u1", "unlimited", "txn_3")
    assert account.is_unlimited()
    assert account.credits == 0
    assert await credits_service.consume_one("u1") == credits_service.UNLIMITED_BALANCE
    assert (await credits_service.get_balance("u1"))["credits"] == 0


async def test_expired_unlimited_falls_back_to_credits():
    await credits_service.get_account("u1")
    await _set("u1", unlimited_expires_at=datetime.utcnow() - timedelta(minutes=1))
    balance = await credits_service.get_balance("u1")
    assert balance["is_unlimited"] is False
    assert await credits_service.consume_one("u1") == 2


async def test_admin_set_overwrites_balance():
    await credits_service.get_account("u1")
    account = await credits_service.admin_set_absolute("u1", 40, False, actor="admin")
    assert account.credits == 40
    assert account.unlimited_expires_at is None
    assert account.last_payment_ref == "ADMIN_MANUAL"
    audit = await AuditLog.find_one(AuditLog.event_type == "credits_set")
    assert audit.entity_id == "u1"
    assert audit.actor == "admin"


async def test_admin_set_unlimited_grants_thirty_days():
    account = await credits_service.admin_set_absolute("u2", 0, True)
    assert account.is_unlimited()
    remaining = account.unlimited_expires_at - datetime.utcnow()
    assert timedelta(days=29) < remaining <= timedelta(days=30)


async def test_admin_set_rejects_negative():
    with pytest.raises(ValidationError):
        await credits_service.admin_set_absolute("u1", -1, False)


async def test_blank_uid_rejected():
    with pytest.raises(ValidationError):
        await credits_service.get_account("")


async def test_account_created_concurrently_by_fulfillment(monkeypatch):
    # the purchase upsert lands between the existence check and the bonus insert
    await credits_service.apply_fulfillment("u1", "pro", "txn_race")
    real_find = credits_service._find
    misses = []

    async def racing_find(uid):
        if len(misses) < 2:
            misses.append(uid)
            return None
        return await real_find(uid)

    monkeypatch.setattr(credits_service, "_find", racing_find)
    account = await credits_service.get_account("u1")
    assert account.credits == 19
    assert account.last_payment_ref == "txn_race"
    assert await CreditAccount.find(CreditAccount.uid == "u1").count() == 1
