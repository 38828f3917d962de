"""Credit ledger: per-user balances, daily free credits and plan fulfillment."""

from datetime import datetime, timedelta
from typing import Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from fulfillment.core.audit import log_event
from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import InsufficientCreditsError, NotFoundError, ValidationError
from fulfillment.core.locks import KeyedLock
from fulfillment.core.logging import get_logger
from fulfillment.models.credit_account import CreditAccount
from fulfillment.services import outbox
from fulfillment.services.plans import get_plan

log = get_logger(__name__)

# Reported by consume_one while an unlimited plan is active.
UNLIMITED_BALANCE = 9999

INIT_BONUS_REF = "INIT_BONUS"
ADMIN_REF = "ADMIN_MANUAL"

_account_locks = KeyedLock()


def _collection():
    return CreditAccount.get_motor_collection()


def _from_raw(raw: dict[str, Any]) -> CreditAccount:
    return CreditAccount(**{k: v for k, v in raw.items() if k in CreditAccount.model_fields and k != "id"})


async def _enqueue_account(account: CreditAccount, operation: str = "update") -> None:
    await outbox.enqueue(get_settings().remote_users_collection, account.uid, operation, account.to_remote())


async def _find(uid: str) -> CreditAccount | None:
    return await CreditAccount.find_one(CreditAccount.uid == uid)


async def _create_account(uid: str, now: datetime) -> CreditAccount:
    async with _account_locks.hold(uid):
        account = await _find(uid)
        if account:
            return account
        account = CreditAccount(
            uid=uid,
            credits=get_settings().first_time_bonus_credits,
            last_daily_reset=now,
            last_payment_ref=INIT_BONUS_REF,
            created_at=now,
            updated_at=now,
        )
        try:
            await account.insert()
        except DuplicateKeyError:
            # a fulfillment upsert created it first
            return await _find(uid)
    await _enqueue_account(account, "create")
    log.info("credit_account_created", uid=uid, credits=account.credits)
    return account


async def _apply_daily_reset(account: CreditAccount, now: datetime) -> CreditAccount:
    """
    New day: top up to the daily floor if below it, otherwise only advance the date.
    Both writes are conditional on the previously read reset date so a concurrent
    reset or fulfillment is never overwritten.
    """
    floor = get_settings().daily_free_credits
    guard = {"uid": account.uid, "last_daily_reset": account.last_daily_reset}
    res = await _collection().update_one(
        {**guard, "credits": {"$lt": floor}},
        {"$set": {"credits": floor, "last_daily_reset": now, "updated_at": now}},
    )
    topped_up = res.modified_count > 0
    if not topped_up:
        res = await _collection().update_one(guard, {"$set": {"last_daily_reset": now, "updated_at": now}})
    fresh = await _find(account.uid)
    if res.modified_count:
        await _enqueue_account(fresh)
        if topped_up:
            log.info("daily_reset", uid=account.uid, credits=fresh.credits)
    return fresh


def _needs_daily_reset(account: CreditAccount, now: datetime) -> bool:
    return account.last_daily_reset is None or account.last_daily_reset.date() != now.date()


async def get_account(uid: str) -> CreditAccount:
    """Return the account, creating it with the first-time bonus and applying the daily reset rule."""
    if not uid:
        raise ValidationError("uid is required")
    now = datetime.utcnow()
    account = await _find(uid)
    if account is None:
        return await _create_account(uid, now)
    if _needs_daily_reset(account, now):
        account = await _apply_daily_reset(account, now)
    return account


async def get_balance(uid: str) -> dict[str, Any]:
    account = await get_account(uid)
    return {
        "credits": account.credits,
        "is_unlimited": account.is_unlimited(),
        "unlimited_expires_at": account.unlimited_expires_at,
    }


async def apply_fulfillment(uid: str, plan_id: str, transaction_ref: str) -> CreditAccount:
    """
    Apply a purchased plan in a single atomic upsert.
    Not idempotent: callers must invoke it exactly once per completed transaction.
    """
    plan = get_plan(plan_id)
    now = datetime.utcnow()
    update: dict[str, Any] = {
        "$set": {"last_payment_ref": transaction_ref, "updated_at": now},
        "$setOnInsert": {"last_daily_reset": now, "created_at": now},
    }
    if plan.duration_days:
        update["$set"]["unlimited_expires_at"] = now + timedelta(days=plan.duration_days)
        update["$setOnInsert"]["credits"] = 0
    else:
        update["$inc"] = {"credits": plan.credits}
    raw = await _collection().find_one_and_update(
        {"uid": uid},
        update,
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    account = _from_raw(raw)
    await _enqueue_account(account)
    log.info(
        "credits_fulfilled",
        uid=uid,
        plan_id=plan_id,
        transaction_id=transaction_ref,
        credits=account.credits,
        unlimited_expires_at=account.unlimited_expires_at.isoformat() if account.unlimited_expires_at else None,
    )
    return account


async def consume_one(uid: str) -> int:
    """Spend one credit; returns the remaining balance (UNLIMITED_BALANCE on an active unlimited plan)."""
    account = await get_account(uid)
    now = datetime.utcnow()
    if account.is_unlimited(now):
        log.info("credit_consumed", uid=uid, unlimited=True)
        return UNLIMITED_BALANCE
    raw = await _collection().find_one_and_update(
        {"uid": uid, "credits": {"$gt": 0}},
        {"$inc": {"credits": -1}, "$set": {"updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if raw is None:
        raise InsufficientCreditsError()
    account = _from_raw(raw)
    await _enqueue_account(account)
    log.info("credit_consumed", uid=uid, remaining=account.credits)
    return account.credits


async def admin_set_absolute(uid: str, credits: int, unlimited: bool, actor: str | None = None) -> CreditAccount:
    """Administrative override: sets (not adds) the balance."""
    if credits is None or credits < 0:
        raise ValidationError("credits must be a non-negative integer")
    await get_account(uid)
    now = datetime.utcnow()
    expires = now + timedelta(days=get_settings().admin_unlimited_days) if unlimited else None
    raw = await _collection().find_one_and_update(
        {"uid": uid},
        {
            "$set": {
                "credits": credits,
                "unlimited_expires_at": expires,
                "last_payment_ref": ADMIN_REF,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if raw is None:
        raise NotFoundError("Credit account not found")
    account = _from_raw(raw)
    await _enqueue_account(account)
    await log_event(actor, "credits_set", "credit_account", uid, {"credits": credits, "unlimited": unlimited})
    log.info("credits_set_by_admin", uid=uid, credits=credits, unlimited=unlimited)
    return account


async def list_accounts(limit: int = 50, offset: int = 0) -> list[CreditAccount]:
    return await CreditAccount.find_all().sort("-credits").skip(offset).limit(limit).to_list()
