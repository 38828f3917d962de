"""Transaction lifecycle: creation, webhook and verification transitions."""

import asyncio
from datetime import datetime, timedelta

import pytest

from fulfillment.core.exceptions import (
    DuplicateCodeError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from fulfillment.models.credit_account import CreditAccount
from fulfillment.models.outbox_item import OutboxItem
from fulfillment.models.transaction import Transaction, TransactionKind, TransactionStatus
from fulfillment.services import credits as credits_service
from fulfillment.services import transactions as transactions_service

pytestmark = pytest.mark.asyncio


async def _credits(uid: str) -> int:
    return (await credits_service.get_balance(uid))["credits"]


async def test_manual_code_verified_once():
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", phone="0712345678", code="ABCDEFGHIJ"
    )
    assert txn.status == TransactionStatus.MANUAL_VERIFYING
    before = await _credits("u1")

    done = await transactions_service.submit_verification(txn.id, True, {})
    assert done.status == TransactionStatus.COMPLETED
    assert done.verified_at is not None
    assert await _credits("u1") == before + 3

    with pytest.raises(InvalidStateError):
        await transactions_service.submit_verification(txn.id, True, {})
    assert await _credits("u1") == before + 3


async def test_manual_code_is_normalized():
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="  abcde12345 "
    )
    assert txn.code == "ABCDE12345"
    assert txn.phone == "MANUAL"
    assert txn.amount == 10


@pytest.mark.parametrize("code", ["", "SHORT", "ABCDEFGHIJK", "ABCDE-1234"])
async def test_manual_code_format_rejected(code):
    with pytest.raises(ValidationError):
        await transactions_service.create_transaction(TransactionKind.MANUAL, "u1", "starter", code=code)


async def test_unknown_plan_rejected():
    with pytest.raises(ValidationError):
        await transactions_service.create_transaction(
            TransactionKind.AUTOMATED, "u1", "platinum", phone="0712345678"
        )


async def test_automated_requires_phone():
    with pytest.raises(ValidationError):
        await transactions_service.create_transaction(TransactionKind.AUTOMATED, "u1", "starter")


async def test_rejected_verification_fails_without_credits():
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u3", "pro", code="ZZZZZZZZZ1"
    )
    failed = await transactions_service.submit_verification(txn.id, False, {"reason": "no sms"})
    assert failed.status == TransactionStatus.FAILED
    assert failed.failure_reason == "rejected by verifier"
    assert failed.verification_metadata == {"reason": "no sms"}
    assert await CreditAccount.find_one(CreditAccount.uid == "u3") is None


async def test_completed_code_cannot_be_resubmitted():
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="QWERTY1234"
    )
    await transactions_service.submit_verification(txn.id, True, {})
    with pytest.raises(DuplicateCodeError):
        await transactions_service.create_transaction(
            TransactionKind.MANUAL, "u2", "starter", code="qwerty1234"
        )


async def test_duplicate_code_fails_at_verification():
    first = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="DUPDUP1234"
    )
    second = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u2", "starter", code="DUPDUP1234"
    )
    await transactions_service.submit_verification(first.id, True, {})
    result = await transactions_service.submit_verification(second.id, True, {})
    assert result.status == TransactionStatus.FAILED
    assert result.failure_reason == "duplicate code"
    assert await CreditAccount.find_one(CreditAccount.uid == "u2") is None


async def test_webhook_success_is_idempotent():
    txn = await transactions_service.create_transaction(
        TransactionKind.AUTOMATED, "u4", "pro", phone="0700000000", transaction_id="ws_CO_1"
    )
    assert txn.status == TransactionStatus.PENDING
    assert txn.amount == 29

    done = await transactions_service.apply_webhook("ws_CO_1", "success")
    assert done.status == TransactionStatus.COMPLETED
    again = await transactions_service.apply_webhook("ws_CO_1", "success")
    assert again.status == TransactionStatus.COMPLETED

    account = await CreditAccount.find_one(CreditAccount.uid == "u4")
    assert account.credits == 19
    assert account.last_payment_ref == "ws_CO_1"


async def test_concurrent_webhooks_fulfil_once():
    await transactions_service.create_transaction(
        TransactionKind.AUTOMATED, "u5", "starter", phone="0700000000", transaction_id="ws_CO_2"
    )
    results = await asyncio.gather(
        *[transactions_service.apply_webhook("ws_CO_2", "success") for _ in range(5)]
    )
    assert all(r.status == TransactionStatus.COMPLETED for r in results)
    account = await CreditAccount.find_one(CreditAccount.uid == "u5")
    assert account.credits == 3


async def test_webhook_failure_then_success_is_rejected():
    await transactions_service.create_transaction(
        TransactionKind.AUTOMATED, "u6", "starter", phone="0700000000", transaction_id="ws_CO_3"
    )
    failed = await transactions_service.apply_webhook("ws_CO_3", "failure", "insufficient funds")
    assert failed.status == TransactionStatus.FAILED
    assert failed.failure_reason == "insufficient funds"
    with pytest.raises(InvalidTransitionError):
        await transactions_service.apply_webhook("ws_CO_3", "success")
    assert await CreditAccount.find_one(CreditAccount.uid == "u6") is None


async def test_webhook_unknown_transaction():
    with pytest.raises(NotFoundError):
        await transactions_service.apply_webhook("missing", "success")


async def test_webhook_does_not_touch_manual_transactions():
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="MANUAL0001"
    )
    with pytest.raises(InvalidTransitionError):
        await transactions_service.apply_webhook(txn.id, "success")


async def test_admin_entry_skips_ledger():
    txn = await transactions_service.create_transaction(
        TransactionKind.ADMIN_ENTERED, "u7", "pro", amount=50, campus_id="c1"
    )
    assert txn.status == TransactionStatus.COMPLETED
    assert txn.amount == 50
    assert txn.phone == "N/A"
    assert await CreditAccount.find_one(CreditAccount.uid == "u7") is None


async def test_mutations_are_queued_for_remote():
    txn = await transactions_service.create_transaction(
        TransactionKind.AUTOMATED, "u8", "starter", phone="0700000000", transaction_id="ws_CO_4"
    )
    await transactions_service.apply_webhook(txn.id, "success")
    items = await OutboxItem.find(OutboxItem.doc_id == "ws_CO_4").sort("+_id").to_list()
    assert [i.operation for i in items] == ["create", "update"]
    assert items[0].payload["type"] == "STK"
    assert items[0].payload["planId"] == "starter"
    assert items[1].payload["status"] == "COMPLETED"
    assert await OutboxItem.find(OutboxItem.doc_id == "u8").count() == 1


async def test_delete_transaction_queues_remote_delete():
    txn = await transactions_service.create_transaction(
        TransactionKind.ADMIN_ENTERED, "u9", "starter"
    )
    await transactions_service.delete_transaction(txn.id, actor="admin")
    with pytest.raises(NotFoundError):
        await transactions_service.get_transaction(txn.id)
    last = await OutboxItem.find(OutboxItem.doc_id == txn.id).sort("-_id").first_or_none()
    assert last.operation == "delete"


async def test_stats():
    a = await transactions_service.create_transaction(TransactionKind.MANUAL, "u1", "starter", code="STATS00001")
    await transactions_service.create_transaction(TransactionKind.MANUAL, "u1", "pro", code="STATS00002")
    b = await transactions_service.create_transaction(TransactionKind.MANUAL, "u1", "pro", code="STATS00003")
    await transactions_service.submit_verification(a.id, True, {})
    await transactions_service.submit_verification(b.id, False, {})

    stats = await transactions_service.get_stats()
    assert stats["verified"] == 1
    assert stats["revenue"] == 10
    assert stats["rejected"] == 1
    assert stats["pending"] == 1
    assert len(stats["recent_transactions"]) == 3


async def test_status_is_claimed_before_credits_are_granted(monkeypatch):
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="CLAIM00001"
    )
    before = await _credits("u1")
    real_fulfil = credits_service.apply_fulfillment
    sweep_hits = []

    async def fulfil_while_sweeper_runs(uid, plan_id, ref):
        # a sweeper in another process tries to time the record out mid-completion
        res = await Transaction.get_motor_collection().update_one(
            {"_id": txn.id, "status": "MANUAL_VERIFYING"},
            {"$set": {"status": "FAILED", "failure_reason": "timeout"}},
        )
        sweep_hits.append(res.modified_count)
        return await real_fulfil(uid, plan_id, ref)

    monkeypatch.setattr(credits_service, "apply_fulfillment", fulfil_while_sweeper_runs)
    done = await transactions_service.submit_verification(txn.id, True, {})

    assert sweep_hits == [0]
    assert done.status == TransactionStatus.COMPLETED
    assert done.failure_reason is None
    assert await _credits("u1") == before + 3


async def test_claim_lost_to_another_process_grants_nothing(monkeypatch):
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u2", "starter", code="CLAIM00002"
    )
    real_get = transactions_service.get_transaction
    calls = []

    async def stale_read(transaction_id):
        found = await real_get(transaction_id)
        if not calls:
            # the record times out in another process right after this read
            await Transaction.get_motor_collection().update_one(
                {"_id": transaction_id}, {"$set": {"status": "FAILED", "failure_reason": "timeout"}}
            )
        calls.append(transaction_id)
        return found

    monkeypatch.setattr(transactions_service, "get_transaction", stale_read)
    with pytest.raises(InvalidTransitionError):
        await transactions_service.submit_verification(txn.id, True, {})

    assert (await Transaction.get(txn.id)).status == TransactionStatus.FAILED
    assert await CreditAccount.find_one(CreditAccount.uid == "u2") is None


async def test_failed_fulfillment_releases_the_claim(monkeypatch):
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u3", "starter", code="CLAIM00003"
    )
    real_fulfil = credits_service.apply_fulfillment

    async def broken(uid, plan_id, ref):
        raise RuntimeError("mongo unavailable")

    monkeypatch.setattr(credits_service, "apply_fulfillment", broken)
    with pytest.raises(RuntimeError):
        await transactions_service.submit_verification(txn.id, True, {"sms": "ok"})

    reverted = await Transaction.get(txn.id)
    assert reverted.status == TransactionStatus.MANUAL_VERIFYING
    assert reverted.verified_at is None
    assert reverted.verification_metadata is None
    assert await OutboxItem.find(OutboxItem.doc_id == txn.id).count() == 1

    monkeypatch.setattr(credits_service, "apply_fulfillment", real_fulfil)
    done = await transactions_service.submit_verification(txn.id, True, {"sms": "ok"})
    assert done.status == TransactionStatus.COMPLETED
    assert (await CreditAccount.find_one(CreditAccount.uid == "u3")).credits == 3


async def test_find_by_code_returns_newest():
    first = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="REUSED0001"
    )
    await transactions_service.submit_verification(first.id, False, {})
    await Transaction.get_motor_collection().update_one(
        {"_id": first.id}, {"$set": {"created_at": datetime.utcnow() - timedelta(minutes=5)}}
    )
    second = await transactions_service.create_transaction(
        TransactionKind.MANUAL, "u1", "starter", code="REUSED0001"
    )
    await transactions_service.submit_verification(second.id, True, {})

    found = await transactions_service.find_by_code(" reused0001 ")
    assert found.id == second.id
    assert found.status == TransactionStatus.COMPLETED
    assert await transactions_service.find_by_code("NOSUCH0000") is None
    assert await transactions_service.find_by_code("") is None


async def test_expire_never_touches_terminal_records():
    txn = await transactions_service.create_transaction(TransactionKind.ADMIN_ENTERED, "u1", "starter")
    assert txn.status.is_terminal
    assert await transactions_service.expire_transaction(txn.id, TransactionStatus.COMPLETED) is False
    assert (await Transaction.get(txn.id)).status == TransactionStatus.COMPLETED
