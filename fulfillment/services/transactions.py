"""
Transaction store and lifecycle state machine.

    PENDING          --success-->  COMPLETED
    PENDING          --failure-->  FAILED
    PENDING          --timeout-->  FAILED   (sweeper)
    MANUAL_VERIFYING --valid---->  COMPLETED
    MANUAL_VERIFYING --invalid-->  FAILED
    MANUAL_VERIFYING --timeout-->  FAILED   (sweeper)

Every check-then-act runs under a per-id lock, and the status write is a
compare-and-swap on the source status, so a transaction is fulfilled at most once.
"""

import re
import time
import uuid
from datetime import datetime
from typing import Any, Literal

from fulfillment.core.audit import log_event
from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import (
    DuplicateCodeError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from fulfillment.core.locks import KeyedLock
from fulfillment.core.logging import get_logger
from fulfillment.models.transaction import Transaction, TransactionKind, TransactionStatus
from fulfillment.services import credits as credits_service
from fulfillment.services import outbox
from fulfillment.services.plans import get_plan

log = get_logger(__name__)

WebhookOutcome = Literal["success", "failure"]

CODE_RE = re.compile(r"^[A-Z0-9]{10}$")
TIMEOUT_REASON = "timeout"

_locks = KeyedLock()


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def new_transaction_id() -> str:
    return f"txn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _remote_collection() -> str:
    return get_settings().remote_transactions_collection


async def create_transaction(
    kind: TransactionKind,
    uid: str,
    plan_id: str,
    amount: int | None = None,
    phone: str | None = None,
    code: str | None = None,
    *,
    transaction_id: str | None = None,
    status: TransactionStatus | None = None,
    campus_id: str | None = None,
    university_id: str | None = None,
) -> Transaction:
    """Persist a new transaction in its initial state and queue it for the remote store."""
    if not uid:
        raise ValidationError("uid is required")
    plan = get_plan(plan_id)
    if kind == TransactionKind.AUTOMATED:
        if not phone:
            raise ValidationError("phone is required")
        initial = TransactionStatus.PENDING
    elif kind == TransactionKind.MANUAL:
        code = normalize_code(code)
        if not code:
            raise ValidationError("code is required")
        if not CODE_RE.match(code):
            raise ValidationError("Invalid M-Pesa code format. Must be 10 characters.")
        phone = phone or "MANUAL"
        initial = TransactionStatus.MANUAL_VERIFYING
    else:
        initial = status or TransactionStatus.COMPLETED
        phone = phone or "N/A"
        code = normalize_code(code) or None

    txn_id = transaction_id or new_transaction_id()
    now = datetime.utcnow()
    txn = Transaction(
        id=txn_id,
        uid=uid,
        plan_id=plan_id,
        amount=plan.price if amount is None else amount,
        phone=phone,
        code=code,
        kind=kind,
        status=initial,
        created_at=now,
        verified_at=now if initial == TransactionStatus.COMPLETED else None,
        campus_id=campus_id,
        university_id=university_id,
    )

    async with _locks.hold(f"code:{code}" if kind == TransactionKind.MANUAL else txn_id):
        if kind == TransactionKind.MANUAL and await _completed_with_code(code):
            raise DuplicateCodeError()
        if await Transaction.get(txn_id):
            raise ValidationError("Transaction already exists", details={"transaction_id": txn_id})
        await txn.insert()
    await outbox.enqueue(_remote_collection(), txn.id, "create", txn.to_remote())
    log.info(
        "transaction_created",
        transaction_id=txn.id,
        uid=uid,
        plan_id=plan_id,
        kind=kind.value,
        status=initial.value,
    )
    return txn


async def get_transaction(transaction_id: str) -> Transaction:
    txn = await Transaction.get(transaction_id) if transaction_id else None
    if not txn:
        raise NotFoundError("Transaction not found")
    return txn


async def find_by_code(code: str) -> Transaction | None:
    """Most recent transaction carrying this code, if any."""
    code = normalize_code(code)
    if not code:
        return None
    return await Transaction.find(Transaction.code == code).sort("-created_at").first_or_none()


async def _completed_with_code(code: str, exclude_id: str | None = None) -> bool:
    query: dict[str, Any] = {"code": code, "status": TransactionStatus.COMPLETED.value}
    if exclude_id:
        query["_id"] = {"$ne": exclude_id}
    return await Transaction.find_one(query) is not None


async def _compare_and_set(transaction_id: str, source: TransactionStatus, fields: dict[str, Any]) -> bool:
    res = await Transaction.get_motor_collection().update_one(
        {"_id": transaction_id, "status": source.value},
        {"$set": fields},
    )
    return res.modified_count > 0


def _transition_fields(
    target: TransactionStatus,
    failure_reason: str | None,
    metadata: dict[str, Any] | None,
    verified: bool,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Local field update and the matching camelCase remote update."""
    fields: dict[str, Any] = {"status": target.value}
    remote: dict[str, Any] = {"status": target.value}
    if verified:
        fields["verified_at"] = remote["verifiedAt"] = datetime.utcnow()
    if failure_reason is not None:
        fields["failure_reason"] = remote["failureReason"] = failure_reason
    if metadata is not None:
        fields["verification_metadata"] = remote["verificationMetadata"] = metadata
    return fields, remote


async def _claim(
    txn: Transaction,
    source: TransactionStatus,
    target: TransactionStatus,
    fields: dict[str, Any],
) -> None:
    """Conditional status write. Whoever moves the record out of `source` first wins, across processes."""
    if source.is_terminal:
        raise InvalidTransitionError(
            f"{source.value} transactions are final",
            details={"status": source.value, "target": target.value},
        )
    if not await _compare_and_set(txn.id, source, fields):
        current = await get_transaction(txn.id)
        log.error(
            "transition_lost_race",
            transaction_id=txn.id,
            expected=source.value,
            actual=current.status.value,
            target=target.value,
        )
        raise InvalidTransitionError(
            "Transaction status changed concurrently",
            details={"expected": source.value, "status": current.status.value},
        )


async def _transition(
    txn: Transaction,
    source: TransactionStatus,
    target: TransactionStatus,
    *,
    failure_reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    verified: bool = True,
) -> Transaction:
    fields, remote = _transition_fields(target, failure_reason, metadata, verified)
    await _claim(txn, source, target, fields)
    await outbox.enqueue(_remote_collection(), txn.id, "update", remote)
    return await get_transaction(txn.id)


async def _release(txn: Transaction, source: TransactionStatus) -> None:
    """Undo a completion claim whose fulfillment failed."""
    await Transaction.get_motor_collection().update_one(
        {"_id": txn.id, "status": TransactionStatus.COMPLETED.value},
        {
            "$set": {
                "status": source.value,
                "verified_at": txn.verified_at,
                "verification_metadata": txn.verification_metadata,
            }
        },
    )


async def _complete(txn: Transaction, source: TransactionStatus, metadata: dict[str, Any] | None = None) -> Transaction:
    # Status is claimed before credits are granted; a failed grant releases the claim.
    fields, remote = _transition_fields(TransactionStatus.COMPLETED, None, metadata, True)
    await _claim(txn, source, TransactionStatus.COMPLETED, fields)
    try:
        await credits_service.apply_fulfillment(txn.uid, txn.plan_id, txn.id)
    except Exception as e:
        await _release(txn, source)
        log.error("fulfillment_failed", transaction_id=txn.id, uid=txn.uid, error=str(e))
        raise
    await outbox.enqueue(_remote_collection(), txn.id, "update", remote)
    log.info("transaction_completed", transaction_id=txn.id, uid=txn.uid, plan_id=txn.plan_id)
    return await get_transaction(txn.id)


async def _fail(
    txn: Transaction,
    source: TransactionStatus,
    reason: str,
    metadata: dict[str, Any] | None = None,
    verified: bool = True,
) -> Transaction:
    failed = await _transition(
        txn, source, TransactionStatus.FAILED, failure_reason=reason, metadata=metadata, verified=verified
    )
    log.info("transaction_failed", transaction_id=txn.id, reason=reason)
    return failed


async def apply_webhook(transaction_id: str, outcome: WebhookOutcome, reason: str | None = None) -> Transaction:
    """
    Apply a gateway confirmation. Deliveries are at-least-once: a success for an
    already COMPLETED transaction is a no-op. Only PENDING may transition.
    """
    async with _locks.hold(transaction_id):
        txn = await get_transaction(transaction_id)
        if txn.status == TransactionStatus.COMPLETED:
            log.info("webhook_duplicate", transaction_id=transaction_id, outcome=outcome)
            return txn
        if txn.status != TransactionStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot apply webhook to a {txn.status.value} transaction",
                details={"status": txn.status.value, "outcome": outcome},
            )
        if outcome == "success":
            return await _complete(txn, TransactionStatus.PENDING)
        return await _fail(txn, TransactionStatus.PENDING, reason or "payment failed")


async def submit_verification(
    transaction_id: str,
    is_valid: bool,
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    """Apply the verification device's verdict. The record must be MANUAL_VERIFYING."""
    metadata = metadata or {}
    async with _locks.hold(transaction_id):
        txn = await get_transaction(transaction_id)
        if txn.status != TransactionStatus.MANUAL_VERIFYING:
            raise InvalidStateError(
                "Transaction is not awaiting verification",
                details={"status": txn.status.value},
            )
        if not is_valid:
            return await _fail(txn, TransactionStatus.MANUAL_VERIFYING, "rejected by verifier", metadata)
        async with _locks.hold(f"code:{txn.code}"):
            if txn.code and await _completed_with_code(txn.code, exclude_id=txn.id):
                log.warning("verification_duplicate_code", transaction_id=txn.id, code=txn.code)
                return await _fail(txn, TransactionStatus.MANUAL_VERIFYING, "duplicate code", metadata)
            return await _complete(txn, TransactionStatus.MANUAL_VERIFYING, metadata)


async def expire_transaction(
    transaction_id: str,
    expected_status: TransactionStatus,
    reason: str = TIMEOUT_REASON,
) -> bool:
    """Single-step in-flight -> FAILED for the sweeper. False if the record already moved on."""
    async with _locks.hold(transaction_id):
        txn = await Transaction.get(transaction_id)
        if txn is None or txn.status.is_terminal or txn.status != expected_status:
            return False
        try:
            await _fail(txn, expected_status, reason, verified=False)
        except InvalidTransitionError:
            return False
    return True


async def list_pending_manual() -> list[Transaction]:
    return await Transaction.find(
        Transaction.status == TransactionStatus.MANUAL_VERIFYING
    ).sort("+created_at").to_list()


async def list_transactions(limit: int = 50, offset: int = 0) -> list[Transaction]:
    return await Transaction.find_all().sort("-created_at").skip(offset).limit(limit).to_list()


async def delete_transaction(transaction_id: str, actor: str | None = None) -> None:
    async with _locks.hold(transaction_id):
        txn = await get_transaction(transaction_id)
        await txn.delete()
    await outbox.enqueue(_remote_collection(), transaction_id, "delete")
    await log_event(actor, "transaction_deleted", "transaction", transaction_id, {"status": txn.status.value})
    log.info("transaction_deleted", transaction_id=transaction_id)


async def get_stats() -> dict[str, Any]:
    def completed():
        return Transaction.find(Transaction.status == TransactionStatus.COMPLETED)

    recent = await Transaction.find_all().sort("-created_at").limit(10).to_list()
    return {
        "verified": await completed().count(),
        "revenue": await completed().sum(Transaction.amount) or 0,
        "rejected": await Transaction.find(Transaction.status == TransactionStatus.FAILED).count(),
        "pending": await Transaction.find(Transaction.status == TransactionStatus.MANUAL_VERIFYING).count(),
        "recent_transactions": [
            {
                "id": t.id,
                "uid": t.uid,
                "plan_id": t.plan_id,
                "amount": t.amount,
                "kind": t.kind.value,
                "status": t.status.value,
                "date": t.created_at.isoformat(),
            }
            for t in recent
        ],
    }
