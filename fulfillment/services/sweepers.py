"""Background sweeps: time out stuck in-flight transactions, prune old records."""

from datetime import datetime, timedelta
from typing import Literal

from fulfillment.core.audit import log_event
from fulfillment.core.config import get_settings
from fulfillment.core.logging import get_logger
from fulfillment.models.archived_transaction import ArchivedTransaction
from fulfillment.models.transaction import Transaction, TransactionStatus
from fulfillment.services import transactions as transactions_service

log = get_logger(__name__)


async def _expire_older_than(status: TransactionStatus, cutoff_ms: int, now: datetime | None) -> int:
    cutoff = (now or datetime.utcnow()) - timedelta(milliseconds=cutoff_ms)
    stale = await Transaction.find(
        Transaction.status == status,
        Transaction.created_at < cutoff,
    ).to_list()
    expired = 0
    for txn in stale:
        if await transactions_service.expire_transaction(txn.id, status):
            expired += 1
    if expired:
        log.info("stale_transactions_expired", status=status.value, count=expired)
    return expired


async def expire_stale_manual_verifications(cutoff_ms: int, now: datetime | None = None) -> int:
    """MANUAL_VERIFYING older than cutoff -> FAILED('timeout'). Never touches the credit ledger."""
    return await _expire_older_than(TransactionStatus.MANUAL_VERIFYING, cutoff_ms, now)


async def expire_stale_pending(cutoff_ms: int, now: datetime | None = None) -> int:
    """PENDING (STK push never confirmed) older than cutoff -> FAILED('timeout')."""
    return await _expire_older_than(TransactionStatus.PENDING, cutoff_ms, now)


async def sweep_stale(now: datetime | None = None) -> int:
    """One tick of the stale sweep with the configured cutoffs."""
    settings = get_settings()
    expired = await expire_stale_manual_verifications(settings.manual_verification_timeout_ms, now)
    expired += await expire_stale_pending(settings.pending_timeout_ms, now)
    return expired


async def prune_retention(
    retention_days: int,
    now: datetime | None = None,
    policy: Literal["archive", "delete"] | None = None,
) -> int:
    """
    Delete transactions created before the retention window.
    With the archive policy, COMPLETED records are copied to transactions_archive first.
    Local housekeeping only: nothing is queued for the remote store.
    """
    policy = policy or get_settings().retention_policy
    cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
    old = await Transaction.find(Transaction.created_at < cutoff).to_list()
    archived = 0
    for txn in old:
        if policy == "archive" and txn.status == TransactionStatus.COMPLETED:
            if not await ArchivedTransaction.get(txn.id):
                await ArchivedTransaction(
                    id=txn.id,
                    uid=txn.uid,
                    amount=txn.amount,
                    created_at=txn.created_at,
                    snapshot=txn.model_dump(mode="json"),
                ).insert()
            archived += 1
        await txn.delete()
    if old:
        await log_event(
            None,
            "retention_pruned",
            "transaction",
            None,
            {"deleted": len(old), "archived": archived, "retention_days": retention_days, "policy": policy},
        )
        log.info("retention_pruned", deleted=len(old), archived=archived, policy=policy)
    return len(old)
