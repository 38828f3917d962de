from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from fulfillment.core.audit import list_audit_logs, log_event
from fulfillment.deps import get_engine, get_hub, require_admin
from fulfillment.models.transaction import TransactionKind, TransactionStatus
from fulfillment.services import credits as credits_service
from fulfillment.services import outbox
from fulfillment.services import transactions as transactions_service
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.outbox import OutboxSyncEngine

router = APIRouter()


class SetCreditsRequest(BaseModel):
    credits: int = Field(..., ge=0)
    unlimited: bool = False


class AdminTransactionRequest(BaseModel):
    uid: str = Field(..., min_length=1)
    plan_id: str
    amount: int | None = Field(None, ge=0)
    phone: str | None = None
    code: str | None = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    campus_id: str | None = None
    university_id: str | None = None


def _account_out(a) -> dict:
    return {
        "uid": a.uid,
        "credits": a.credits,
        "is_unlimited": a.is_unlimited(),
        "unlimited_expires_at": a.unlimited_expires_at.isoformat() if a.unlimited_expires_at else None,
        "last_payment_ref": a.last_payment_ref,
        "updated_at": a.updated_at.isoformat() if a.updated_at else None,
    }


def _transaction_out(t) -> dict:
    return {
        "id": t.id,
        "uid": t.uid,
        "plan_id": t.plan_id,
        "amount": t.amount,
        "phone": t.phone,
        "code": t.code,
        "kind": t.kind.value,
        "status": t.status.value,
        "failure_reason": t.failure_reason,
        "created_at": t.created_at.isoformat(),
        "verified_at": t.verified_at.isoformat() if t.verified_at else None,
    }


@router.post("/users/{uid}/credits")
async def set_user_credits(
    uid: str,
    body: SetCreditsRequest,
    actor: str = Depends(require_admin),
    hub: DashboardHub = Depends(get_hub),
):
    """Overwrite a user's balance; unlimited grants the admin unlimited window."""
    account = await credits_service.admin_set_absolute(uid, body.credits, body.unlimited, actor=actor)
    out = _account_out(account)
    await hub.broadcast("credits_updated", out)
    return out


@router.get("/users")
async def list_users(
    _: str = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    accounts = await credits_service.list_accounts(limit=limit, offset=offset)
    return {"users": [_account_out(a) for a in accounts], "limit": limit, "offset": offset}


@router.get("/transactions")
async def list_transactions(
    _: str = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    txns = await transactions_service.list_transactions(limit=limit, offset=offset)
    return {"transactions": [_transaction_out(t) for t in txns], "limit": limit, "offset": offset}


@router.post("/transactions")
async def create_admin_transaction(
    body: AdminTransactionRequest,
    actor: str = Depends(require_admin),
    hub: DashboardHub = Depends(get_hub),
):
    """Bookkeeping entry. Never touches the credit ledger."""
    txn = await transactions_service.create_transaction(
        TransactionKind.ADMIN_ENTERED,
        body.uid,
        body.plan_id,
        amount=body.amount,
        phone=body.phone,
        code=body.code,
        status=body.status,
        campus_id=body.campus_id,
        university_id=body.university_id,
    )
    await log_event(actor, "transaction_entered", "transaction", txn.id, {"status": txn.status.value})
    await hub.broadcast_stats()
    return _transaction_out(txn)


@router.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    actor: str = Depends(require_admin),
    hub: DashboardHub = Depends(get_hub),
):
    await transactions_service.delete_transaction(transaction_id, actor=actor)
    await hub.broadcast_stats()
    return {"deleted": transaction_id}


@router.get("/sync/status")
async def sync_status(_: str = Depends(require_admin), engine: OutboxSyncEngine = Depends(get_engine)):
    return await engine.status()


@router.post("/sync/hydrate")
async def sync_hydrate(_: str = Depends(require_admin), engine: OutboxSyncEngine = Depends(get_engine)):
    """Pull the remote store into an empty local store. No-op when local data exists."""
    counts = await engine.hydrate()
    return {"hydrated": counts}


@router.get("/sync/dead-letters")
async def dead_letters(
    _: str = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    entries = await outbox.list_dead_letters(limit=limit, offset=offset)
    out = [
        {
            "id": str(d.id),
            "collection": d.collection,
            "doc_id": d.doc_id,
            "operation": d.operation,
            "attempts": d.attempts,
            "reason": d.reason,
            "failed_at": d.failed_at.isoformat(),
        }
        for d in entries
    ]
    return {"dead_letters": out, "limit": limit, "offset": offset}


@router.post("/sync/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(dead_letter_id: str, actor: str = Depends(require_admin)):
    item = await outbox.replay_dead_letter(dead_letter_id, actor=actor)
    return {"requeued": str(item.id), "collection": item.collection, "doc_id": item.doc_id}


class OrphanCleanupRequest(BaseModel):
    collection: str = "transactions"
    dry_run: bool = True


@router.post("/sync/drain")
async def sync_drain(actor: str = Depends(require_admin), engine: OutboxSyncEngine = Depends(get_engine)):
    """Drain one batch now instead of waiting for the next tick."""
    result = await engine.drain_once()
    remaining = (await engine.status())["pending"]
    await log_event(actor, "manual_sync", "outbox", None, {"processed": result.processed, "remaining": remaining})
    return {**asdict(result), "processed": result.processed, "remaining": remaining}


@router.get("/sync/queue")
async def sync_queue(
    _: str = Depends(require_admin),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    items = await outbox.list_queue(limit=limit, offset=offset)
    out = [
        {
            "id": str(i.id),
            "collection": i.collection,
            "doc_id": i.doc_id,
            "operation": i.operation,
            "attempts": i.attempts,
            "next_attempt_at": i.next_attempt_at.isoformat(),
            "last_error": i.last_error,
            "enqueued_at": i.enqueued_at.isoformat(),
        }
        for i in items
    ]
    return {"items": out, "limit": limit, "offset": offset}


@router.post("/sync/push-all")
async def sync_push_all(actor: str = Depends(require_admin), engine: OutboxSyncEngine = Depends(get_engine)):
    """Queue every local account and transaction for a full re-push."""
    return {"queued": await engine.enqueue_snapshot(actor=actor)}


@router.post("/sync/orphans")
async def sync_orphans(
    body: OrphanCleanupRequest,
    actor: str = Depends(require_admin),
    engine: OutboxSyncEngine = Depends(get_engine),
):
    """Find remote documents with no local record; unless dry_run, queue their deletion."""
    return await engine.cleanup_orphans(body.collection, dry_run=body.dry_run, actor=actor)


@router.get("/audit-logs")
async def audit_logs(
    _: str = Depends(require_admin),
    entity_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    entries = await list_audit_logs(limit=limit, offset=offset, entity_type=entity_type)
    out = [
        {
            "id": str(e.id),
            "actor": e.actor,
            "event_type": e.event_type,
            "entity_type": e.entity_type,
            "entity_id": e.entity_id,
            "metadata": e.metadata,
            "created_at": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}
