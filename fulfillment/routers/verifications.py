from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from fulfillment.core.logging import get_logger
from fulfillment.deps import get_heartbeat, get_hub
from fulfillment.services import transactions as transactions_service
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.heartbeat import HeartbeatMonitor

router = APIRouter()
log = get_logger(__name__)


class VerificationResult(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    is_valid: bool
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.get("/pending")
async def pending_verifications(
    heartbeat: HeartbeatMonitor = Depends(get_heartbeat),
    hub: DashboardHub = Depends(get_hub),
):
    """Polled by the verification device. Each poll counts as a heartbeat."""
    if heartbeat.record_poll():
        log.info("verifier_connected")
        await hub.broadcast("app_status", {"connected": True})
        await hub.broadcast_stats()
    pending = await transactions_service.list_pending_manual()
    return {
        "pending": [
            {"id": t.id, "code": t.code, "amount": t.amount, "date": t.created_at.isoformat()}
            for t in pending
        ]
    }


@router.post("/result")
async def verification_result(body: VerificationResult, hub: DashboardHub = Depends(get_hub)):
    txn = await transactions_service.submit_verification(body.transaction_id, body.is_valid, body.metadata)
    log.info("verification_applied", transaction_id=txn.id, status=txn.status.value)
    await hub.broadcast(
        "transaction_updated",
        {"id": txn.id, "status": txn.status.value, "failure_reason": txn.failure_reason},
    )
    await hub.broadcast_stats()
    return {"transaction_id": txn.id, "status": txn.status.value}
