from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError
from fulfillment.core.logging import get_logger
from fulfillment.core.security import verify_webhook_signature
from fulfillment.deps import get_gateway, get_hub
from fulfillment.gateway.base import PaymentGateway, parse_webhook_event
from fulfillment.models.transaction import TransactionKind
from fulfillment.services import transactions as transactions_service
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.plans import get_plan

router = APIRouter()
log = get_logger(__name__)


class StkPushRequest(BaseModel):
    phone: str = Field(..., min_length=9)
    plan_id: str
    uid: str = Field(..., min_length=1)


class ManualPaymentRequest(BaseModel):
    code: str
    plan_id: str
    uid: str = Field(..., min_length=1)
    phone: str | None = None


def _transaction_out(txn) -> dict:
    return {
        "id": txn.id,
        "uid": txn.uid,
        "plan_id": txn.plan_id,
        "amount": txn.amount,
        "kind": txn.kind.value,
        "status": txn.status.value,
        "failure_reason": txn.failure_reason,
        "created_at": txn.created_at.isoformat(),
        "verified_at": txn.verified_at.isoformat() if txn.verified_at else None,
    }


@router.post("/stk")
async def initiate_stk_push(
    body: StkPushRequest,
    gateway: PaymentGateway = Depends(get_gateway),
    hub: DashboardHub = Depends(get_hub),
):
    """Send an STK push; the transaction stays PENDING until the gateway webhook arrives."""
    plan = get_plan(body.plan_id)
    request_id = await gateway.initiate(body.phone, plan.price)
    txn = await transactions_service.create_transaction(
        TransactionKind.AUTOMATED,
        body.uid,
        body.plan_id,
        amount=plan.price,
        phone=body.phone,
        transaction_id=request_id,
    )
    await hub.broadcast("transaction_created", _transaction_out(txn))
    return {"transaction_id": txn.id, "status": txn.status.value}


@router.post("/manual")
async def submit_manual_code(body: ManualPaymentRequest, hub: DashboardHub = Depends(get_hub)):
    """Record an M-Pesa code for the verification device to confirm."""
    txn = await transactions_service.create_transaction(
        TransactionKind.MANUAL,
        body.uid,
        body.plan_id,
        phone=body.phone,
        code=body.code,
    )
    await hub.broadcast("transaction_created", _transaction_out(txn))
    await hub.broadcast_stats()
    return {"transaction_id": txn.id, "status": txn.status.value}


@router.post("/webhook")
async def gateway_webhook(
    request: Request,
    hub: DashboardHub = Depends(get_hub),
    x_webhook_signature: str | None = Header(None, alias="X-Webhook-Signature"),
):
    """Gateway confirmation. Redeliveries and unknown ids are acknowledged so the gateway stops retrying."""
    raw = await request.body()
    secret = get_settings().webhook_secret
    if secret and not (x_webhook_signature and verify_webhook_signature(raw, x_webhook_signature, secret)):
        raise UnauthorizedError("Invalid signature")
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Invalid webhook body")
    event = parse_webhook_event(body)
    log.info("webhook_received", transaction_id=event.transaction_id, status=event.status, event=event.event)
    if not event.transaction_id:
        raise ValidationError("Missing transaction id")
    if event.outcome is None:
        return {"status": "ignored"}
    reason = f"gateway reported {event.status or event.event}" if event.outcome == "failure" else None
    try:
        txn = await transactions_service.apply_webhook(event.transaction_id, event.outcome, reason)
    except NotFoundError:
        log.warning("webhook_unknown_transaction", transaction_id=event.transaction_id)
        return {"status": "ignored"}
    except InvalidTransitionError as e:
        log.warning("webhook_ignored", transaction_id=event.transaction_id, reason=e.message)
        return {"status": "ignored"}
    await hub.broadcast("transaction_updated", _transaction_out(txn))
    await hub.broadcast_stats()
    return {"status": "ok", "transaction_status": txn.status.value}


@router.get("/transactions/{transaction_id}")
async def transaction_status(transaction_id: str):
    txn = await transactions_service.get_transaction(transaction_id)
    return _transaction_out(txn)


@router.get("/status")
async def payment_status(gateway: PaymentGateway = Depends(get_gateway)):
    """Which payment flows are available, plus the manual payment details."""
    s = get_settings()
    return {
        "stk_enabled": gateway.name == "fake" or bool(s.lipana_secret_key),
        "gateway": gateway.name,
        "manual_enabled": True,
        "manual_details": {
            "type": s.mpesa_payment_type,
            "number": s.mpesa_payment_number,
            "name": s.mpesa_payment_name,
        },
    }
