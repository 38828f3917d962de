from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from fulfillment.services import credits as credits_service

router = APIRouter()


class ConsumeRequest(BaseModel):
    uid: str = Field(..., min_length=1)


@router.get("/balance")
async def credits_balance(uid: str = Query(..., min_length=1)):
    """Return current credit balance (applies the daily top-up on first read of the day)."""
    balance = await credits_service.get_balance(uid)
    expires = balance["unlimited_expires_at"]
    return {
        "uid": uid,
        "credits": balance["credits"],
        "is_unlimited": balance["is_unlimited"],
        "unlimited_expires_at": expires.isoformat() if expires else None,
    }


@router.post("/consume")
async def consume_credit(body: ConsumeRequest):
    remaining = await credits_service.consume_one(body.uid)
    return {"uid": body.uid, "remaining": remaining}
