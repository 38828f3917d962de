from datetime import datetime, timezone
from enum import Enum
from typing import Any

from beanie import Document
from pydantic import Field


class TransactionKind(str, Enum):
    AUTOMATED = "AUTOMATED"  # STK push, confirmed by gateway webhook
    MANUAL = "MANUAL"  # M-Pesa code, confirmed by the verification device
    ADMIN_ENTERED = "ADMIN_ENTERED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    MANUAL_VERIFYING = "MANUAL_VERIFYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


# Remote documents keep the shape the mobile app already reads.
_REMOTE_KIND = {
    TransactionKind.AUTOMATED: "STK",
    TransactionKind.MANUAL: "MANUAL",
    TransactionKind.ADMIN_ENTERED: "MANUAL_ADMIN",
}


class Transaction(Document):
    id: str
    uid: str
    plan_id: str
    amount: int
    phone: str
    code: str | None = None
    kind: TransactionKind
    status: TransactionStatus
    created_at: datetime = Field(default_factory=datetime.utcnow)
    verified_at: datetime | None = None
    failure_reason: str | None = None
    verification_metadata: dict[str, Any] | None = None
    campus_id: str | None = None
    university_id: str | None = None

    class Settings:
        name = "transactions"
        indexes = [
            [("status", 1), ("created_at", 1)],
            [("code", 1)],
            [("uid", 1), ("created_at", -1)],
        ]

    def to_remote(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "planId": self.plan_id,
            "amount": self.amount,
            "phone": self.phone,
            "mpesaCode": self.code,
            "status": self.status.value,
            "type": _REMOTE_KIND[self.kind],
            "createdAt": self.created_at,
            "verifiedAt": self.verified_at,
            "failureReason": self.failure_reason,
            "verificationMetadata": self.verification_metadata,
            "campusId": self.campus_id,
            "universityId": self.university_id,
        }

    @classmethod
    def from_remote(cls, doc_id: str, data: dict[str, Any]) -> "Transaction":
        remote_kind = data.get("type")
        kind = next((k for k, v in _REMOTE_KIND.items() if v == remote_kind), TransactionKind.AUTOMATED)
        return cls(
            id=doc_id,
            uid=data.get("uid") or "",
            plan_id=data.get("planId") or "",
            amount=int(data.get("amount") or 0),
            phone=data.get("phone") or "",
            code=data.get("mpesaCode"),
            kind=kind,
            status=TransactionStatus(data.get("status") or TransactionStatus.FAILED.value),
            created_at=parse_remote_datetime(data.get("createdAt")) or datetime.utcnow(),
            verified_at=parse_remote_datetime(data.get("verifiedAt")),
            failure_reason=data.get("failureReason"),
            verification_metadata=data.get("verificationMetadata"),
            campus_id=data.get("campusId"),
            university_id=data.get("universityId"),
        )


def parse_remote_datetime(value: Any) -> datetime | None:
    """Remote timestamps arrive as datetimes or ISO strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
