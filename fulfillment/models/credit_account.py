from datetime import datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field

from fulfillment.models.transaction import parse_remote_datetime


class CreditAccount(Document):
    """Per-user balance; mutated only through atomic updates in services.credits."""
    uid: Indexed(str, unique=True)
    credits: int = 0
    unlimited_expires_at: datetime | None = None
    last_daily_reset: datetime | None = None
    last_payment_ref: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_accounts"

    def is_unlimited(self, now: datetime | None = None) -> bool:
        if self.unlimited_expires_at is None:
            return False
        return self.unlimited_expires_at > (now or datetime.utcnow())

    def to_remote(self) -> dict[str, Any]:
        return {
            "credits": self.credits,
            "unlimitedExpiresAt": self.unlimited_expires_at,
            "lastDailyReset": self.last_daily_reset,
            "lastPaymentRef": self.last_payment_ref,
        }

    @classmethod
    def from_remote(cls, doc_id: str, data: dict[str, Any]) -> "CreditAccount":
        return cls(
            uid=doc_id,
            credits=int(data.get("credits") or 0),
            unlimited_expires_at=parse_remote_datetime(data.get("unlimitedExpiresAt")),
            last_daily_reset=parse_remote_datetime(data.get("lastDailyReset")),
            last_payment_ref=data.get("lastPaymentRef"),
        )
