import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from fulfillment.core.config import get_settings

WebhookOutcome = Literal["success", "failure"]

_SUCCESS_STATUSES = {"success", "completed"}
_FAILED_STATUSES = {"failed", "cancelled"}
_SUCCESS_EVENTS = {"payment.success", "transaction.success"}
_FAILED_EVENTS = {"payment.failed", "transaction.failed"}


class PaymentGateway(ABC):
    """Outbound STK push initiation."""

    name: str = "gateway"

    @abstractmethod
    async def initiate(self, phone: str, amount: int) -> str:
        """Send an STK push; return the provider request id. Raises UpstreamError."""
        ...

    async def aclose(self) -> None:
        return None


@dataclass
class WebhookEvent:
    transaction_id: str | None
    outcome: WebhookOutcome | None  # None: status we do not act on
    status: str | None = None
    event: str | None = None


def parse_webhook_event(body: dict[str, Any]) -> WebhookEvent:
    """
    Accepts {event, data: {transaction_id|transactionId, status}} and the
    legacy flat {checkoutRequestID|transactionId, status}.
    """
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    transaction_id = (
        data.get("transaction_id")
        or data.get("transactionId")
        or body.get("transactionId")
        or body.get("checkoutRequestID")
    )
    status = data.get("status") or body.get("status")
    event = body.get("event")
    status_l = str(status).lower() if status else ""
    event_l = str(event).lower() if event else ""
    outcome: WebhookOutcome | None = None
    if status_l in _SUCCESS_STATUSES or event_l in _SUCCESS_EVENTS:
        outcome = "success"
    elif status_l in _FAILED_STATUSES or event_l in _FAILED_EVENTS:
        outcome = "failure"
    return WebhookEvent(
        transaction_id=str(transaction_id) if transaction_id else None,
        outcome=outcome,
        status=status,
        event=event,
    )


def normalize_phone(phone: str) -> str:
    """0712345678 / +254712345678 / 254 712 345 678 -> 254712345678."""
    digits = re.sub(r"[^0-9+]", "", phone or "")
    if digits.startswith("0"):
        return "254" + digits[1:]
    if digits.startswith("+"):
        return digits[1:]
    return digits


def get_gateway(on_success: Callable[[str], Awaitable[Any]] | None = None) -> PaymentGateway:
    """Pick the gateway once, at construction. on_success feeds the fake gateway's simulated webhook."""
    settings = get_settings()
    if settings.payment_gateway == "lipana":
        from fulfillment.gateway.lipana import LipanaGateway
        return LipanaGateway()
    from fulfillment.gateway.fake import FakeGateway
    return FakeGateway(callback_delay_seconds=settings.fake_gateway_callback_delay_seconds, on_success=on_success)
