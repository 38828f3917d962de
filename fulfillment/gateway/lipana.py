from typing import Any

import httpx

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import UpstreamError
from fulfillment.core.logging import get_logger
from fulfillment.gateway.base import PaymentGateway, normalize_phone

log = get_logger(__name__)


def _extract_request_id(body: dict[str, Any]) -> str | None:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return (
        data.get("checkoutRequestID")
        or body.get("checkoutRequestID")
        or data.get("transactionId")
        or body.get("transactionId")
    )


class LipanaGateway(PaymentGateway):
    name = "lipana"

    def __init__(self, client: httpx.AsyncClient | None = None, secret_key: str | None = None) -> None:
        settings = get_settings()
        secret_key = settings.lipana_secret_key if secret_key is None else secret_key
        self._configured = bool(secret_key)
        self._client = client or httpx.AsyncClient(
            base_url=settings.lipana_base_url,
            timeout=settings.gateway_timeout_seconds,
            headers={"x-api-key": secret_key, "Content-Type": "application/json"},
        )

    async def initiate(self, phone: str, amount: int) -> str:
        if not self._configured:
            raise UpstreamError("Payments not configured")
        formatted = normalize_phone(phone)
        log.info("stk_push_request", phone=formatted, amount=amount)
        try:
            resp = await self._client.post("/transactions/push-stk", json={"phone": formatted, "amount": amount})
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            log.error("stk_push_rejected", status_code=e.response.status_code, body=e.response.text[:1000])
            raise UpstreamError() from e
        except (httpx.HTTPError, ValueError) as e:
            log.error("stk_push_failed", error=str(e))
            raise UpstreamError() from e
        request_id = _extract_request_id(body) if isinstance(body, dict) else None
        if not request_id:
            log.error("stk_push_no_request_id", body=str(body)[:1000])
            raise UpstreamError()
        return str(request_id)

    async def aclose(self) -> None:
        await self._client.aclose()
