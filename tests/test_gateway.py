import asyncio

import httpx
import pytest

from fulfillment.core.exceptions import UpstreamError
from fulfillment.gateway.base import get_gateway, normalize_phone, parse_webhook_event
from fulfillment.gateway.fake import FakeGateway
from fulfillment.gateway.lipana import LipanaGateway


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0712345678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254 712 345 678", "254712345678"),
        ("0112-345-678", "254112345678"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_parse_event_envelope():
    ev = parse_webhook_event({"event": "payment.success", "data": {"transaction_id": "t1", "status": "pending"}})
    assert ev.transaction_id == "t1"
    assert ev.outcome == "success"


def test_parse_legacy_body():
    ev = parse_webhook_event({"checkoutRequestID": "ws_CO_1", "status": "Completed"})
    assert ev.transaction_id == "ws_CO_1"
    assert ev.outcome == "success"


def test_parse_failure_and_unknown_status():
    assert parse_webhook_event({"data": {"transactionId": "t2", "status": "Failed"}}).outcome == "failure"
    assert parse_webhook_event({"event": "payment.failed", "transactionId": "t3"}).outcome == "failure"
    unknown = parse_webhook_event({"transactionId": "t4", "status": "processing"})
    assert unknown.transaction_id == "t4"
    assert unknown.outcome is None
    assert parse_webhook_event({"status": "success"}).transaction_id is None


def test_factory_defaults_to_fake():
    assert isinstance(get_gateway(), FakeGateway)


@pytest.mark.asyncio
async def test_fake_gateway_simulates_callback():
    delivered = []

    async def on_success(request_id):
        delivered.append(request_id)

    gw = FakeGateway(callback_delay_seconds=0, on_success=on_success)
    request_id = await gw.initiate("0712345678", 10)
    assert request_id.startswith("mock_")
    await asyncio.sleep(0.05)
    assert delivered == [request_id]
    assert gw.initiated == [("254712345678", 10, request_id)]


def _lipana(handler) -> LipanaGateway:
    client = httpx.AsyncClient(base_url="https://lipana.test/v1", transport=httpx.MockTransport(handler))
    return LipanaGateway(client=client, secret_key="sk_test")


@pytest.mark.asyncio
async def test_lipana_returns_checkout_request_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, json={"success": True, "data": {"checkoutRequestID": "ws_CO_99"}})

    gw = _lipana(handler)
    assert await gw.initiate("0712345678", 29) == "ws_CO_99"
    assert seen["path"] == "/v1/transactions/push-stk"
    assert b"254712345678" in seen["body"]
    await gw.aclose()


@pytest.mark.asyncio
async def test_lipana_error_is_generic():
    gw = _lipana(lambda request: httpx.Response(500, json={"message": "internal: db down"}))
    with pytest.raises(UpstreamError) as exc:
        await gw.initiate("0712345678", 29)
    assert "db down" not in exc.value.message
    await gw.aclose()


@pytest.mark.asyncio
async def test_lipana_missing_request_id():
    gw = _lipana(lambda request: httpx.Response(200, json={"success": True, "data": {}}))
    with pytest.raises(UpstreamError):
        await gw.initiate("0712345678", 29)
    await gw.aclose()


@pytest.mark.asyncio
async def test_lipana_without_key_refuses():
    gw = LipanaGateway(secret_key="")
    with pytest.raises(UpstreamError):
        await gw.initiate("0712345678", 29)
    await gw.aclose()
