import asyncio
import secrets
import time
from typing import Any, Awaitable, Callable

from fulfillment.core.logging import get_logger
from fulfillment.gateway.base import PaymentGateway, normalize_phone

log = get_logger(__name__)


class FakeGateway(PaymentGateway):
    """Test double: issues mock request ids and can simulate the success webhook."""

    name = "fake"

    def __init__(
        self,
        callback_delay_seconds: float | None = None,
        on_success: Callable[[str], Awaitable[Any]] | None = None,
    ) -> None:
        self.callback_delay_seconds = callback_delay_seconds
        self.on_success = on_success
        self.initiated: list[tuple[str, int, str]] = []
        self._callbacks: set[asyncio.Task] = set()

    async def initiate(self, phone: str, amount: int) -> str:
        request_id = f"mock_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        self.initiated.append((normalize_phone(phone), amount, request_id))
        log.info("fake_stk_push", phone=normalize_phone(phone), amount=amount, request_id=request_id)
        if self.on_success is not None and self.callback_delay_seconds is not None:
            task = asyncio.create_task(self._simulate_callback(request_id))
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)
        return request_id

    async def _simulate_callback(self, request_id: str) -> None:
        await asyncio.sleep(self.callback_delay_seconds)
        try:
            await self.on_success(request_id)
            log.info("fake_callback_delivered", request_id=request_id)
        except Exception as e:
            log.warning("fake_callback_failed", request_id=request_id, error=str(e))

    async def aclose(self) -> None:
        for task in list(self._callbacks):
            task.cancel()
