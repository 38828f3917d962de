"""Push channel to connected admin dashboards (stats and events over WebSocket)."""

from typing import Any

from fastapi import WebSocket

from fulfillment.core.logging import get_logger
from fulfillment.services import transactions as transactions_service
from fulfillment.services.heartbeat import HeartbeatMonitor

log = get_logger(__name__)


class DashboardHub:
    def __init__(self, heartbeat: HeartbeatMonitor) -> None:
        self.heartbeat = heartbeat
        self._clients: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.add(websocket)
        log.info("dashboard_connected", clients=len(self._clients))

    def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        log.info("dashboard_disconnected", clients=len(self._clients))

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def broadcast(self, event: str, data: dict[str, Any]) -> int:
        """Send to every client; clients that fail to receive are dropped. Returns deliveries."""
        message = {"event": event, "data": data}
        delivered = 0
        for ws in list(self._clients):
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as e:
                log.warning("dashboard_send_failed", event=event, error=str(e))
                self._clients.discard(ws)
        return delivered

    async def stats(self) -> dict[str, Any]:
        stats = await transactions_service.get_stats()
        stats["app_connected"] = self.heartbeat.is_connected()
        stats["dashboard_clients"] = self.client_count
        return stats

    async def broadcast_stats(self) -> int:
        return await self.broadcast("stats_update", await self.stats())
