from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from fulfillment.core.config import get_settings
from fulfillment.core.logging import LogBuffer
from fulfillment.core.security import check_admin_key
from fulfillment.deps import get_heartbeat, get_hub, get_log_buffer, require_admin
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.heartbeat import HeartbeatMonitor

router = APIRouter()


@router.get("/stats")
async def dashboard_stats(
    _: str = Depends(require_admin),
    hub: DashboardHub = Depends(get_hub),
    heartbeat: HeartbeatMonitor = Depends(get_heartbeat),
):
    stats = await hub.stats()
    stats["heartbeat"] = heartbeat.snapshot()
    return stats


@router.get("/logs")
async def dashboard_logs(
    _: str = Depends(require_admin),
    log_buffer: LogBuffer = Depends(get_log_buffer),
    limit: int = Query(100, ge=1, le=1000),
):
    """Most recent log events, newest last."""
    entries = log_buffer.entries()
    return {"logs": entries[-limit:]}


@router.websocket("/ws")
async def dashboard_ws(websocket: WebSocket):
    """Push channel: initial stats and log backlog on connect, then events as they happen."""
    provided = websocket.headers.get("x-admin-key") or websocket.query_params.get("key")
    if not check_admin_key(provided, get_settings().admin_api_key):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    hub: DashboardHub = websocket.app.state.hub
    log_buffer: LogBuffer = websocket.app.state.log_buffer
    await hub.connect(websocket)
    try:
        await websocket.send_json({"event": "stats_update", "data": await hub.stats()})
        await websocket.send_json({"event": "logs", "data": log_buffer.entries()})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
