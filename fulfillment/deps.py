"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import UnauthorizedError
from fulfillment.core.logging import LogBuffer
from fulfillment.core.security import check_admin_key
from fulfillment.gateway.base import PaymentGateway
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.heartbeat import HeartbeatMonitor
from fulfillment.services.outbox import OutboxSyncEngine

ADMIN_ACTOR = "admin"


async def require_admin(x_admin_key: str | None = Header(None, alias="X-Admin-Key")) -> str:
    """Dependency: require the shared admin key. Returns the actor name for the audit log."""
    if not check_admin_key(x_admin_key, get_settings().admin_api_key):
        raise UnauthorizedError("Invalid admin key")
    return ADMIN_ACTOR


def get_heartbeat(request: Request) -> HeartbeatMonitor:
    return request.app.state.heartbeat


def get_hub(request: Request) -> DashboardHub:
    return request.app.state.hub


def get_engine(request: Request) -> OutboxSyncEngine:
    return request.app.state.engine


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_log_buffer(request: Request) -> LogBuffer:
    return request.app.state.log_buffer
