"""Background loops run inside the API process."""

from fulfillment.core.config import Settings
from fulfillment.core.logging import get_logger
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.heartbeat import HeartbeatMonitor
from fulfillment.services.outbox import OutboxSyncEngine
from fulfillment.services.sweepers import prune_retention, sweep_stale
from fulfillment.worker.loops import PeriodicTask

log = get_logger(__name__)


def heartbeat_watch(heartbeat: HeartbeatMonitor, hub: DashboardHub):
    async def check() -> bool | None:
        state = heartbeat.check_transition()
        if state is None:
            return None
        log.info("verifier_connected" if state else "verifier_disconnected")
        await hub.broadcast("app_status", {"connected": state})
        await hub.broadcast_stats()
        return state

    return check


def stale_sweep(hub: DashboardHub):
    async def sweep() -> int:
        expired = await sweep_stale()
        if expired:
            await hub.broadcast_stats()
        return expired

    return sweep


def build_tasks(
    settings: Settings,
    engine: OutboxSyncEngine,
    hub: DashboardHub,
    heartbeat: HeartbeatMonitor,
) -> list[PeriodicTask]:
    """
    Loops for the configured BACKGROUND_MODE. The heartbeat watch lives with the API
    process in every mode but "off" since the poll timestamps are held in memory.
    """
    if settings.background_mode == "off":
        return []
    tasks = [
        PeriodicTask("heartbeat_watch", heartbeat_watch(heartbeat, hub), settings.heartbeat_check_interval_seconds),
    ]
    if settings.background_mode == "inline":
        tasks += [
            engine.loop(settings.sync_interval_seconds),
            PeriodicTask("stale_sweep", stale_sweep(hub), settings.stale_sweep_interval_seconds),
            PeriodicTask(
                "retention_prune",
                lambda: prune_retention(settings.retention_days),
                settings.retention_interval_seconds,
            ),
        ]
    return tasks
