"""ARQ job definitions (BACKGROUND_MODE=arq)."""

from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from fulfillment.core.config import get_settings
from fulfillment.core.logging import configure_logging, get_logger
from fulfillment.remote.base import get_remote_store
from fulfillment.services.outbox import OutboxSyncEngine
from fulfillment.services.sweepers import prune_retention, sweep_stale

log = get_logger(__name__)


async def _run_job(job_name: str, coro) -> Any:
    """Run one job; failures are logged and re-raised so arq records them."""
    log.info("job_start", job=job_name)
    try:
        result = await coro
    except Exception as e:
        log.exception("job_failed", job=job_name, reason=str(e))
        raise
    log.info("job_done", job=job_name, result=result)
    return result


async def drain_outbox(ctx: dict[str, Any]) -> int:
    engine: OutboxSyncEngine = ctx["engine"]
    result = await _run_job("drain_outbox", engine.drain_once())
    return result.processed


async def sweep_stale_transactions(ctx: dict[str, Any]) -> int:
    return await _run_job("sweep_stale_transactions", sweep_stale())


async def prune_old_transactions(ctx: dict[str, Any]) -> int:
    return await _run_job("prune_old_transactions", prune_retention(get_settings().retention_days))


async def startup(ctx: dict) -> None:
    from fulfillment.db.init import init_db
    settings = get_settings()
    configure_logging(debug=settings.debug)
    await init_db()
    ctx["engine"] = OutboxSyncEngine.from_settings(get_remote_store(), settings)


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
