import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from fulfillment.core.config import get_settings
from fulfillment.core.exceptions import (
    AppError,
    SyncError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from fulfillment.core.logging import LogBuffer, bind_request_id, configure_logging, get_logger
from fulfillment.db.init import init_db
from fulfillment.gateway.base import PaymentGateway, get_gateway
from fulfillment.remote.base import RemoteStore, get_remote_store
from fulfillment.routers import admin, credits, dashboard, payments, verifications
from fulfillment.services import transactions as transactions_service
from fulfillment.services.dashboard import DashboardHub
from fulfillment.services.heartbeat import HeartbeatMonitor
from fulfillment.services.outbox import OutboxSyncEngine
from fulfillment.worker.inline import build_tasks

settings = get_settings()
log_buffer = LogBuffer(maxlen=settings.log_buffer_size)
configure_logging(debug=settings.debug, log_buffer=log_buffer)
log = get_logger(__name__)

app = FastAPI(
    title="Credit Fulfillment API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(payments.router, prefix="/v1/payments", tags=["payments"])
app.include_router(verifications.router, prefix="/v1/verifications", tags=["verifications"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
app.include_router(dashboard.router, prefix="/v1/dashboard", tags=["dashboard"])


def install_components(
    app: FastAPI,
    remote: RemoteStore | None = None,
    gateway: PaymentGateway | None = None,
) -> None:
    """Attach the long-lived collaborators routers reach through app.state."""
    heartbeat = HeartbeatMonitor(threshold_seconds=settings.verifier_heartbeat_threshold_seconds)
    hub = DashboardHub(heartbeat)

    async def simulated_success(request_id: str) -> None:
        txn = await transactions_service.apply_webhook(request_id, "success")
        await hub.broadcast("transaction_updated", {"id": txn.id, "status": txn.status.value})
        await hub.broadcast_stats()

    app.state.heartbeat = heartbeat
    app.state.hub = hub
    app.state.engine = OutboxSyncEngine.from_settings(remote)
    app.state.gateway = gateway or get_gateway(on_success=simulated_success)
    app.state.log_buffer = log_buffer
    app.state.tasks = []


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    await init_db()
    log.info("startup", msg="DB connected")
    install_components(app, remote=get_remote_store())
    try:
        await app.state.engine.hydrate()
    except SyncError as e:
        log.error("hydrate_failed", error=e.message)
    app.state.tasks = build_tasks(settings, app.state.engine, app.state.hub, app.state.heartbeat)
    for task in app.state.tasks:
        task.start()
    log.info(
        "startup",
        msg="Components ready",
        background_mode=settings.background_mode,
        gateway=app.state.gateway.name,
        remote_store=settings.remote_store,
    )


@app.on_event("shutdown")
async def shutdown():
    for task in getattr(app.state, "tasks", []):
        await task.stop()
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.aclose()


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    heartbeat = getattr(app.state, "heartbeat", None)
    return {
        "status": "ok",
        "verifier_connected": heartbeat.is_connected() if heartbeat else False,
    }
