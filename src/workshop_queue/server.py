from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from workshop_queue.api.middleware import request_context_middleware
from workshop_queue.api.routes_queue import router as queue_router
from workshop_queue.config import get_settings
from workshop_queue.ops.audit import audit_sink
from workshop_queue.ops.metrics import REGISTRY
from workshop_queue.queue import events as ev
from workshop_queue.queue.engine import UnifiedQueueEngine
from workshop_queue.queue.errors import PreconditionFailed, QueueError, StoreUnavailable
from workshop_queue.queue.events import EventBus
from workshop_queue.queue.sweeper import ExpirySweeper
from workshop_queue.queue.updates import UpdateDistributor
from workshop_queue.utils.log import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    bus = EventBus()
    bus.subscribe(ev.ALL, audit_sink)
    engine = UnifiedQueueEngine.from_settings(bus=bus)
    distributor = UpdateDistributor.from_settings(engine)
    sweeper = ExpirySweeper.from_settings(engine)

    app.state.event_bus = bus
    app.state.queue_engine = engine
    app.state.update_distributor = distributor
    app.state.expiry_sweeper = sweeper

    # Today's queue for the default location is the hot read on boot.
    await engine.warm_locations([str(s.queue_default_location)])
    if bool(s.queue_expire_enabled):
        await sweeper.start()
    logger.info(
        "server_started",
        db=str(s.public.queue_db_path()),
        realtime=bool(s.queue_realtime_enabled),
        poll_interval_s=float(s.queue_poll_interval_sec),
    )
    try:
        yield
    finally:
        await sweeper.stop()
        await distributor.close()
        logger.info("server_stopped")


app = FastAPI(title="workshop queue", lifespan=lifespan)

s = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=s.cors_origin_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Api-Key", "X-Request-ID"],
)
app.middleware("http")(request_context_middleware)
app.include_router(queue_router)


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    # Only infrastructure faults reach here; business outcomes are returned as results.
    headers: dict[str, str] = {}
    if isinstance(exc, StoreUnavailable):
        status = 503
        headers["Retry-After"] = str(max(1, int(round(exc.retry_after_s))))
    elif isinstance(exc, PreconditionFailed):
        status = 409
    else:
        status = 500
    return JSONResponse(
        status_code=status, content={"ok": False, "error": exc.to_dict()}, headers=headers
    )


@app.get("/health")
async def health():
    return {"ok": True}


@app.get("/readyz")
async def readyz(request: Request):
    engine = getattr(request.app.state, "queue_engine", None)
    if engine is None:
        return JSONResponse(status_code=503, content={"ok": False, "detail": "not ready"})
    sweeper = getattr(request.app.state, "expiry_sweeper", None)
    dist = getattr(request.app.state, "update_distributor", None)
    return {
        "ok": True,
        "cache": engine.cache.stats(),
        "sweeper_running": bool(sweeper is not None and sweeper.running),
        "subscriptions": dist.stats() if dist is not None else {},
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
