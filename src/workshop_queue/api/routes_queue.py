from __future__ import annotations

import asyncio
import json
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse  # type: ignore

from workshop_queue.api.deps import get_distributor, get_engine, require_staff
from workshop_queue.queue.engine import UnifiedQueueEngine
from workshop_queue.queue.errors import (
    EmptyQueue,
    EntryNotFound,
    InvalidTransition,
    QueueClosed,
    QueueResult,
    ValidationFailed,
)
from workshop_queue.queue.models import QueueSnapshot
from workshop_queue.queue.updates import DeliveryMode, UpdateDistributor

router = APIRouter(prefix="/api/queue", tags=["queue"])

_FAILURE_STATUS = {
    EmptyQueue: 200,
    EntryNotFound: 404,
    InvalidTransition: 409,
    QueueClosed: 409,
    ValidationFailed: 422,
}


class JoinRequest(BaseModel):
    customer_ref: str
    motorcycle_ref: str
    service_refs: list[str] = Field(default_factory=list)
    priority: str = "normal"
    notes: str = ""


class CallNextRequest(BaseModel):
    technician: str | None = None


class CancelRequest(BaseModel):
    reason: str = ""


class ExpireRequest(BaseModel):
    max_age_min: int | None = Field(default=None, ge=0)


class StatusRequest(BaseModel):
    # Omitted: toggle.
    is_open: bool | None = None


class HoursRequest(BaseModel):
    operating_hours: dict[str, dict[str, Any]]


class ClearRequest(BaseModel):
    reason: str = "queue cleared"


def _respond(res: QueueResult[Any], key: str) -> Any:
    if res.ok:
        v = res.value
        return {"ok": True, key: v.to_dict() if hasattr(v, "to_dict") else v}
    err = res.error
    status = _FAILURE_STATUS.get(type(err), 400)
    return JSONResponse(status_code=status, content={"ok": False, "error": err.to_dict()})


@router.post("/{location_id}/entries")
async def join_queue(
    location_id: str, body: JoinRequest, engine: UnifiedQueueEngine = Depends(get_engine)
):
    res = await engine.add_entry(
        body.customer_ref,
        body.motorcycle_ref,
        body.service_refs,
        body.priority,
        location_id=location_id,
        notes=body.notes,
    )
    return _respond(res, "entry")


@router.post("/{location_id}/call-next", dependencies=[Depends(require_staff)])
async def call_next(
    location_id: str,
    body: CallNextRequest | None = None,
    engine: UnifiedQueueEngine = Depends(get_engine),
):
    res = await engine.call_next(location_id, technician=(body.technician if body else None))
    return _respond(res, "entry")


@router.post("/entries/{entry_id}/start", dependencies=[Depends(require_staff)])
async def start_service(entry_id: str, engine: UnifiedQueueEngine = Depends(get_engine)):
    return _respond(await engine.start_service(entry_id), "entry")


@router.post("/entries/{entry_id}/complete", dependencies=[Depends(require_staff)])
async def complete_entry(entry_id: str, engine: UnifiedQueueEngine = Depends(get_engine)):
    return _respond(await engine.complete_entry(entry_id), "entry")


@router.post("/entries/{entry_id}/cancel")
async def cancel_entry(
    entry_id: str,
    body: CancelRequest | None = None,
    engine: UnifiedQueueEngine = Depends(get_engine),
):
    return _respond(await engine.cancel_entry(entry_id, body.reason if body else ""), "entry")


@router.get("/entries/{entry_id}")
async def get_entry(entry_id: str, engine: UnifiedQueueEngine = Depends(get_engine)):
    return _respond(await engine.get_entry(entry_id), "entry")


@router.post("/expire", dependencies=[Depends(require_staff)])
async def expire_entries(
    body: ExpireRequest | None = None, engine: UnifiedQueueEngine = Depends(get_engine)
):
    max_age_ms = None
    if body is not None and body.max_age_min is not None:
        max_age_ms = int(body.max_age_min) * 60_000
    res = await engine.expire_stale_entries(max_age_ms)
    if not res.ok:
        return _respond(res, "expired")
    return {"ok": True, "expired": [e.id for e in res.value or []]}


@router.get("/{location_id}")
async def queue_snapshot(location_id: str, engine: UnifiedQueueEngine = Depends(get_engine)):
    return _respond(await engine.get_queue_snapshot(location_id), "snapshot")


@router.get("/{location_id}/stats")
async def queue_stats(location_id: str, engine: UnifiedQueueEngine = Depends(get_engine)):
    return _respond(await engine.get_statistics(location_id), "stats")


@router.get("/{location_id}/code/{code}")
async def entry_by_code(
    location_id: str, code: str, engine: UnifiedQueueEngine = Depends(get_engine)
):
    return _respond(await engine.get_entry_by_code(location_id, code), "entry")


@router.get("/{location_id}/events")
async def queue_events(
    location_id: str,
    request: Request,
    mode: DeliveryMode = Query(default=DeliveryMode.POLL),
    dist: UpdateDistributor = Depends(get_distributor),
):
    """Server-sent queue snapshots; `mode=push` is honoured only when realtime is enabled."""
    inbox: asyncio.Queue[QueueSnapshot] = asyncio.Queue(maxsize=16)

    def _on_update(snap: QueueSnapshot) -> None:
        # Displays only need the latest state; drop the oldest when a client lags.
        if inbox.full():
            with suppress(asyncio.QueueEmpty):
                inbox.get_nowait()
        inbox.put_nowait(snap)

    async def gen():
        sub = await dist.subscribe(location_id, _on_update, mode=mode)
        try:
            yield {"event": "mode", "data": json.dumps({"mode": sub.mode.value})}
            while True:
                if await request.is_disconnected():
                    return
                try:
                    snap = await asyncio.wait_for(inbox.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                yield {"event": "snapshot", "data": json.dumps(snap.to_dict())}
        except asyncio.CancelledError:
            return
        finally:
            await sub.unsubscribe()

    return EventSourceResponse(gen())


@router.get("/{location_id}/status")
async def queue_status(location_id: str, engine: UnifiedQueueEngine = Depends(get_engine)):
    res = await engine.get_queue_status(location_id)
    if not res.ok:
        return _respond(res, "status")
    status = res.value
    out = status.to_dict()
    out["open_by_hours"] = engine.is_open_by_hours(status)
    return {"ok": True, "status": out}


@router.post("/{location_id}/status", dependencies=[Depends(require_staff)])
async def set_queue_status(
    location_id: str,
    body: StatusRequest | None = None,
    engine: UnifiedQueueEngine = Depends(get_engine),
):
    res = await engine.set_queue_open(location_id, body.is_open if body else None)
    return _respond(res, "status")


@router.put("/{location_id}/hours", dependencies=[Depends(require_staff)])
async def update_hours(
    location_id: str, body: HoursRequest, engine: UnifiedQueueEngine = Depends(get_engine)
):
    return _respond(await engine.update_operating_hours(location_id, body.operating_hours), "status")


@router.post("/{location_id}/clear", dependencies=[Depends(require_staff)])
async def clear_queue(
    location_id: str,
    body: ClearRequest | None = None,
    engine: UnifiedQueueEngine = Depends(get_engine),
):
    res = await engine.clear_queue(location_id, body.reason if body else "queue cleared")
    if not res.ok:
        return _respond(res, "cleared")
    return {"ok": True, "cleared": [e.id for e in res.value or []]}
