from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from workshop_queue.config import get_settings
from workshop_queue.utils.log import _redact_str  # type: ignore[attr-defined]

_lock = Lock()

# Free-text fields that may carry customer details.
_TEXT_KEYS = {"notes", "cancel_reason", "customer_ref", "motorcycle_ref"}
# Never written to audit, not even redacted.
_DROP_KEYS = {"verification_code"}


def _audit_dir() -> Path:
    return Path(get_settings().log_dir)


def _audit_path(ts: datetime) -> Path:
    return _audit_dir() / f"audit-{ts:%Y%m%d}.log"


def _scrub(meta: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in meta.items():
        ks = str(k)
        if ks in _DROP_KEYS:
            continue
        if ks in _TEXT_KEYS and isinstance(v, str):
            out[ks] = {"redacted": True, "len": len(v)} if v else ""
            continue
        if isinstance(v, str):
            out[ks] = _redact_str(v) if len(v) <= 200 else {"redacted": True, "len": len(v)}
            continue
        if isinstance(v, (list, dict)):
            out[ks] = {"count": len(v)}
            continue
        out[ks] = v
    return out


def _write_record(rec: dict[str, Any]) -> None:
    ts = datetime.now(tz=timezone.utc)
    daily = _audit_path(ts)
    daily.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(rec, ensure_ascii=False, separators=(",", ":"), default=str)
    with _lock, daily.open("a", encoding="utf-8") as f:
        f.write(line + "\n")


def emit(
    event_type: str,
    *,
    entry_id: str | None = None,
    location_id: str | None = None,
    actor: str | None = None,
    request_id: str | None = None,
    outcome: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """
    Append-only audit log (newline-delimited JSON), one file per UTC day.
    """
    rec: dict[str, Any] = {
        "ts": datetime.now(tz=timezone.utc).isoformat(),
        "event_type": str(event_type),
        "outcome": str(outcome or "ok"),
    }
    if entry_id:
        rec["entry_id"] = str(entry_id)
    if location_id:
        rec["location_id"] = str(location_id)
    if actor:
        rec["actor"] = str(actor)
    if request_id:
        rec["request_id"] = str(request_id)
    if meta:
        rec["meta"] = _scrub(meta)
    _write_record(rec)


def audit_sink(event: dict[str, Any]) -> None:
    """EventBus subscriber: one audit line per queue domain event."""
    meta = {
        k: v
        for k, v in event.items()
        if k not in {"type", "ts", "id", "location_id", "assigned_to"}
    }
    emit(
        str(event.get("type") or "queue.event"),
        entry_id=event.get("id"),
        location_id=event.get("location_id"),
        actor=event.get("assigned_to"),
        meta=meta,
    )
