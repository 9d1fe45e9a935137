from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from workshop_queue.config import get_settings
from workshop_queue.queue.engine import UnifiedQueueEngine
from workshop_queue.queue.updates import UpdateDistributor
from workshop_queue.utils.log import logger


def extract_api_key(request: Request) -> str | None:
    v = (request.headers.get("x-api-key") or "").strip()
    return v or None


def require_staff(request: Request) -> None:
    """
    Staff-only operations (call-next, start, complete, expire).
    Open when STAFF_API_TOKEN is unset.
    """
    tok = get_settings().secret.staff_api_token
    expected = tok.get_secret_value() if tok is not None else ""
    if not expected:
        return
    got = extract_api_key(request) or ""
    if not hmac.compare_digest(got.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("staff_auth_failed", path=str(request.url.path))
        raise HTTPException(status_code=401, detail="staff api key required")


def get_engine(request: Request) -> UnifiedQueueEngine:
    engine = getattr(request.app.state, "queue_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="queue engine not ready")
    return engine


def get_distributor(request: Request) -> UpdateDistributor:
    dist = getattr(request.app.state, "update_distributor", None)
    if dist is None:
        raise HTTPException(status_code=503, detail="update distributor not ready")
    return dist
