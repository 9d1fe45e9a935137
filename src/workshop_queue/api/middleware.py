from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from fastapi import Request, Response

from workshop_queue.utils.log import set_request_id


def _new_request_id() -> str:
    return uuid.uuid4().hex


async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Any]
) -> Response:
    """
    Request-scoped context:
    - Inject X-Request-ID if absent
    - Put request_id into a contextvar so all logs get the correlation field
    """
    rid = request.headers.get("x-request-id") or _new_request_id()
    set_request_id(rid)
    request.state.request_id = rid
    try:
        resp = await call_next(request)
        resp.headers.setdefault("x-request-id", rid)
        return resp
    finally:
        set_request_id(None)
