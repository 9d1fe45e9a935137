from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from workshop_queue.config import get_settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
operation_id_var: ContextVar[str | None] = ContextVar("operation_id", default=None)


def set_request_id(rid: str | None) -> None:
    request_id_var.set(rid)


def set_operation_id(oid: str | None) -> None:
    operation_id_var.set(oid)


def _log_path() -> Path:
    return Path(get_settings().log_dir) / "app.log"


_API_KEY_HDR_RE = re.compile(r"(?i)\b(x-api-key)\b\s*[:=]\s*([^\s,;]+)")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_KV_RE = re.compile(r"(?i)\b(staff_api_token|api_token|token|secret|password)\b\s*=\s*([^\s,;]+)")


def _secret_literals() -> list[str]:
    """
    Configured secret values that must never appear in logs.
    """
    out: list[str] = []
    with suppress(Exception):
        tok = get_settings().secret.staff_api_token
        if tok is not None:
            raw = str(tok.get_secret_value() or "")
            # Ignore tiny values to avoid over-redaction.
            if len(raw) >= 8:
                out.append(raw)
    return out


def _redact_str(s: str) -> str:
    for lit in _secret_literals():
        if lit in s:
            s = s.replace(lit, "***REDACTED***")
    s = _API_KEY_HDR_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    rid = request_id_var.get()
    oid = operation_id_var.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    if oid:
        event_dict.setdefault("operation_id", oid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    s = get_settings()
    level = str(s.log_level).upper()

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicates if re-imported
    if getattr(root, "_workshop_queue_structlog_configured", False):
        return structlog.get_logger("workshop_queue")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    root.handlers.clear()
    try:
        log_path = _log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=int(s.log_max_bytes),
            backupCount=int(s.log_backup_count),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as ex:
        # Read-only mounts: keep console logging only.
        print(f"workshop_queue: file logging disabled ({ex})", file=sys.stderr)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_contextvars,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._workshop_queue_structlog_configured = True
    return structlog.get_logger("workshop_queue")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """
    Runtime log level override (CLI convenience).
    Only raises/lowers filtering level; handlers stay as configured.
    """
    lvl = getattr(logging, str(level).upper(), None)
    if not isinstance(lvl, int):
        logger.warning("log_level_invalid", value=str(level))
        return
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)
