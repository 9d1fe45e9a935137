from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def cors_origin_list(self) -> list[str]:
        return self.public.cors_origin_list()


def _validate(s: Settings) -> None:
    """
    Hard-fail on values the queue cannot run with; warn on merely odd ones.
    """
    pub = s.public
    try:
        ZoneInfo(str(pub.queue_timezone))
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"Unknown QUEUE_TIMEZONE: {pub.queue_timezone!r}") from None

    if int(pub.queue_retry_max_attempts) < 1 or int(pub.queue_retry_max_attempts) > 10:
        raise ConfigError("QUEUE_RETRY_MAX_ATTEMPTS must be between 1 and 10")
    if float(pub.queue_cache_ttl_sec) < 0:
        raise ConfigError("QUEUE_CACHE_TTL_SEC must be >= 0")
    if int(pub.queue_expire_page_size) < 1:
        raise ConfigError("QUEUE_EXPIRE_PAGE_SIZE must be >= 1")

    if float(pub.queue_poll_interval_sec) < 5.0:
        logging.getLogger("workshop_queue").warning(
            "poll_interval_low",
            extra={"queue_poll_interval_sec": float(pub.queue_poll_interval_sec)},
        )


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub_s: dict[str, Any] = {}
    for k, v in s.public.model_dump().items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {"public": pub_s, "secrets": sec}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s


class _SettingsProxy:
    """
    Lazy proxy so tests can set env vars before first access.
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)

    def reload(self) -> None:
        get_settings.cache_clear()

    def snapshot(self) -> Settings:
        return get_settings()


# Single access point
SETTINGS = _SettingsProxy()
