from __future__ import annotations

from pathlib import Path

import pytest

from config.settings import SETTINGS
from workshop_queue.config import ConfigError, get_safe_config_report, get_settings


def test_defaults() -> None:
    s = get_settings()
    assert s.queue_cache_ttl_sec == 5.0
    assert s.queue_retry_max_attempts == 3
    assert s.queue_entry_ttl_min == 15
    assert s.queue_poll_interval_sec == 30.0
    assert s.queue_realtime_enabled is False
    assert s.public.queue_db_path().name == "queue.db"
    assert SETTINGS.queue_default_location == "main"


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("QUEUE_CACHE_TTL_SEC", "2.5")
    monkeypatch.setenv("QUEUE_DB_NAME", "other.db")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.test; http://b.test")
    get_settings.cache_clear()
    s = get_settings()
    assert s.queue_cache_ttl_sec == 2.5
    assert s.public.queue_db_path().name == "other.db"
    assert s.cors_origin_list() == ["http://a.test", "http://b.test"]


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("QUEUE_TIMEZONE", "Mars/Olympus"),
        ("QUEUE_RETRY_MAX_ATTEMPTS", "0"),
        ("QUEUE_RETRY_MAX_ATTEMPTS", "11"),
        ("QUEUE_CACHE_TTL_SEC", "-1"),
        ("QUEUE_EXPIRE_PAGE_SIZE", "0"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        get_settings()


def test_safe_report_never_contains_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STAFF_API_TOKEN", "very-secret-staff-token")
    get_settings.cache_clear()
    rep = get_safe_config_report()
    assert rep["secrets"]["staff_api_token"] == "SET"
    assert "very-secret-staff-token" not in repr(rep)
    assert rep["public"]["queue_cache_ttl_sec"] == 5.0
