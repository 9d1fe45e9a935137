from __future__ import annotations

import pytest

from workshop_queue.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("wq_test")
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("WORKSHOP_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("WORKSHOP_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("QUEUE_RETRY_JITTER", "0")
    monkeypatch.setenv("QUEUE_RETRY_BASE_MS", "1")
    monkeypatch.setenv("QUEUE_RETRY_CAP_MS", "5")
    monkeypatch.setenv("QUEUE_EXPIRE_ENABLED", "0")
    monkeypatch.setenv("QUEUE_REALTIME_ENABLED", "0")
    monkeypatch.delenv("STAFF_API_TOKEN", raising=False)
    monkeypatch.delenv("QUEUE_TIMEZONE", raising=False)
    get_settings.cache_clear()
