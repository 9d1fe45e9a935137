from __future__ import annotations

import asyncio
import json

from click.testing import CliRunner

from workshop_queue.cli import cli
from workshop_queue.queue.engine import UnifiedQueueEngine


def _seed(location: str, n: int) -> None:
    engine = UnifiedQueueEngine.from_settings()

    async def go():
        for i in range(n):
            (await engine.add_entry(f"c{i}", "bike", ["oil"], location_id=location)).unwrap()

    asyncio.run(go())


def test_config_command_hides_secrets(monkeypatch) -> None:
    from workshop_queue.config import get_settings

    monkeypatch.setenv("STAFF_API_TOKEN", "cli-secret-token-xyz")
    get_settings.cache_clear()
    r = CliRunner().invoke(cli, ["config"])
    assert r.exit_code == 0, r.output
    assert "cli-secret-token-xyz" not in r.output
    assert json.loads(r.output)["secrets"]["staff_api_token"] == "SET"


def test_snapshot_command() -> None:
    _seed("L1", 2)
    r = CliRunner().invoke(cli, ["snapshot", "L1", "--stats"])
    assert r.exit_code == 0, r.output
    out = json.loads(r.output)
    assert [e["position"] for e in out["snapshot"]["waiting"]] == [1, 2]
    assert out["stats"]["counts"]["waiting"] == 2


def test_expire_command() -> None:
    _seed("L1", 3)
    r = CliRunner().invoke(cli, ["expire", "--max-age-min", "0"])
    assert r.exit_code == 0, r.output
    assert len(json.loads(r.output.strip().splitlines()[-1])["expired"]) == 3
    r = CliRunner().invoke(cli, ["expire", "--max-age-min", "0"])
    assert json.loads(r.output.strip().splitlines()[-1])["expired"] == []


def test_status_and_clear_commands() -> None:
    _seed("L1", 2)
    r = CliRunner().invoke(cli, ["status", "L1", "--close"])
    assert r.exit_code == 0, r.output
    assert json.loads(r.output.strip().splitlines()[-1])["status"]["is_open"] is False

    r = CliRunner().invoke(cli, ["clear", "L1", "--yes"])
    assert r.exit_code == 0, r.output
    assert len(json.loads(r.output.strip().splitlines()[-1])["cleared"]) == 2
