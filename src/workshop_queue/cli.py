from __future__ import annotations

import asyncio
import json
import sys

import click

from workshop_queue.config import get_safe_config_report, get_settings
from workshop_queue.queue.engine import UnifiedQueueEngine
from workshop_queue.queue.errors import QueueError
from workshop_queue.utils.log import logger, set_log_level


def _fail(ex: QueueError) -> None:
    click.echo(json.dumps({"ok": False, "error": ex.to_dict()}), err=True)
    sys.exit(2)


@click.group(help="Workshop service queue.")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    if log_level:
        set_log_level(log_level)


@cli.command(name="serve")
@click.option("--host", default=None, help="Bind address (default: HOST).")
@click.option("--port", type=int, default=None, help="Port (default: PORT).")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP API (uvicorn)."""
    import uvicorn

    s = get_settings()
    uvicorn.run(
        "workshop_queue.server:app",
        host=str(host or s.host),
        port=int(port or s.port),
        log_config=None,
    )


@cli.command(name="expire")
@click.option(
    "--max-age-min",
    type=int,
    default=None,
    help="Expire waiting entries older than this (default: QUEUE_EXPIRE_MAX_AGE_MIN).",
)
@click.option("--page-size", type=int, default=None, help="Max entries scanned in one run.")
def expire(max_age_min: int | None, page_size: int | None) -> None:
    """One expiry sweep (for cron / scheduled triggers)."""
    engine = UnifiedQueueEngine.from_settings()
    max_age_ms = int(max_age_min) * 60_000 if max_age_min is not None else None
    try:
        res = asyncio.run(engine.expire_stale_entries(max_age_ms, page_size=page_size))
    except QueueError as ex:
        _fail(ex)
        return
    ids = [e.id for e in res.unwrap()]
    logger.info("cli_expire", expired=len(ids))
    click.echo(json.dumps({"ok": True, "expired": ids}))


@cli.command(name="snapshot")
@click.argument("location_id", required=False)
@click.option("--stats", "with_stats", is_flag=True, default=False, help="Include statistics.")
def snapshot(location_id: str | None, with_stats: bool) -> None:
    """Print today's queue for a location as JSON."""
    engine = UnifiedQueueEngine.from_settings()

    async def _go() -> dict:
        snap = (await engine.get_queue_snapshot(location_id)).unwrap()
        out = {"snapshot": snap.to_dict(include_codes=True)}
        if with_stats:
            out["stats"] = (await engine.get_statistics(location_id)).unwrap().to_dict()
        return out

    try:
        out = asyncio.run(_go())
    except QueueError as ex:
        _fail(ex)
        return
    click.echo(json.dumps(out, indent=2, sort_keys=True))


@cli.command(name="status")
@click.argument("location_id", required=False)
@click.option("--open/--close", "is_open", default=None, help="Open or close the queue for joins.")
@click.option("--sync-hours", is_flag=True, default=False, help="Apply the weekly hours now.")
def status(location_id: str | None, is_open: bool | None, sync_hours: bool) -> None:
    """Show (or change) whether a location accepts joins."""
    engine = UnifiedQueueEngine.from_settings()

    async def _go() -> dict:
        if is_open is not None:
            (await engine.set_queue_open(location_id, is_open)).unwrap()
        if sync_hours:
            (await engine.sync_operating_hours([location_id or ""])).unwrap()
        st = (await engine.get_queue_status(location_id)).unwrap()
        return {"status": st.to_dict(), "open_by_hours": engine.is_open_by_hours(st)}

    try:
        out = asyncio.run(_go())
    except QueueError as ex:
        _fail(ex)
        return
    click.echo(json.dumps(out, sort_keys=True))


@cli.command(name="clear")
@click.argument("location_id", required=False)
@click.option("--reason", default="queue cleared", show_default=True)
@click.confirmation_option(prompt="Cancel every waiting and called entry?")
def clear(location_id: str | None, reason: str) -> None:
    """Cancel all active entries of today's queue."""
    engine = UnifiedQueueEngine.from_settings()
    try:
        res = asyncio.run(engine.clear_queue(location_id, reason))
    except QueueError as ex:
        _fail(ex)
        return
    ids = [e.id for e in res.unwrap()]
    logger.info("cli_clear", location_id=location_id, cleared=len(ids))
    click.echo(json.dumps({"ok": True, "cleared": ids}))


@cli.command(name="config")
def config_report() -> None:
    """Print effective settings (secrets shown as SET/UNSET only)."""
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True, default=str))


if __name__ == "__main__":  # pragma: no cover
    cli()
