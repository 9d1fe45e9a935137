from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass

from workshop_queue.config import get_settings
from workshop_queue.ops import audit
from workshop_queue.utils.log import logger

from .engine import UnifiedQueueEngine
from .errors import PreconditionFailed, StoreUnavailable


@dataclass(frozen=True, slots=True)
class SweepConfig:
    interval_s: float
    max_age_ms: int
    page_size: int
    sync_hours: bool = False


class ExpirySweeper:
    """
    Periodic trigger for `expire_stale_entries`.

    Each tick expires at most one page of stale entries and drops expired cache
    records. With `sync_hours` it also opens or closes locations by their hours.
    A failing tick is logged and the next one runs on schedule.
    """

    def __init__(self, engine: UnifiedQueueEngine, cfg: SweepConfig) -> None:
        self._engine = engine
        self._cfg = cfg
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.runs = 0
        self.expired_total = 0
        self.status_changes = 0

    @classmethod
    def from_settings(cls, engine: UnifiedQueueEngine) -> ExpirySweeper:
        s = get_settings()
        return cls(
            engine,
            SweepConfig(
                interval_s=float(s.queue_expire_interval_sec),
                max_age_ms=int(s.queue_expire_max_age_min) * 60_000,
                page_size=int(s.queue_expire_page_size),
                sync_hours=bool(s.queue_hours_sync_enabled),
            ),
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name="queue.expiry.sweep")
        logger.info("expiry_sweeper_started", interval_s=self._cfg.interval_s)
        audit.emit("queue.sweeper_started", meta={"interval_s": self._cfg.interval_s})

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await self._task
        self._task = None
        logger.info("expiry_sweeper_stopped", runs=self.runs, expired=self.expired_total)

    async def run_once(self) -> int:
        res = await self._engine.expire_stale_entries(
            self._cfg.max_age_ms, page_size=self._cfg.page_size
        )
        expired = res.unwrap()
        n = len(expired)
        if expired:
            # Bulk invalidation just emptied these listings.
            await self._engine.warm_locations(sorted({e.location_id for e in expired}))
        if self._cfg.sync_hours:
            self.status_changes += len((await self._engine.sync_operating_hours()).unwrap())
        self._engine.cache.cleanup()
        self.runs += 1
        self.expired_total += n
        return n

    async def _loop(self) -> None:
        while not self._stopping:
            try:
                n = await self.run_once()
                if n:
                    logger.info("expiry_sweep", expired=n)
            except (StoreUnavailable, PreconditionFailed) as ex:
                logger.warning("expiry_sweep_failed", error=str(ex), code=ex.code)
            except Exception:
                logger.exception("expiry_sweep_failed")
            await asyncio.sleep(max(0.05, float(self._cfg.interval_s)))
