from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from workshop_queue.cache.store import QueryCache
from workshop_queue.queue.engine import UnifiedQueueEngine
from workshop_queue.queue.events import EventBus
from workshop_queue.queue.executor import TransactionExecutor
from workshop_queue.store.versioned import VersionedStore
from workshop_queue.utils.retry import NoBackoff

SERVICES = ["oil-change"]


class Clock:
    """Settable wall clock shared by the engine and its cache."""

    def __init__(self, start: datetime | None = None) -> None:
        self.t = start or datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.t

    def mono(self) -> float:
        return self.t.timestamp()

    def advance(self, **kw: float) -> None:
        self.t = self.t + timedelta(**kw)


def make_engine(
    db_path: Path,
    *,
    clock: Clock | None = None,
    store: VersionedStore | None = None,
    bus: EventBus | None = None,
    max_attempts: int = 3,
    ttl_s: float = 5.0,
) -> UnifiedQueueEngine:
    clock = clock or Clock()
    store = store or VersionedStore(db_path)
    return UnifiedQueueEngine(
        store,
        QueryCache(ttl_s=ttl_s, max_entries=100, clock=clock.mono),
        TransactionExecutor(store, max_attempts=max_attempts, backoff=NoBackoff()),
        bus or EventBus(),
        now=clock,
    )


async def join(engine: UnifiedQueueEngine, customer: str, *, location: str = "L1", priority: str = "normal"):
    res = await engine.add_entry(customer, f"bike-{customer}", SERVICES, priority, location_id=location)
    return res.unwrap()
