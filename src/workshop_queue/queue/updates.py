from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from enum import Enum
from typing import Any

from workshop_queue.config import get_settings
from workshop_queue.ops import metrics
from workshop_queue.store.versioned import Versioned, VersionedStore
from workshop_queue.utils.log import logger

from .engine import UnifiedQueueEngine
from .errors import PreconditionFailed, StoreUnavailable
from .models import ENTRIES, QueueSnapshot

OnUpdate = Callable[[QueueSnapshot], "Awaitable[None] | None"]


class DeliveryMode(str, Enum):
    POLL = "poll"
    PUSH = "push"


def _signature(snap: QueueSnapshot) -> tuple[tuple[str, int], ...]:
    return tuple((e.id, e.version) for e in snap.waiting) + tuple(
        (e.id, e.version) for e in snap.called
    )


class Subscription:
    """
    One consumer's live view of a location's queue.

    Delivery is either POLL (fetch a snapshot every `poll_interval_s`) or PUSH
    (refresh whenever the store's change feed reports a write for this location).
    Only changed snapshots are delivered, except on mode switches where the
    current/last-known snapshot is always re-delivered.
    """

    def __init__(
        self,
        distributor: UpdateDistributor,
        location_id: str,
        on_update: OnUpdate,
    ) -> None:
        self._d = distributor
        self.location_id = location_id
        self._on_update = on_update
        self.mode = DeliveryMode.POLL
        self.last_snapshot: QueueSnapshot | None = None
        self._last_sig: tuple[tuple[str, int], ...] | None = None
        self._poll_task: asyncio.Task | None = None
        self._push_task: asyncio.Task | None = None
        self._push_pending = False
        self._unwatch: Callable[[], None] | None = None
        self._closed = False
        self._refresh_lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return not self._closed

    async def _deliver(self, snap: QueueSnapshot) -> None:
        res = self._on_update(snap)
        if asyncio.iscoroutine(res):
            await res

    async def refresh(self, *, force: bool = False) -> QueueSnapshot | None:
        """Fetch a snapshot; deliver it if it changed (or `force`)."""
        async with self._refresh_lock:
            try:
                snap = (await self._d.engine.get_queue_snapshot(self.location_id)).unwrap()
            except (StoreUnavailable, PreconditionFailed) as ex:
                logger.warning(
                    "queue_update_refresh_failed",
                    location_id=self.location_id,
                    mode=self.mode.value,
                    error=str(ex),
                )
                return None
            sig = _signature(snap)
            changed = sig != self._last_sig
            self.last_snapshot = snap
            self._last_sig = sig
            if changed or force:
                await self._deliver(snap)
            return snap

    # --- polling ---

    def _start_polling(self, *, initial_delay: bool) -> None:
        if self._poll_task is not None:
            return
        self._poll_task = asyncio.create_task(
            self._poll_loop(initial_delay=initial_delay),
            name=f"queue.updates.poll.{self.location_id}",
        )

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _poll_loop(self, *, initial_delay: bool) -> None:
        interval = max(0.01, float(self._d.poll_interval_s))
        if initial_delay:
            await asyncio.sleep(interval)
        while not self._closed:
            try:
                await self.refresh()
            except Exception:
                # Subscriber callback failures must not kill the loop.
                logger.exception("queue_update_deliver_failed", location_id=self.location_id)
            await asyncio.sleep(interval)

    # --- push ---

    def _on_change(self, doc: Versioned) -> None:
        if self._closed or doc.data.get("location_id") != self.location_id:
            return
        # Coalesce bursts (a renumbering batch publishes many documents).
        if self._push_pending:
            return
        self._push_pending = True
        self._push_task = asyncio.get_running_loop().create_task(self._push_refresh())

    async def _push_refresh(self) -> None:
        self._push_pending = False
        try:
            await self.refresh()
        except Exception:
            logger.exception("queue_update_deliver_failed", location_id=self.location_id)

    async def enable_push(self) -> bool:
        """
        Switch to PUSH. Returns False (and keeps polling) when realtime delivery is
        disabled in config.
        """
        if self._closed:
            return False
        if self.mode == DeliveryMode.PUSH:
            return True
        if not self._d.realtime_enabled:
            logger.warning("queue_push_disabled", location_id=self.location_id)
            return False
        # Snapshot first so nothing committed before the listener attaches is missed.
        await self.refresh(force=True)
        self._unwatch = self._d.store.watch(ENTRIES, self._on_change)
        await self._stop_polling()
        self._set_mode(DeliveryMode.PUSH)
        logger.info("queue_push_enabled", location_id=self.location_id)
        return True

    async def disable_push(self) -> None:
        """Back to POLL: re-deliver the last-known snapshot, then resume polling."""
        if self._closed or self.mode == DeliveryMode.POLL:
            return
        self._detach_push()
        self._set_mode(DeliveryMode.POLL)
        if self.last_snapshot is not None:
            await self._deliver(self.last_snapshot)
        self._start_polling(initial_delay=True)
        logger.info("queue_push_disabled_by_consumer", location_id=self.location_id)

    def _detach_push(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        task, self._push_task = self._push_task, None
        if task is not None and not task.done():
            task.cancel()
        self._push_pending = False

    def _set_mode(self, mode: DeliveryMode) -> None:
        if mode == self.mode:
            return
        metrics.update_subscriptions.labels(mode=self.mode.value).dec()
        metrics.update_subscriptions.labels(mode=mode.value).inc()
        self.mode = mode

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._detach_push()
        await self._stop_polling()
        metrics.update_subscriptions.labels(mode=self.mode.value).dec()
        self._d._forget(self)
        logger.info("queue_unsubscribed", location_id=self.location_id)


class UpdateDistributor:
    """
    Single entry point for live queue displays.

        sub = await distributor.subscribe("main", on_update)
        await sub.enable_push()     # opt-in, refused unless QUEUE_REALTIME_ENABLED
        await sub.unsubscribe()

    Polling is the default: it bounds read cost to one snapshot per interval per
    screen, most of which are served by the query cache.
    """

    def __init__(
        self,
        engine: UnifiedQueueEngine,
        store: VersionedStore,
        *,
        poll_interval_s: float = 30.0,
        realtime_enabled: bool = False,
    ) -> None:
        self.engine = engine
        self.store = store
        self.poll_interval_s = float(poll_interval_s)
        self.realtime_enabled = bool(realtime_enabled)
        self._subs: list[Subscription] = []

    @classmethod
    def from_settings(cls, engine: UnifiedQueueEngine) -> UpdateDistributor:
        s = get_settings()
        return cls(
            engine,
            engine.store,
            poll_interval_s=float(s.queue_poll_interval_sec),
            realtime_enabled=bool(s.queue_realtime_enabled),
        )

    async def subscribe(
        self,
        location_id: str,
        on_update: OnUpdate,
        *,
        mode: DeliveryMode | str = DeliveryMode.POLL,
    ) -> Subscription:
        mode = DeliveryMode(str(getattr(mode, "value", mode)))
        sub = Subscription(self, str(location_id), on_update)
        self._subs.append(sub)
        metrics.update_subscriptions.labels(mode=DeliveryMode.POLL.value).inc()
        if mode == DeliveryMode.PUSH and await sub.enable_push():
            return sub
        # First poll runs immediately so the consumer has state right away.
        sub._start_polling(initial_delay=False)
        return sub

    def subscriptions(self) -> list[Subscription]:
        return list(self._subs)

    def stats(self) -> dict[str, Any]:
        out = {m.value: 0 for m in DeliveryMode}
        for s in self._subs:
            out[s.mode.value] += 1
        return out

    def _forget(self, sub: Subscription) -> None:
        with suppress(ValueError):
            self._subs.remove(sub)

    async def close(self) -> None:
        for sub in list(self._subs):
            await sub.unsubscribe()
