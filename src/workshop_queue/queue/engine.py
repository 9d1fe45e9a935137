from __future__ import annotations

import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from workshop_queue.cache.store import QueryCache, make_key
from workshop_queue.config import Settings, get_settings
from workshop_queue.ops import metrics
from workshop_queue.store.versioned import Versioned, VersionedStore, WriteOp, put
from workshop_queue.utils.log import logger, set_operation_id

from . import events as ev
from .errors import (
    BUSINESS_ERRORS,
    EmptyQueue,
    EntryNotFound,
    InvalidTransition,
    PreconditionFailed,
    QueueClosed,
    QueueResult,
    StoreUnavailable,
    ValidationFailed,
)
from .events import EventBus
from .executor import TransactionExecutor
from .models import (
    ACTIVE,
    COUNTERS,
    ENTRIES,
    STATUS,
    EntryStatus,
    Priority,
    QueueEntry,
    QueueSnapshot,
    QueueStatistics,
    QueueStatus,
    TransactionAttempt,
    can_transition,
    new_id,
    new_verification_code,
    open_by_hours,
    parse_hours,
    parse_ts,
    partition_id,
)
from .positions import by_position, call_order, renumber

T = TypeVar("T")

ENTRY_TYPE = "queueEntry"


def _snapshot_ns(location_id: str) -> str:
    return f"queue:{location_id}"


def _minutes(a: str | None, b: str | None) -> float | None:
    ta, tb = parse_ts(a), parse_ts(b)
    if ta is None or tb is None:
        return None
    return max(0.0, (tb - ta).total_seconds() / 60.0)


def _avg(values: Iterable[float | None]) -> float | None:
    xs = [float(v) for v in values if v is not None]
    if not xs:
        return None
    return round(sum(xs) / len(xs), 2)


class UnifiedQueueEngine:
    """
    Queue entry state machine on top of the versioned store.

        waiting -> called -> in_service -> completed
        waiting -> cancelled | expired
        called  -> cancelled

    Every mutation commits through the transaction executor, invalidates the
    affected cache records and only then emits its domain event and returns.

    Position-changing operations (join, call-next, cancel of a waiting entry,
    expiry) write the partition counter in the same batch as the entries, so the
    counter serializes them and waiting positions stay dense 1..N.
    """

    def __init__(
        self,
        store: VersionedStore,
        cache: QueryCache,
        executor: TransactionExecutor,
        bus: EventBus,
        *,
        settings: Settings | None = None,
        now: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.executor = executor
        self.bus = bus
        self._s = settings or get_settings()
        self._now = now or (lambda: datetime.now(tz=timezone.utc))
        self._rng = rng or random.Random()
        self._tz = ZoneInfo(str(self._s.queue_timezone))

    @classmethod
    def from_settings(cls, *, bus: EventBus | None = None) -> UnifiedQueueEngine:
        store = VersionedStore.from_settings()
        return cls(
            store,
            QueryCache.from_settings(),
            TransactionExecutor.from_settings(store),
            bus or EventBus(),
        )

    # --- helpers ---

    def _ts(self) -> str:
        return self._now().astimezone(timezone.utc).isoformat()

    def today(self) -> str:
        return self._now().astimezone(self._tz).date().isoformat()

    def _location(self, location_id: str | None) -> str:
        loc = str(location_id or "").strip()
        return loc or str(self._s.queue_default_location)

    @property
    def _avg_service(self) -> int:
        return int(self._s.queue_avg_service_min)

    async def _run(
        self, op: str, fn: Callable[[], Awaitable[T]], *, entity_id: str = ""
    ) -> QueueResult[T]:
        set_operation_id(new_id())
        try:
            with metrics.time_hist(metrics.queue_operation_seconds.labels(op=op)):
                value = await fn()
        except BUSINESS_ERRORS as ex:
            metrics.queue_operations.labels(op=op, outcome=ex.code).inc()
            logger.info("queue_op_rejected", op=op, entity_id=entity_id, code=ex.code)
            return QueueResult.failure(ex)
        except (PreconditionFailed, StoreUnavailable) as ex:
            metrics.queue_operations.labels(op=op, outcome=ex.code).inc()
            logger.warning(
                "queue_op_failed",
                op=op,
                entity_id=entity_id,
                code=ex.code,
                attempts=ex.detail.get("attempts"),
            )
            raise
        finally:
            set_operation_id(None)
        metrics.queue_operations.labels(op=op, outcome="ok").inc()
        return QueueResult.success(value)

    async def _partition_waiting(self, location_id: str, day: str) -> list[QueueEntry]:
        docs = await self.store.query(
            ENTRIES,
            lambda d: d.get("location_id") == location_id
            and d.get("queue_day") == day
            and d.get("status") == EntryStatus.WAITING.value,
        )
        return [QueueEntry.from_dict(d.data) for d in docs]

    async def _read_counter(self, pid: str) -> tuple[int, dict[str, Any]]:
        doc = await self.store.read(COUNTERS, pid)
        if doc is None:
            return 0, {}
        return doc.version, dict(doc.data)

    def _counter_op(
        self,
        pid: str,
        version: int,
        data: dict[str, Any],
        *,
        location_id: str,
        day: str,
        waiting: int,
        issued_delta: int = 0,
    ) -> WriteOp:
        doc = dict(data)
        doc.update(
            {
                "location_id": location_id,
                "queue_day": day,
                "waiting": int(waiting),
                "issued": int(doc.get("issued") or 0) + int(issued_delta),
            }
        )
        return WriteOp(COUNTERS, pid, version, put(doc))

    @staticmethod
    def _entry_op(entry: QueueEntry, expected_version: int) -> WriteOp:
        return WriteOp(ENTRIES, entry.id, expected_version, put(entry.to_dict()))

    async def _removal_batch(
        self,
        location_id: str,
        day: str,
        select: Callable[[list[QueueEntry]], list[QueueEntry]],
    ) -> list[WriteOp]:
        """
        Writes for moving entries out of a partition's waiting set.

        `select` gets the fresh waiting list and returns the removed entries, already
        evolved to their new status. The batch holds those, every re-ranked survivor
        and the counter, each conditional on the version it was computed from.
        """
        pid = partition_id(location_id, day)
        # Counter first: a join that lands after this read bumps its version and
        # aborts the batch, so the scan below can never miss a committed entry.
        cver, cdata = await self._read_counter(pid)
        waiting = await self._partition_waiting(location_id, day)
        removed = select(waiting)
        if not removed:
            return []
        changed, remaining = renumber(
            waiting, [e.id for e in removed], avg_service_min=self._avg_service
        )
        ops = [self._entry_op(e, e.version) for e in removed]
        ops += [self._entry_op(e, e.version) for e in changed]
        ops.append(
            self._counter_op(pid, cver, cdata, location_id=location_id, day=day, waiting=remaining)
        )
        return ops

    async def _after_commit(
        self,
        event_type: str,
        entries: list[QueueEntry],
        *,
        touched: Iterable[QueueEntry] = (),
    ) -> None:
        # Invalidate before anything observes the result.
        touched = list(touched) + list(entries)
        locs = {e.location_id for e in touched}
        for e in touched:
            self.cache.invalidate_by_entity(ENTRY_TYPE, e.id)
        for loc in locs:
            self.cache.invalidate_by_namespace(_snapshot_ns(loc))
        for e in entries:
            payload = e.to_dict()
            payload["ts"] = self._ts()
            await self.bus.emit(event_type, payload)

    @staticmethod
    def _entries_from(written: list[Versioned]) -> dict[str, QueueEntry]:
        return {w.doc_id: QueueEntry.from_dict(w.data) for w in written if w.collection == ENTRIES}

    # --- mutations ---

    async def add_entry(
        self,
        customer_ref: str,
        motorcycle_ref: str,
        service_refs: Iterable[str],
        priority: Priority | str = Priority.NORMAL,
        *,
        location_id: str | None = None,
        notes: str = "",
    ) -> QueueResult[QueueEntry]:
        """Join the queue: status=waiting at position = waiting count + 1."""
        loc = self._location(location_id)

        async def _op() -> QueueEntry:
            cref = str(customer_ref or "").strip()
            mref = str(motorcycle_ref or "").strip()
            refs = [str(x).strip() for x in (service_refs or []) if str(x).strip()]
            if not cref:
                raise ValidationFailed("customer_ref is required", field="customer_ref")
            if not mref:
                raise ValidationFailed("motorcycle_ref is required", field="motorcycle_ref")
            if not refs:
                raise ValidationFailed("at least one service is required", field="service_refs")
            try:
                prio = Priority(str(getattr(priority, "value", priority)))
            except ValueError:
                raise ValidationFailed(f"unknown priority: {priority!r}", field="priority") from None
            if not (await self._read_status(loc)).is_open:
                raise QueueClosed("the queue is closed", location_id=loc)

            entry_id = new_id()
            code = new_verification_code(self._rng)
            day = self.today()
            pid = partition_id(loc, day)

            async def _plan(attempt: TransactionAttempt) -> list[WriteOp]:
                cver, cdata = await self._read_counter(pid)
                attempt.expected_version = cver
                position = int(cdata.get("waiting") or 0) + 1
                now = self._now()
                ts = now.astimezone(timezone.utc).isoformat()
                entry = QueueEntry(
                    id=entry_id,
                    location_id=loc,
                    queue_day=day,
                    customer_ref=cref,
                    motorcycle_ref=mref,
                    service_refs=tuple(refs),
                    status=EntryStatus.WAITING,
                    position=position,
                    priority=prio,
                    created_at=ts,
                    updated_at=ts,
                    expires_at=(
                        now + timedelta(minutes=int(self._s.queue_entry_ttl_min))
                    ).astimezone(timezone.utc).isoformat(),
                    verification_code=code,
                    estimated_wait_min=position * self._avg_service,
                    notes=str(notes or ""),
                )
                return [
                    self._counter_op(
                        pid, cver, cdata, location_id=loc, day=day, waiting=position, issued_delta=1
                    ),
                    self._entry_op(entry, 0),
                ]

            written = await self.executor.execute_batch_with_retry("add_entry", _plan, target=pid)
            entry = self._entries_from(written)[entry_id]
            logger.info(
                "queue_entry_added",
                entry_id=entry.id,
                location_id=loc,
                position=entry.position,
                priority=entry.priority.value,
            )
            await self._after_commit(ev.ENTRY_ADDED, [entry])
            return entry

        return await self._run("add_entry", _op, entity_id=loc)

    async def call_next(
        self, location_id: str | None = None, *, technician: str | None = None
    ) -> QueueResult[QueueEntry]:
        """
        Call the head of today's waiting list (urgent first, then position).

        The head is re-read inside every attempt; if another caller takes it first
        the retry serves the new head, or reports EmptyQueue once none is left.
        """
        loc = self._location(location_id)

        async def _op() -> QueueEntry:
            day = self.today()
            head_id: dict[str, str] = {}

            async def _plan(attempt: TransactionAttempt) -> list[WriteOp]:
                def _select(waiting: list[QueueEntry]) -> list[QueueEntry]:
                    if not waiting:
                        raise EmptyQueue("no waiting entries", location_id=loc)
                    head = call_order(waiting)[0]
                    head_id["id"] = head.id
                    attempt.target_entity_id = head.id
                    attempt.expected_version = head.version
                    return [
                        head.evolve(
                            status=EntryStatus.CALLED,
                            position=None,
                            called_at=self._ts(),
                            estimated_wait_min=0,
                            assigned_to=(str(technician) if technician else head.assigned_to),
                        )
                    ]

                return await self._removal_batch(loc, day, _select)

            written = await self.executor.execute_batch_with_retry(
                "call_next", _plan, target=partition_id(loc, day)
            )
            entries = self._entries_from(written)
            called = entries.pop(head_id["id"])
            logger.info(
                "queue_entry_called",
                entry_id=called.id,
                location_id=loc,
                technician=called.assigned_to,
                renumbered=len(entries),
            )
            await self._after_commit(ev.ENTRY_CALLED, [called], touched=entries.values())
            return called

        return await self._run("call_next", _op, entity_id=loc)

    async def _single_transition(
        self,
        op: str,
        entry_id: str,
        target: EntryStatus,
        stamp: str,
        event_type: str,
    ) -> QueueResult[QueueEntry]:
        async def _op() -> QueueEntry:
            def _intent(cur: dict[str, Any] | None) -> dict[str, Any]:
                if cur is None:
                    raise EntryNotFound("entry not found", entry_id=entry_id)
                e = QueueEntry.from_dict(cur)
                if not can_transition(e.status, target):
                    raise InvalidTransition(
                        f"cannot move {e.status.value} -> {target.value}",
                        entry_id=entry_id,
                        status=e.status.value,
                    )
                return e.evolve(status=target, **{stamp: self._ts()}).to_dict()

            doc = await self.executor.execute_with_retry(ENTRIES, str(entry_id), _intent, op=op)
            entry = QueueEntry.from_dict(doc.data)
            logger.info(f"queue_entry_{target.value}", entry_id=entry.id, location_id=entry.location_id)
            await self._after_commit(event_type, [entry])
            return entry

        return await self._run(op, _op, entity_id=str(entry_id))

    async def start_service(self, entry_id: str) -> QueueResult[QueueEntry]:
        return await self._single_transition(
            "start_service", entry_id, EntryStatus.IN_SERVICE, "started_at", ev.ENTRY_STARTED
        )

    async def complete_entry(self, entry_id: str) -> QueueResult[QueueEntry]:
        return await self._single_transition(
            "complete_entry", entry_id, EntryStatus.COMPLETED, "completed_at", ev.ENTRY_COMPLETED
        )

    async def cancel_entry(self, entry_id: str, reason: str = "") -> QueueResult[QueueEntry]:
        """waiting|called -> cancelled. Cancelling a waiting entry closes its position gap."""

        async def _op() -> QueueEntry:
            async def _plan(attempt: TransactionAttempt) -> list[WriteOp]:
                cur = await self.store.read(ENTRIES, str(entry_id))
                if cur is None:
                    raise EntryNotFound("entry not found", entry_id=entry_id)
                e = QueueEntry.from_dict(cur.data)
                attempt.expected_version = cur.version
                if not can_transition(e.status, EntryStatus.CANCELLED):
                    raise InvalidTransition(
                        f"cannot move {e.status.value} -> cancelled",
                        entry_id=entry_id,
                        status=e.status.value,
                    )
                cancelled = e.evolve(
                    status=EntryStatus.CANCELLED,
                    position=None,
                    cancelled_at=self._ts(),
                    cancel_reason=(str(reason) if reason else None),
                )
                if e.status != EntryStatus.WAITING:
                    return [self._entry_op(cancelled, cur.version)]
                # Conditional on the version read above, even if the scan saw a newer one.
                return await self._removal_batch(
                    e.location_id, e.queue_day, lambda _waiting: [cancelled]
                )

            written = await self.executor.execute_batch_with_retry(
                "cancel_entry", _plan, target=str(entry_id)
            )
            entries = self._entries_from(written)
            entry = entries.pop(str(entry_id))
            logger.info(
                "queue_entry_cancelled",
                entry_id=entry.id,
                location_id=entry.location_id,
                reason=entry.cancel_reason or "",
            )
            await self._after_commit(ev.ENTRY_CANCELLED, [entry], touched=entries.values())
            return entry

        return await self._run("cancel_entry", _op, entity_id=str(entry_id))

    async def expire_stale_entries(
        self, max_age_ms: int | None = None, *, page_size: int | None = None
    ) -> QueueResult[list[QueueEntry]]:
        """
        Expire waiting entries created more than `max_age_ms` ago, across every
        partition. Scans at most `page_size` candidates per call; running it again
        right away finds nothing new, so concurrent or repeated sweeps are harmless.
        """
        if max_age_ms is None:
            max_age_ms = int(self._s.queue_expire_max_age_min) * 60_000
        limit = max(1, int(page_size or self._s.queue_expire_page_size))

        async def _op() -> list[QueueEntry]:
            cutoff = self._now() - timedelta(milliseconds=int(max_age_ms))

            def _stale(d: dict[str, Any]) -> bool:
                if d.get("status") != EntryStatus.WAITING.value:
                    return False
                created = parse_ts(d.get("created_at"))
                return created is not None and created <= cutoff

            candidates = [
                QueueEntry.from_dict(d.data) for d in await self.store.query(ENTRIES, _stale, limit=limit)
            ]
            partitions: dict[tuple[str, str], set[str]] = {}
            for c in candidates:
                partitions.setdefault((c.location_id, c.queue_day), set()).add(c.id)

            expired: list[QueueEntry] = []
            for (loc, day), ids in sorted(partitions.items()):

                async def _plan(
                    attempt: TransactionAttempt, loc: str = loc, day: str = day, ids: set[str] = ids
                ) -> list[WriteOp]:
                    ts = self._ts()

                    def _select(waiting: list[QueueEntry]) -> list[QueueEntry]:
                        # Re-checked per attempt: another sweep or a call-next may have won.
                        return [
                            e.evolve(status=EntryStatus.EXPIRED, position=None, expired_at=ts)
                            for e in waiting
                            if e.id in ids and _stale(e.to_dict())
                        ]

                    return await self._removal_batch(loc, day, _select)

                written = await self.executor.execute_batch_with_retry(
                    "expire", _plan, target=partition_id(loc, day)
                )
                touched = list(self._entries_from(written).values())
                done = [e for e in touched if e.status == EntryStatus.EXPIRED]
                if done:
                    metrics.entries_expired.inc(len(done))
                    logger.info(
                        "queue_entries_expired", location_id=loc, queue_day=day, n=len(done)
                    )
                    await self._after_commit(
                        ev.ENTRY_EXPIRED, done, touched=[e for e in touched if e not in done]
                    )
                expired.extend(done)
            return expired

        return await self._run("expire", _op)

    async def clear_queue(
        self, location_id: str | None = None, reason: str = "queue cleared"
    ) -> QueueResult[list[QueueEntry]]:
        """
        Cancel every waiting and called entry of today's partition in one batch.
        The counter drops to zero in the same write, so the next join gets position 1.
        """
        loc = self._location(location_id)

        async def _op() -> list[QueueEntry]:
            day = self.today()
            ts = self._ts()

            def _cancel(e: QueueEntry) -> QueueEntry:
                return e.evolve(
                    status=EntryStatus.CANCELLED,
                    position=None,
                    cancelled_at=ts,
                    cancel_reason=str(reason or "") or None,
                )

            async def _plan(attempt: TransactionAttempt) -> list[WriteOp]:
                ops = await self._removal_batch(
                    loc, day, lambda waiting: [_cancel(e) for e in waiting]
                )
                docs = await self.store.query(
                    ENTRIES,
                    lambda d: d.get("location_id") == loc
                    and d.get("queue_day") == day
                    and d.get("status") == EntryStatus.CALLED.value,
                )
                for d in docs:
                    ops.append(self._entry_op(_cancel(QueueEntry.from_dict(d.data)), d.version))
                return ops

            written = await self.executor.execute_batch_with_retry(
                "clear_queue", _plan, target=partition_id(loc, day)
            )
            cleared = list(self._entries_from(written).values())
            logger.info("queue_cleared", location_id=loc, queue_day=day, n=len(cleared))
            if cleared:
                await self._after_commit(ev.ENTRY_CANCELLED, cleared)
            return cleared

        return await self._run("clear_queue", _op, entity_id=loc)

    # --- location status ---

    async def _read_status(self, loc: str) -> QueueStatus:
        doc = await self.store.read(STATUS, loc)
        if doc is None:
            return QueueStatus(location_id=loc)
        return QueueStatus.from_dict(doc.data)

    async def _write_status(
        self, op: str, loc: str, change: Callable[[QueueStatus], QueueStatus]
    ) -> tuple[QueueStatus, QueueStatus]:
        before: dict[str, QueueStatus] = {}

        def _intent(cur: dict[str, Any] | None) -> dict[str, Any]:
            st = QueueStatus.from_dict(cur) if cur is not None else QueueStatus(location_id=loc)
            before["status"] = st
            return change(st).to_dict()

        doc = await self.executor.execute_with_retry(STATUS, loc, _intent, op=op)
        return before["status"], QueueStatus.from_dict(doc.data)

    async def _status_changed(self, before: QueueStatus, after: QueueStatus, *, reason: str) -> None:
        if before.is_open == after.is_open:
            return
        event_type = ev.QUEUE_OPENED if after.is_open else ev.QUEUE_CLOSED
        logger.info(event_type.replace(".", "_"), location_id=after.location_id, reason=reason)
        payload = after.to_dict()
        payload.update(reason=reason, ts=self._ts())
        await self.bus.emit(event_type, payload)

    def is_open_by_hours(self, status: QueueStatus) -> bool:
        return open_by_hours(status.operating_hours, self._now().astimezone(self._tz))

    async def get_queue_status(self, location_id: str | None = None) -> QueueResult[QueueStatus]:
        """Stored status, or the default (open, Mon-Sat 07:00-17:30) if none was saved."""
        loc = self._location(location_id)

        async def _op() -> QueueStatus:
            return await self._read_status(loc)

        return await self._run("queue_status", _op, entity_id=loc)

    async def set_queue_open(
        self, location_id: str | None = None, is_open: bool | None = None
    ) -> QueueResult[QueueStatus]:
        """Open or close a location for joins. `is_open=None` toggles the current flag."""
        loc = self._location(location_id)

        def _change(st: QueueStatus) -> QueueStatus:
            return replace(st, is_open=(not st.is_open) if is_open is None else bool(is_open))

        async def _op() -> QueueStatus:
            before, after = await self._write_status("set_queue_open", loc, _change)
            await self._status_changed(before, after, reason="manual")
            return after

        return await self._run("set_queue_open", _op, entity_id=loc)

    async def update_operating_hours(
        self, location_id: str | None, hours: dict[str, Any]
    ) -> QueueResult[QueueStatus]:
        loc = self._location(location_id)

        async def _op() -> QueueStatus:
            try:
                parsed = parse_hours(hours)
            except ValueError as ex:
                raise ValidationFailed(str(ex), field="operating_hours") from None
            _before, after = await self._write_status(
                "update_operating_hours", loc, lambda st: replace(st, operating_hours=parsed)
            )
            logger.info("queue_hours_updated", location_id=loc)
            payload = after.to_dict()
            payload["ts"] = self._ts()
            await self.bus.emit(ev.QUEUE_HOURS_UPDATED, payload)
            return after

        return await self._run("update_operating_hours", _op, entity_id=loc)

    async def sync_operating_hours(
        self, location_ids: Iterable[str] | None = None
    ) -> QueueResult[list[QueueStatus]]:
        """
        Open or close locations whose flag disagrees with their weekly hours right now.
        Without ids: every location with a saved status, plus the default location.
        Returns the statuses that changed.
        """

        async def _op() -> list[QueueStatus]:
            if location_ids is None:
                saved = {d.doc_id for d in await self.store.query(STATUS)}
                locs = sorted(saved | {self._location(None)})
            else:
                locs = sorted({self._location(x) for x in location_ids})
            changed: list[QueueStatus] = []
            for loc in locs:
                current = await self._read_status(loc)
                if current.is_open == self.is_open_by_hours(current):
                    continue
                # Re-evaluated against the stored doc on every attempt.
                before, after = await self._write_status(
                    "sync_operating_hours",
                    loc,
                    lambda st: replace(st, is_open=self.is_open_by_hours(st)),
                )
                if before.is_open != after.is_open:
                    await self._status_changed(before, after, reason="operating_hours")
                    changed.append(after)
            return changed

        return await self._run("sync_operating_hours", _op)

    # --- reads ---

    def _snapshot_key(self, location_id: str, day: str) -> str:
        return make_key(f"queue.snapshot:{location_id}", {"day": day})

    async def _load_snapshot(self, loc: str, day: str) -> QueueSnapshot:
        docs = await self.store.query(
            ENTRIES,
            lambda d: d.get("location_id") == loc
            and d.get("queue_day") == day
            and d.get("status") in ACTIVE,
        )
        entries = [QueueEntry.from_dict(d.data) for d in docs]
        waiting = call_order(e for e in entries if e.status == EntryStatus.WAITING)
        called = sorted(
            (e for e in entries if e.status == EntryStatus.CALLED),
            key=lambda e: (e.called_at or "", e.id),
        )
        return QueueSnapshot(
            location_id=loc,
            queue_day=day,
            waiting=tuple(waiting),
            called=tuple(called),
            generated_at=self._ts(),
        )

    async def get_queue_snapshot(self, location_id: str | None = None) -> QueueResult[QueueSnapshot]:
        """
        Cache-first, never mutates. While the store is unreachable an expired cache
        record within the stale grace window is served with `stale=True`.
        """
        loc = self._location(location_id)

        async def _op() -> QueueSnapshot:
            day = self.today()
            key = self._snapshot_key(loc, day)
            hit = self.cache.get(key)
            if hit is not None:
                return hit
            gen = self.cache.generation
            try:
                snap = await self._load_snapshot(loc, day)
            except StoreUnavailable:
                stale = self.cache.get_stale(
                    key, grace_s=float(self._s.queue_cache_stale_grace_sec)
                )
                if stale is None:
                    raise
                logger.warning("queue_snapshot_stale", location_id=loc)
                return replace(stale, stale=True)
            self.cache.set(
                key,
                snap,
                namespace=_snapshot_ns(loc),
                deps=[(ENTRY_TYPE, i) for i in snap.entry_ids()],
                generation=gen,
            )
            return snap

        return await self._run("snapshot", _op, entity_id=loc)

    async def get_entry(self, entry_id: str) -> QueueResult[QueueEntry]:
        async def _op() -> QueueEntry:
            key = make_key(ENTRY_TYPE, {"id": str(entry_id)})
            hit = self.cache.get(key)
            if hit is not None:
                return hit
            gen = self.cache.generation
            doc = await self.store.read(ENTRIES, str(entry_id))
            if doc is None:
                raise EntryNotFound("entry not found", entry_id=entry_id)
            entry = QueueEntry.from_dict(doc.data)
            self.cache.set(
                key, entry, namespace=ENTRY_TYPE, deps=[(ENTRY_TYPE, entry.id)], generation=gen
            )
            return entry

        return await self._run("get_entry", _op, entity_id=str(entry_id))

    async def get_entry_by_code(self, location_id: str | None, code: str) -> QueueResult[QueueEntry]:
        """
        Active (waiting/called) entry at a location holding this verification code.
        A code stops resolving once its ticket's `expires_at` has passed.
        """
        loc = self._location(location_id)
        code = str(code or "").strip()

        async def _op() -> QueueEntry:
            now = self._now()

            def _valid(d: dict[str, Any]) -> bool:
                expires = parse_ts(d.get("expires_at"))
                return expires is None or now <= expires

            docs = await self.store.query(
                ENTRIES,
                lambda d: d.get("location_id") == loc
                and d.get("verification_code") == code
                and d.get("status") in ACTIVE
                and _valid(d),
            )
            if not docs:
                raise EntryNotFound("no active entry with that code", location_id=loc)
            newest = max(docs, key=lambda d: str(d.data.get("created_at") or ""))
            return QueueEntry.from_dict(newest.data)

        return await self._run("get_entry_by_code", _op, entity_id=loc)

    async def get_statistics(self, location_id: str | None = None) -> QueueResult[QueueStatistics]:
        loc = self._location(location_id)

        async def _op() -> QueueStatistics:
            day = self.today()
            key = make_key(f"queue.stats:{loc}", {"day": day})
            hit = self.cache.get(key)
            if hit is not None:
                return hit
            gen = self.cache.generation
            docs = await self.store.query(
                ENTRIES, lambda d: d.get("location_id") == loc and d.get("queue_day") == day
            )
            entries = [QueueEntry.from_dict(d.data) for d in docs]
            counts = {s.value: 0 for s in EntryStatus}
            for e in entries:
                counts[e.status.value] += 1
            stats = QueueStatistics(
                location_id=loc,
                queue_day=day,
                counts=counts,
                queue_length=counts[EntryStatus.WAITING.value] + counts[EntryStatus.CALLED.value],
                avg_wait_min=_avg(_minutes(e.created_at, e.called_at) for e in entries),
                avg_service_min=_avg(_minutes(e.started_at, e.completed_at) for e in entries),
            )
            self.cache.set(key, stats, namespace=_snapshot_ns(loc), generation=gen)
            return stats

        return await self._run("statistics", _op, entity_id=loc)

    async def warm_locations(self, location_ids: Iterable[str]) -> int:
        """Pre-load today's snapshot for each location (process start, bulk invalidation)."""

        async def _load(loc: str) -> QueueSnapshot:
            return (await self.get_queue_snapshot(loc)).unwrap()

        n = await self.cache.warmup([self._location(x) for x in location_ids], _load)
        logger.info("queue_cache_warmed", locations=n)
        return n

    async def waiting_positions(self, location_id: str | None = None) -> list[int]:
        """Positions of today's waiting entries straight from the store (diagnostics)."""
        loc = self._location(location_id)
        waiting = await self._partition_waiting(loc, self.today())
        return [int(e.position or 0) for e in by_position(waiting)]
