from __future__ import annotations

import asyncio
import dataclasses
from datetime import timedelta
from pathlib import Path

import pytest

from tests._helpers.queue import SERVICES, Clock, join, make_engine
from workshop_queue.queue import events as ev
from workshop_queue.queue.events import EventBus
from workshop_queue.queue.models import ENTRIES, EntryStatus, parse_ts
from workshop_queue.queue.positions import is_dense


def test_join_call_cancel_rejoin_scenario(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        c1 = await join(engine, "c1")
        assert (c1.position, c1.status) == (1, EntryStatus.WAITING)
        c2 = await join(engine, "c2")
        assert c2.position == 2

        called = (await engine.call_next("L1")).unwrap()
        assert called.id == c1.id
        assert called.status == EntryStatus.CALLED and called.position is None
        # c2 moved up to the freed head slot.
        assert (await engine.get_entry(c2.id)).unwrap().position == 1

        cancelled = (await engine.cancel_entry(c2.id, "changed mind")).unwrap()
        assert cancelled.status == EntryStatus.CANCELLED
        assert cancelled.cancel_reason == "changed mind"

        # Slot reused: positions stay dense among waiting entries.
        c3 = await join(engine, "c3")
        assert c3.position == 1
        assert await engine.waiting_positions("L1") == [1]

    asyncio.run(go())


def test_positions_stay_dense_through_mixed_operations(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        entries = [await join(engine, f"c{i}") for i in range(6)]
        assert [e.position for e in entries] == [1, 2, 3, 4, 5, 6]
        await engine.cancel_entry(entries[2].id)
        assert await engine.waiting_positions("L1") == [1, 2, 3, 4, 5]
        await engine.call_next("L1")
        await engine.cancel_entry(entries[5].id)
        assert await engine.waiting_positions("L1") == [1, 2, 3]
        snap = (await engine.get_queue_snapshot("L1")).unwrap()
        assert is_dense(snap.waiting)
        assert [e.customer_ref for e in snap.waiting] == ["c1", "c3", "c4"]
        assert [e.estimated_wait_min for e in snap.waiting] == [15, 30, 45]

    asyncio.run(go())


def test_urgent_entries_are_called_first(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        await join(engine, "n1")
        await join(engine, "n2")
        u = await join(engine, "u1", priority="urgent")
        assert u.position == 3
        first = (await engine.call_next("L1", technician="tech-7")).unwrap()
        assert first.id == u.id
        assert first.assigned_to == "tech-7"
        second = (await engine.call_next("L1")).unwrap()
        assert second.customer_ref == "n1"

    asyncio.run(go())


def test_empty_queue_is_a_result_and_mutates_nothing(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        res = await engine.call_next("L1")
        assert res.ok is False and res.code == "empty_queue"

        e = await join(engine, "c1")
        await engine.call_next("L1")
        before = {d.doc_id: d.version for d in await engine.store.query(ENTRIES)}
        res = await engine.call_next("L1")
        assert res.code == "empty_queue"
        after = {d.doc_id: d.version for d in await engine.store.query(ENTRIES)}
        assert before == after == {e.id: 2}

    asyncio.run(go())


def test_lifecycle_and_terminal_states_are_closed(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        e = await join(engine, "c1")
        # No skipping: waiting cannot start or complete.
        assert (await engine.start_service(e.id)).code == "invalid_transition"
        assert (await engine.complete_entry(e.id)).code == "invalid_transition"

        called = (await engine.call_next("L1")).unwrap()
        started = (await engine.start_service(called.id)).unwrap()
        assert started.status == EntryStatus.IN_SERVICE and started.started_at
        assert (await engine.cancel_entry(e.id)).code == "invalid_transition"
        done = (await engine.complete_entry(e.id)).unwrap()
        assert done.status == EntryStatus.COMPLETED and done.completed_at
        assert done.version == 4

        for op in (engine.start_service, engine.complete_entry, engine.cancel_entry):
            res = await op(e.id)
            assert res.code == "invalid_transition"
        assert (await engine.get_entry(e.id)).unwrap().version == 4

        other = await join(engine, "c2")
        await engine.cancel_entry(other.id)
        assert (await engine.cancel_entry(other.id)).code == "invalid_transition"

    asyncio.run(go())


def test_called_entry_can_be_cancelled(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        a = await join(engine, "a")
        await join(engine, "b")
        await engine.call_next("L1")
        res = (await engine.cancel_entry(a.id, "no show")).unwrap()
        assert res.status == EntryStatus.CANCELLED
        assert await engine.waiting_positions("L1") == [1]

    asyncio.run(go())


def test_unknown_entry_is_not_found(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        for op in (engine.start_service, engine.complete_entry, engine.cancel_entry, engine.get_entry):
            assert (await op("nope")).code == "entry_not_found"

    asyncio.run(go())


def test_join_validation(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        assert (await engine.add_entry("", "bike", SERVICES)).code == "validation_failed"
        assert (await engine.add_entry("c", " ", SERVICES)).code == "validation_failed"
        assert (await engine.add_entry("c", "bike", [])).code == "validation_failed"
        res = await engine.add_entry("c", "bike", SERVICES, "vip")
        assert res.code == "validation_failed"
        assert res.error.detail["field"] == "priority"
        assert await engine.store.query(ENTRIES) == []

    asyncio.run(go())


def test_ticket_fields(tmp_path: Path) -> None:
    clock = Clock()
    engine = make_engine(tmp_path / "q.db", clock=clock)

    async def go():
        e = (
            await engine.add_entry(
                "c1", "bike-1", ["tyres", " ", "chain"], location_id="L1", notes="front tyre"
            )
        ).unwrap()
        assert e.service_refs == ("tyres", "chain")
        assert len(e.verification_code) == 4 and e.verification_code.isdigit()
        assert parse_ts(e.expires_at) == clock.t + timedelta(minutes=15)
        assert e.queue_day == "2026-05-04"
        assert e.estimated_wait_min == 15
        assert e.notes == "front tyre"
        assert e.version == 1

        found = (await engine.get_entry_by_code("L1", e.verification_code)).unwrap()
        assert found.id == e.id
        assert (await engine.get_entry_by_code("L2", e.verification_code)).code == "entry_not_found"

    asyncio.run(go())


def test_default_location_is_used(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        e = (await engine.add_entry("c1", "bike", SERVICES)).unwrap()
        assert e.location_id == "main"
        assert (await engine.call_next()).unwrap().id == e.id

    asyncio.run(go())


def test_snapshot_reflects_mutation_immediately(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db", ttl_s=300)

    async def go():
        a = await join(engine, "a")
        snap1 = (await engine.get_queue_snapshot("L1")).unwrap()
        assert snap1.entry_ids() == [a.id]
        # Served from cache while nothing changes.
        assert (await engine.get_queue_snapshot("L1")).unwrap() is snap1

        b = await join(engine, "b")
        snap2 = (await engine.get_queue_snapshot("L1")).unwrap()
        assert snap2.entry_ids() == [a.id, b.id]

        await engine.call_next("L1")
        snap3 = (await engine.get_queue_snapshot("L1")).unwrap()
        assert [e.id for e in snap3.waiting] == [b.id]
        assert [e.id for e in snap3.called] == [a.id]
        assert snap3.waiting[0].position == 1

        cached_b = (await engine.get_entry(b.id)).unwrap()
        await engine.cancel_entry(b.id)
        assert (await engine.get_entry(b.id)).unwrap().status == EntryStatus.CANCELLED
        assert cached_b.status == EntryStatus.WAITING

    asyncio.run(go())


def test_locations_and_days_are_separate_partitions(tmp_path: Path) -> None:
    clock = Clock()
    engine = make_engine(tmp_path / "q.db", clock=clock)

    async def go():
        assert (await join(engine, "a", location="L1")).position == 1
        assert (await join(engine, "b", location="L2")).position == 1
        clock.advance(days=1)
        tomorrow = await join(engine, "c", location="L1")
        assert tomorrow.position == 1
        assert tomorrow.queue_day == "2026-05-05"
        # call-next serves today's partition only.
        assert (await engine.call_next("L1")).unwrap().id == tomorrow.id
        assert (await engine.call_next("L1")).code == "empty_queue"

    asyncio.run(go())


def test_statistics(tmp_path: Path) -> None:
    clock = Clock()
    engine = make_engine(tmp_path / "q.db", clock=clock)

    async def go():
        a = await join(engine, "a")
        await join(engine, "b")
        c = await join(engine, "c")
        clock.advance(minutes=10)
        await engine.call_next("L1")
        await engine.start_service(a.id)
        clock.advance(minutes=30)
        await engine.complete_entry(a.id)
        await engine.cancel_entry(c.id)

        st = (await engine.get_statistics("L1")).unwrap()
        assert st.counts["completed"] == 1
        assert st.counts["cancelled"] == 1
        assert st.counts["waiting"] == 1
        assert st.queue_length == 1
        assert st.avg_wait_min == 10.0
        assert st.avg_service_min == 30.0

    asyncio.run(go())


def test_events_follow_each_mutation(tmp_path: Path) -> None:
    bus = EventBus()
    seen: list[dict] = []
    bus.subscribe(ev.ALL, seen.append)
    engine = make_engine(tmp_path / "q.db", bus=bus)

    async def go():
        e = await join(engine, "a")
        b = await join(engine, "b")
        await engine.call_next("L1")
        await engine.start_service(e.id)
        await engine.complete_entry(e.id)
        await engine.cancel_entry(b.id, "late")
        await engine.call_next("L1")

    asyncio.run(go())
    assert [x["type"] for x in seen] == [
        ev.ENTRY_ADDED,
        ev.ENTRY_ADDED,
        ev.ENTRY_CALLED,
        ev.ENTRY_STARTED,
        ev.ENTRY_COMPLETED,
        ev.ENTRY_CANCELLED,
    ]
    last = seen[-1]
    assert last["status"] == "cancelled" and last["cancel_reason"] == "late"
    assert last["ts"] and last["version"] == 3


def test_warm_locations_fills_the_cache(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        await join(engine, "a")
        engine.cache.clear()
        assert await engine.warm_locations(["L1", "L2"]) == 2
        hits = engine.cache.stats()["hits"]
        await engine.get_queue_snapshot("L1")
        assert engine.cache.stats()["hits"] == hits + 1

    asyncio.run(go())


def test_verification_code_stops_resolving_after_ticket_expiry(tmp_path: Path) -> None:
    clock = Clock()
    engine = make_engine(tmp_path / "q.db", clock=clock)

    async def go():
        e = await join(engine, "c1")
        assert parse_ts(e.expires_at) == clock() + timedelta(minutes=15)

        clock.advance(minutes=15)
        # Still valid at the exact expiry instant.
        assert (await engine.get_entry_by_code("L1", e.verification_code)).ok

        clock.advance(minutes=5)
        res = await engine.get_entry_by_code("L1", e.verification_code)
        assert res.code == "entry_not_found"
        # The entry itself is untouched; only the code lookup lapses.
        assert (await engine.get_entry(e.id)).unwrap().status == EntryStatus.WAITING

    asyncio.run(go())


def test_cached_snapshot_cannot_be_altered_by_a_consumer(tmp_path: Path) -> None:
    engine = make_engine(tmp_path / "q.db")

    async def go():
        await join(engine, "a")
        first = (await engine.get_queue_snapshot("L1")).unwrap()
        with pytest.raises(dataclasses.FrozenInstanceError):
            first.stale = True
        with pytest.raises(dataclasses.FrozenInstanceError):
            first.waiting[0].position = 99
        with pytest.raises(AttributeError):
            first.waiting.append(first.waiting[0])  # type: ignore[attr-defined]
        again = (await engine.get_queue_snapshot("L1")).unwrap()
        assert again is first
        assert again.waiting[0].position == 1

    asyncio.run(go())
