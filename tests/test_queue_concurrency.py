from __future__ import annotations

import asyncio
from pathlib import Path

from tests._helpers.queue import Clock, join, make_engine
from workshop_queue.queue.models import ENTRIES, EntryStatus


def test_two_processes_race_for_a_single_waiting_entry(tmp_path: Path) -> None:
    db = tmp_path / "q.db"
    clock = Clock()
    # Separate store/cache/executor per engine, as two server processes would have.
    a = make_engine(db, clock=clock)
    b = make_engine(db, clock=clock)

    async def go():
        only = await join(a, "c1")
        ra, rb = await asyncio.gather(a.call_next("L1"), b.call_next("L1"))
        results = [r for r in (ra, rb) if r.ok]
        empties = [r for r in (ra, rb) if r.code == "empty_queue"]
        assert len(results) == 1 and len(empties) == 1
        assert results[0].value.id == only.id
        doc = await a.store.read(ENTRIES, only.id)
        # Exactly one transition landed.
        assert doc.version == 2 and doc.data["status"] == EntryStatus.CALLED.value

    asyncio.run(go())


def test_concurrent_call_next_never_serves_an_entry_twice(tmp_path: Path) -> None:
    db = tmp_path / "q.db"
    clock = Clock()
    a = make_engine(db, clock=clock, max_attempts=10)
    b = make_engine(db, clock=clock, max_attempts=10)

    async def go():
        for i in range(4):
            await join(a, f"c{i}")
        results = await asyncio.gather(*[e.call_next("L1") for e in (a, b, a, b, a)])
        served = [r.value.id for r in results if r.ok]
        assert len(served) == 4 and len(set(served)) == 4
        assert [r.code for r in results if not r.ok] == ["empty_queue"]

    asyncio.run(go())


def test_concurrent_joins_get_unique_dense_positions(tmp_path: Path) -> None:
    db = tmp_path / "q.db"
    clock = Clock()
    a = make_engine(db, clock=clock, max_attempts=10)
    b = make_engine(db, clock=clock, max_attempts=10)

    async def go():
        entries = await asyncio.gather(
            *[join(a if i % 2 else b, f"c{i}") for i in range(8)]
        )
        assert sorted(e.position for e in entries) == list(range(1, 9))
        assert await a.waiting_positions("L1") == list(range(1, 9))

    asyncio.run(go())


def test_cancel_racing_call_next_keeps_positions_dense(tmp_path: Path) -> None:
    db = tmp_path / "q.db"
    clock = Clock()
    a = make_engine(db, clock=clock, max_attempts=10)
    b = make_engine(db, clock=clock, max_attempts=10)

    async def go():
        es = [await join(a, f"c{i}") for i in range(5)]
        await asyncio.gather(
            a.call_next("L1"),
            b.cancel_entry(es[3].id),
            b.call_next("L1"),
            a.cancel_entry(es[4].id),
            join(b, "late"),
        )
        positions = await a.waiting_positions("L1")
        assert positions == list(range(1, len(positions) + 1))
        assert len(positions) == 2

    asyncio.run(go())
