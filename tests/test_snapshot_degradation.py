from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from tests._helpers.queue import Clock, join, make_engine
from workshop_queue.queue.errors import StoreUnavailable
from workshop_queue.store.versioned import VersionedStore


class FlakyStore(VersionedStore):
    down = False

    def _check(self) -> None:
        if self.down:
            raise sqlite3.OperationalError("unable to open database file")

    def _read_sync(self, collection, doc_id):
        self._check()
        return super()._read_sync(collection, doc_id)

    def _scan_sync(self, collection, where, limit):
        self._check()
        return super()._scan_sync(collection, where, limit)

    def _write_many_sync(self, ops):
        self._check()
        return super()._write_many_sync(ops)


def test_snapshot_serves_stale_within_grace_only(tmp_path: Path) -> None:
    clock = Clock()
    store = FlakyStore(tmp_path / "q.db")
    engine = make_engine(tmp_path / "q.db", clock=clock, store=store, ttl_s=5)

    async def go():
        a = await join(engine, "a")
        fresh = (await engine.get_queue_snapshot("L1")).unwrap()
        assert fresh.stale is False

        store.down = True
        clock.advance(seconds=10)
        stale = (await engine.get_queue_snapshot("L1")).unwrap()
        assert stale.stale is True
        assert stale.entry_ids() == [a.id]

        clock.advance(seconds=30)
        with pytest.raises(StoreUnavailable):
            await engine.get_queue_snapshot("L1")

        store.down = False
        again = (await engine.get_queue_snapshot("L1")).unwrap()
        assert again.stale is False

    asyncio.run(go())


def test_mutations_never_fall_back_to_cache(tmp_path: Path) -> None:
    clock = Clock()
    store = FlakyStore(tmp_path / "q.db")
    engine = make_engine(tmp_path / "q.db", clock=clock, store=store)

    async def go():
        a = await join(engine, "a")
        await engine.get_queue_snapshot("L1")
        await engine.get_entry(a.id)
        store.down = True
        with pytest.raises(StoreUnavailable):
            await engine.call_next("L1")
        with pytest.raises(StoreUnavailable):
            await engine.add_entry("b", "bike", ["x"], location_id="L1")
        with pytest.raises(StoreUnavailable):
            await engine.cancel_entry(a.id)
        store.down = False
        assert (await engine.get_entry(a.id)).unwrap().version == 1

    asyncio.run(go())
