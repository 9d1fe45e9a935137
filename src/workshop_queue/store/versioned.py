from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from sqlitedict import SqliteDict  # type: ignore

from workshop_queue.config import get_settings
from workshop_queue.queue.errors import ConflictError, StoreUnavailable
from workshop_queue.queue.models import now_utc
from workshop_queue.utils.locks import LockTimeout, StoreLock
from workshop_queue.utils.log import logger

R = TypeVar("R")

Mutator = Callable[[dict[str, Any] | None], dict[str, Any]]
ChangeListener = Callable[["Versioned"], None]


@dataclass(frozen=True, slots=True)
class Versioned:
    collection: str
    doc_id: str
    data: dict[str, Any]

    @property
    def version(self) -> int:
        return int(self.data.get("version") or 0)


@dataclass(frozen=True, slots=True)
class WriteOp:
    """
    One conditional write.

    expected_version=0 means "document must not exist yet" (create).
    """

    collection: str
    doc_id: str
    expected_version: int
    mutator: Mutator


def put(value: dict[str, Any]) -> Mutator:
    """Mutator that replaces the document wholesale."""

    def _m(_current: dict[str, Any] | None) -> dict[str, Any]:
        return dict(value)

    return _m


class VersionedStore:
    """
    Document store with optimistic version tokens, backed by one SqliteDict table.

    - Every document carries `version` (bumped by exactly 1 per write) and `updated_at`.
    - Writes check versions and commit while holding a cross-process lock, so a
      check-and-set is atomic across every process sharing the DB file.
    - All collections share one table: a batch spanning collections is a single
      SQLite transaction (all-or-nothing).
    - Committed documents are published to in-process watchers (change feed).
    """

    TABLE = "documents"

    def __init__(self, db_path: Path, *, lock_timeout_s: float = 10.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = StoreLock(
            self.db_path.with_suffix(self.db_path.suffix + ".lock"), timeout_s=lock_timeout_s
        )
        self._watchers: dict[str, list[ChangeListener]] = {}
        # Ensure the backing table exists before the first read.
        self._guard(self._touch_sync)

    @classmethod
    def from_settings(cls) -> VersionedStore:
        s = get_settings()
        return cls(
            s.public.queue_db_path(),
            lock_timeout_s=float(s.queue_store_lock_timeout_sec),
        )

    # --- sync internals (run in worker threads) ---

    def _docs(self) -> SqliteDict:
        # Open/close per operation (safe + avoids cross-thread SQLite handle issues)
        return SqliteDict(str(self.db_path), tablename=self.TABLE, autocommit=False)

    @staticmethod
    def _key(collection: str, doc_id: str) -> str:
        return f"{collection}/{doc_id}"

    def _touch_sync(self) -> None:
        with self._lock, self._docs() as db:
            db.commit()

    def _guard(self, fn: Callable[..., R], *args: Any) -> R:
        try:
            return fn(*args)
        except LockTimeout as ex:
            raise StoreUnavailable(str(ex), retry_after_s=1.0) from ex
        except (sqlite3.Error, OSError) as ex:
            logger.error("store_unavailable", db=str(self.db_path.name), error=str(ex))
            raise StoreUnavailable(str(ex)) from ex

    def _read_sync(self, collection: str, doc_id: str) -> Versioned | None:
        with self._docs() as db:
            raw = db.get(self._key(collection, doc_id))
        if raw is None:
            return None
        return Versioned(collection, str(doc_id), dict(raw))

    def _scan_sync(
        self,
        collection: str,
        where: Callable[[dict[str, Any]], bool] | None,
        limit: int | None,
    ) -> list[Versioned]:
        prefix = f"{collection}/"
        out: list[Versioned] = []
        with self._docs() as db:
            for key, raw in db.items():
                if not str(key).startswith(prefix):
                    continue
                data = dict(raw)
                if where is not None and not where(data):
                    continue
                out.append(Versioned(collection, str(key)[len(prefix) :], data))
                if limit is not None and len(out) >= int(limit):
                    break
        return out

    def _write_many_sync(self, ops: list[WriteOp]) -> list[Versioned]:
        keys = [self._key(op.collection, op.doc_id) for op in ops]
        if len(set(keys)) != len(keys):
            raise ValueError("batch contains the same document twice")
        with self._lock, self._docs() as db:
            staged: list[tuple[str, Versioned]] = []
            for op, key in zip(ops, keys):
                cur = db.get(key)
                cur_version = int(cur.get("version") or 0) if cur is not None else 0
                if cur_version != int(op.expected_version):
                    raise ConflictError(
                        "version mismatch",
                        collection=op.collection,
                        doc_id=op.doc_id,
                        expected=int(op.expected_version),
                        actual=cur_version,
                    )
                data = dict(op.mutator(dict(cur) if cur is not None else None))
                data["id"] = str(op.doc_id)
                data["version"] = cur_version + 1
                data["updated_at"] = now_utc()
                staged.append((key, Versioned(op.collection, str(op.doc_id), data)))
            # Nothing is written until every version check above has passed.
            for key, doc in staged:
                db[key] = doc.data
            db.commit()
        return [doc for _, doc in staged]

    # --- async API ---

    async def read(self, collection: str, doc_id: str) -> Versioned | None:
        return await asyncio.to_thread(self._guard, self._read_sync, collection, str(doc_id))

    async def query(
        self,
        collection: str,
        where: Callable[[dict[str, Any]], bool] | None = None,
        *,
        limit: int | None = None,
    ) -> list[Versioned]:
        return await asyncio.to_thread(self._guard, self._scan_sync, collection, where, limit)

    async def conditional_write(
        self, collection: str, doc_id: str, expected_version: int, mutator: Mutator
    ) -> Versioned:
        """Raises ConflictError if the stored version is not `expected_version`."""
        out = await self.batch_write([WriteOp(collection, str(doc_id), expected_version, mutator)])
        return out[0]

    async def batch_write(self, ops: Iterable[WriteOp]) -> list[Versioned]:
        """All-or-nothing: one conflicting document aborts the whole batch."""
        ops = list(ops)
        if not ops:
            return []
        written = await asyncio.to_thread(self._guard, self._write_many_sync, ops)
        self._publish(written)
        return written

    # --- change feed ---

    def watch(self, collection: str, listener: ChangeListener) -> Callable[[], None]:
        self._watchers.setdefault(collection, []).append(listener)

        def _unwatch() -> None:
            items = self._watchers.get(collection, [])
            if listener in items:
                items.remove(listener)

        return _unwatch

    def _publish(self, docs: list[Versioned]) -> None:
        for doc in docs:
            for listener in list(self._watchers.get(doc.collection, [])):
                try:
                    listener(doc)
                except Exception:
                    logger.exception(
                        "store_watcher_failed", collection=doc.collection, doc_id=doc.doc_id
                    )
