from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from workshop_queue.config import get_settings
from workshop_queue.ops import metrics
from workshop_queue.utils.log import logger


def make_key(namespace: str, parts: dict[str, Any]) -> str:
    blob = json.dumps(
        {"ns": namespace, "parts": parts}, sort_keys=True, separators=(",", ":")
    ).encode("utf-8")
    return f"{namespace}:{hashlib.sha256(blob).hexdigest()}"


@dataclass(slots=True)
class CacheRecord:
    key: str
    value: Any
    namespace: str
    created_at: float
    expires_at: float
    # (entity_type, entity_id) pairs this result was derived from.
    deps: frozenset[tuple[str, str]] = field(default_factory=frozenset)
    hits: int = 0


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    stale_served: int = 0
    evictions: int = 0
    invalidations: int = 0

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) if total else 0.0


class QueryCache:
    """
    In-process TTL cache for read results.

    - Records are tagged with a namespace and the entities they were built from,
      so a write can drop exactly the records it made stale.
    - Bounded: least recently used records are evicted past `max_entries`.
    - `get_stale` exists only for degraded snapshot reads while the store is down.
    """

    def __init__(
        self,
        *,
        ttl_s: float = 5.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_s = float(ttl_s)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._items: OrderedDict[str, CacheRecord] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()
        # Bumped on every invalidation; lets a slow reader detect it raced a write.
        self._generation = 0

    @classmethod
    def from_settings(cls) -> QueryCache:
        s = get_settings()
        return cls(ttl_s=float(s.queue_cache_ttl_sec), max_entries=int(s.queue_cache_max_entries))

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: str) -> Any | None:
        with self._lock:
            rec = self._items.get(key)
            if rec is None or rec.expires_at <= self._clock():
                self._stats.misses += 1
                metrics.cache_requests.labels(result="miss").inc()
                return None
            rec.hits += 1
            self._items.move_to_end(key)
            self._stats.hits += 1
        metrics.cache_requests.labels(result="hit").inc()
        return rec.value

    def get_stale(self, key: str, *, grace_s: float) -> Any | None:
        """Expired record still within `grace_s` of its expiry, else None."""
        with self._lock:
            rec = self._items.get(key)
            if rec is None or rec.expires_at + float(grace_s) <= self._clock():
                return None
            self._stats.stale_served += 1
        metrics.cache_requests.labels(result="stale").inc()
        return rec.value

    def set(
        self,
        key: str,
        value: Any,
        *,
        namespace: str,
        deps: Iterable[tuple[str, str]] = (),
        ttl_s: float | None = None,
        generation: int | None = None,
    ) -> bool:
        """
        Store `value`. With `generation`, the write is dropped if any invalidation
        happened since that generation was read (the value may predate a mutation).
        """
        now = self._clock()
        ttl = self.ttl_s if ttl_s is None else float(ttl_s)
        rec = CacheRecord(
            key=key,
            value=value,
            namespace=str(namespace),
            created_at=now,
            expires_at=now + ttl,
            deps=frozenset((str(t), str(i)) for t, i in deps),
        )
        with self._lock:
            if generation is not None and int(generation) != self._generation:
                return False
            self._items[key] = rec
            self._items.move_to_end(key)
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)
                self._stats.evictions += 1
        return True

    def invalidate_by_entity(self, entity_type: str, entity_id: str) -> int:
        dep = (str(entity_type), str(entity_id))
        with self._lock:
            self._generation += 1
            doomed = [k for k, r in self._items.items() if dep in r.deps]
            for k in doomed:
                del self._items[k]
            self._stats.invalidations += len(doomed)
        if doomed:
            logger.debug("cache_invalidate", entity_type=dep[0], entity_id=dep[1], n=len(doomed))
        return len(doomed)

    def invalidate_by_namespace(self, namespace: str) -> int:
        with self._lock:
            self._generation += 1
            doomed = [k for k, r in self._items.items() if r.namespace == namespace]
            for k in doomed:
                del self._items[k]
            self._stats.invalidations += len(doomed)
        if doomed:
            logger.debug("cache_invalidate", namespace=namespace, n=len(doomed))
        return len(doomed)

    def cleanup(self) -> int:
        """Drop records past their TTL (stale-grace copies included)."""
        now = self._clock()
        with self._lock:
            doomed = [k for k, r in self._items.items() if r.expires_at <= now]
            for k in doomed:
                del self._items[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._items.clear()

    async def warmup(
        self,
        keys: Iterable[str],
        loader: Callable[[str], Awaitable[Any]],
    ) -> int:
        """
        Pre-load results for `keys`. The loader is expected to populate the cache
        itself (it is the normal read path); failures are logged and skipped.
        """
        n = 0
        for k in keys:
            try:
                await loader(k)
                n += 1
            except Exception as ex:
                logger.warning("cache_warmup_failed", key=str(k), error=str(ex))
        return n

    def stats(self) -> dict[str, Any]:
        with self._lock:
            st = self._stats
            return {
                "entries": len(self._items),
                "max_entries": self.max_entries,
                "ttl_s": self.ttl_s,
                "hits": st.hits,
                "misses": st.misses,
                "stale_served": st.stale_served,
                "evictions": st.evictions,
                "invalidations": st.invalidations,
                "hit_rate": round(st.hit_rate(), 4),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
