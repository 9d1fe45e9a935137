from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

REGISTRY = CollectorRegistry()

# Queue operations are store round-trips plus optional backoff; sub-second normally.
OP_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

# Operations
queue_operations = Counter(
    "queue_operations_total",
    "Queue operations by outcome (ok / business error code / store_unavailable)",
    labelnames=("op", "outcome"),
    registry=REGISTRY,
)
queue_operation_seconds = Histogram(
    "queue_operation_seconds",
    "Queue operation latency (seconds)",
    labelnames=("op",),
    registry=REGISTRY,
    buckets=OP_BUCKETS,
)

# Optimistic transactions
tx_conflicts = Counter(
    "queue_tx_conflicts_total",
    "Version conflicts seen by the transaction executor",
    labelnames=("op",),
    registry=REGISTRY,
)
tx_exhausted = Counter(
    "queue_tx_exhausted_total",
    "Transactions that ran out of retry attempts",
    labelnames=("op",),
    registry=REGISTRY,
)

# Cache
cache_requests = Counter(
    "queue_cache_requests_total",
    "Query cache lookups (hit / miss / stale)",
    labelnames=("result",),
    registry=REGISTRY,
)

# Events / expiry
events_emitted = Counter(
    "queue_events_emitted_total",
    "Domain events published on the event bus",
    labelnames=("type",),
    registry=REGISTRY,
)
event_handler_errors = Counter(
    "queue_event_handler_errors_total",
    "Event subscribers that raised",
    labelnames=("type",),
    registry=REGISTRY,
)
entries_expired = Counter(
    "queue_entries_expired_total", "Entries moved to expired by sweeps", registry=REGISTRY
)

# Update distribution
update_subscriptions = Gauge(
    "queue_update_subscriptions",
    "Live queue-display subscriptions by delivery mode",
    labelnames=("mode",),
    registry=REGISTRY,
)


@contextmanager
def time_hist(h: Histogram) -> Iterator[Callable[[], float]]:
    """
    Time a block and observe into a histogram.
        with time_hist(hist.labels(op="call_next")) as elapsed:
            ...
    """
    t0 = time.perf_counter()
    dt: float | None = None

    def elapsed() -> float:
        return float(dt or 0.0)

    try:
        yield elapsed
    finally:
        dt = max(0.0, time.perf_counter() - t0)
        with suppress(Exception):
            h.observe(dt)
