from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from workshop_queue.config import get_settings
from workshop_queue.ops import metrics
from workshop_queue.store.versioned import Versioned, VersionedStore, WriteOp, put
from workshop_queue.utils.log import logger
from workshop_queue.utils.retry import BackoffPolicy, backoff_from_settings

from .errors import ConflictError, PreconditionFailed
from .models import TransactionAttempt, new_id

# Pure function of the current document (None when absent) -> new document.
Intent = Callable[[dict[str, Any] | None], dict[str, Any]]
# Reads whatever it needs and returns the batch to commit.
BatchPlan = Callable[[TransactionAttempt], Awaitable[list[WriteOp]]]


class TransactionExecutor:
    """
    Optimistic read-modify-write with bounded retries.

    - Each attempt re-reads, recomputes and writes conditionally on the version it read.
    - Only version conflicts are retried. Anything the intent/plan raises
      (invalid transition, empty queue, ...) propagates untouched after one attempt.
    - When attempts run out, PreconditionFailed is raised; nothing was written.
    """

    def __init__(
        self,
        store: VersionedStore,
        *,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff if backoff is not None else backoff_from_settings()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, store: VersionedStore) -> TransactionExecutor:
        s = get_settings()
        return cls(
            store,
            max_attempts=int(s.queue_retry_max_attempts),
            backoff=backoff_from_settings(),
        )

    async def execute_with_retry(
        self, collection: str, entity_id: str, intent: Intent, *, op: str = "write"
    ) -> Versioned:
        """Single-document transaction."""

        async def _plan(attempt: TransactionAttempt) -> list[WriteOp]:
            cur = await self.store.read(collection, entity_id)
            attempt.expected_version = cur.version if cur is not None else 0
            new_doc = intent(dict(cur.data) if cur is not None else None)
            return [WriteOp(collection, str(entity_id), attempt.expected_version, put(new_doc))]

        written = await self.execute_batch_with_retry(op, _plan, target=str(entity_id))
        return written[0]

    async def execute_batch_with_retry(
        self, op: str, plan: BatchPlan, *, target: str = ""
    ) -> list[Versioned]:
        """Multi-document transaction: `plan` is re-run from scratch on every attempt."""
        operation_id = new_id()
        conflicts: list[str] = []
        for n in range(1, self.max_attempts + 1):
            attempt = TransactionAttempt(
                operation_id=operation_id,
                target_entity_id=str(target),
                attempt_number=n,
                max_attempts=self.max_attempts,
                conflicts=conflicts,
            )
            ops = await plan(attempt)
            try:
                return await self.store.batch_write(ops)
            except ConflictError as ex:
                doc_id = str(ex.detail.get("doc_id") or target)
                conflicts.append(doc_id)
                metrics.tx_conflicts.labels(op=op).inc()
                last = n >= self.max_attempts
                attempt.backoff_ms = 0.0 if last else float(self.backoff.delay(n)) * 1000.0
                logger.info(
                    "tx_conflict",
                    op=op,
                    operation_id=operation_id,
                    entity_id=doc_id,
                    attempt=n,
                    max_attempts=self.max_attempts,
                    backoff_ms=round(attempt.backoff_ms, 1),
                )
                if last:
                    break
                if attempt.backoff_ms > 0:
                    await self._sleep(attempt.backoff_ms / 1000.0)

        metrics.tx_exhausted.labels(op=op).inc()
        logger.warning(
            "tx_exhausted",
            op=op,
            operation_id=operation_id,
            entity_id=str(target),
            attempts=self.max_attempts,
            conflicts=list(conflicts),
        )
        raise PreconditionFailed(
            "concurrent update; please retry",
            op=op,
            entity_id=str(target),
            attempts=self.max_attempts,
        )
