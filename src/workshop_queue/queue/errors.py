from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class QueueError(Exception):
    """Base for every queue-domain failure."""

    code = "queue_error"
    retryable = False

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.detail:
            out["detail"] = dict(self.detail)
        return out


class ConflictError(QueueError):
    """Stored version moved since it was read. Retried inside the executor only."""

    code = "conflict"
    retryable = True


class PreconditionFailed(QueueError):
    """Optimistic retries exhausted; the user may try the action again."""

    code = "precondition_failed"
    retryable = True


class InvalidTransition(QueueError):
    code = "invalid_transition"


class EmptyQueue(QueueError):
    code = "empty_queue"


class EntryNotFound(QueueError):
    code = "entry_not_found"


class ValidationFailed(QueueError):
    code = "validation_failed"


class QueueClosed(QueueError):
    """Joins are refused while the location is closed (manually or by its hours)."""

    code = "queue_closed"


class StoreUnavailable(QueueError):
    code = "store_unavailable"
    retryable = True

    def __init__(self, message: str = "", *, retry_after_s: float = 2.0, **detail: Any) -> None:
        super().__init__(message, **detail)
        self.retry_after_s = float(retry_after_s)

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["retry_after_s"] = self.retry_after_s
        return out


# Expected business outcomes: reported as failed results, never raised to callers.
BUSINESS_ERRORS: tuple[type[QueueError], ...] = (
    EmptyQueue,
    InvalidTransition,
    EntryNotFound,
    ValidationFailed,
    QueueClosed,
)


@dataclass(frozen=True, slots=True)
class QueueResult(Generic[T]):
    ok: bool
    value: T | None = None
    error: QueueError | None = None

    @classmethod
    def success(cls, value: T) -> QueueResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: QueueError) -> QueueResult[T]:
        return cls(ok=False, error=error)

    @property
    def code(self) -> str | None:
        return self.error.code if self.error is not None else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
