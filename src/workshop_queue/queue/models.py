from __future__ import annotations

import random
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ENTRIES = "queueEntries"
COUNTERS = "queueCounters"
STATUS = "queueStatus"


class EntryStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    IN_SERVICE = "in_service"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Priority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


# Stored status values of entries that still hold a ticket.
ACTIVE = frozenset({EntryStatus.WAITING.value, EntryStatus.CALLED.value})

# Allowed single-step transitions; anything else is rejected.
TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.WAITING: frozenset(
        {EntryStatus.CALLED, EntryStatus.CANCELLED, EntryStatus.EXPIRED}
    ),
    EntryStatus.CALLED: frozenset({EntryStatus.IN_SERVICE, EntryStatus.CANCELLED}),
    EntryStatus.IN_SERVICE: frozenset({EntryStatus.COMPLETED}),
}

# Lower rank is served first.
PRIORITY_RANK = {Priority.URGENT: 0, Priority.NORMAL: 1}


def can_transition(src: EntryStatus, dst: EntryStatus) -> bool:
    return dst in TRANSITIONS.get(src, frozenset())


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    return uuid.uuid4().hex


def new_verification_code(rng: random.Random | None = None) -> str:
    r = rng or random
    return str(r.randint(1000, 9999))


def partition_id(location_id: str, day: str) -> str:
    return f"{location_id}:{day}"


@dataclass(frozen=True, slots=True)
class QueueEntry:
    id: str
    location_id: str
    queue_day: str
    customer_ref: str
    motorcycle_ref: str
    service_refs: tuple[str, ...]
    status: EntryStatus
    position: int | None
    priority: Priority
    created_at: str
    updated_at: str
    version: int = 0
    called_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    expired_at: str | None = None
    expires_at: str | None = None
    verification_code: str = ""
    estimated_wait_min: int | None = None
    notes: str = ""
    assigned_to: str | None = None
    cancel_reason: str | None = None

    def evolve(self, **changes: Any) -> QueueEntry:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["priority"] = self.priority.value
        d["service_refs"] = list(self.service_refs)
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> QueueEntry:
        dd = {k: v for k, v in dict(d).items() if k in cls.__dataclass_fields__}
        dd["status"] = EntryStatus(str(dd["status"]))
        dd["priority"] = Priority(str(dd.get("priority") or Priority.NORMAL.value))
        dd["service_refs"] = tuple(str(x) for x in (dd.get("service_refs") or ()))
        dd.setdefault("version", 0)
        return cls(**dd)


@dataclass(slots=True)
class TransactionAttempt:
    """Ephemeral context of one optimistic write attempt."""

    operation_id: str
    target_entity_id: str
    attempt_number: int
    max_attempts: int
    expected_version: int | None = None
    backoff_ms: float = 0.0
    conflicts: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class QueueSnapshot:
    """Ordered view of a location's current day: waiting in call order, then called."""

    location_id: str
    queue_day: str
    waiting: tuple[QueueEntry, ...]
    called: tuple[QueueEntry, ...]
    generated_at: str
    # True only when served from an expired cache record because the store was unreachable.
    stale: bool = False

    @property
    def length(self) -> int:
        return len(self.waiting) + len(self.called)

    def entry_ids(self) -> list[str]:
        return [e.id for e in self.waiting] + [e.id for e in self.called]

    def to_dict(self, *, include_codes: bool = False) -> dict[str, Any]:
        # Snapshots feed public displays; verification codes stay on the ticket.
        def _e(e: QueueEntry) -> dict[str, Any]:
            d = e.to_dict()
            if not include_codes:
                d.pop("verification_code", None)
            return d

        return {
            "location_id": self.location_id,
            "queue_day": self.queue_day,
            "waiting": [_e(e) for e in self.waiting],
            "called": [_e(e) for e in self.called],
            "length": self.length,
            "generated_at": self.generated_at,
            "stale": bool(self.stale),
        }


@dataclass(frozen=True, slots=True)
class QueueStatistics:
    location_id: str
    queue_day: str
    counts: dict[str, int]
    queue_length: int
    avg_wait_min: float | None
    avg_service_min: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True, slots=True)
class DayHours:
    open: str = "07:00"
    close: str = "17:30"
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"open": self.open, "close": self.close, "enabled": bool(self.enabled)}


def default_hours() -> dict[str, DayHours]:
    hours = {d: DayHours() for d in WEEKDAYS}
    hours["sunday"] = DayHours(enabled=False)
    return hours


def _hhmm(value: Any, *, day: str, key: str) -> str:
    s = str(value or "").strip()
    try:
        t = datetime.strptime(s, "%H:%M")
    except ValueError:
        raise ValueError(f"{day}.{key} must be HH:MM, got {s!r}") from None
    return f"{t:%H:%M}"


def parse_hours(raw: dict[str, Any]) -> dict[str, DayHours]:
    """
    Validate a weekday -> {open, close, enabled} mapping. Days left out keep the
    default schedule. Raises ValueError on unknown days or malformed times.
    """
    hours = default_hours()
    for day, spec in dict(raw or {}).items():
        d = str(day).strip().lower()
        if d not in hours:
            raise ValueError(f"unknown weekday: {day!r}")
        spec = dict(spec or {})
        opens = _hhmm(spec.get("open", hours[d].open), day=d, key="open")
        closes = _hhmm(spec.get("close", hours[d].close), day=d, key="close")
        if closes <= opens:
            raise ValueError(f"{d}: close must be after open")
        hours[d] = DayHours(open=opens, close=closes, enabled=bool(spec.get("enabled", True)))
    return hours


def open_by_hours(hours: dict[str, DayHours], local_now: datetime) -> bool:
    """Whether `local_now` (already in the queue's timezone) falls inside the day's window."""
    day = hours.get(WEEKDAYS[local_now.weekday()])
    if day is None or not day.enabled:
        return False
    hhmm = f"{local_now:%H:%M}"
    return day.open <= hhmm <= day.close


@dataclass(frozen=True, slots=True)
class QueueStatus:
    """Per-location open/closed switch plus the weekly schedule that drives it."""

    location_id: str
    is_open: bool = True
    operating_hours: dict[str, DayHours] = field(default_factory=default_hours)
    updated_at: str | None = None
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_id": self.location_id,
            "is_open": bool(self.is_open),
            "operating_hours": {d: h.to_dict() for d, h in self.operating_hours.items()},
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> QueueStatus:
        return cls(
            location_id=str(d["location_id"]),
            is_open=bool(d.get("is_open", True)),
            operating_hours=parse_hours(d.get("operating_hours") or {}),
            updated_at=d.get("updated_at"),
            version=int(d.get("version") or 0),
        )
