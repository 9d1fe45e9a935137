from __future__ import annotations

from collections.abc import Iterable

from .models import PRIORITY_RANK, EntryStatus, QueueEntry


def by_position(entries: Iterable[QueueEntry]) -> list[QueueEntry]:
    return sorted(entries, key=lambda e: (int(e.position or 0), e.created_at, e.id))


def call_order(entries: Iterable[QueueEntry]) -> list[QueueEntry]:
    """Waiting entries in the order call-next serves them: urgent first, then position."""
    return sorted(
        entries,
        key=lambda e: (PRIORITY_RANK[e.priority], int(e.position or 0), e.created_at, e.id),
    )


def renumber(
    waiting: Iterable[QueueEntry],
    removed_ids: Iterable[str],
    *,
    avg_service_min: int,
) -> tuple[list[QueueEntry], int]:
    """
    Close the gaps left by `removed_ids` in a partition's waiting set.

    Returns (entries whose position changed, remaining waiting count). Remaining
    entries are re-ranked 1..N in their existing position order, so an entry moves
    down by exactly the number of removed entries that were ahead of it.
    """
    gone = {str(x) for x in removed_ids}
    remaining = [e for e in by_position(waiting) if e.id not in gone and e.status == EntryStatus.WAITING]
    changed: list[QueueEntry] = []
    for idx, e in enumerate(remaining, start=1):
        if e.position != idx:
            changed.append(
                e.evolve(position=idx, estimated_wait_min=idx * int(avg_service_min))
            )
    return changed, len(remaining)


def is_dense(entries: Iterable[QueueEntry]) -> bool:
    pos = sorted(int(e.position or 0) for e in entries if e.status == EntryStatus.WAITING)
    return pos == list(range(1, len(pos) + 1))
