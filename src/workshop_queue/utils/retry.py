from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Protocol

from workshop_queue.config import get_settings


class BackoffPolicy(Protocol):
    """Delay (seconds) to wait before retry number `attempt` (1-based)."""

    def delay(self, attempt: int) -> float: ...


@dataclass(frozen=True, slots=True)
class NoBackoff:
    def delay(self, attempt: int) -> float:
        return 0.0


@dataclass(slots=True)
class ExponentialBackoff:
    """
    Capped exponential backoff (+ optional jitter).

    delay(n) = min(cap, base * 2**(n-1)), scaled into [0.5, 1.5) when jitter is on.
    """

    base_s: float = 0.1
    cap_s: float = 2.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random)

    def delay(self, attempt: int) -> float:
        n = max(1, int(attempt))
        d = min(float(self.cap_s), float(self.base_s) * (2 ** (n - 1)))
        if self.jitter:
            d = d * (0.5 + self.rng.random())
        return max(0.0, d)


def backoff_from_settings() -> ExponentialBackoff:
    s = get_settings()
    return ExponentialBackoff(
        base_s=max(0, int(s.queue_retry_base_ms)) / 1000.0,
        cap_s=max(0, int(s.queue_retry_cap_ms)) / 1000.0,
        jitter=bool(s.queue_retry_jitter),
    )
