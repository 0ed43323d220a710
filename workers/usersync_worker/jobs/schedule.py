from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class PeriodicTask:
    """Fixed-interval trigger driven by a monotonic clock."""

    name: str
    interval_seconds: float
    last_run_at: float | None = None

    def is_due(self, now: float) -> bool:
        if self.interval_seconds <= 0:
            return False
        if self.last_run_at is None:
            return True
        return now - self.last_run_at >= self.interval_seconds

    def mark_run(self, now: float) -> None:
        self.last_run_at = now


def next_backoff(current: float, *, base: float, cap: float, jitter: float = 0.0) -> float:
    if current <= 0:
        current = base
    return min(current * (2.0 + max(0.0, jitter)), cap)
