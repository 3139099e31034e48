from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class TriggerSchedule:
    """Tracks when each periodic trigger last ran, on a monotonic clock."""

    intervals: dict[str, float]
    last_run: dict[str, float] = field(default_factory=dict)

    def due(self, now: float) -> list[str]:
        return [
            name
            for name, interval in self.intervals.items()
            if name not in self.last_run or now - self.last_run[name] >= interval
        ]

    def mark(self, name: str, now: float) -> None:
        self.last_run[name] = now

    def next_wait(self, now: float) -> float:
        waits = [
            max(0.0, self.last_run[name] + interval - now) if name in self.last_run else 0.0
            for name, interval in self.intervals.items()
        ]
        return min(waits, default=0.0)


def next_backoff(current: float, *, base: float, ceiling: float, jitter: float) -> float:
    return min(max(current, base) * (2.0 + jitter), ceiling)
