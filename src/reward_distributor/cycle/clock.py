"""Window boundary math.

A cycle is identified by the millisecond timestamp of its window end. Every
deadline is derived from wall-clock time alone, so two processes asking at the
same instant agree on the cycle without sharing any state.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_WINDOW_MS = 600_000
DEFAULT_PREP_LEAD_MS = 120_000
DEFAULT_SNAPSHOT_LEAD_MS = 8_000
DEFAULT_GRACE_MS = 90_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class Cycle:
    """One distribution window and its phase deadlines (epoch ms)."""

    cycle_id: int
    window_start: int
    window_end: int
    prep_deadline: int
    snapshot_deadline: int
    grace_deadline: int

    def is_prep_due(self, now: int) -> bool:
        return now >= self.prep_deadline

    def is_snapshot_due(self, now: int) -> bool:
        return now >= self.snapshot_deadline

    def is_in_grace(self, now: int) -> bool:
        return self.snapshot_deadline <= now <= self.grace_deadline

    def is_missed(self, now: int) -> bool:
        return now > self.grace_deadline

    def to_dict(self) -> dict[str, int]:
        return {
            "cycleId": self.cycle_id,
            "windowStart": self.window_start,
            "windowEnd": self.window_end,
            "prepDeadline": self.prep_deadline,
            "snapshotDeadline": self.snapshot_deadline,
            "graceDeadline": self.grace_deadline,
        }


def window_for(
    now: int,
    window_ms: int = DEFAULT_WINDOW_MS,
    *,
    prep_lead_ms: int = DEFAULT_PREP_LEAD_MS,
    snapshot_lead_ms: int = DEFAULT_SNAPSHOT_LEAD_MS,
    grace_ms: int = DEFAULT_GRACE_MS,
) -> Cycle:
    """Map an instant to the window that contains it.

    The window end is the next boundary strictly after ``now``: an instant
    that sits exactly on a boundary opens the following window, so a cycle
    never has zero remaining length.

    Args:
        now: Epoch milliseconds.
        window_ms: Window duration.
        prep_lead_ms: Prepare phase starts this long before window end.
        snapshot_lead_ms: Snapshot is due this long before window end.
        grace_ms: Late snapshots are accepted this long after the deadline.

    Returns:
        The containing Cycle.
    """
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")
    start = (now // window_ms) * window_ms
    end = start + window_ms
    snapshot_deadline = end - snapshot_lead_ms
    return Cycle(
        cycle_id=end,
        window_start=start,
        window_end=end,
        prep_deadline=end - prep_lead_ms,
        snapshot_deadline=snapshot_deadline,
        grace_deadline=snapshot_deadline + grace_ms,
    )


class WindowClock:
    """Configured window math bound to a time source.

    Example:
        ```python
        clock = WindowClock(window_ms=600_000)
        cycle = clock.current()
        print(cycle.cycle_id, cycle.snapshot_deadline)
        ```
    """

    def __init__(
        self,
        *,
        window_ms: int = DEFAULT_WINDOW_MS,
        prep_lead_ms: int = DEFAULT_PREP_LEAD_MS,
        snapshot_lead_ms: int = DEFAULT_SNAPSHOT_LEAD_MS,
        grace_ms: int = DEFAULT_GRACE_MS,
        time_source: Callable[[], int] = now_ms,
    ) -> None:
        self.window_ms = window_ms
        self.prep_lead_ms = prep_lead_ms
        self.snapshot_lead_ms = snapshot_lead_ms
        self.grace_ms = grace_ms
        self._time_source = time_source

    def now(self) -> int:
        return self._time_source()

    def window_for(self, now: int) -> Cycle:
        return window_for(
            now,
            self.window_ms,
            prep_lead_ms=self.prep_lead_ms,
            snapshot_lead_ms=self.snapshot_lead_ms,
            grace_ms=self.grace_ms,
        )

    def current(self) -> Cycle:
        return self.window_for(self.now())

    def cycle(self, cycle_id: int) -> Cycle:
        """Rebuild a Cycle from its id.

        Raises:
            ValueError: If ``cycle_id`` is not a window boundary.
        """
        if cycle_id <= 0 or cycle_id % self.window_ms != 0:
            raise ValueError(f"cycle_id {cycle_id} is not a window boundary")
        return self.window_for(cycle_id - self.window_ms)

    def grace_cycle(self, now: int) -> Cycle | None:
        """Return the cycle whose grace window contains ``now``, if any.

        The grace window of a cycle can extend past its own window end, so
        both the containing window and the previous one are checked.
        """
        current = self.window_for(now)
        if current.is_in_grace(now):
            return current
        previous = self.window_for(current.window_start - 1)
        if previous.is_in_grace(now):
            return previous
        return None
