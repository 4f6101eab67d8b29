"""Background loop driving the prepare and snapshot phases of every cycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from reward_distributor.cycle.clock import Cycle, WindowClock
from reward_distributor.cycle.prep import PrepEngine, PrepOutcome
from reward_distributor.cycle.snapshot import SnapshotEngine, SnapshotOutcome, SnapshotStatus
from reward_distributor.errors import DistributorError

logger = logging.getLogger(__name__)

PREP_CUTOFF_MS = 500
PREP_BACKOFF_STEP_SECONDS = 1.5
PREP_BACKOFF_MAX_SECONDS = 5.0
SNAPSHOT_BACKOFF_STEP_SECONDS = 1.0
SNAPSHOT_BACKOFF_MAX_SECONDS = 3.0


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WorkerStats:
    """Statistics for the worker."""

    started_at: datetime | None = None
    cycles_completed: int = 0
    preps_recorded: int = 0
    snapshots_taken: int = 0
    snapshots_missed: int = 0
    errors: int = 0
    last_cycle_id: int | None = None
    last_error: str | None = None


class CycleWorker:
    """Runs prepare then snapshot at fixed offsets inside every window.

    The worker is independent of inbound requests. It is safe to run next to
    on-demand prepare/snapshot calls: both phases are idempotent per cycle.

    Example:
        ```python
        worker = CycleWorker(prep_engine, snapshot_engine, clock=clock)
        await worker.start()
        # runs until stop() is called
        await worker.stop()
        ```
    """

    def __init__(
        self,
        prep: PrepEngine,
        snapshot: SnapshotEngine,
        *,
        clock: WindowClock,
        boot_jitter_ms: int = 1_500,
        post_window_slack_ms: int = 200,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the worker.

        Args:
            prep: Prepare phase engine.
            snapshot: Snapshot phase engine.
            clock: Window math and time source.
            boot_jitter_ms: Upper bound of the random delay before the first action.
            post_window_slack_ms: Delay past window end before the next cycle.
            rng: Uniform [0, 1) source for the boot jitter.
        """
        self._prep = prep
        self._snapshot = snapshot
        self._clock = clock
        self._boot_jitter_ms = boot_jitter_ms
        self._post_window_slack_ms = post_window_slack_ms
        self._rng = rng

        self._state = WorkerState.STOPPED
        self._stats = WorkerStats()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> WorkerState:
        """Current worker state."""
        return self._state

    @property
    def stats(self) -> WorkerStats:
        """Current worker statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    async def start(self) -> None:
        """Start the loop in a background task.

        Raises:
            RuntimeError: If the worker is already running.
        """
        if self._state != WorkerState.STOPPED:
            raise RuntimeError(f"Cannot start worker in state {self._state}")
        self._state = WorkerState.STARTING
        self._stop_event = asyncio.Event()
        self._stats.started_at = datetime.now(UTC)
        self._task = asyncio.create_task(self._run_loop())
        self._state = WorkerState.RUNNING
        logger.info("Cycle worker started (window=%dms)", self._clock.window_ms)

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        if self._state == WorkerState.STOPPED:
            return
        self._state = WorkerState.STOPPING
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._state = WorkerState.STOPPED
        logger.info("Cycle worker stopped")

    async def run(self) -> None:
        """Start the worker and block until stopped or cancelled."""
        await self.start()
        try:
            if self._task:
                await self._task
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> CycleWorker:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _pause(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if a stop was requested meanwhile."""
        if self._stop_event is None:
            await asyncio.sleep(max(0.0, seconds))
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
            return True
        except TimeoutError:
            return False

    async def _sleep_until(self, instant_ms: int) -> bool:
        return await self._pause((instant_ms - self._clock.now()) / 1000.0)

    async def _run_loop(self) -> None:
        jitter = self._rng() * self._boot_jitter_ms / 1000.0
        if await self._pause(jitter):
            return
        await self.catch_up()

        while not self._stopping():
            cycle = self._clock.current()
            try:
                await self.run_cycle(cycle)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.exception("Cycle %d failed unexpectedly", cycle.cycle_id)
            if await self._sleep_until(cycle.window_end + self._post_window_slack_ms):
                return

    async def catch_up(self) -> SnapshotOutcome | None:
        """Take one immediate snapshot if started inside a grace window."""
        now = self._clock.now()
        cycle = self._clock.grace_cycle(now)
        if cycle is None:
            return None
        logger.info("Booted inside grace window of cycle %d; attempting catch-up snapshot", cycle.cycle_id)
        try:
            if await self._prep.get_prep(cycle.cycle_id) is None:
                # Past the deadline, so no fees can be distributed for this cycle.
                await self._prep.abandon(cycle.cycle_id, "no prepare recorded before restart")
            outcome = await self._snapshot.run_snapshot(cycle.cycle_id, now)
        except DistributorError as e:
            logger.warning("Catch-up snapshot failed: %s", e)
            return None
        self._count_snapshot(outcome)
        return outcome

    async def run_cycle(self, cycle: Cycle) -> None:
        """Drive one cycle: prepare, then snapshot."""
        self._stats.last_cycle_id = cycle.cycle_id
        if await self._sleep_until(cycle.prep_deadline):
            return
        await self._prepare_phase(cycle)
        if self._stopping():
            return
        if await self._sleep_until(cycle.snapshot_deadline):
            return
        await self._snapshot_phase(cycle)
        self._stats.cycles_completed += 1

    async def _prepare_phase(self, cycle: Cycle) -> PrepOutcome | None:
        cutoff = cycle.snapshot_deadline - PREP_CUTOFF_MS
        attempt = 0
        outcome: PrepOutcome | None = None
        while not self._stopping() and self._clock.now() < cutoff:
            attempt += 1
            try:
                outcome = await self._prep.run_prepare(cycle.cycle_id)
            except DistributorError as e:
                logger.warning("Prepare attempt %d for cycle %d failed: %s", attempt, cycle.cycle_id, e)
                outcome = None
            if outcome is not None and outcome.terminal:
                self._stats.preps_recorded += 1
                return outcome
            self._stats.errors += 1
            delay = min(PREP_BACKOFF_STEP_SECONDS * attempt, PREP_BACKOFF_MAX_SECONDS)
            delay = min(delay, max(0.0, (cutoff - self._clock.now()) / 1000.0))
            if await self._pause(delay):
                return outcome

        if self._stopping():
            return outcome
        # Out of time: a recorded failure lets the snapshot allocate nothing instead of waiting.
        reason = outcome.error if outcome and outcome.error else "prepare did not finish before the snapshot"
        return await self._prep.abandon(cycle.cycle_id, reason)

    async def _snapshot_phase(self, cycle: Cycle) -> SnapshotOutcome | None:
        attempt = 0
        outcome: SnapshotOutcome | None = None
        while not self._stopping():
            attempt += 1
            now = self._clock.now()
            try:
                outcome = await self._snapshot.run_snapshot(cycle.cycle_id, now)
            except DistributorError as e:
                logger.warning("Snapshot attempt %d for cycle %d failed: %s", attempt, cycle.cycle_id, e)
                outcome = None
            if outcome is not None and outcome.status in (SnapshotStatus.TAKEN, SnapshotStatus.MISSED):
                self._count_snapshot(outcome)
                return outcome
            if self._clock.now() > cycle.grace_deadline:
                break
            delay = min(SNAPSHOT_BACKOFF_STEP_SECONDS * attempt, SNAPSHOT_BACKOFF_MAX_SECONDS)
            if await self._pause(delay):
                break
        return outcome

    def _count_snapshot(self, outcome: SnapshotOutcome) -> None:
        if outcome.status is SnapshotStatus.TAKEN:
            self._stats.snapshots_taken += 1
        elif outcome.status is SnapshotStatus.MISSED:
            self._stats.snapshots_missed += 1
