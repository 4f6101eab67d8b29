"""Cycle orchestration - window math, prepare and snapshot phases, worker loop."""

from reward_distributor.cycle.clock import Cycle, WindowClock, now_ms, window_for
from reward_distributor.cycle.prep import PrepConfig, PrepEngine, PrepOutcome, PrepStatus, PrepStep
from reward_distributor.cycle.snapshot import SnapshotEngine, SnapshotOutcome, SnapshotStatus
from reward_distributor.cycle.worker import CycleWorker, WorkerState, WorkerStats

__all__ = [
    "Cycle",
    "CycleWorker",
    "PrepConfig",
    "PrepEngine",
    "PrepOutcome",
    "PrepStatus",
    "PrepStep",
    "SnapshotEngine",
    "SnapshotOutcome",
    "SnapshotStatus",
    "WindowClock",
    "WorkerState",
    "WorkerStats",
    "now_ms",
    "window_for",
]
