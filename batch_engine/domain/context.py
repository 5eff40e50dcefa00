"""
JobExecutionContext -- explicit per-execution state passed through the engine.

Contract:
    One instance per job execution, created at job start with counters
    zeroed (or seeded from a checkpoint on restart), mutated only by the
    coordinator, finalized at job end.  Never a module-level singleton, so
    concurrent executions and tests never share counters.

    Lifecycle:
        STARTING -> RUNNING -> {COMPLETED, COMPLETED_WITH_SKIPS, FAILED, STOPPED}
        STARTING -> FAILED  (source or setup failure before the first chunk)

``StopSignal`` carries graceful-stop and hard-abort requests from another
thread to the coordinator, which honors them only at chunk boundaries
(graceful) or before the in-flight chunk commits (abort).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from batch_engine.domain.types import JobParameters, JobStatus

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.STARTING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.STOPPED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_SKIPS,
        JobStatus.FAILED,
        JobStatus.STOPPED,
    }),
}


class InvalidTransitionError(RuntimeError):
    """Attempted a lifecycle transition the state machine does not allow."""

    def __init__(self, current: JobStatus, target: JobStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition job from {current.value} to {target.value}")


@dataclass
class JobExecutionContext:
    """Mutable execution state for exactly one job run."""

    job_name: str
    job_key: str
    execution_id: str
    parameters: JobParameters
    started_at: datetime | None = None
    completed_at: datetime | None = None
    status: JobStatus = JobStatus.STARTING
    read_count: int = 0
    committed_count: int = 0
    skip_count: int = 0
    chunks_committed: int = 0
    chunks_rolled_back: int = 0
    chunk_seq: int = 0
    last_order_key: Any = None
    report_line_count: int = 0
    restarted: bool = False
    error_code: str | None = None
    error_summary: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def transition(self, target: JobStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if target not in allowed:
            raise InvalidTransitionError(self.status, target)
        self.status = target

    def fail(self, error_code: str, error_summary: str) -> None:
        self.transition(JobStatus.FAILED)
        self.error_code = error_code
        self.error_summary = error_summary

    def complete(self, had_skips: bool | None = None) -> None:
        """Finish successfully; ``had_skips`` covers skips of earlier runs."""
        skipped = self.skip_count > 0 if had_skips is None else had_skips
        self.transition(
            JobStatus.COMPLETED_WITH_SKIPS if skipped else JobStatus.COMPLETED
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class StopSignal:
    """Thread-safe stop / abort flags for one execution."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._abort = threading.Event()

    def request_stop(self) -> None:
        """Finish and commit the in-flight chunk, then stop."""
        self._stop.set()

    def request_abort(self) -> None:
        """Roll back the in-flight chunk and stop."""
        self._abort.set()
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()
