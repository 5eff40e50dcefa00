"""
Execution listeners -- job and chunk lifecycle hooks, metrics and reports.

Contract:
    ``ExecutionListener`` hooks are invoked by the coordinator:

        before_job(context)
        before_chunk(context, chunk_seq, attempt)
        on_skip(context, skipped)
        on_chunk_error(context, failure)
        after_chunk(context, chunk)
        after_job(context, result)

    Listeners are observers: ``ListenerChain`` calls each one in turn and
    logs and swallows any exception a listener raises, so monitoring can
    never change the outcome of a chunk or a job.

    ``MetricsListener`` aggregates read / processed / skipped / errored
    counts, per-stage error counts and throughput, and checks the elapsed
    time against the batch window.  ``JobReport`` is its immutable summary.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence, runtime_checkable

from batch_kernel.logging_config import get_logger
from batch_engine.domain.context import JobExecutionContext
from batch_engine.domain.types import (
    ChunkState,
    Disposition,
    JobRunResult,
    JobStatus,
    SkippedRecord,
)

logger = get_logger("batch.listener")


# =============================================================================
# Event DTOs
# =============================================================================


@dataclass(frozen=True)
class ChunkReport:
    """Outcome of one chunk, after commit or rollback."""

    chunk_seq: int
    state: ChunkState
    read_count: int
    accepted_count: int
    skip_count: int
    attempts: int
    duration_ms: int = 0
    break_lines: int = 0


@dataclass(frozen=True)
class ChunkFailure:
    """A failure observed while collecting or committing a chunk."""

    chunk_seq: int
    attempt: int
    disposition: Disposition
    error_code: str
    message: str
    stage: str | None = None


# =============================================================================
# Listener protocol and chain
# =============================================================================


@runtime_checkable
class ExecutionListener(Protocol):
    def before_job(self, context: JobExecutionContext) -> None: ...

    def after_job(self, context: JobExecutionContext, result: JobRunResult) -> None: ...

    def before_chunk(self, context: JobExecutionContext, chunk_seq: int, attempt: int) -> None: ...

    def after_chunk(self, context: JobExecutionContext, chunk: ChunkReport) -> None: ...

    def on_chunk_error(self, context: JobExecutionContext, failure: ChunkFailure) -> None: ...

    def on_skip(self, context: JobExecutionContext, skipped: SkippedRecord) -> None: ...


class BaseExecutionListener:
    """No-op listener; subclass and override the hooks you need."""

    def before_job(self, context: JobExecutionContext) -> None:
        pass

    def after_job(self, context: JobExecutionContext, result: JobRunResult) -> None:
        pass

    def before_chunk(self, context: JobExecutionContext, chunk_seq: int, attempt: int) -> None:
        pass

    def after_chunk(self, context: JobExecutionContext, chunk: ChunkReport) -> None:
        pass

    def on_chunk_error(self, context: JobExecutionContext, failure: ChunkFailure) -> None:
        pass

    def on_skip(self, context: JobExecutionContext, skipped: SkippedRecord) -> None:
        pass


class ListenerChain:
    """Fans hook calls out to listeners; listener failures are logged only."""

    def __init__(self, listeners: Sequence[ExecutionListener] = ()) -> None:
        self._listeners = list(listeners)

    def add(self, listener: ExecutionListener) -> None:
        self._listeners.append(listener)

    def __len__(self) -> int:
        return len(self._listeners)

    def before_job(self, context: JobExecutionContext) -> None:
        self._notify("before_job", context)

    def after_job(self, context: JobExecutionContext, result: JobRunResult) -> None:
        self._notify("after_job", context, result)

    def before_chunk(self, context: JobExecutionContext, chunk_seq: int, attempt: int) -> None:
        self._notify("before_chunk", context, chunk_seq, attempt)

    def after_chunk(self, context: JobExecutionContext, chunk: ChunkReport) -> None:
        self._notify("after_chunk", context, chunk)

    def on_chunk_error(self, context: JobExecutionContext, failure: ChunkFailure) -> None:
        self._notify("on_chunk_error", context, failure)

    def on_skip(self, context: JobExecutionContext, skipped: SkippedRecord) -> None:
        self._notify("on_skip", context, skipped)

    def _notify(self, hook: str, *args) -> None:
        for listener in self._listeners:
            method = getattr(listener, hook, None)
            if method is None:
                continue
            try:
                method(*args)
            except Exception:
                logger.exception(
                    "listener_failed",
                    extra={"listener": type(listener).__name__, "hook": hook},
                )


# =============================================================================
# Logging listener
# =============================================================================


class LoggingListener(BaseExecutionListener):
    """Structured log line per lifecycle event."""

    def before_job(self, context: JobExecutionContext) -> None:
        logger.info(
            "job_started",
            extra={
                "job_name": context.job_name,
                "job_key": context.job_key,
                "execution_id": context.execution_id,
                "restarted": context.restarted,
            },
        )

    def after_chunk(self, context: JobExecutionContext, chunk: ChunkReport) -> None:
        logger.info(
            "chunk_finished",
            extra={
                "chunk_seq": chunk.chunk_seq,
                "state": chunk.state.value,
                "read": chunk.read_count,
                "accepted": chunk.accepted_count,
                "skipped": chunk.skip_count,
                "attempts": chunk.attempts,
                "duration_ms": chunk.duration_ms,
            },
        )

    def on_chunk_error(self, context: JobExecutionContext, failure: ChunkFailure) -> None:
        logger.warning(
            "chunk_error",
            extra={
                "chunk_seq": failure.chunk_seq,
                "attempt": failure.attempt,
                "disposition": failure.disposition.value,
                "error_code": failure.error_code,
                "stage": failure.stage,
                "error": failure.message,
            },
        )

    def on_skip(self, context: JobExecutionContext, skipped: SkippedRecord) -> None:
        logger.info(
            "record_skipped",
            extra={
                "natural_key": skipped.natural_key,
                "error_code": skipped.error_code,
                "stage": skipped.stage,
                "reason": skipped.reason,
            },
        )

    def after_job(self, context: JobExecutionContext, result: JobRunResult) -> None:
        log = logger.error if result.status == JobStatus.FAILED else logger.info
        log(
            "job_finished",
            extra={
                "job_name": result.job_name,
                "job_key": result.job_key,
                "status": result.status.value,
                "read": result.read_count,
                "committed": result.committed_count,
                "skipped": result.skip_count,
                "error_code": result.error_code,
                "duration_ms": result.duration_ms,
            },
        )


# =============================================================================
# Metrics
# =============================================================================


def _rate(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part * 100.0 / whole, 2)


@dataclass(frozen=True)
class JobReport:
    """Execution summary of one job run."""

    job_name: str
    job_key: str
    execution_id: str
    status: JobStatus
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float
    read_count: int
    processed_count: int
    skip_count: int
    error_count: int
    chunks_committed: int
    chunks_rolled_back: int
    retry_count: int
    stage_errors: dict[str, int] = field(default_factory=dict)
    skipped_records: tuple[SkippedRecord, ...] = ()
    window_exceeded: bool = False
    window_warning: bool = False

    @property
    def success_rate(self) -> float:
        return _rate(self.processed_count, self.read_count)

    @property
    def skip_rate(self) -> float:
        return _rate(self.skip_count, self.read_count)

    @property
    def error_rate(self) -> float:
        if self.read_count <= 0:
            return 0.0
        return round(100.0 - self.success_rate, 2)

    @property
    def throughput(self) -> float:
        """Records read per second."""
        if self.duration_seconds <= 0:
            return float(self.read_count)
        return round(self.read_count / self.duration_seconds, 2)

    def render(self) -> str:
        lines = [
            f"JOB EXECUTION REPORT: {self.job_name}",
            f"  Job key:          {self.job_key}",
            f"  Execution:        {self.execution_id}",
            f"  Status:           {self.status.value.upper()}",
            f"  Duration:         {self.duration_seconds:.3f}s",
            f"  Read:             {self.read_count}",
            f"  Processed:        {self.processed_count}",
            f"  Skipped:          {self.skip_count}",
            f"  Errors:           {self.error_count}",
            f"  Chunks committed: {self.chunks_committed}",
            f"  Chunks rolled back: {self.chunks_rolled_back}",
            f"  Retries:          {self.retry_count}",
            f"  Success rate:     {self.success_rate:.2f}%",
            f"  Skip rate:        {self.skip_rate:.2f}%",
            f"  Throughput:       {self.throughput:.2f} records/s",
        ]
        if self.stage_errors:
            lines.append("  Errors by stage:")
            for stage, count in sorted(self.stage_errors.items()):
                lines.append(f"    {stage}: {count}")
        if self.skipped_records:
            lines.append("  Skipped records:")
            for item in self.skipped_records:
                lines.append(f"    {item.natural_key} [{item.error_code}] {item.reason}")
        if self.window_exceeded:
            lines.append("  WARNING: batch window exceeded")
        elif self.window_warning:
            lines.append("  WARNING: approaching batch window")
        return "\n".join(lines)


@dataclass
class _RunMetrics:
    errors: int = 0
    stage_errors: Counter = field(default_factory=Counter)
    skipped: list[SkippedRecord] = field(default_factory=list)


class MetricsListener(BaseExecutionListener):
    """Collects per-execution metrics and keeps a ``JobReport`` per run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, _RunMetrics] = {}
        self._reports: dict[str, JobReport] = {}

    def before_job(self, context: JobExecutionContext) -> None:
        with self._lock:
            self._runs[context.execution_id] = _RunMetrics()

    def on_skip(self, context: JobExecutionContext, skipped: SkippedRecord) -> None:
        with self._lock:
            run = self._runs.setdefault(context.execution_id, _RunMetrics())
            run.skipped.append(skipped)
            run.stage_errors[skipped.stage or "commit"] += 1

    def on_chunk_error(self, context: JobExecutionContext, failure: ChunkFailure) -> None:
        with self._lock:
            run = self._runs.setdefault(context.execution_id, _RunMetrics())
            run.errors += 1
            run.stage_errors[failure.stage or "commit"] += 1

    def after_job(self, context: JobExecutionContext, result: JobRunResult) -> None:
        with self._lock:
            run = self._runs.pop(context.execution_id, _RunMetrics())
        duration = result.duration_ms / 1000.0
        params = context.parameters
        exceeded = duration > params.batch_window_seconds
        warning = not exceeded and duration > params.batch_window_warning_seconds
        if exceeded:
            logger.error(
                "batch_window_exceeded",
                extra={
                    "job_key": context.job_key,
                    "duration_seconds": duration,
                    "window_seconds": params.batch_window_seconds,
                },
            )
        elif warning:
            logger.warning(
                "batch_window_warning",
                extra={
                    "job_key": context.job_key,
                    "duration_seconds": duration,
                    "warning_seconds": params.batch_window_warning_seconds,
                },
            )

        report = JobReport(
            job_name=result.job_name,
            job_key=result.job_key,
            execution_id=result.execution_id,
            status=result.status,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_seconds=duration,
            read_count=result.read_count,
            processed_count=result.committed_count,
            skip_count=result.skip_count,
            error_count=run.errors,
            chunks_committed=result.chunks_committed,
            chunks_rolled_back=result.chunks_rolled_back,
            retry_count=result.retry_count,
            stage_errors=dict(run.stage_errors),
            skipped_records=tuple(run.skipped),
            window_exceeded=exceeded,
            window_warning=warning,
        )
        with self._lock:
            self._reports[result.job_key] = report

    def report_for(self, job_key: str) -> JobReport | None:
        """Most recent report for ``job_key``."""
        with self._lock:
            return self._reports.get(job_key)

    @property
    def reports(self) -> list[JobReport]:
        with self._lock:
            return list(self._reports.values())
