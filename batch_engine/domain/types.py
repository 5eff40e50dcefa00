"""
batch_engine.domain.types -- Pure frozen dataclasses for the chunk engine.

ZERO I/O.

Follows the kernel DTO pattern: frozen dataclasses with str-enum status
fields and tuples for immutable collections.

Invariants enforced:
    - Records are immutable once read; stages return new records.
    - ProcessingResult is a closed set of tagged variants; the coordinator
      dispatches on ``kind`` and never on exception types.
    - JobParameters validate themselves at construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from batch_kernel.exceptions import ConfigurationError


# =============================================================================
# Status enums
# =============================================================================


class JobStatus(str, Enum):
    """Job execution lifecycle status."""

    STARTING = "starting"  # Created, counters zeroed
    RUNNING = "running"  # Chunks being processed
    COMPLETED = "completed"  # Source exhausted, nothing skipped
    COMPLETED_WITH_SKIPS = "completed_with_skips"  # Source exhausted, skips within limit
    FAILED = "failed"  # Skip limit breached or fatal error
    STOPPED = "stopped"  # Graceful stop or hard abort

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_restartable(self) -> bool:
        return self in (JobStatus.FAILED, JobStatus.STOPPED)


_TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_SKIPS,
    JobStatus.FAILED,
    JobStatus.STOPPED,
})


class ChunkState(str, Enum):
    """Per-chunk transaction state."""

    COLLECTING = "collecting"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ResultKind(str, Enum):
    """Tag of a ProcessingResult variant."""

    ACCEPTED = "accepted"
    SKIPPED = "skipped"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class Disposition(str, Enum):
    """Fault policy verdict for a failure."""

    RETRY = "retry"  # Transient: re-execute the chunk
    SKIP = "skip"  # Record-level: consume skip budget, never retried
    FATAL = "fatal"  # Abort the job regardless of skip budget


class BreakLevel(str, Enum):
    """Control-break level of a report total."""

    PAGE = "page"
    GROUP = "group"
    GRAND = "grand"


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class Record:
    """Immutable input record.

    ``order_key`` defines the read/commit sequence, ``group_key`` the
    control-break grouping (e.g. account id) and ``natural_key`` the
    identity used for idempotent upserts and skip reports.
    """

    order_key: Any
    group_key: Any
    payload: Mapping[str, Any] = field(default_factory=dict)
    amount: Decimal = Decimal("0.00")
    natural_key: str | None = None

    @property
    def key(self) -> str:
        """Natural key, falling back to the order key."""
        return self.natural_key if self.natural_key is not None else str(self.order_key)

    def with_payload(self, **updates: Any) -> Record:
        """Return a copy whose payload has ``updates`` merged in."""
        return replace(self, payload={**self.payload, **updates})

    def with_amount(self, amount: Decimal) -> Record:
        return replace(self, amount=amount)


# =============================================================================
# Processing results (tagged variants)
# =============================================================================


@dataclass(frozen=True)
class ProcessingResult:
    """Tagged outcome of running a record through a stage.

    Build with the ``accepted`` / ``skipped`` / ``retryable`` / ``fatal``
    factories rather than the constructor.
    """

    kind: ResultKind
    record: Record
    reason: str | None = None
    error_code: str | None = None
    stage: str | None = None

    @classmethod
    def accepted(cls, record: Record) -> ProcessingResult:
        return cls(kind=ResultKind.ACCEPTED, record=record)

    @classmethod
    def skipped(
        cls, record: Record, reason: str, error_code: str = "SKIPPED",
    ) -> ProcessingResult:
        return cls(
            kind=ResultKind.SKIPPED, record=record,
            reason=reason, error_code=error_code,
        )

    @classmethod
    def retryable(
        cls, record: Record, reason: str,
        error_code: str = "TRANSIENT_INFRASTRUCTURE",
    ) -> ProcessingResult:
        return cls(
            kind=ResultKind.RETRYABLE, record=record,
            reason=reason, error_code=error_code,
        )

    @classmethod
    def fatal(
        cls, record: Record, reason: str, error_code: str = "UNKNOWN_ERROR",
    ) -> ProcessingResult:
        return cls(
            kind=ResultKind.FATAL, record=record,
            reason=reason, error_code=error_code,
        )

    @property
    def is_accepted(self) -> bool:
        return self.kind == ResultKind.ACCEPTED

    def from_stage(self, stage_name: str) -> ProcessingResult:
        """Tag the result with the stage that produced it."""
        if self.stage is not None:
            return self
        return replace(self, stage=stage_name)


# =============================================================================
# Report events
# =============================================================================


@dataclass(frozen=True)
class BreakLine:
    """A flushed control-break total.

    ``final`` marks the end-of-source flush of a partially filled page,
    which is not a page break.
    """

    level: BreakLevel
    total: Decimal
    group_key: Any = None
    page_number: int = 0
    line_count: int = 0
    final: bool = False


@dataclass(frozen=True)
class DetailLine:
    """Per-record detail entry of the report."""

    record: Record
    page_number: int
    line_number: int


# =============================================================================
# Job parameters
# =============================================================================


@dataclass(frozen=True)
class JobParameters:
    """Job parameters consumed (not owned) by the engine.

    ``start_key``/``end_key``/``output_target`` identify the job instance;
    the remaining fields tune execution only.
    """

    start_key: Any = None
    end_key: Any = None
    chunk_size: int = 100
    page_size: int = 20
    max_retry_attempts: int = 3
    skip_limit: int = 10
    output_target: str | None = None
    fault_tolerant: bool = True
    commit_timeout_seconds: float | None = None
    source_retry_attempts: int = 3
    batch_window_seconds: int = 4 * 60 * 60
    batch_window_warning_seconds: int = 3 * 60 * 60

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigurationError("chunk_size", "must be >= 1")
        if self.page_size < 1:
            raise ConfigurationError("page_size", "must be >= 1")
        if self.max_retry_attempts < 0:
            raise ConfigurationError("max_retry_attempts", "must be >= 0")
        if self.skip_limit < 0:
            raise ConfigurationError("skip_limit", "must be >= 0")
        if self.source_retry_attempts < 1:
            raise ConfigurationError("source_retry_attempts", "must be >= 1")
        if self.commit_timeout_seconds is not None and self.commit_timeout_seconds <= 0:
            raise ConfigurationError("commit_timeout_seconds", "must be > 0")
        if self.batch_window_warning_seconds > self.batch_window_seconds:
            raise ConfigurationError(
                "batch_window_warning_seconds", "must not exceed batch_window_seconds",
            )
        if self.start_key is not None and self.end_key is not None:
            try:
                inverted = self.start_key > self.end_key
            except TypeError as exc:
                raise ConfigurationError(
                    "start_key", f"not comparable with end_key: {exc}",
                ) from None
            if inverted:
                raise ConfigurationError("start_key", "must be <= end_key")

    def identifying(self) -> dict[str, Any]:
        """Parameters that identify a job instance (used for the job key)."""
        return {
            "start_key": self.start_key,
            "end_key": self.end_key,
            "output_target": self.output_target,
        }


# =============================================================================
# Checkpoint and results
# =============================================================================


@dataclass(frozen=True)
class Checkpoint:
    """Durable marker of the last committed chunk.

    ``accumulator_state`` is the break-total snapshot taken at the commit,
    so a restarted run continues the same page/group/grand totals.
    """

    last_order_key: Any = None
    chunk_seq: int = 0
    read_count: int = 0
    committed_count: int = 0
    skip_count: int = 0
    report_line_count: int = 0
    accumulator_state: dict[str, Any] | None = None
    finished: bool = False


@dataclass(frozen=True)
class SkippedRecord:
    """A record removed from processing, kept for manual remediation."""

    natural_key: str
    reason: str
    error_code: str
    stage: str | None = None
    chunk_seq: int | None = None


@dataclass(frozen=True)
class JobRunResult:
    """Immutable result of executing (or resuming) a job.

    Returned by ``ChunkCoordinator.run()`` and ``BatchOrchestrator.run()``.
    """

    job_name: str
    job_key: str
    execution_id: str
    status: JobStatus
    read_count: int
    committed_count: int
    skip_count: int
    chunks_committed: int
    chunks_rolled_back: int
    retry_count: int
    checkpoint: Checkpoint
    skipped_records: tuple[SkippedRecord, ...] = ()
    break_lines: tuple[BreakLine, ...] = ()
    error_code: str | None = None
    error_summary: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    restarted: bool = False


@dataclass(frozen=True)
class JobExecution:
    """Read-only view of a persisted job instance."""

    job_name: str
    job_key: str
    execution_id: str
    status: JobStatus
    parameters: Mapping[str, Any]
    run_count: int
    checkpoint: Checkpoint
    chunks_committed: int = 0
    chunks_rolled_back: int = 0
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    correlation_id: str | None = None
    error_code: str | None = None
    error_summary: str | None = None
