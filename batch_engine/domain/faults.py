"""
Fault policy -- classification of failures and retry / skip budgets.

Contract:
    ``FaultPolicy.classify(exc)`` maps an exception raised at the chunk
    commit boundary to a ``Disposition``:

        | Error kind                                   | Disposition |
        |----------------------------------------------|-------------|
        | TransientInfrastructureError, SQL lock /     | RETRY       |
        | timeout errors, TimeoutError, ConnectionError|             |
        | RecordError (Validation / BusinessRule),     | SKIP        |
        | SQL integrity / data errors                  |             |
        | SourceError, anything unclassified           | FATAL       |

    ``FaultState`` holds the per-execution counters.  It is created per run,
    owned by the coordinator, and never shared between executions.

Invariants enforced:
    - retry count of a chunk never exceeds ``max_retry_attempts``.
    - the job fails if and only if ``skip_count > skip_limit``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from batch_kernel.exceptions import (
    RecordError,
    SourceError,
    TransientInfrastructureError,
)
from batch_engine.domain.types import Disposition, ProcessingResult, ResultKind

_DEFAULT_RETRYABLE: tuple[type[BaseException], ...] = (
    TransientInfrastructureError,
    OperationalError,
    PoolTimeoutError,
    TimeoutError,
    ConnectionError,
)

_DEFAULT_SKIPPABLE: tuple[type[BaseException], ...] = (
    RecordError,
    IntegrityError,
    DataError,
)


class FaultPolicy:
    """Classifies failures; pure apart from the configured type tables."""

    def __init__(
        self,
        retryable: tuple[type[BaseException], ...] = _DEFAULT_RETRYABLE,
        skippable: tuple[type[BaseException], ...] = _DEFAULT_SKIPPABLE,
        fatal: tuple[type[BaseException], ...] = (SourceError,),
    ) -> None:
        self._retryable = retryable
        self._skippable = skippable
        self._fatal = fatal

    def classify(self, exc: BaseException) -> Disposition:
        # Fatal wins so a SourceError subclass can never be made retryable
        if isinstance(exc, self._fatal):
            return Disposition.FATAL
        if isinstance(exc, self._skippable):
            return Disposition.SKIP
        if isinstance(exc, self._retryable):
            return Disposition.RETRY
        return Disposition.FATAL

    @staticmethod
    def classify_result(result: ProcessingResult) -> Disposition | None:
        """Disposition of a non-accepted stage result (None when accepted)."""
        if result.kind == ResultKind.SKIPPED:
            return Disposition.SKIP
        if result.kind == ResultKind.RETRYABLE:
            return Disposition.RETRY
        if result.kind == ResultKind.FATAL:
            return Disposition.FATAL
        return None

    @staticmethod
    def error_code(exc: BaseException) -> str:
        return getattr(exc, "code", None) or type(exc).__name__.upper()


@dataclass
class FaultState:
    """Retry and skip counters of one execution.

    ``skip_count`` starts from the persisted checkpoint, so the skip budget
    spans every run of a job instance.
    """

    max_retry_attempts: int
    skip_limit: int
    skip_count: int = 0
    retry_count_by_chunk: dict[int, int] = field(default_factory=dict)
    total_retries: int = 0

    def can_retry(self, chunk_seq: int) -> bool:
        return self.retry_count_by_chunk.get(chunk_seq, 0) < self.max_retry_attempts

    def record_retry(self, chunk_seq: int) -> int:
        """Count one retry of ``chunk_seq``; returns the attempt number."""
        if not self.can_retry(chunk_seq):
            raise RuntimeError(
                f"chunk {chunk_seq} already used {self.max_retry_attempts} retries"
            )
        attempts = self.retry_count_by_chunk.get(chunk_seq, 0) + 1
        self.retry_count_by_chunk[chunk_seq] = attempts
        self.total_retries += 1
        return attempts

    def reset_chunk(self, chunk_seq: int) -> None:
        """Chunk committed: its retry counter goes back to zero."""
        self.retry_count_by_chunk.pop(chunk_seq, None)

    def retries_for(self, chunk_seq: int) -> int:
        return self.retry_count_by_chunk.get(chunk_seq, 0)

    def would_exceed(self, additional_skips: int) -> bool:
        return self.skip_count + additional_skips > self.skip_limit

    def record_skips(self, count: int) -> bool:
        """Add ``count`` skips; returns True when the limit is now exceeded."""
        self.skip_count += count
        return self.limit_exceeded

    @property
    def limit_exceeded(self) -> bool:
        return self.skip_count > self.skip_limit
