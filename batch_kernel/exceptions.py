"""
Typed Exception Hierarchy for batch jobs.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The chunk coordinator decides between retry, skip and abort by looking at the
TYPE of a failure, never at its message. Every error therefore has:
  1. A typed exception class (catch by type, not message)
  2. A CODE attribute (machine-readable, safe for reports and exit codes)
  3. Structured DATA as attributes (survives logging and serialization)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BatchKernelError (base)
    |
    +-- SourceError                     fatal, no skip budget consumed
    |   +-- SourceUnavailableError
    |   +-- SourceOrderError
    |
    +-- RecordError                     skip candidate, never retried
    |   +-- ValidationError
    |   +-- BusinessRuleViolation
    |   +-- ReferenceNotFoundError
    |
    +-- TransientInfrastructureError    retryable
    |   +-- CommitTimeoutError
    |
    +-- UnknownError                    fatal
    |
    +-- JobError
    |   +-- JobNotFoundError
    |   +-- JobAlreadyRunningError
    |   +-- JobAlreadyCompleteError
    |   +-- JobNotRestartableError
    |   +-- SkipLimitExceededError
    |   +-- JobNotRegisteredError
    |
    +-- ConfigurationError (also ValueError)

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Source          | SOURCE_UNAVAILABLE          | Store unreachable after internal retry
                | SOURCE_ORDER_VIOLATION      | Order keys not strictly ascending
----------------|-----------------------------|-----------------------------------------
Record          | VALIDATION_FAILED           | Structural field validation failed
                | BUSINESS_RULE_VIOLATION     | Business-rule predicate failed
                | REFERENCE_NOT_FOUND         | Required cross-reference missing
----------------|-----------------------------|-----------------------------------------
Infrastructure  | TRANSIENT_INFRASTRUCTURE    | I/O timeout, lock contention
                | COMMIT_TIMEOUT              | Chunk commit exceeded its timeout
----------------|-----------------------------|-----------------------------------------
Unknown         | UNKNOWN_ERROR               | Unclassified / programming error
----------------|-----------------------------|-----------------------------------------
Job             | JOB_NOT_FOUND               | No execution for job key
                | JOB_ALREADY_RUNNING         | Execution with same key is RUNNING
                | JOB_ALREADY_COMPLETE        | Job instance already completed
                | JOB_NOT_RESTARTABLE         | Execution status forbids restart
                | SKIP_LIMIT_EXCEEDED         | Skip count went past the skip limit
                | JOB_NOT_REGISTERED          | Unknown job name
----------------|-----------------------------|-----------------------------------------
Config          | CONFIGURATION_ERROR         | Invalid job parameters

===============================================================================
HANDLING PATTERNS
===============================================================================

Stages never raise these past their boundary; they return tagged
``ProcessingResult`` values. Only the chunk commit may raise, and the
coordinator classifies the exception once:

    try:
        coordinator.commit(chunk)
    except Exception as exc:
        disposition = fault_policy.classify(exc)

===============================================================================
"""

from __future__ import annotations

from typing import Any


class BatchKernelError(Exception):
    """
    Base exception for all batch kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "BATCH_KERNEL_ERROR"


# Source-related exceptions


class SourceError(BatchKernelError):
    """Base exception for record source failures (always fatal)."""

    code: str = "SOURCE_ERROR"


class SourceUnavailableError(SourceError):
    """Backing store could not be reached after the iterator's own retries."""

    code: str = "SOURCE_UNAVAILABLE"

    def __init__(self, source_name: str, attempts: int, reason: str):
        self.source_name = source_name
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Source {source_name} unavailable after {attempts} attempt(s): {reason}"
        )


class SourceOrderError(SourceError):
    """Source returned a record whose order key does not ascend."""

    code: str = "SOURCE_ORDER_VIOLATION"

    def __init__(self, source_name: str, previous_key: Any, order_key: Any):
        self.source_name = source_name
        self.previous_key = previous_key
        self.order_key = order_key
        super().__init__(
            f"Source {source_name} returned order key {order_key!r} "
            f"after {previous_key!r}; keys must be strictly ascending"
        )


# Record-level exceptions


class RecordError(BatchKernelError):
    """Base exception for record-level failures (skip candidates)."""

    code: str = "RECORD_ERROR"

    def __init__(self, message: str, natural_key: str | None = None):
        self.natural_key = natural_key
        super().__init__(message)


class ValidationError(RecordError):
    """Record failed structural field validation."""

    code: str = "VALIDATION_FAILED"


class BusinessRuleViolation(RecordError):
    """Record violated a business rule."""

    code: str = "BUSINESS_RULE_VIOLATION"


class ReferenceNotFoundError(RecordError):
    """A required cross-reference lookup found no entity."""

    code: str = "REFERENCE_NOT_FOUND"

    def __init__(self, lookup_name: str, key: Any, natural_key: str | None = None):
        self.lookup_name = lookup_name
        self.key = key
        super().__init__(f"No {lookup_name} entry for {key!r}", natural_key)


# Infrastructure exceptions


class TransientInfrastructureError(BatchKernelError):
    """Transient infrastructure failure (I/O timeout, lock contention)."""

    code: str = "TRANSIENT_INFRASTRUCTURE"


class CommitTimeoutError(TransientInfrastructureError):
    """Chunk commit took longer than the configured timeout."""

    code: str = "COMMIT_TIMEOUT"

    def __init__(self, chunk_seq: int, elapsed_seconds: float, timeout_seconds: float):
        self.chunk_seq = chunk_seq
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Chunk {chunk_seq} commit took {elapsed_seconds:.3f}s, "
            f"timeout is {timeout_seconds:.3f}s"
        )


class UnknownError(BatchKernelError):
    """Unclassified failure wrapped for reporting."""

    code: str = "UNKNOWN_ERROR"

    def __init__(self, original: BaseException):
        self.original_type = type(original).__name__
        super().__init__(f"{self.original_type}: {original}")


# Job lifecycle exceptions


class JobError(BatchKernelError):
    """Base exception for job lifecycle errors."""

    code: str = "JOB_ERROR"


class JobNotFoundError(JobError):
    """No execution exists for the given job key."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_key: str):
        self.job_key = job_key
        super().__init__(f"Job execution not found: {job_key}")


class JobAlreadyRunningError(JobError):
    """An execution with the same job key is already RUNNING."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_name: str, job_key: str):
        self.job_name = job_name
        self.job_key = job_key
        super().__init__(
            f"Job {job_name} is already running (job_key={job_key})"
        )


class JobAlreadyCompleteError(JobError):
    """The job instance already finished; it cannot be run again."""

    code: str = "JOB_ALREADY_COMPLETE"

    def __init__(self, job_name: str, job_key: str, status: str):
        self.job_name = job_name
        self.job_key = job_key
        self.status = status
        super().__init__(
            f"Job {job_name} already finished with status {status} "
            f"(job_key={job_key})"
        )


class JobNotRestartableError(JobError):
    """The execution is in a status that cannot be restarted or abandoned."""

    code: str = "JOB_NOT_RESTARTABLE"

    def __init__(self, job_key: str, status: str):
        self.job_key = job_key
        self.status = status
        super().__init__(f"Job {job_key} cannot be restarted from status {status}")


class SkipLimitExceededError(JobError):
    """Skipped record count went past the configured skip limit."""

    code: str = "SKIP_LIMIT_EXCEEDED"

    def __init__(self, skip_count: int, skip_limit: int):
        self.skip_count = skip_count
        self.skip_limit = skip_limit
        super().__init__(
            f"Skip limit exceeded: {skip_count} skipped, limit {skip_limit}"
        )


class JobNotRegisteredError(JobError):
    """Job name is not present in the job registry."""

    code: str = "JOB_NOT_REGISTERED"

    def __init__(self, job_name: str, available: tuple[str, ...] = ()):
        self.job_name = job_name
        self.available = available
        super().__init__(
            f"No job registered as '{job_name}'. Available: {list(available)}"
        )


# Configuration exceptions


class ConfigurationError(BatchKernelError, ValueError):
    """Job parameters or configuration file are invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid configuration for '{field}': {message}")
