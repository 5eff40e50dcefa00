"""
BatchOrchestrator -- entry point for running, restarting and controlling jobs.

Contract:
    Wires the JobRegistry, JobRepository, ChunkCoordinator and listeners.
    ``run()`` claims a job instance (by job key) and executes it;
    ``restart()`` resumes a FAILED / STOPPED instance from its checkpoint;
    ``request_stop()`` / ``request_abort()`` signal a running execution;
    ``abandon()`` releases an execution orphaned by a crash.

Architecture: batch_engine (top-level).  This is the canonical entry point
    for configuring and running batch jobs.

Invariants enforced:
    BE-4  -- Clock injection (all services receive the same Clock).
    BE-7  -- One running execution per job key (via the repository claim).
"""

from __future__ import annotations

import threading
from typing import Any, Sequence

from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.db.engine import session_scope
from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import JobNotFoundError, JobNotRegisteredError
from batch_kernel.logging_config import LogContext, get_logger
from batch_kernel.utils.hashing import hash_payload, json_safe
from batch_engine.config import parameters_from_mapping
from batch_engine.domain.context import StopSignal
from batch_engine.domain.faults import FaultPolicy
from batch_engine.domain.types import (
    JobExecution,
    JobParameters,
    JobRunResult,
    JobStatus,
    SkippedRecord,
)
from batch_engine.jobs import JobDefinition, JobRegistry, default_job_registry
from batch_engine.services.coordinator import ChunkCoordinator
from batch_engine.services.listener import (
    ExecutionListener,
    JobReport,
    ListenerChain,
    LoggingListener,
    MetricsListener,
)
from batch_engine.services.repository import JobRepository
from batch_engine.sinks.report import committed_report_lines, render_report
from batch_engine.sources.base import RecordSource

logger = get_logger("batch.orchestrator")

EXIT_CODES: dict[JobStatus, int] = {
    JobStatus.COMPLETED: 0,
    JobStatus.FAILED: 1,
    JobStatus.COMPLETED_WITH_SKIPS: 2,
    JobStatus.STOPPED: 3,
}


def exit_code_for(status: JobStatus) -> int:
    """Process exit code for a terminal job status.

    Raises:
        ValueError: If ``status`` is not terminal.
    """
    try:
        return EXIT_CODES[status]
    except KeyError:
        raise ValueError(f"No exit code for non-terminal status {status.value}") from None


def compute_job_key(
    job_name: str,
    parameters: JobParameters,
    partition: str | None = None,
) -> str:
    """SHA-256 of the job name and its identifying parameters."""
    identity: dict[str, Any] = {
        "job_name": job_name,
        "parameters": json_safe(parameters.identifying()),
    }
    if partition is not None:
        identity["partition"] = partition
    return hash_payload(identity)


class BatchOrchestrator:
    """Composes the engine and runs jobs by name.

    Non-goals:
        - Does NOT schedule jobs -- callers decide when to run.
        - Does NOT create tables -- see ``batch_kernel.db.create_tables``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        job_registry: JobRegistry,
        clock: Clock | None = None,
        fault_policy: FaultPolicy | None = None,
        listeners: Sequence[ExecutionListener] = (),
        source_retry_wait: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._job_registry = job_registry
        self._clock = clock or SystemClock()
        self._fault_policy = fault_policy or FaultPolicy()
        self._metrics = MetricsListener()
        self._listeners = ListenerChain([LoggingListener(), self._metrics, *listeners])
        self._repository = JobRepository(session_factory, clock=self._clock)
        self._coordinator = ChunkCoordinator(
            session_factory,
            self._repository,
            clock=self._clock,
            fault_policy=self._fault_policy,
            listeners=self._listeners,
            source_retry_wait=source_retry_wait,
        )
        self._signals: dict[str, StopSignal] = {}
        self._signals_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session_factory(
        cls,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        job_registry: JobRegistry | None = None,
        listeners: Sequence[ExecutionListener] = (),
        fault_policy: FaultPolicy | None = None,
        source_retry_wait: float = 0.5,
    ) -> BatchOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            session_factory: Factory for the per-chunk sessions.
            clock: Optional clock for deterministic testing (BE-4).
            job_registry: Optional pre-configured registry. If None, uses
                the default registry with the bundled jobs.
        """
        registry = job_registry if job_registry is not None else default_job_registry()
        return cls(
            session_factory=session_factory,
            job_registry=registry,
            clock=clock,
            fault_policy=fault_policy,
            listeners=listeners,
            source_retry_wait=source_retry_wait,
        )

    # -------------------------------------------------------------------------
    # Run / restart
    # -------------------------------------------------------------------------

    def run(
        self,
        job_name: str,
        parameters: JobParameters | None = None,
        correlation_id: str | None = None,
        source: RecordSource | None = None,
        partition: str | None = None,
    ) -> JobRunResult:
        """Run a job instance; a FAILED / STOPPED instance resumes from its checkpoint.

        Raises:
            JobNotRegisteredError: Unknown ``job_name``.
            JobAlreadyRunningError: The instance is RUNNING.
            JobAlreadyCompleteError: The instance already completed.
        """
        definition = self._definition(job_name)
        parameters = parameters or JobParameters()
        job_key = compute_job_key(job_name, parameters, partition)
        return self._execute(
            definition, job_key, parameters, correlation_id, source, partition,
            restart_only=False,
        )

    def restart(
        self,
        job_key: str,
        correlation_id: str | None = None,
        source: RecordSource | None = None,
        partition: str | None = None,
    ) -> JobRunResult:
        """Resume a FAILED or STOPPED instance with its stored parameters.

        Raises:
            JobNotFoundError: No instance for ``job_key``.
            JobAlreadyRunningError / JobAlreadyCompleteError: Not restartable.
        """
        execution = self._repository.get(job_key)
        if execution is None:
            raise JobNotFoundError(job_key)
        definition = self._definition(execution.job_name)
        parameters = parameters_from_mapping(execution.parameters)
        return self._execute(
            definition, job_key, parameters, correlation_id, source, partition,
            restart_only=True,
        )

    def _execute(
        self,
        definition: JobDefinition,
        job_key: str,
        parameters: JobParameters,
        correlation_id: str | None,
        source: RecordSource | None,
        partition: str | None,
        restart_only: bool,
    ) -> JobRunResult:
        with LogContext.bind(correlation_id=correlation_id, partition=partition):
            context, checkpoint = self._repository.claim(
                definition.name, job_key, parameters,
                correlation_id=correlation_id,
                restart_only=restart_only,
            )
            signal = StopSignal()
            with self._signals_lock:
                self._signals[job_key] = signal
            try:
                return self._coordinator.run(
                    definition, context, checkpoint, stop_signal=signal, source=source,
                )
            finally:
                with self._signals_lock:
                    self._signals.pop(job_key, None)

    def _definition(self, job_name: str) -> JobDefinition:
        if job_name not in self._job_registry:
            raise JobNotRegisteredError(job_name, self._job_registry.list_jobs())
        return self._job_registry.get(job_name)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def request_stop(self, job_key: str) -> bool:
        """Stop after the in-flight chunk commits; False if not running here."""
        with self._signals_lock:
            signal = self._signals.get(job_key)
        if signal is None:
            return False
        signal.request_stop()
        logger.info("stop_requested", extra={"job_key": job_key})
        return True

    def request_abort(self, job_key: str) -> bool:
        """Roll back the in-flight chunk and stop; False if not running here."""
        with self._signals_lock:
            signal = self._signals.get(job_key)
        if signal is None:
            return False
        signal.request_abort()
        logger.warning("abort_requested", extra={"job_key": job_key})
        return True

    def abandon(self, job_key: str, reason: str = "Execution abandoned") -> JobExecution:
        """Mark a RUNNING execution left behind by a crashed process as FAILED."""
        with self._signals_lock:
            if job_key in self._signals:
                raise ValueError(f"Job {job_key} is running in this process")
        return self._repository.abandon(job_key, reason)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def job_key(self, job_name: str, parameters: JobParameters, partition: str | None = None) -> str:
        return compute_job_key(job_name, parameters, partition)

    def get_execution(self, job_key: str) -> JobExecution | None:
        return self._repository.get(job_key)

    def list_executions(self, job_name: str | None = None) -> list[JobExecution]:
        return self._repository.list_executions(job_name)

    def get_skipped_records(self, job_key: str) -> list[SkippedRecord]:
        return self._repository.skipped_records(job_key)

    def report_lines(self, job_key: str) -> list[str]:
        with session_scope(self._session_factory) as session:
            return committed_report_lines(session, job_key)

    def render_report(self, job_key: str, output_target: str | None = None) -> int:
        """Write the committed report of ``job_key``; defaults to its output_target."""
        target = output_target
        if target is None:
            execution = self._repository.get(job_key)
            if execution is None:
                raise JobNotFoundError(job_key)
            target = execution.parameters.get("output_target")
            if not target:
                raise ValueError(f"Job {job_key} has no output_target")
        return render_report(self._session_factory, job_key, target)

    def report(self, job_key: str) -> JobReport | None:
        """Metrics report of the last execution of ``job_key`` in this process."""
        return self._metrics.report_for(job_key)

    def is_running(self, job_key: str) -> bool:
        with self._signals_lock:
            return job_key in self._signals

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def job_registry(self) -> JobRegistry:
        return self._job_registry

    @property
    def repository(self) -> JobRepository:
        return self._repository

    @property
    def metrics(self) -> MetricsListener:
        return self._metrics
