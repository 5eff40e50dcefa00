"""
JobRepository -- persistence of job instances, checkpoints and skips.

Contract:
    ``claim()`` locks the job row (SELECT ... FOR UPDATE) and either creates
    a new instance or resumes a FAILED / STOPPED one, returning the
    checkpoint to continue from.  Checkpoint writes happen through the
    chunk session supplied by the coordinator, so they commit or roll back
    with the chunk's sink writes.  Status transitions at job end run in
    their own short transaction.

Architecture: batch_engine/services.  Imports from batch_engine.domain,
    batch_engine.models and the kernel.

Invariants enforced:
    BE-4  -- All timestamps from injected Clock.
    BE-7  -- At most one RUNNING execution per job key.
    BE-10 -- A restart resumes from the persisted checkpoint only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.db.engine import session_scope
from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import (
    JobAlreadyCompleteError,
    JobAlreadyRunningError,
    JobNotFoundError,
    JobNotRestartableError,
)
from batch_kernel.logging_config import get_logger
from batch_kernel.utils.hashing import json_safe
from batch_engine.domain.context import JobExecutionContext
from batch_engine.domain.types import (
    Checkpoint,
    JobExecution,
    JobParameters,
    JobStatus,
    SkippedRecord,
)
from batch_engine.models.batch import JobExecutionModel, SkippedRecordModel

logger = get_logger("batch.repository")


def parameters_to_json(parameters: JobParameters) -> dict[str, Any]:
    return json_safe({
        name: getattr(parameters, name)
        for name in parameters.__dataclass_fields__
    })


class JobRepository:
    """Job execution rows, checkpoints and skipped records."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Claim
    # -------------------------------------------------------------------------

    def claim(
        self,
        job_name: str,
        job_key: str,
        parameters: JobParameters,
        correlation_id: str | None = None,
        restart_only: bool = False,
    ) -> tuple[JobExecutionContext, Checkpoint]:
        """Mark the job instance RUNNING and return its context and checkpoint.

        Raises:
            JobAlreadyRunningError: The instance is RUNNING.
            JobAlreadyCompleteError: The instance finished successfully.
            JobNotFoundError: ``restart_only`` and no instance exists.
        """
        now = self._clock.now()
        execution_id = str(uuid4())

        with session_scope(self._session_factory) as session:
            model = self._lock(session, job_key)

            if model is None:
                if restart_only:
                    raise JobNotFoundError(job_key)
                model = JobExecutionModel(
                    job_name=job_name,
                    job_key=job_key,
                    execution_id=execution_id,
                    status=JobStatus.RUNNING.value,
                    parameters=parameters_to_json(parameters),
                    run_count=1,
                    read_count=0,
                    committed_count=0,
                    skip_count=0,
                    chunks_committed=0,
                    chunks_rolled_back=0,
                    retry_count=0,
                    chunk_seq=0,
                    report_line_count=0,
                    finished=False,
                    started_at=now,
                    correlation_id=correlation_id,
                )
                session.add(model)
                try:
                    session.flush()
                except IntegrityError:
                    # Concurrent claim inserted the same job key first
                    raise JobAlreadyRunningError(job_name, job_key) from None
                checkpoint = Checkpoint()
                restarted = False
            else:
                status = model.job_status
                if status == JobStatus.RUNNING:
                    raise JobAlreadyRunningError(model.job_name, job_key)
                if status in (JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_SKIPS):
                    raise JobAlreadyCompleteError(model.job_name, job_key, status.value)
                if not status.is_restartable:
                    raise JobNotRestartableError(job_key, status.value)
                model.execution_id = execution_id
                model.status = JobStatus.RUNNING.value
                model.run_count += 1
                if not restart_only:
                    # Stored tuning parameters follow the latest run
                    model.parameters = parameters_to_json(parameters)
                model.started_at = now
                model.completed_at = None
                model.error_code = None
                model.error_summary = None
                model.correlation_id = correlation_id or model.correlation_id
                checkpoint = model.to_checkpoint()
                restarted = True

        logger.info(
            "job_claimed",
            extra={
                "job_name": job_name,
                "job_key": job_key,
                "execution_id": execution_id,
                "restarted": restarted,
                "resume_after": checkpoint.last_order_key,
                "chunk_seq": checkpoint.chunk_seq,
            },
        )

        context = JobExecutionContext(
            job_name=job_name,
            job_key=job_key,
            execution_id=execution_id,
            parameters=parameters,
            started_at=now,
            chunk_seq=checkpoint.chunk_seq,
            last_order_key=checkpoint.last_order_key,
            report_line_count=checkpoint.report_line_count,
            restarted=restarted,
        )
        return context, checkpoint

    # -------------------------------------------------------------------------
    # Chunk-scoped writes (caller's session)
    # -------------------------------------------------------------------------

    def save_checkpoint(
        self,
        session: Session,
        job_key: str,
        checkpoint: Checkpoint,
        chunks_committed: int = 0,
        chunks_rolled_back: int = 0,
    ) -> None:
        """Write ``checkpoint`` and add the chunk counters to the job row."""
        model = self._require(session, job_key)
        model.last_order_key = json_safe(checkpoint.last_order_key)
        model.chunk_seq = checkpoint.chunk_seq
        model.read_count = checkpoint.read_count
        model.committed_count = checkpoint.committed_count
        model.skip_count = checkpoint.skip_count
        model.report_line_count = checkpoint.report_line_count
        model.accumulator_state = checkpoint.accumulator_state
        model.finished = checkpoint.finished
        model.chunks_committed += chunks_committed
        model.chunks_rolled_back += chunks_rolled_back
        session.flush()

    def record_skips(
        self,
        session: Session,
        job_key: str,
        skipped: Sequence[SkippedRecord],
    ) -> None:
        """Upsert skipped records by natural key."""
        if not skipped:
            return
        keys = [item.natural_key for item in skipped]
        existing = {
            row.natural_key: row
            for row in session.execute(
                select(SkippedRecordModel).where(
                    SkippedRecordModel.job_key == job_key,
                    SkippedRecordModel.natural_key.in_(keys),
                )
            ).scalars()
        }
        for item in skipped:
            row = existing.get(item.natural_key)
            if row is None:
                row = SkippedRecordModel(job_key=job_key, natural_key=item.natural_key)
                session.add(row)
                existing[item.natural_key] = row
            row.reason = item.reason
            row.error_code = item.error_code
            row.stage = item.stage
            row.chunk_seq = item.chunk_seq
        session.flush()

    # -------------------------------------------------------------------------
    # Job end
    # -------------------------------------------------------------------------

    def finish(
        self,
        context: JobExecutionContext,
        retries: int = 0,
    ) -> datetime:
        """Persist the terminal status of ``context``; returns completed_at."""
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            model = self._require(session, context.job_key, lock=True)
            model.status = context.status.value
            model.completed_at = now
            model.error_code = context.error_code
            model.error_summary = context.error_summary
            model.retry_count += retries
        return now

    def abandon(self, job_key: str, reason: str = "Execution abandoned") -> JobExecution:
        """Mark an orphaned RUNNING execution FAILED so it can be restarted.

        Raises:
            JobNotFoundError: No instance for ``job_key``.
            JobNotRestartableError: The instance is not RUNNING.
        """
        with session_scope(self._session_factory) as session:
            model = self._require(session, job_key, lock=True)
            if model.job_status != JobStatus.RUNNING:
                raise JobNotRestartableError(job_key, model.status)
            model.status = JobStatus.FAILED.value
            model.completed_at = self._clock.now()
            model.error_code = "ABANDONED"
            model.error_summary = reason
            execution = self._to_dto(model)

        logger.warning(
            "job_abandoned",
            extra={"job_key": job_key, "execution_id": execution.execution_id},
        )
        return execution

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, job_key: str) -> JobExecution | None:
        with session_scope(self._session_factory) as session:
            model = self._find(session, job_key)
            return self._to_dto(model) if model is not None else None

    def list_executions(self, job_name: str | None = None) -> list[JobExecution]:
        with session_scope(self._session_factory) as session:
            stmt = select(JobExecutionModel).order_by(JobExecutionModel.started_at)
            if job_name is not None:
                stmt = stmt.where(JobExecutionModel.job_name == job_name)
            return [self._to_dto(m) for m in session.execute(stmt).scalars()]

    def skipped_records(self, job_key: str) -> list[SkippedRecord]:
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(SkippedRecordModel)
                .where(SkippedRecordModel.job_key == job_key)
                .order_by(SkippedRecordModel.chunk_seq, SkippedRecordModel.natural_key)
            ).scalars()
            return [row.to_dto() for row in rows]

    def count_skipped(self, session: Session, job_key: str) -> int:
        return session.execute(
            select(func.count()).select_from(SkippedRecordModel).where(
                SkippedRecordModel.job_key == job_key,
            )
        ).scalar_one()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _find(session: Session, job_key: str) -> JobExecutionModel | None:
        return session.execute(
            select(JobExecutionModel).where(JobExecutionModel.job_key == job_key)
        ).scalar_one_or_none()

    @staticmethod
    def _lock(session: Session, job_key: str) -> JobExecutionModel | None:
        # BE-7: row lock serializes concurrent claims of the same job key
        return session.execute(
            select(JobExecutionModel)
            .where(JobExecutionModel.job_key == job_key)
            .with_for_update()
        ).scalar_one_or_none()

    def _require(
        self, session: Session, job_key: str, lock: bool = False,
    ) -> JobExecutionModel:
        model = self._lock(session, job_key) if lock else self._find(session, job_key)
        if model is None:
            raise JobNotFoundError(job_key)
        return model

    @staticmethod
    def _to_dto(model: JobExecutionModel) -> JobExecution:
        return JobExecution(
            job_name=model.job_name,
            job_key=model.job_key,
            execution_id=model.execution_id,
            status=model.job_status,
            parameters=dict(model.parameters or {}),
            run_count=model.run_count,
            checkpoint=model.to_checkpoint(),
            chunks_committed=model.chunks_committed,
            chunks_rolled_back=model.chunks_rolled_back,
            retry_count=model.retry_count,
            started_at=model.started_at,
            completed_at=model.completed_at,
            correlation_id=model.correlation_id,
            error_code=model.error_code,
            error_summary=model.error_summary,
        )
