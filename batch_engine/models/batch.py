"""
ORM models for chunk engine persistence.

Contract:
    JobExecutionModel holds one row per job instance (unique ``job_key``):
    lifecycle status, counters and the restart checkpoint.  SkippedRecordModel,
    ReportLineModel and OutputRecordModel hold the per-record outputs written
    inside chunk transactions.  Models expose ``to_dto()`` where a domain DTO
    exists.

Architecture: batch_engine/models. Imports from batch_kernel.db.base and
    batch_engine.domain (DTOs) only.

Invariants enforced:
    BE-3 -- natural-key UNIQUE constraints make chunk replay an upsert.
    BE-7 -- ``job_key`` is UNIQUE; the row is locked (FOR UPDATE) when a run
            claims it.
    BE-10 -- checkpoint columns change only inside a chunk commit.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from batch_kernel.db.base import TimestampedBase
from batch_engine.domain.totals import freeze_key
from batch_engine.domain.types import Checkpoint, JobStatus, SkippedRecord


class JobExecutionModel(TimestampedBase):
    """Persistent job instance with its restart checkpoint (BE-7, BE-10)."""

    __tablename__ = "batch_job_executions"

    __table_args__ = (
        Index("ix_batch_job_executions_status", "status"),
        Index("ix_batch_job_executions_job_name", "job_name"),
    )

    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    execution_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    committed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chunks_committed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chunks_rolled_back: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Checkpoint
    last_order_key: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    chunk_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    report_line_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accumulator_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    finished: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def to_checkpoint(self) -> Checkpoint:
        return Checkpoint(
            last_order_key=freeze_key(self.last_order_key),
            chunk_seq=self.chunk_seq,
            read_count=self.read_count,
            committed_count=self.committed_count,
            skip_count=self.skip_count,
            report_line_count=self.report_line_count,
            accumulator_state=self.accumulator_state,
            finished=self.finished,
        )


class SkippedRecordModel(TimestampedBase):
    """Record removed by the fault policy, kept for manual remediation."""

    __tablename__ = "batch_skipped_records"

    __table_args__ = (
        UniqueConstraint("job_key", "natural_key", name="uq_batch_skipped_job_key"),
        Index("ix_batch_skipped_records_job_key", "job_key"),
    )

    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    natural_key: Mapped[str] = mapped_column(String(200), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str] = mapped_column(String(100), nullable=False)
    stage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    chunk_seq: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def to_dto(self) -> SkippedRecord:
        return SkippedRecord(
            natural_key=self.natural_key,
            reason=self.reason,
            error_code=self.error_code,
            stage=self.stage,
            chunk_seq=self.chunk_seq,
        )


class ReportLineModel(TimestampedBase):
    """One formatted report line; unique per (job_key, line_number) (BE-3)."""

    __tablename__ = "batch_report_lines"

    __table_args__ = (
        UniqueConstraint("job_key", "line_number", name="uq_batch_report_line"),
    )

    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_seq: Mapped[int] = mapped_column(Integer, nullable=False)


class OutputRecordModel(TimestampedBase):
    """Transformed record persisted by the upsert sink (BE-3)."""

    __tablename__ = "batch_output_records"

    __table_args__ = (
        UniqueConstraint("job_name", "natural_key", name="uq_batch_output_natural_key"),
        Index("ix_batch_output_records_group_key", "job_name", "group_key"),
    )

    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    natural_key: Mapped[str] = mapped_column(String(200), nullable=False)
    group_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 2), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
