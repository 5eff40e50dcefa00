"""
batch_engine.domain -- Pure types and value objects for the chunk engine.

ZERO I/O.  DTOs are frozen dataclasses; the accumulator, fault state and
execution context are plain objects owned by one coordinator.
"""

from batch_engine.domain.context import (
    InvalidTransitionError,
    JobExecutionContext,
    StopSignal,
)
from batch_engine.domain.faults import FaultPolicy, FaultState
from batch_engine.domain.totals import (
    CURRENCY_SCALE,
    BreakTotalAccumulator,
    quantize_amount,
)
from batch_engine.domain.types import (
    BreakLevel,
    BreakLine,
    Checkpoint,
    ChunkState,
    DetailLine,
    Disposition,
    JobExecution,
    JobParameters,
    JobRunResult,
    JobStatus,
    ProcessingResult,
    Record,
    ResultKind,
    SkippedRecord,
)

__all__ = [
    "CURRENCY_SCALE",
    "BreakLevel",
    "BreakLine",
    "BreakTotalAccumulator",
    "Checkpoint",
    "ChunkState",
    "DetailLine",
    "Disposition",
    "FaultPolicy",
    "FaultState",
    "InvalidTransitionError",
    "JobExecution",
    "JobExecutionContext",
    "JobParameters",
    "JobRunResult",
    "JobStatus",
    "ProcessingResult",
    "Record",
    "ResultKind",
    "SkippedRecord",
    "StopSignal",
    "quantize_amount",
]
