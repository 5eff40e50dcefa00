"""
Stage pipeline -- ordered record transformations with tagged outcomes.

Contract:
    A ``Stage`` maps one record to a ``ProcessingResult``.  Stages may also
    define ``begin_chunk(records)`` / ``end_chunk()`` hooks, called once per
    chunk attempt, for batched lookups.

    ``StagePipeline.process(record)`` runs the stages in order, feeding each
    accepted record to the next stage.  The first non-accepted result stops
    the pipeline and is returned tagged with the stage name.  Exceptions
    raised inside a stage never escape: the pipeline converts them to a
    result through the fault policy (record errors -> skipped, transient
    errors -> retryable, anything else -> fatal).
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from batch_kernel.logging_config import get_logger
from batch_engine.domain.faults import FaultPolicy
from batch_engine.domain.types import Disposition, ProcessingResult, Record

logger = get_logger("batch.stages")


@runtime_checkable
class Stage(Protocol):
    """One transformation step of the pipeline."""

    @property
    def name(self) -> str:
        ...

    def apply(self, record: Record) -> ProcessingResult:
        ...


class StagePipeline:
    """Runs records through an ordered list of stages."""

    def __init__(
        self,
        stages: Sequence[Stage] = (),
        fault_policy: FaultPolicy | None = None,
    ) -> None:
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names: {names}")
        self._stages = tuple(stages)
        self._fault_policy = fault_policy or FaultPolicy()

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self._stages)

    def begin_chunk(self, records: Sequence[Record]) -> None:
        for stage in self._stages:
            hook = getattr(stage, "begin_chunk", None)
            if hook is not None:
                hook(records)

    def end_chunk(self) -> None:
        for stage in self._stages:
            hook = getattr(stage, "end_chunk", None)
            if hook is not None:
                hook()

    def process(self, record: Record) -> ProcessingResult:
        current = record
        for stage in self._stages:
            try:
                result = stage.apply(current)
            except Exception as exc:
                result = self._result_for_exception(current, exc)
                logger.debug(
                    "stage_raised",
                    extra={
                        "stage": stage.name,
                        "natural_key": current.key,
                        "error_type": type(exc).__name__,
                    },
                )
            if not result.is_accepted:
                return result.from_stage(stage.name)
            current = result.record
        return ProcessingResult.accepted(current)

    def _result_for_exception(self, record: Record, exc: Exception) -> ProcessingResult:
        disposition = self._fault_policy.classify(exc)
        code = FaultPolicy.error_code(exc)
        reason = str(exc) or type(exc).__name__
        if disposition == Disposition.SKIP:
            return ProcessingResult.skipped(record, reason, code)
        if disposition == Disposition.RETRY:
            return ProcessingResult.retryable(record, reason, code)
        return ProcessingResult.fatal(record, reason, code)
