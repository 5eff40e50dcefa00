"""
ChunkCoordinator -- chunk-transactional execution of one job.

Contract:
    ``run()`` drives a claimed job execution to a terminal status:

        loop:
            stop requested?          -> STOPPED (after the last commit)
            read up to chunk_size records from the source
            COLLECTING: run each record through the stage pipeline and the
                        break-total accumulator
            COMMITTING: write sinks, skipped records and the checkpoint in
                        ONE transaction
            COMMITTED | ROLLED_BACK

    Per chunk the accumulator is snapshotted before collection and restored
    whenever the attempt does not commit, so a retried chunk recomputes the
    same totals and a restarted job continues the committed ones.

Fault handling:
    | Outcome                            | Action                                  |
    |------------------------------------|-----------------------------------------|
    | Skipped stage result               | pending skip, counted when chunk ends   |
    | Retryable result / RETRY exception | re-execute chunk while retries remain   |
    | Retries exhausted / SKIP exception | roll back; every record of the chunk is |
    |                                    | skipped and the checkpoint advances     |
    | Fatal result / FATAL exception     | roll back; job FAILED                   |
    | Skip count would pass skip limit   | roll back; job FAILED                   |
    | Source failure                     | job FAILED, checkpoint untouched        |

Architecture: batch_engine/services.  Imports from batch_engine.domain,
    sources, stages, sinks, models (through the repository) and the kernel.

Invariants enforced:
    BE-1  -- Chunk atomicity: sinks, skips and checkpoint share one transaction.
    BE-2  -- Records are processed and committed in order-key order.
    BE-4  -- All timestamps and durations from the injected Clock.
    BE-5  -- Retries per chunk never exceed max_retry_attempts.
    BE-6  -- FAILED on skip breach iff skip_count > skip_limit.
    BE-9  -- Stop is honored at chunk boundaries; abort rolls back in-flight work.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Sequence

from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.db.engine import session_scope
from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import (
    CommitTimeoutError,
    SkipLimitExceededError,
    SourceError,
)
from batch_kernel.logging_config import LogContext, get_logger
from batch_engine.domain.context import JobExecutionContext, StopSignal
from batch_engine.domain.faults import FaultPolicy, FaultState
from batch_engine.domain.totals import BreakTotalAccumulator, ReportEvent
from batch_engine.domain.types import (
    BreakLine,
    Checkpoint,
    ChunkState,
    Disposition,
    JobRunResult,
    JobStatus,
    ProcessingResult,
    Record,
    ResultKind,
    SkippedRecord,
)
from batch_engine.jobs.base import JobDefinition
from batch_engine.services.listener import ChunkFailure, ChunkReport, ListenerChain
from batch_engine.services.repository import JobRepository
from batch_engine.sinks.base import ChunkOutput, ReportLine, Sink
from batch_engine.sinks.report import ReportLayout, ReportLineSink, render_report
from batch_engine.sources.base import RecordSource, SourceIterator
from batch_engine.stages.base import StagePipeline

logger = get_logger("batch.coordinator")


class _ChunkOutcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    STOPPED = "stopped"


class _AbortRequested(Exception):
    """Raised inside the chunk transaction to roll it back on abort."""


@dataclass
class _Collected:
    accepted: list[Record] = field(default_factory=list)
    events: list[ReportEvent] = field(default_factory=list)
    skips: list[SkippedRecord] = field(default_factory=list)
    failure: ProcessingResult | None = None
    aborted: bool = False


@dataclass
class _Run:
    context: JobExecutionContext
    checkpoint: Checkpoint
    accumulator: BreakTotalAccumulator
    fault_state: FaultState
    iterator: SourceIterator
    pipeline: StagePipeline
    transactional_sinks: list[Sink]
    best_effort_sinks: list[Sink]
    layout: ReportLayout | None
    stop_signal: StopSignal
    header_pending: bool
    break_lines: list[BreakLine] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)


class ChunkCoordinator:
    """Runs one claimed job execution chunk by chunk.

    Non-goals:
        - Does NOT claim or lock the job row -- the orchestrator does that
          through ``JobRepository.claim()`` before calling ``run()``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        repository: JobRepository,
        clock: Clock | None = None,
        fault_policy: FaultPolicy | None = None,
        listeners: ListenerChain | None = None,
        source_retry_wait: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._repository = repository
        self._clock = clock or SystemClock()
        self._fault_policy = fault_policy or FaultPolicy()
        self._listeners = listeners or ListenerChain()
        self._source_retry_wait = source_retry_wait

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        definition: JobDefinition,
        context: JobExecutionContext,
        checkpoint: Checkpoint,
        stop_signal: StopSignal | None = None,
        source: RecordSource | None = None,
    ) -> JobRunResult:
        """Execute ``context`` from ``checkpoint`` to a terminal status."""
        started = self._clock.monotonic()
        stop_signal = stop_signal or StopSignal()
        run: _Run | None = None

        with LogContext.bind(
            job_name=context.job_name,
            job_key=context.job_key,
            execution_id=context.execution_id,
        ):
            self._listeners.before_job(context)
            try:
                run = self._prepare(definition, context, checkpoint, stop_signal, source)
                context.transition(JobStatus.RUNNING)
                self._execute(run)
                if not context.is_terminal:
                    self._finalize(run)
            except Exception as exc:
                logger.exception(
                    "job_execution_error",
                    extra={"job_name": context.job_name, "error_type": type(exc).__name__},
                )
                if not context.is_terminal:
                    context.fail(FaultPolicy.error_code(exc), str(exc) or type(exc).__name__)

            retries = run.fault_state.total_retries if run is not None else 0
            context.completed_at = self._repository.finish(context, retries=retries)

            result = JobRunResult(
                job_name=context.job_name,
                job_key=context.job_key,
                execution_id=context.execution_id,
                status=context.status,
                read_count=context.read_count,
                committed_count=context.committed_count,
                skip_count=context.skip_count,
                chunks_committed=context.chunks_committed,
                chunks_rolled_back=context.chunks_rolled_back,
                retry_count=retries,
                checkpoint=run.checkpoint if run is not None else checkpoint,
                skipped_records=tuple(run.skipped) if run is not None else (),
                break_lines=tuple(run.break_lines) if run is not None else (),
                error_code=context.error_code,
                error_summary=context.error_summary,
                started_at=context.started_at,
                completed_at=context.completed_at,
                duration_ms=int((self._clock.monotonic() - started) * 1000),
                restarted=context.restarted,
            )
            self._listeners.after_job(context, result)
        return result

    def _prepare(
        self,
        definition: JobDefinition,
        context: JobExecutionContext,
        checkpoint: Checkpoint,
        stop_signal: StopSignal,
        source: RecordSource | None,
    ) -> _Run:
        params = context.parameters
        record_source = source or definition.create_source(params, self._session_factory)
        iterator = SourceIterator(
            record_source,
            fetch_size=params.chunk_size,
            after_key=checkpoint.last_order_key,
            retry_attempts=params.source_retry_attempts,
            retry_wait=self._source_retry_wait,
        )
        pipeline = StagePipeline(
            definition.create_stages(params, self._session_factory),
            fault_policy=self._fault_policy,
        )
        layout = definition.report_layout(params)
        sinks = list(definition.create_sinks(params))
        if layout is not None and not any(isinstance(s, ReportLineSink) for s in sinks):
            sinks.append(ReportLineSink())

        if checkpoint.accumulator_state:
            accumulator = BreakTotalAccumulator.from_snapshot(checkpoint.accumulator_state)
        else:
            accumulator = BreakTotalAccumulator(page_size=params.page_size)

        return _Run(
            context=context,
            checkpoint=checkpoint,
            accumulator=accumulator,
            fault_state=FaultState(
                max_retry_attempts=params.max_retry_attempts,
                skip_limit=params.skip_limit,
                skip_count=checkpoint.skip_count,
            ),
            iterator=iterator,
            pipeline=pipeline,
            transactional_sinks=[s for s in sinks if s.transactional],
            best_effort_sinks=[s for s in sinks if not s.transactional],
            layout=layout,
            stop_signal=stop_signal,
            header_pending=layout is not None and checkpoint.report_line_count == 0,
        )

    def _execute(self, run: _Run) -> None:
        params = run.context.parameters
        if run.checkpoint.finished:
            logger.info("source_already_drained", extra={"chunk_seq": run.checkpoint.chunk_seq})
            return

        while True:
            if run.stop_signal.stop_requested:
                self._stop(run, "Stop requested")
                return

            try:
                records = run.iterator.read(params.chunk_size)
                last = run.iterator.exhausted
            except SourceError as exc:
                logger.error(
                    "source_failed",
                    extra={"source": run.iterator.source_name, "error_code": exc.code},
                )
                run.context.fail(exc.code, str(exc))
                return

            chunk_seq = run.checkpoint.chunk_seq + 1
            outcome = self._process_chunk(run, chunk_seq, records, last)
            if outcome in (_ChunkOutcome.FAILED, _ChunkOutcome.STOPPED):
                return
            if outcome == _ChunkOutcome.ROLLED_BACK and last:
                # The report trailer of a rolled-back final chunk commits on its own
                trailer = self._process_chunk(run, chunk_seq + 1, [], True)
                if trailer == _ChunkOutcome.ROLLED_BACK:
                    run.context.fail(
                        "TRAILER_COMMIT_FAILED",
                        "Could not commit the report trailer after the final chunk",
                    )
                return
            if last:
                return

    def _finalize(self, run: _Run) -> None:
        context = run.context
        target = context.parameters.output_target
        if target and run.layout is not None:
            try:
                render_report(self._session_factory, context.job_key, target)
            except OSError as exc:
                logger.error(
                    "report_render_failed",
                    extra={"path": target, "error": str(exc)},
                )
                context.fail("REPORT_RENDER_FAILED", str(exc))
                return
        context.complete(had_skips=run.checkpoint.skip_count > 0)

    # -------------------------------------------------------------------------
    # Chunk
    # -------------------------------------------------------------------------

    def _process_chunk(
        self,
        run: _Run,
        chunk_seq: int,
        records: Sequence[Record],
        last: bool,
    ) -> _ChunkOutcome:
        context = run.context
        snapshot = run.accumulator.snapshot()
        chunk_started = self._clock.monotonic()
        attempt = 0

        with LogContext.bind(chunk_seq=chunk_seq):
            while True:
                attempt += 1
                self._listeners.before_chunk(context, chunk_seq, attempt)
                collected = self._collect(run, chunk_seq, records, last)

                if collected.aborted:
                    run.accumulator.restore(snapshot)
                    context.chunks_rolled_back += 1
                    return self._stop(run, "Abort requested")

                failure = collected.failure
                if failure is not None:
                    run.accumulator.restore(snapshot)
                    disposition = FaultPolicy.classify_result(failure)
                    self._listeners.on_chunk_error(context, ChunkFailure(
                        chunk_seq=chunk_seq,
                        attempt=attempt,
                        disposition=disposition,
                        error_code=failure.error_code or "UNKNOWN_ERROR",
                        message=failure.reason or "",
                        stage=failure.stage,
                    ))
                    if disposition == Disposition.FATAL:
                        context.chunks_rolled_back += 1
                        context.fail(
                            failure.error_code or "UNKNOWN_ERROR",
                            f"{failure.stage}: {failure.reason} (record {failure.record.key})",
                        )
                        return _ChunkOutcome.FAILED
                    if run.fault_state.can_retry(chunk_seq):
                        run.fault_state.record_retry(chunk_seq)
                        continue
                    return self._roll_back_as_skipped(
                        run, chunk_seq, records, collected.skips,
                        reason=failure.reason or "Retries exhausted",
                        error_code=failure.error_code or "RETRIES_EXHAUSTED",
                        stage=failure.stage,
                        attempts=attempt,
                        chunk_started=chunk_started,
                    )

                if run.fault_state.would_exceed(len(collected.skips)):
                    run.accumulator.restore(snapshot)
                    return self._fail_skip_limit(run, records, collected.skips)

                try:
                    output, checkpoint = self._commit(run, chunk_seq, records, collected, last)
                except _AbortRequested:
                    run.accumulator.restore(snapshot)
                    context.chunks_rolled_back += 1
                    return self._stop(run, "Abort requested")
                except Exception as exc:
                    run.accumulator.restore(snapshot)
                    disposition = self._fault_policy.classify(exc)
                    code = FaultPolicy.error_code(exc)
                    self._listeners.on_chunk_error(context, ChunkFailure(
                        chunk_seq=chunk_seq,
                        attempt=attempt,
                        disposition=disposition,
                        error_code=code,
                        message=str(exc),
                    ))
                    if disposition == Disposition.RETRY and run.fault_state.can_retry(chunk_seq):
                        run.fault_state.record_retry(chunk_seq)
                        continue
                    if disposition == Disposition.FATAL:
                        context.chunks_rolled_back += 1
                        context.fail(code, str(exc) or type(exc).__name__)
                        return _ChunkOutcome.FAILED
                    return self._roll_back_as_skipped(
                        run, chunk_seq, records, collected.skips,
                        reason=str(exc) or type(exc).__name__,
                        error_code=code,
                        stage="commit",
                        attempts=attempt,
                        chunk_started=chunk_started,
                    )

                self._after_commit(run, output, checkpoint, records, collected)
                self._listeners.after_chunk(context, ChunkReport(
                    chunk_seq=chunk_seq,
                    state=ChunkState.COMMITTED,
                    read_count=len(records),
                    accepted_count=len(collected.accepted),
                    skip_count=len(collected.skips),
                    attempts=attempt,
                    duration_ms=self._elapsed_ms(chunk_started),
                    break_lines=len(output.break_lines),
                ))
                return _ChunkOutcome.COMMITTED

    def _collect(
        self,
        run: _Run,
        chunk_seq: int,
        records: Sequence[Record],
        last: bool,
    ) -> _Collected:
        collected = _Collected()
        run.pipeline.begin_chunk(records)
        try:
            for record in records:
                if run.stop_signal.abort_requested:
                    collected.aborted = True
                    return collected
                result = run.pipeline.process(record)
                if result.is_accepted:
                    collected.accepted.append(result.record)
                    collected.events.extend(run.accumulator.add(result.record))
                elif result.kind == ResultKind.SKIPPED:
                    collected.skips.append(SkippedRecord(
                        natural_key=result.record.key,
                        reason=result.reason or "",
                        error_code=result.error_code or "SKIPPED",
                        stage=result.stage,
                        chunk_seq=chunk_seq,
                    ))
                else:
                    collected.failure = result
                    return collected
            if last:
                collected.events.extend(run.accumulator.finish())
        finally:
            run.pipeline.end_chunk()
        return collected

    def _commit(
        self,
        run: _Run,
        chunk_seq: int,
        records: Sequence[Record],
        collected: _Collected,
        last: bool,
    ) -> tuple[ChunkOutput, Checkpoint]:
        context = run.context
        params = context.parameters

        texts: list[str] = []
        if run.layout is not None:
            if run.header_pending:
                texts.extend(run.layout.header(params))
            texts.extend(run.layout.render(collected.events))
        first_line = run.checkpoint.report_line_count
        output = ChunkOutput(
            job_name=context.job_name,
            job_key=context.job_key,
            chunk_seq=chunk_seq,
            records=tuple(collected.accepted),
            lines=tuple(
                ReportLine(line_number=first_line + offset, text=text)
                for offset, text in enumerate(texts, start=1)
            ),
            break_lines=tuple(e for e in collected.events if isinstance(e, BreakLine)),
            final=last,
        )

        previous = run.checkpoint
        checkpoint = Checkpoint(
            last_order_key=records[-1].order_key if records else previous.last_order_key,
            chunk_seq=chunk_seq,
            read_count=previous.read_count + len(records),
            committed_count=previous.committed_count + len(collected.accepted),
            skip_count=previous.skip_count + len(collected.skips),
            report_line_count=first_line + len(texts),
            accumulator_state=run.accumulator.snapshot(),
            finished=last,
        )

        commit_started = self._clock.monotonic()
        with session_scope(self._session_factory) as session:
            for sink in run.transactional_sinks:
                sink.write(output, session)
            self._repository.record_skips(session, context.job_key, collected.skips)
            self._repository.save_checkpoint(
                session, context.job_key, checkpoint, chunks_committed=1,
            )
            if run.stop_signal.abort_requested:
                raise _AbortRequested()
            timeout = params.commit_timeout_seconds
            if timeout is not None:
                elapsed = self._clock.monotonic() - commit_started
                if elapsed > timeout:
                    raise CommitTimeoutError(chunk_seq, elapsed, timeout)

        return output, checkpoint

    def _after_commit(
        self,
        run: _Run,
        output: ChunkOutput,
        checkpoint: Checkpoint,
        records: Sequence[Record],
        collected: _Collected,
    ) -> None:
        context = run.context
        run.checkpoint = checkpoint
        run.header_pending = run.header_pending and not output.lines
        run.fault_state.record_skips(len(collected.skips))
        run.fault_state.reset_chunk(output.chunk_seq)
        run.break_lines.extend(output.break_lines)
        run.skipped.extend(collected.skips)

        context.read_count += len(records)
        context.committed_count += len(collected.accepted)
        context.skip_count += len(collected.skips)
        context.chunks_committed += 1
        context.chunk_seq = checkpoint.chunk_seq
        context.last_order_key = checkpoint.last_order_key
        context.report_line_count = checkpoint.report_line_count

        for skipped in collected.skips:
            self._listeners.on_skip(context, skipped)

        for sink in run.best_effort_sinks:
            try:
                sink.write(output, None)
            except Exception:
                logger.exception(
                    "best_effort_sink_failed",
                    extra={"sink": sink.name, "chunk_seq": output.chunk_seq},
                )

    # -------------------------------------------------------------------------
    # Failure paths
    # -------------------------------------------------------------------------

    def _roll_back_as_skipped(
        self,
        run: _Run,
        chunk_seq: int,
        records: Sequence[Record],
        stage_skips: Sequence[SkippedRecord],
        reason: str,
        error_code: str,
        stage: str | None,
        attempts: int,
        chunk_started: float,
    ) -> _ChunkOutcome:
        """Give up on a chunk: every record it read becomes a skip."""
        context = run.context
        if not context.parameters.fault_tolerant:
            context.chunks_rolled_back += 1
            context.fail(error_code, f"Chunk {chunk_seq} failed: {reason}")
            return _ChunkOutcome.FAILED

        already = {item.natural_key: item for item in stage_skips}
        skipped = [
            already.get(record.key) or SkippedRecord(
                natural_key=record.key,
                reason=reason,
                error_code=error_code,
                stage=stage,
                chunk_seq=chunk_seq,
            )
            for record in records
        ]
        if run.fault_state.would_exceed(len(skipped)):
            return self._fail_skip_limit(run, records, skipped)

        previous = run.checkpoint
        checkpoint = replace(
            previous,
            last_order_key=records[-1].order_key if records else previous.last_order_key,
            chunk_seq=chunk_seq,
            read_count=previous.read_count + len(records),
            skip_count=previous.skip_count + len(skipped),
            accumulator_state=run.accumulator.snapshot(),
        )
        try:
            with session_scope(self._session_factory) as session:
                self._repository.record_skips(session, context.job_key, skipped)
                self._repository.save_checkpoint(
                    session, context.job_key, checkpoint, chunks_rolled_back=1,
                )
        except Exception as exc:
            logger.exception("skip_persist_failed", extra={"chunk_seq": chunk_seq})
            context.chunks_rolled_back += 1
            context.fail(FaultPolicy.error_code(exc), str(exc) or type(exc).__name__)
            return _ChunkOutcome.FAILED

        run.checkpoint = checkpoint
        run.fault_state.record_skips(len(skipped))
        run.fault_state.reset_chunk(chunk_seq)
        run.skipped.extend(skipped)
        context.read_count += len(records)
        context.skip_count += len(skipped)
        context.chunks_rolled_back += 1
        context.chunk_seq = chunk_seq
        context.last_order_key = checkpoint.last_order_key

        logger.warning(
            "chunk_rolled_back",
            extra={
                "chunk_seq": chunk_seq,
                "records": len(records),
                "error_code": error_code,
                "attempts": attempts,
            },
        )
        for item in skipped:
            self._listeners.on_skip(context, item)
        self._listeners.after_chunk(context, ChunkReport(
            chunk_seq=chunk_seq,
            state=ChunkState.ROLLED_BACK,
            read_count=len(records),
            accepted_count=0,
            skip_count=len(skipped),
            attempts=attempts,
            duration_ms=self._elapsed_ms(chunk_started),
        ))
        return _ChunkOutcome.ROLLED_BACK

    def _fail_skip_limit(
        self,
        run: _Run,
        records: Sequence[Record],
        skipped: Sequence[SkippedRecord],
    ) -> _ChunkOutcome:
        """Roll back the in-flight chunk and fail; its skips are reported only."""
        context = run.context
        run.fault_state.record_skips(len(skipped))
        run.skipped.extend(skipped)
        context.read_count += len(records)
        context.skip_count += len(skipped)
        context.chunks_rolled_back += 1
        for item in skipped:
            self._listeners.on_skip(context, item)

        error = SkipLimitExceededError(run.fault_state.skip_count, run.fault_state.skip_limit)
        logger.error(
            "skip_limit_exceeded",
            extra={
                "skip_count": error.skip_count,
                "skip_limit": error.skip_limit,
            },
        )
        context.fail(error.code, str(error))
        return _ChunkOutcome.FAILED

    def _stop(self, run: _Run, reason: str) -> _ChunkOutcome:
        context = run.context
        context.transition(JobStatus.STOPPED)
        context.error_summary = reason
        logger.info(
            "job_stopped",
            extra={"reason": reason, "chunk_seq": run.checkpoint.chunk_seq},
        )
        return _ChunkOutcome.STOPPED

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock.monotonic() - started) * 1000)
