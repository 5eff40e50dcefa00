"""Shared fixtures for the chunk engine tests."""

from decimal import Decimal
from typing import Any

import pytest

from batch_engine.domain.types import Record
from batch_engine.jobs.base import JobRegistry, SimpleJob
from batch_engine.orchestrator import BatchOrchestrator
from batch_engine.services.listener import BaseExecutionListener
from batch_engine.sinks.report import ReportLayout
from batch_engine.sources.memory import InMemoryRecordSource


class RecordingListener(BaseExecutionListener):
    """Keeps every lifecycle event for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple] = []
        self.chunks = []
        self.failures = []
        self.skips = []
        self.results = []

    def before_job(self, context):
        self.events.append(("before_job", context.job_key))

    def before_chunk(self, context, chunk_seq, attempt):
        self.events.append(("before_chunk", chunk_seq, attempt))

    def after_chunk(self, context, chunk):
        self.events.append(("after_chunk", chunk.chunk_seq, chunk.state.value))
        self.chunks.append(chunk)

    def on_chunk_error(self, context, failure):
        self.events.append(("chunk_error", failure.chunk_seq, failure.disposition.value))
        self.failures.append(failure)

    def on_skip(self, context, skipped):
        self.skips.append(skipped)

    def after_job(self, context, result):
        self.events.append(("after_job", result.status.value))
        self.results.append(result)


@pytest.fixture
def make_record():
    """Build a Record: order key ``seq``, natural key ``R0001`` style."""

    def _make(seq: int, group: Any = "A", amount: str = "10.00", **payload: Any) -> Record:
        return Record(
            order_key=seq,
            group_key=group,
            payload={"seq": seq, **payload},
            amount=Decimal(amount),
            natural_key=f"R{seq:04d}",
        )

    return _make


@pytest.fixture
def make_records(make_record):
    """Build records 1..n from (group, amount) pairs."""

    def _make(rows) -> list[Record]:
        return [
            make_record(seq, group, amount)
            for seq, (group, amount) in enumerate(rows, start=1)
        ]

    return _make


@pytest.fixture
def test_layout():
    return ReportLayout(title="TEST REPORT", column_header=("KEY GROUP AMOUNT",))


@pytest.fixture
def job_registry():
    return JobRegistry()


@pytest.fixture
def recording_listener():
    return RecordingListener()


@pytest.fixture
def orchestrator(session_factory, job_registry, clock, recording_listener):
    return BatchOrchestrator(
        session_factory,
        job_registry,
        clock=clock,
        listeners=[recording_listener],
        source_retry_wait=0,
    )


@pytest.fixture
def register_job(job_registry, test_layout):
    """Register a SimpleJob over in-memory records."""

    def _register(
        name: str,
        records,
        stages=(),
        sinks=(),
        layout=test_layout,
        source=None,
    ) -> SimpleJob:
        job = SimpleJob(
            name=name,
            source=source if source is not None else InMemoryRecordSource(records, name=name),
            stages=stages if callable(stages) else (lambda: stages),
            sinks=sinks,
            layout=layout,
        )
        job_registry.register(job)
        return job

    return _register
