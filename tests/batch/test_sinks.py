"""
Tests for the sinks: record upserts, report lines, report layout and
the best-effort logging sink.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from batch_kernel.db.engine import session_scope
from batch_engine.domain.totals import BreakTotalAccumulator
from batch_engine.domain.types import BreakLevel, BreakLine, JobParameters, Record
from batch_engine.models.batch import OutputRecordModel, ReportLineModel
from batch_engine.sinks.base import ChunkOutput, ReportLine, Sink
from batch_engine.sinks.log import LoggingSink
from batch_engine.sinks.report import (
    REPORT_WIDTH,
    ReportLayout,
    ReportLineSink,
    committed_report_lines,
    render_report,
)
from batch_engine.sinks.sql import RecordUpsertSink

JOB_KEY = "a" * 64


def _output(records=(), lines=(), chunk_seq=1, break_lines=()) -> ChunkOutput:
    return ChunkOutput(
        job_name="job",
        job_key=JOB_KEY,
        chunk_seq=chunk_seq,
        records=tuple(records),
        lines=tuple(lines),
        break_lines=tuple(break_lines),
    )


def _write(session_factory, sink, output) -> None:
    with session_scope(session_factory) as session:
        sink.write(output, session)


def _count(session_factory, model) -> int:
    with session_scope(session_factory) as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


# =============================================================================
# RecordUpsertSink
# =============================================================================


class TestRecordUpsertSink:
    def test_inserts_records(self, session_factory, make_record):
        sink = RecordUpsertSink()
        _write(session_factory, sink, _output([make_record(1, note="x"), make_record(2)]))

        with session_scope(session_factory) as session:
            row = session.execute(
                select(OutputRecordModel).where(OutputRecordModel.natural_key == "R0001")
            ).scalar_one()
            assert row.payload == {"seq": 1, "note": "x"}
            assert row.amount == Decimal("10.00")
            assert row.group_key == "A"
            assert len(row.payload_hash) == 64
        assert _count(session_factory, OutputRecordModel) == 2

    def test_replay_is_idempotent(self, session_factory, make_record):
        sink = RecordUpsertSink()
        output = _output([make_record(1), make_record(2)])
        _write(session_factory, sink, output)
        with session_scope(session_factory) as session:
            before = {
                row.natural_key: (row.id, row.payload_hash)
                for row in session.execute(select(OutputRecordModel)).scalars()
            }

        _write(session_factory, sink, output)

        with session_scope(session_factory) as session:
            after = {
                row.natural_key: (row.id, row.payload_hash)
                for row in session.execute(select(OutputRecordModel)).scalars()
            }
        assert after == before

    def test_changed_record_updated_in_place(self, session_factory, make_record):
        sink = RecordUpsertSink()
        _write(session_factory, sink, _output([make_record(1, amount="10.00")]))
        _write(session_factory, sink, _output([make_record(1, amount="12.50", note="fixed")]))

        with session_scope(session_factory) as session:
            rows = session.execute(select(OutputRecordModel)).scalars().all()
            assert len(rows) == 1
            assert rows[0].amount == Decimal("12.50")
            assert rows[0].payload["note"] == "fixed"

    def test_tuple_group_key_stored_as_text(self, session_factory):
        record = Record(order_key=1, group_key=("G1", "X"), natural_key="K1")
        _write(session_factory, RecordUpsertSink(), _output([record]))
        with session_scope(session_factory) as session:
            row = session.execute(select(OutputRecordModel)).scalar_one()
            assert row.group_key == "['G1', 'X']"

    def test_requires_session(self, make_record):
        with pytest.raises(ValueError):
            RecordUpsertSink().write(_output([make_record(1)]), None)

    def test_satisfies_protocol(self):
        assert isinstance(RecordUpsertSink(), Sink)
        assert RecordUpsertSink().transactional


# =============================================================================
# ReportLineSink / render_report
# =============================================================================


class TestReportLineSink:
    def test_lines_stored_in_order(self, session_factory):
        sink = ReportLineSink()
        _write(session_factory, sink, _output(lines=[ReportLine(1, "one"), ReportLine(2, "two")]))
        _write(session_factory, sink, _output(lines=[ReportLine(3, "three")], chunk_seq=2))

        with session_scope(session_factory) as session:
            assert committed_report_lines(session, JOB_KEY) == ["one", "two", "three"]

    def test_replayed_chunk_overwrites_same_line_numbers(self, session_factory):
        sink = ReportLineSink()
        _write(session_factory, sink, _output(lines=[ReportLine(1, "one"), ReportLine(2, "two")]))
        _write(session_factory, sink, _output(lines=[ReportLine(1, "one"), ReportLine(2, "TWO")]))

        assert _count(session_factory, ReportLineModel) == 2
        with session_scope(session_factory) as session:
            assert committed_report_lines(session, JOB_KEY) == ["one", "TWO"]

    def test_lines_isolated_by_job_key(self, session_factory):
        _write(session_factory, ReportLineSink(), _output(lines=[ReportLine(1, "mine")]))
        with session_scope(session_factory) as session:
            assert committed_report_lines(session, "b" * 64) == []

    def test_render_report(self, session_factory, tmp_path):
        _write(session_factory, ReportLineSink(), _output(lines=[ReportLine(1, "a"), ReportLine(2, "b")]))
        target = tmp_path / "out" / "report.txt"

        assert render_report(session_factory, JOB_KEY, target) == 2
        first = target.read_text(encoding="utf-8")
        render_report(session_factory, JOB_KEY, target)
        assert target.read_text(encoding="utf-8") == first == "a\nb\n"


# =============================================================================
# ReportLayout
# =============================================================================


@pytest.fixture
def layout():
    return ReportLayout(title="TEST REPORT", column_header=("HEADER", "======"))


class TestReportLayout:
    def test_header_with_reporting_range(self, layout):
        lines = layout.header(JobParameters(start_key="2024-01-01", end_key="2024-01-31"))
        assert lines[0] == "TEST REPORT".ljust(REPORT_WIDTH)
        assert len(lines[0]) == REPORT_WIDTH
        assert lines[2] == "Reporting from 2024-01-01 to 2024-01-31"
        assert lines[-2:] == ["HEADER", "======"]

    def test_header_without_range(self, layout):
        lines = layout.header(JobParameters())
        assert not any(line.startswith("Reporting from") for line in lines)
        assert len(lines) == 5

    def test_tuple_keys_in_range(self, layout):
        lines = layout.header(JobParameters(start_key=("G1", "A"), end_key=("G2", "B")))
        assert lines[2] == "Reporting from G1-A to G2-B"

    def test_total_line_format(self, layout):
        line = layout.total(BreakLevel.GROUP, Decimal("-1234.50"))
        assert line == "%-121s %12.2f" % ("ACCOUNT TOTAL:", Decimal("-1234.50"))
        assert line.endswith("    -1234.50")

    def test_page_break_repeats_column_header(self, layout):
        lines = layout.render([
            BreakLine(level=BreakLevel.PAGE, total=Decimal("5.00"), final=False),
        ])
        assert lines[1].strip() == ""
        assert lines[2:] == ["HEADER", "======"]

    def test_final_page_does_not_repeat_header(self, layout):
        lines = layout.render([
            BreakLine(level=BreakLevel.PAGE, total=Decimal("5.00"), final=True),
            BreakLine(level=BreakLevel.GRAND, total=Decimal("5.00")),
        ])
        assert len(lines) == 3
        assert lines[-1].startswith("GRAND TOTAL:")

    def test_header_repeat_can_be_disabled(self):
        layout = ReportLayout(
            title="T", column_header=("H",), repeat_header_on_page_break=False,
        )
        lines = layout.render([BreakLine(level=BreakLevel.PAGE, total=Decimal("1"))])
        assert "H" not in lines

    def test_render_from_accumulator(self, layout, make_records):
        acc = BreakTotalAccumulator(page_size=2)
        events = []
        for record in make_records([("A", "1.00"), ("A", "2.00"), ("B", "4.00")]):
            events.extend(acc.add(record))
        events.extend(acc.finish())

        lines = layout.render(events)
        totals = [line.split(":")[0] for line in lines if "TOTAL:" in line]
        assert totals == [
            "PAGE TOTAL", "ACCOUNT TOTAL", "ACCOUNT TOTAL", "PAGE TOTAL", "GRAND TOTAL",
        ]
        assert lines[-1] == layout.total(BreakLevel.GRAND, Decimal("7.00"))

    def test_custom_labels(self):
        layout = ReportLayout(title="T", total_labels={
            BreakLevel.PAGE: "P:", BreakLevel.GROUP: "G:", BreakLevel.GRAND: "ALL:",
        })
        assert layout.total(BreakLevel.GRAND, Decimal("1")).startswith("ALL:")


# =============================================================================
# LoggingSink
# =============================================================================


class TestLoggingSink:
    def test_logs_chunk_and_breaks(self, captured_logs, make_record):
        sink = LoggingSink()
        assert not sink.transactional
        sink.write(
            _output(
                records=[make_record(1)],
                break_lines=[BreakLine(level=BreakLevel.GROUP, total=Decimal("10.00"), group_key="A")],
            ),
            None,
        )
        logs = captured_logs()
        chunk = next(r for r in logs if r["message"] == "chunk_output")
        assert chunk["records"] == 1
        brk = next(r for r in logs if r["message"] == "control_break")
        assert brk["break_level"] == "group"
        assert brk["total"] == "10.00"
