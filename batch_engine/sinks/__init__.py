"""
batch_engine.sinks -- Chunk output destinations.
"""

from batch_engine.sinks.base import ChunkOutput, ReportLine, Sink
from batch_engine.sinks.log import LoggingSink
from batch_engine.sinks.report import (
    DEFAULT_TOTAL_LABELS,
    REPORT_WIDTH,
    ReportLayout,
    ReportLineSink,
    committed_report_lines,
    render_report,
)
from batch_engine.sinks.sql import RecordUpsertSink

__all__ = [
    "DEFAULT_TOTAL_LABELS",
    "REPORT_WIDTH",
    "ChunkOutput",
    "LoggingSink",
    "RecordUpsertSink",
    "ReportLayout",
    "ReportLine",
    "ReportLineSink",
    "Sink",
    "committed_report_lines",
    "render_report",
]
