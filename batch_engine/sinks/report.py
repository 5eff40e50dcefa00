"""
Report sink -- fixed-width control-break report lines.

``ReportLayout`` turns accumulator events into text lines using the
legacy 133-column layout:

    TRANSACTION DETAIL REPORT
    <blank>
    Reporting from <start> to <end>
    <blank>
    <column header>
    <column underline>
    <detail lines...>
    PAGE TOTAL:                                       ...        1234.56
    <blank>
    ACCOUNT TOTAL:                                    ...         100.00
    <blank>
    GRAND TOTAL:                                      ...       99999.99

Total lines are ``"%-121s %12.2f"``.  After a page break (but not the final
partial page) the column header is repeated.

``ReportLineSink`` stores the lines in ``batch_report_lines`` inside the
chunk transaction, keyed by (job_key, line_number), and ``render_report``
writes the committed lines to the output target once the job has finished.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.db.engine import session_scope
from batch_kernel.logging_config import get_logger
from batch_engine.domain.totals import ReportEvent
from batch_engine.domain.types import BreakLevel, BreakLine, DetailLine, JobParameters, Record
from batch_engine.models.batch import ReportLineModel
from batch_engine.sinks.base import ChunkOutput

logger = get_logger("batch.sinks.report")

REPORT_WIDTH = 133
TOTAL_LABEL_WIDTH = 121
AMOUNT_WIDTH = 12

DEFAULT_TOTAL_LABELS: Mapping[BreakLevel, str] = {
    BreakLevel.PAGE: "PAGE TOTAL:",
    BreakLevel.GROUP: "ACCOUNT TOTAL:",
    BreakLevel.GRAND: "GRAND TOTAL:",
}


def _default_detail(record: Record) -> str:
    return f"{record.key:<16} {str(record.group_key):<11} {record.amount:{AMOUNT_WIDTH}.2f}"


class ReportLayout:
    """Formats headers, detail lines and control-break totals."""

    def __init__(
        self,
        title: str,
        column_header: Sequence[str] = (),
        detail: Callable[[Record], str] = _default_detail,
        total_labels: Mapping[BreakLevel, str] | None = None,
        width: int = REPORT_WIDTH,
        repeat_header_on_page_break: bool = True,
    ) -> None:
        self.title = title
        self.column_header = tuple(column_header)
        self._detail = detail
        self.total_labels = dict(total_labels or DEFAULT_TOTAL_LABELS)
        self.width = width
        self.repeat_header_on_page_break = repeat_header_on_page_break

    def header(self, parameters: JobParameters | None = None) -> list[str]:
        lines = [self._pad(self.title), self._pad("")]
        if parameters is not None and parameters.start_key is not None and parameters.end_key is not None:
            lines.append(
                f"Reporting from {_key_text(parameters.start_key)} "
                f"to {_key_text(parameters.end_key)}"
            )
        lines.append(self._pad(""))
        lines.extend(self.column_header)
        return lines

    def detail(self, record: Record) -> str:
        return self._detail(record)

    def total(self, level: BreakLevel, amount: Any) -> str:
        label = self.total_labels[level]
        return f"{label:<{TOTAL_LABEL_WIDTH}} {amount:{AMOUNT_WIDTH}.2f}"

    def render(self, events: Iterable[ReportEvent]) -> list[str]:
        lines: list[str] = []
        for event in events:
            if isinstance(event, DetailLine):
                lines.append(self.detail(event.record))
            elif isinstance(event, BreakLine):
                lines.extend(self._render_break(event))
        return lines

    def _render_break(self, line: BreakLine) -> list[str]:
        rendered = [self.total(line.level, line.total)]
        if line.level == BreakLevel.GRAND:
            return rendered
        rendered.append(self._pad(""))
        if (
            line.level == BreakLevel.PAGE
            and not line.final
            and self.repeat_header_on_page_break
        ):
            rendered.extend(self.column_header)
        return rendered

    def _pad(self, text: str) -> str:
        return f"{text:<{self.width}}"


def _key_text(key: Any) -> str:
    if isinstance(key, tuple):
        return "-".join(str(part) for part in key)
    return str(key)


class ReportLineSink:
    """Transactional sink persisting report lines by (job_key, line_number)."""

    transactional = True

    def __init__(self, name: str = "report_lines") -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def write(self, output: ChunkOutput, session: Session | None) -> None:
        if session is None:
            raise ValueError(f"{self._name} requires the chunk session")
        if not output.lines:
            return

        numbers = [line.line_number for line in output.lines]
        existing = {
            row.line_number: row
            for row in session.execute(
                select(ReportLineModel).where(
                    ReportLineModel.job_key == output.job_key,
                    ReportLineModel.line_number.in_(numbers),
                )
            ).scalars()
        }
        for line in output.lines:
            row = existing.get(line.line_number)
            if row is None:
                session.add(
                    ReportLineModel(
                        job_key=output.job_key,
                        line_number=line.line_number,
                        text=line.text,
                        chunk_seq=output.chunk_seq,
                    )
                )
            elif row.text != line.text or row.chunk_seq != output.chunk_seq:
                row.text = line.text
                row.chunk_seq = output.chunk_seq
        session.flush()


def committed_report_lines(session: Session, job_key: str) -> list[str]:
    rows = session.execute(
        select(ReportLineModel.text)
        .where(ReportLineModel.job_key == job_key)
        .order_by(ReportLineModel.line_number)
    ).scalars()
    return list(rows)


def render_report(
    session_factory: sessionmaker[Session],
    job_key: str,
    output_target: str | Path,
) -> int:
    """Write the committed report lines of ``job_key`` to ``output_target``.

    Returns the number of lines written.  The file is rewritten in full, so
    rendering twice produces the same file.
    """
    with session_scope(session_factory) as session:
        lines = committed_report_lines(session, job_key)

    path = Path(output_target)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        for text in lines:
            handle.write(text)
            handle.write("\n")

    logger.info(
        "report_rendered",
        extra={"job_key": job_key, "path": str(path), "lines": len(lines)},
    )
    return len(lines)
