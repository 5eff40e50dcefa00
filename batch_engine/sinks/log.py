"""Best-effort sink that logs a summary of every committed chunk."""

from __future__ import annotations

from sqlalchemy.orm import Session

from batch_kernel.logging_config import get_logger
from batch_engine.sinks.base import ChunkOutput

logger = get_logger("batch.sinks.logging")


class LoggingSink:
    transactional = False

    def __init__(self, name: str = "chunk_log") -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def write(self, output: ChunkOutput, session: Session | None) -> None:
        logger.info(
            "chunk_output",
            extra={
                "job_name": output.job_name,
                "chunk_seq": output.chunk_seq,
                "records": len(output.records),
                "report_lines": len(output.lines),
                "final": output.final,
            },
        )
        for line in output.break_lines:
            logger.info(
                "control_break",
                extra={
                    "break_level": line.level.value,
                    "total": line.total,
                    "group_key": line.group_key,
                    "page_number": line.page_number,
                    "final": line.final,
                },
            )
