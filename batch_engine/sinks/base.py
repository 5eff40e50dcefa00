"""
Sink contract -- where committed chunk output goes.

Contract:
    ``Sink.write(output, session)`` receives everything one chunk produced:
    its accepted records and its formatted report lines, in order.

    Transactional sinks (``transactional = True``) write through the chunk
    session and commit or roll back with the checkpoint; their writes must
    be idempotent upserts keyed by natural key or line number so a replayed
    chunk leaves identical state.

    Best-effort sinks (``transactional = False``) run after the commit with
    ``session=None``; their failures are logged and never fail the chunk.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sqlalchemy.orm import Session

from batch_engine.domain.types import BreakLine, Record


@dataclass(frozen=True)
class ReportLine:
    """One formatted report line with its absolute position in the report."""

    line_number: int
    text: str


@dataclass(frozen=True)
class ChunkOutput:
    """Everything a chunk hands to its sinks."""

    job_name: str
    job_key: str
    chunk_seq: int
    records: tuple[Record, ...] = ()
    lines: tuple[ReportLine, ...] = ()
    break_lines: tuple[BreakLine, ...] = ()
    final: bool = False


@runtime_checkable
class Sink(Protocol):
    """Destination for chunk output."""

    @property
    def name(self) -> str:
        ...

    @property
    def transactional(self) -> bool:
        ...

    def write(self, output: ChunkOutput, session: Session | None) -> None:
        ...
