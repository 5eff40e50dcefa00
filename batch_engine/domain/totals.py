"""
BreakTotalAccumulator -- page / group / grand control-break totals.

Contract:
    ``add(record)`` is called once per accepted record, in order-key order.
    It returns the report events that record produces, in emission order:

        1. Group break (if the group key changed): flush + reset Group.
           The Page total and line counter are NOT reset.
        2. Detail line: the amount is added to Page, Group and Grand and the
           Page line counter is incremented.
        3. Page break (if the Page line counter reached ``page_size``):
           flush + reset Page total and line counter.

    ``finish()`` is called once at end-of-source and returns, in order:
    the Group total, the trailing Page total (only if the page holds lines,
    marked ``final``), and the Grand total.  Group and Grand are emitted
    exactly once even when zero.

    When a Group break and a Page break fall on the same record, the Group
    line is emitted first and the Page check then runs on the unchanged
    Page counter, which already includes the new record.

Numeric semantics:
    Two-decimal fixed point.  Every incoming amount and every running sum is
    quantized with ROUND_HALF_EVEN.  Negative amounts are included in all
    three levels.

Architecture: batch_engine/domain.  ZERO I/O.  Owned exclusively by one
    coordinator; snapshot()/restore() let the coordinator roll totals back to
    the start of a chunk and carry them across restarts via the checkpoint.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

from batch_engine.domain.types import BreakLevel, BreakLine, DetailLine, Record

CURRENCY_SCALE = Decimal("0.01")

ReportEvent = BreakLine | DetailLine


def quantize_amount(value: Decimal | int | str, scale: Decimal = CURRENCY_SCALE) -> Decimal:
    """Quantize ``value`` to the currency scale with banker's rounding."""
    return Decimal(value).quantize(scale, rounding=ROUND_HALF_EVEN)


def freeze_key(value: Any) -> Any:
    """JSON round trips turn tuples into lists; turn them back."""
    if isinstance(value, list):
        return tuple(freeze_key(v) for v in value)
    return value


class BreakTotalAccumulator:
    """Nested running totals with control-break detection."""

    def __init__(self, page_size: int, scale: Decimal = CURRENCY_SCALE) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._page_size = page_size
        self._scale = scale
        self._zero = quantize_amount(0, scale)
        self._page_total = self._zero
        self._group_total = self._zero
        self._grand_total = self._zero
        self._page_lines = 0
        self._page_number = 1
        self._group_key: Any = None
        self._started = False
        self._finished = False
        self._record_count = 0

    # -------------------------------------------------------------------------
    # Accumulation
    # -------------------------------------------------------------------------

    def add(self, record: Record) -> tuple[ReportEvent, ...]:
        """Account for one accepted record and return its report events."""
        if self._finished:
            raise RuntimeError("accumulator already finished")

        events: list[ReportEvent] = []

        if self._started and record.group_key != self._group_key:
            events.append(self._flush_group())
        self._group_key = record.group_key
        self._started = True

        amount = quantize_amount(record.amount, self._scale)
        self._page_total = self._sum(self._page_total, amount)
        self._group_total = self._sum(self._group_total, amount)
        self._grand_total = self._sum(self._grand_total, amount)
        self._page_lines += 1
        self._record_count += 1
        events.append(
            DetailLine(
                record=record,
                page_number=self._page_number,
                line_number=self._page_lines,
            )
        )

        if self._page_lines >= self._page_size:
            events.append(self._flush_page(final=False))

        return tuple(events)

    def finish(self) -> tuple[BreakLine, ...]:
        """Flush the remaining Group, trailing Page and Grand totals once."""
        if self._finished:
            raise RuntimeError("accumulator already finished")
        self._finished = True

        lines = [self._flush_group()]
        if self._page_lines > 0:
            lines.append(self._flush_page(final=True))
        lines.append(
            BreakLine(
                level=BreakLevel.GRAND,
                total=self._grand_total,
                page_number=self._page_number,
                line_count=self._record_count,
            )
        )
        return tuple(lines)

    # -------------------------------------------------------------------------
    # Snapshot / restore
    # -------------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of the accumulator state."""
        return {
            "page_size": self._page_size,
            "page_total": str(self._page_total),
            "group_total": str(self._group_total),
            "grand_total": str(self._grand_total),
            "page_lines": self._page_lines,
            "page_number": self._page_number,
            "group_key": self._group_key,
            "started": self._started,
            "finished": self._finished,
            "record_count": self._record_count,
        }

    def restore(self, state: dict[str, Any]) -> None:
        """Replace the current state with a snapshot."""
        self._page_total = Decimal(state["page_total"])
        self._group_total = Decimal(state["group_total"])
        self._grand_total = Decimal(state["grand_total"])
        self._page_lines = int(state["page_lines"])
        self._page_number = int(state["page_number"])
        self._group_key = freeze_key(state["group_key"])
        self._started = bool(state["started"])
        self._finished = bool(state["finished"])
        self._record_count = int(state["record_count"])

    @classmethod
    def from_snapshot(
        cls, state: dict[str, Any], scale: Decimal = CURRENCY_SCALE,
    ) -> BreakTotalAccumulator:
        acc = cls(page_size=int(state["page_size"]), scale=scale)
        acc.restore(state)
        return acc

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def page_total(self) -> Decimal:
        return self._page_total

    @property
    def group_total(self) -> Decimal:
        return self._group_total

    @property
    def grand_total(self) -> Decimal:
        return self._grand_total

    @property
    def page_lines(self) -> int:
        return self._page_lines

    @property
    def page_number(self) -> int:
        return self._page_number

    @property
    def current_group_key(self) -> Any:
        return self._group_key

    @property
    def is_finished(self) -> bool:
        return self._finished

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _sum(self, total: Decimal, amount: Decimal) -> Decimal:
        return (total + amount).quantize(self._scale, rounding=ROUND_HALF_EVEN)

    def _flush_group(self) -> BreakLine:
        line = BreakLine(
            level=BreakLevel.GROUP,
            total=self._group_total,
            group_key=self._group_key,
            page_number=self._page_number,
        )
        self._group_total = self._zero
        return line

    def _flush_page(self, final: bool) -> BreakLine:
        line = BreakLine(
            level=BreakLevel.PAGE,
            total=self._page_total,
            group_key=self._group_key,
            page_number=self._page_number,
            line_count=self._page_lines,
            final=final,
        )
        self._page_total = self._zero
        self._page_lines = 0
        self._page_number += 1
        return line
