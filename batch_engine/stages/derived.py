"""Derived-field stage: computes payload fields and optionally the amount."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Mapping

from batch_engine.domain.totals import quantize_amount
from batch_engine.domain.types import ProcessingResult, Record


class DerivedFieldStage:
    def __init__(
        self,
        derive: Callable[[Record], Mapping[str, Any]] | None = None,
        amount_of: Callable[[Record], Decimal] | None = None,
        name: str = "derived_fields",
    ) -> None:
        if derive is None and amount_of is None:
            raise ValueError("DerivedFieldStage needs derive or amount_of")
        self._derive = derive
        self._amount_of = amount_of
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def apply(self, record: Record) -> ProcessingResult:
        result = record
        if self._derive is not None:
            result = result.with_payload(**self._derive(result))
        if self._amount_of is not None:
            result = result.with_amount(quantize_amount(self._amount_of(result)))
        return ProcessingResult.accepted(result)
