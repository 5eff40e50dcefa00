"""
Validation stages -- structural checks and business rules.

Both stages skip the record on failure; neither ever retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from batch_kernel.exceptions import BusinessRuleViolation, ValidationError
from batch_engine.domain.types import ProcessingResult, Record


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class RequiredFieldsStage:
    """Skips records with missing, blank or mistyped payload fields.

    ``fields`` maps field name to the accepted type (or tuple of types);
    ``None`` accepts any non-blank value.
    """

    def __init__(
        self,
        fields: Mapping[str, type | tuple[type, ...] | None] | Sequence[str],
        name: str = "structural_validation",
    ) -> None:
        if isinstance(fields, Mapping):
            self._fields = dict(fields)
        else:
            self._fields = {field: None for field in fields}
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def apply(self, record: Record) -> ProcessingResult:
        for field, expected in self._fields.items():
            value = record.payload.get(field)
            if _is_blank(value):
                return ProcessingResult.skipped(
                    record, f"Missing required field: {field}",
                    ValidationError.code,
                )
            if expected is not None and not isinstance(value, expected):
                return ProcessingResult.skipped(
                    record,
                    f"Field {field} has type {type(value).__name__}",
                    ValidationError.code,
                )
        return ProcessingResult.accepted(record)


@dataclass(frozen=True)
class BusinessRule:
    """A named predicate a record must satisfy."""

    name: str
    check: Callable[[Record], bool]
    message: str


class BusinessRuleStage:
    """Applies business rules in order; the first violation skips the record.

    A rule may also raise ``BusinessRuleViolation`` itself to supply a
    record-specific message.
    """

    def __init__(
        self, rules: Sequence[BusinessRule], name: str = "business_rules",
    ) -> None:
        self._rules = tuple(rules)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def rules(self) -> tuple[BusinessRule, ...]:
        return self._rules

    def apply(self, record: Record) -> ProcessingResult:
        for rule in self._rules:
            try:
                passed = rule.check(record)
            except BusinessRuleViolation as exc:
                return ProcessingResult.skipped(
                    record, f"{rule.name}: {exc}", exc.code,
                )
            if not passed:
                return ProcessingResult.skipped(
                    record, f"{rule.name}: {rule.message}",
                    BusinessRuleViolation.code,
                )
        return ProcessingResult.accepted(record)
