"""
AccountProcessingJob -- account listing with derived credit figures.

Reads accounts ordered by (group_id, account_id), validates them, derives
available credit and cycle net, upserts the processed account snapshot into
``batch_output_records`` and prints an ACCOUNT LISTING REPORT with page,
group and grand balance totals.  ``start_key`` / ``end_key`` bound the
(group_id, account_id) order key.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session, sessionmaker

from batch_engine.domain.types import BreakLevel, JobParameters, Record
from batch_engine.jobs.models import AccountModel
from batch_engine.sinks.base import Sink
from batch_engine.sinks.report import ReportLayout, ReportLineSink
from batch_engine.sinks.sql import RecordUpsertSink
from batch_engine.sources.sql import SqlAlchemyRecordSource
from batch_engine.stages.base import Stage
from batch_engine.stages.derived import DerivedFieldStage
from batch_engine.stages.validation import BusinessRule, BusinessRuleStage, RequiredFieldsStage

JOB_NAME = "account_processing"
REPORT_TITLE = "ACCOUNT LISTING REPORT"
ACTIVE_STATUSES = frozenset({"Y", "N"})

_COLUMNS = "{:<11} {:<10} {:<6} {:>14} {:>14} {:>14} {:>14}"

COLUMN_HEADER = (
    _COLUMNS.format(
        "ACCOUNT ID", "GROUP", "ACTIVE", "CREDIT LIMIT",
        "AVAILABLE", "CYCLE NET", "BALANCE",
    ),
    _COLUMNS.format("=" * 11, "=" * 10, "=" * 6, "=" * 14, "=" * 14, "=" * 14, "=" * 14),
)

TOTAL_LABELS = {
    BreakLevel.PAGE: "PAGE TOTAL:",
    BreakLevel.GROUP: "GROUP TOTAL:",
    BreakLevel.GRAND: "GRAND TOTAL:",
}


def _money(value: Any) -> Decimal:
    return Decimal(value) if value is not None else Decimal("0.00")


def derive_account_fields(record: Record) -> Mapping[str, Any]:
    p = record.payload
    limit = _money(p.get("credit_limit"))
    balance = _money(p.get("current_balance"))
    return {
        "available_credit": limit - balance,
        "cycle_net": _money(p.get("cycle_credit")) - _money(p.get("cycle_debit")),
        "over_limit": balance > limit,
    }


def format_account(record: Record) -> str:
    p = record.payload
    return "{:<11} {:<10} {:<6} {:14.2f} {:14.2f} {:14.2f} {:14.2f}".format(
        p.get("account_id") or "",
        p.get("group_id") or "",
        p.get("active_status") or "",
        _money(p.get("credit_limit")),
        _money(p.get("available_credit")),
        _money(p.get("cycle_net")),
        record.amount,
    )


def _status_valid(record: Record) -> bool:
    return record.payload.get("active_status") in ACTIVE_STATUSES


def _limit_not_negative(record: Record) -> bool:
    return _money(record.payload.get("credit_limit")) >= 0


class AccountProcessingJob:
    """Account listing over ``accounts``."""

    @property
    def name(self) -> str:
        return JOB_NAME

    @property
    def description(self) -> str:
        return "Account listing with available credit and group balance totals"

    def create_source(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> SqlAlchemyRecordSource:
        return SqlAlchemyRecordSource(
            session_factory,
            AccountModel,
            order_by=("group_id", "account_id"),
            group_by="group_id",
            amount_field="current_balance",
            natural_key_field="account_id",
            payload_fields=(
                "account_id", "group_id", "active_status", "current_balance",
                "credit_limit", "cash_credit_limit", "cycle_credit", "cycle_debit",
            ),
            start_key=parameters.start_key,
            end_key=parameters.end_key,
            name=JOB_NAME,
        )

    def create_stages(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> Sequence[Stage]:
        return [
            RequiredFieldsStage({
                "account_id": str,
                "group_id": str,
                "active_status": str,
                "credit_limit": Decimal,
            }),
            BusinessRuleStage([
                BusinessRule("active_status", _status_valid,
                             f"status must be one of {sorted(ACTIVE_STATUSES)}"),
                BusinessRule("credit_limit", _limit_not_negative,
                             "credit limit must not be negative"),
            ]),
            DerivedFieldStage(derive=derive_account_fields, name="credit_figures"),
        ]

    def create_sinks(self, parameters: JobParameters) -> Sequence[Sink]:
        return [RecordUpsertSink(), ReportLineSink()]

    def report_layout(self, parameters: JobParameters) -> ReportLayout:
        return ReportLayout(
            title=REPORT_TITLE,
            column_header=COLUMN_HEADER,
            detail=format_account,
            total_labels=TOTAL_LABELS,
        )
