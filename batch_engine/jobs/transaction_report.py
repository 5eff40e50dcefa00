"""
TransactionReportJob -- transaction detail report with control-break totals.

Reads posted card transactions ordered by (card_number, tran_id), checks
and enriches each one (card cross reference, transaction type and
category) and prints the fixed-width TRANSACTION DETAIL REPORT with page,
account and grand totals.  ``start_key`` / ``end_key`` are the reporting
dates (inclusive) matched against ``processed_at``.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.exceptions import ConfigurationError
from batch_engine.domain.types import JobParameters, Record
from batch_engine.jobs.models import (
    CardCrossReferenceModel,
    TransactionCategoryModel,
    TransactionModel,
    TransactionTypeModel,
)
from batch_engine.sinks.base import Sink
from batch_engine.sinks.log import LoggingSink
from batch_engine.sinks.report import ReportLayout, ReportLineSink
from batch_engine.sources.sql import SqlAlchemyRecordSource
from batch_engine.stages.base import Stage
from batch_engine.stages.enrichment import EnrichmentStage, SqlAlchemyLookup
from batch_engine.stages.validation import BusinessRule, BusinessRuleStage, RequiredFieldsStage

JOB_NAME = "transaction_report"
REPORT_TITLE = "TRANSACTION DETAIL REPORT"
MAX_AMOUNT = Decimal("99999999.99")

_COLUMNS = "{:<16} {:<11} {:<2} {:<30} {:<4} {:<25} {:<10} {:>12}"

COLUMN_HEADER = (
    _COLUMNS.format(
        "TRANSACTION ID", "ACCOUNT ID", "TY", "TYPE DESCRIPTION",
        "CAT", "CATEGORY DESCRIPTION", "SOURCE", "AMOUNT",
    ),
    _COLUMNS.format(
        "=" * 16, "=" * 11, "=" * 2, "=" * 30, "=" * 4, "=" * 25, "=" * 10, "=" * 12,
    ),
)


def format_transaction(record: Record) -> str:
    p = record.payload
    return "{:<16} {:<11} {:<2} {:<30.30} {:<4} {:<25.25} {:<10} {:12.2f}".format(
        p.get("tran_id") or "",
        p.get("account_id") or "",
        p.get("type_code") or "",
        p.get("type_description") or "",
        p.get("category_code") or "",
        p.get("category_description") or "",
        p.get("source") or "",
        record.amount,
    )


def _parse_date(field: str, value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ConfigurationError(field, f"expected an ISO date, got {value!r}") from None


def _within_limits(record: Record) -> bool:
    return -MAX_AMOUNT <= record.amount <= MAX_AMOUNT


def _card_number_valid(record: Record) -> bool:
    card = record.payload.get("card_number") or ""
    return len(card) == 16 and card.isdigit()


class TransactionReportJob:
    """Transaction detail report over ``card_transactions``."""

    @property
    def name(self) -> str:
        return JOB_NAME

    @property
    def description(self) -> str:
        return "Transaction detail report with page, account and grand totals"

    def create_source(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> SqlAlchemyRecordSource:
        where = []
        if parameters.start_key is not None:
            start = _parse_date("start_key", parameters.start_key)
            where.append(
                TransactionModel.processed_at >= datetime.combine(start, time.min, timezone.utc)
            )
        if parameters.end_key is not None:
            end = _parse_date("end_key", parameters.end_key) + timedelta(days=1)
            where.append(
                TransactionModel.processed_at < datetime.combine(end, time.min, timezone.utc)
            )
        return SqlAlchemyRecordSource(
            session_factory,
            TransactionModel,
            order_by=("card_number", "tran_id"),
            group_by="card_number",
            amount_field="amount",
            natural_key_field="tran_id",
            payload_fields=(
                "tran_id", "card_number", "type_code", "category_code",
                "source", "description", "merchant_name", "amount",
            ),
            where=where,
            name=JOB_NAME,
        )

    def create_stages(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> Sequence[Stage]:
        xref = SqlAlchemyLookup(
            session_factory, CardCrossReferenceModel, "card_number", name="card_xref",
        )
        types = SqlAlchemyLookup(
            session_factory, TransactionTypeModel, "type_code", name="transaction_type",
        )
        categories = SqlAlchemyLookup(
            session_factory, TransactionCategoryModel, "category_key",
            name="transaction_category",
        )
        return [
            RequiredFieldsStage({
                "tran_id": str,
                "card_number": str,
                "type_code": str,
                "category_code": str,
                "amount": Decimal,
            }),
            BusinessRuleStage([
                BusinessRule("card_number_format", _card_number_valid,
                             "card number must be 16 digits"),
                BusinessRule("amount_limit", _within_limits,
                             f"amount outside +/-{MAX_AMOUNT}"),
            ]),
            EnrichmentStage(
                xref,
                key_of=lambda r: r.payload.get("card_number"),
                merge=lambda r, e: r.with_payload(account_id=e["account_id"]),
            ),
            EnrichmentStage(
                types,
                key_of=lambda r: r.payload.get("type_code"),
                merge=lambda r, e: r.with_payload(type_description=e["description"]),
            ),
            EnrichmentStage(
                categories,
                key_of=lambda r: f"{r.payload.get('type_code')}{r.payload.get('category_code')}",
                merge=lambda r, e: r.with_payload(category_description=e["description"]),
                required=False,
            ),
        ]

    def create_sinks(self, parameters: JobParameters) -> Sequence[Sink]:
        return [ReportLineSink(), LoggingSink()]

    def report_layout(self, parameters: JobParameters) -> ReportLayout:
        return ReportLayout(
            title=REPORT_TITLE,
            column_header=COLUMN_HEADER,
            detail=format_transaction,
        )
