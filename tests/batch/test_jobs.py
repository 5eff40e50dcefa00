"""
Tests for the bundled jobs -- transaction detail report and account processing.

Both run end to end through BatchOrchestrator.from_session_factory against
seeded in-memory SQLite tables.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from batch_kernel.db.engine import session_scope
from batch_kernel.exceptions import ConfigurationError
from batch_engine.domain.types import BreakLevel, JobParameters, JobStatus, Record
from batch_engine.jobs import (
    AccountProcessingJob,
    JobRegistry,
    SimpleJob,
    TransactionReportJob,
    default_job_registry,
)
from batch_engine.jobs.account_processing import derive_account_fields
from batch_engine.jobs.models import (
    AccountModel,
    CardCrossReferenceModel,
    TransactionCategoryModel,
    TransactionModel,
    TransactionTypeModel,
)
from batch_engine.models.batch import OutputRecordModel
from batch_engine.orchestrator import BatchOrchestrator
from batch_engine.sources.memory import InMemoryRecordSource
from batch_engine.stages.enrichment import DictLookup, EnrichmentStage

CARD_1 = "4000000000000001"
CARD_2 = "4000000000000002"
UNKNOWN_CARD = "4000000000000099"


def _at(day: int, month: int = 1) -> datetime:
    return datetime(2024, month, day, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def batch_orchestrator(session_factory, clock):
    return BatchOrchestrator.from_session_factory(
        session_factory, clock=clock, source_retry_wait=0,
    )


@pytest.fixture
def transactions(session_factory):
    with session_scope(session_factory) as session:
        session.add_all([
            TransactionTypeModel(type_code="01", description="Purchase"),
            TransactionTypeModel(type_code="02", description="Payment"),
            TransactionCategoryModel(
                category_key="010001", type_code="01", category_code="0001",
                description="Regular Sales Draft",
            ),
            TransactionCategoryModel(
                category_key="020001", type_code="02", category_code="0001",
                description="Credit Card Payment",
            ),
            CardCrossReferenceModel(card_number=CARD_1, account_id="00000000011"),
            CardCrossReferenceModel(card_number=CARD_2, account_id="00000000022"),
        ])
        rows = [
            ("T001", CARD_1, "01", "50.00", _at(31)),
            ("T002", CARD_1, "01", "25.50", _at(31)),
            ("T003", CARD_2, "02", "-100.00", _at(31)),
            ("T004", CARD_2, "01", "10.25", _at(31)),
            ("T005", UNKNOWN_CARD, "01", "5.00", _at(31)),
            ("T006", "12345", "01", "7.00", _at(31)),
            ("T007", CARD_1, "01", "99.00", _at(1, month=2)),
        ]
        for tran_id, card, type_code, amount, processed_at in rows:
            session.add(TransactionModel(
                tran_id=tran_id,
                card_number=card,
                type_code=type_code,
                category_code="0001",
                source="POS TERM",
                amount=Decimal(amount),
                processed_at=processed_at,
            ))


@pytest.fixture
def accounts(session_factory):
    with session_scope(session_factory) as session:
        session.add_all([
            AccountModel(
                account_id="A0000000001", group_id="G1", active_status="Y",
                current_balance=Decimal("100.00"), credit_limit=Decimal("1000.00"),
                cycle_credit=Decimal("30.00"), cycle_debit=Decimal("10.00"),
            ),
            AccountModel(
                account_id="A0000000002", group_id="G1", active_status="Y",
                current_balance=Decimal("250.00"), credit_limit=Decimal("200.00"),
            ),
            AccountModel(
                account_id="A0000000003", group_id="G2", active_status="N",
                current_balance=Decimal("50.00"), credit_limit=Decimal("500.00"),
            ),
            AccountModel(
                account_id="A0000000004", group_id="G2", active_status="X",
                current_balance=Decimal("75.00"), credit_limit=Decimal("100.00"),
            ),
        ])


def _output_rows(session_factory, job_name: str) -> dict[str, OutputRecordModel]:
    with session_scope(session_factory) as session:
        rows = session.execute(
            select(OutputRecordModel).where(OutputRecordModel.job_name == job_name)
        ).scalars().all()
        return {row.natural_key: row for row in rows}


# =============================================================================
# Transaction report
# =============================================================================


class TestTransactionReportJob:
    PARAMS = JobParameters(start_key="2024-01-31", end_key="2024-01-31", chunk_size=2)

    def test_report_totals(self, batch_orchestrator, transactions):
        result = batch_orchestrator.run("transaction_report", self.PARAMS)

        assert result.status == JobStatus.COMPLETED_WITH_SKIPS
        assert result.read_count == 6
        assert result.committed_count == 4

        layout = TransactionReportJob().report_layout(self.PARAMS)
        lines = batch_orchestrator.report_lines(result.job_key)
        assert layout.total(BreakLevel.GROUP, Decimal("75.50")) in lines
        assert layout.total(BreakLevel.GROUP, Decimal("-89.75")) in lines
        assert lines[-1] == layout.total(BreakLevel.GRAND, Decimal("-14.25"))
        assert sum(1 for line in lines if line.startswith("ACCOUNT TOTAL:")) == 2

    def test_header_and_enriched_detail(self, batch_orchestrator, transactions):
        result = batch_orchestrator.run("transaction_report", self.PARAMS)
        lines = batch_orchestrator.report_lines(result.job_key)

        assert lines[0].strip() == "TRANSACTION DETAIL REPORT"
        assert "Reporting from 2024-01-31 to 2024-01-31" in lines
        detail = next(line for line in lines if line.startswith("T001"))
        assert "00000000011" in detail
        assert "Purchase" in detail
        assert "Regular Sales Draft" in detail
        assert detail.endswith("       50.00")
        assert len(detail) <= 133

    def test_skipped_transactions(self, batch_orchestrator, transactions):
        result = batch_orchestrator.run("transaction_report", self.PARAMS)
        skipped = {s.natural_key: s for s in batch_orchestrator.get_skipped_records(result.job_key)}

        assert set(skipped) == {"T005", "T006"}
        assert skipped["T005"].error_code == "REFERENCE_NOT_FOUND"
        assert skipped["T006"].error_code == "BUSINESS_RULE_VIOLATION"

    def test_date_range_excludes_other_days(self, batch_orchestrator, transactions):
        params = JobParameters(start_key="2024-02-01", end_key="2024-02-28")
        result = batch_orchestrator.run("transaction_report", params)

        assert result.status == JobStatus.COMPLETED
        assert result.read_count == 1
        grand = [b for b in result.break_lines if b.level == BreakLevel.GRAND]
        assert grand[0].total == Decimal("99.00")

    def test_report_identical_for_any_chunk_size(self, batch_orchestrator, transactions, tmp_path):
        reports = []
        for chunk_size in (1, 3, 100):
            target = tmp_path / f"chunk-{chunk_size}.txt"
            params = JobParameters(
                start_key="2024-01-31", end_key="2024-01-31",
                chunk_size=chunk_size, output_target=str(target),
            )
            result = batch_orchestrator.run("transaction_report", params)
            assert result.status == JobStatus.COMPLETED_WITH_SKIPS
            reports.append(target.read_text(encoding="utf-8"))

        assert reports[0] == reports[1] == reports[2]

    def test_invalid_date_parameter(self, session_factory):
        with pytest.raises(ConfigurationError):
            TransactionReportJob().create_source(
                JobParameters(start_key="yesterday"), session_factory,
            )


# =============================================================================
# Account processing
# =============================================================================


class TestAccountProcessingJob:
    def test_group_totals_and_output(self, batch_orchestrator, accounts, session_factory):
        result = batch_orchestrator.run("account_processing", JobParameters(chunk_size=3))

        assert result.status == JobStatus.COMPLETED_WITH_SKIPS
        assert [s.natural_key for s in result.skipped_records] == ["A0000000004"]

        layout = AccountProcessingJob().report_layout(JobParameters())
        lines = batch_orchestrator.report_lines(result.job_key)
        assert layout.total(BreakLevel.GROUP, Decimal("350.00")) in lines
        assert layout.total(BreakLevel.GROUP, Decimal("50.00")) in lines
        assert lines[-1] == layout.total(BreakLevel.GRAND, Decimal("400.00"))

        rows = _output_rows(session_factory, "account_processing")
        assert set(rows) == {"A0000000001", "A0000000002", "A0000000003"}
        assert rows["A0000000002"].payload["available_credit"] == "-50.00"
        assert rows["A0000000002"].payload["over_limit"] is True
        assert rows["A0000000001"].payload["cycle_net"] == "20.00"
        assert rows["A0000000001"].group_key == "G1"

    def test_upsert_is_idempotent_across_instances(
        self, batch_orchestrator, accounts, session_factory, tmp_path,
    ):
        batch_orchestrator.run("account_processing", JobParameters())
        with session_scope(session_factory) as session:
            account = session.execute(
                select(AccountModel).where(AccountModel.account_id == "A0000000001")
            ).scalar_one()
            account.current_balance = Decimal("120.00")

        second = batch_orchestrator.run(
            "account_processing", JobParameters(output_target=str(tmp_path / "accounts.txt")),
        )

        assert second.status == JobStatus.COMPLETED_WITH_SKIPS
        rows = _output_rows(session_factory, "account_processing")
        assert len(rows) == 3
        assert rows["A0000000001"].amount == Decimal("120.00")
        assert (tmp_path / "accounts.txt").exists()

    def test_key_range(self, batch_orchestrator, accounts):
        params = JobParameters(start_key=("G2", "A0000000000"), end_key=("G2", "A9999999999"))
        result = batch_orchestrator.run("account_processing", params)

        assert result.read_count == 2
        assert result.committed_count == 1
        assert result.break_lines[-1].total == Decimal("50.00")

    def test_derived_fields(self):
        record = Record(
            order_key=1,
            group_key="G1",
            payload={"credit_limit": Decimal("100.00"), "current_balance": Decimal("40.00"),
                     "cycle_credit": None, "cycle_debit": Decimal("5.00")},
        )
        derived = derive_account_fields(record)
        assert derived == {
            "available_credit": Decimal("60.00"),
            "cycle_net": Decimal("-5.00"),
            "over_limit": False,
        }


# =============================================================================
# Registry
# =============================================================================


class TestJobRegistry:
    def test_default_registry(self):
        registry = default_job_registry()
        assert registry.list_jobs() == ("account_processing", "transaction_report")
        assert "transaction_report" in registry
        assert isinstance(registry.get("account_processing"), AccountProcessingJob)

    def test_duplicate_rejected(self):
        registry = JobRegistry()
        registry.register(SimpleJob(name="a", source=InMemoryRecordSource([])))
        with pytest.raises(ValueError):
            registry.register(SimpleJob(name="a", source=InMemoryRecordSource([])))

    def test_missing_job(self):
        with pytest.raises(KeyError):
            JobRegistry().get("nope")

    def test_source_factory(self, session_factory):
        job = SimpleJob(name="a", source=lambda params: InMemoryRecordSource([], name=str(params.chunk_size)))
        assert job.create_source(JobParameters(chunk_size=4), session_factory).name == "4"

    def test_stage_factory_builds_fresh_stages_per_execution(self, session_factory):
        def stages():
            lookup = DictLookup("xref", {"A": {"customer": 1}})
            return [EnrichmentStage(lookup, key_of=lambda r: r.group_key, merge=lambda r, e: r)]

        job = SimpleJob(name="a", source=InMemoryRecordSource([]), stages=stages)
        first = job.create_stages(JobParameters(), session_factory)
        second = job.create_stages(JobParameters(), session_factory)

        assert first[0] is not second[0]
        assert first[0].cache is not second[0].cache

    def test_stage_sequence_rejected(self):
        with pytest.raises(TypeError):
            SimpleJob(name="a", source=InMemoryRecordSource([]), stages=[])
