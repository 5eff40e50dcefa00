"""
Tests for the stage pipeline and the bundled stages.
"""

from decimal import Decimal

import pytest

from batch_kernel.db.engine import session_scope
from batch_kernel.exceptions import (
    BusinessRuleViolation,
    TransientInfrastructureError,
    ValidationError,
)
from batch_engine.domain.types import ProcessingResult, Record, ResultKind
from batch_engine.jobs.models import CardCrossReferenceModel
from batch_engine.stages.base import Stage, StagePipeline
from batch_engine.stages.derived import DerivedFieldStage
from batch_engine.stages.enrichment import (
    ChunkLookupCache,
    DictLookup,
    EnrichmentStage,
    SqlAlchemyLookup,
)
from batch_engine.stages.validation import (
    BusinessRule,
    BusinessRuleStage,
    RequiredFieldsStage,
)


def _record(seq=1, **payload) -> Record:
    return Record(
        order_key=seq, group_key="A", payload=payload,
        amount=Decimal("10.00"), natural_key=f"R{seq}",
    )


class RaisingStage:
    def __init__(self, name: str, exc: Exception):
        self._name = name
        self._exc = exc

    @property
    def name(self) -> str:
        return self._name

    def apply(self, record: Record) -> ProcessingResult:
        raise self._exc


class TaggingStage:
    """Appends its name to payload['trail']."""

    def __init__(self, name: str):
        self._name = name
        self.begun = 0
        self.ended = 0

    @property
    def name(self) -> str:
        return self._name

    def begin_chunk(self, records):
        self.begun += 1

    def end_chunk(self):
        self.ended += 1

    def apply(self, record: Record) -> ProcessingResult:
        trail = record.payload.get("trail", ())
        return ProcessingResult.accepted(record.with_payload(trail=(*trail, self._name)))


# =============================================================================
# Pipeline
# =============================================================================


class TestStagePipeline:
    def test_stages_run_in_order(self):
        pipeline = StagePipeline([TaggingStage("a"), TaggingStage("b")])
        result = pipeline.process(_record())
        assert result.is_accepted
        assert result.record.payload["trail"] == ("a", "b")

    def test_first_rejection_stops_pipeline(self):
        after = TaggingStage("after")
        pipeline = StagePipeline([RequiredFieldsStage(["missing"]), after])
        result = pipeline.process(_record())
        assert result.kind == ResultKind.SKIPPED
        assert result.stage == "structural_validation"

    def test_record_error_becomes_skip(self):
        pipeline = StagePipeline([RaisingStage("check", ValidationError("bad"))])
        result = pipeline.process(_record())
        assert result.kind == ResultKind.SKIPPED
        assert result.error_code == "VALIDATION_FAILED"
        assert result.stage == "check"

    def test_transient_error_becomes_retryable(self):
        pipeline = StagePipeline([RaisingStage("io", TransientInfrastructureError("timeout"))])
        result = pipeline.process(_record())
        assert result.kind == ResultKind.RETRYABLE
        assert result.reason == "timeout"

    def test_unexpected_error_becomes_fatal(self):
        pipeline = StagePipeline([RaisingStage("bug", ZeroDivisionError())])
        result = pipeline.process(_record())
        assert result.kind == ResultKind.FATAL
        assert result.error_code == "ZERODIVISIONERROR"
        assert result.reason == "ZeroDivisionError"

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            StagePipeline([TaggingStage("x"), TaggingStage("x")])

    def test_chunk_hooks(self):
        stage = TaggingStage("hooked")
        pipeline = StagePipeline([stage, RequiredFieldsStage([])])
        pipeline.begin_chunk([_record()])
        pipeline.end_chunk()
        assert (stage.begun, stage.ended) == (1, 1)

    def test_empty_pipeline_accepts(self):
        assert StagePipeline().process(_record()).is_accepted

    def test_stage_protocol(self):
        assert isinstance(TaggingStage("x"), Stage)
        assert StagePipeline([TaggingStage("x")]).stage_names == ("x",)


# =============================================================================
# Validation
# =============================================================================


class TestRequiredFieldsStage:
    def test_accepts_complete_record(self):
        stage = RequiredFieldsStage({"id": str, "amount": Decimal})
        assert stage.apply(_record(id="X", amount=Decimal("1"))).is_accepted

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_blank_values_skipped(self, value):
        result = RequiredFieldsStage(["id"]).apply(_record(id=value))
        assert result.kind == ResultKind.SKIPPED
        assert result.error_code == "VALIDATION_FAILED"
        assert "id" in result.reason

    def test_wrong_type_skipped(self):
        result = RequiredFieldsStage({"amount": Decimal}).apply(_record(amount="12.00"))
        assert result.kind == ResultKind.SKIPPED
        assert "str" in result.reason

    def test_tuple_of_types(self):
        stage = RequiredFieldsStage({"n": (int, Decimal)})
        assert stage.apply(_record(n=3)).is_accepted
        assert stage.apply(_record(n=Decimal("3"))).is_accepted


class TestBusinessRuleStage:
    def test_all_rules_pass(self):
        stage = BusinessRuleStage([
            BusinessRule("positive", lambda r: r.amount > 0, "must be positive"),
        ])
        assert stage.apply(_record()).is_accepted

    def test_first_failing_rule_reported(self):
        stage = BusinessRuleStage([
            BusinessRule("positive", lambda r: r.amount > 0, "must be positive"),
            BusinessRule("small", lambda r: r.amount < 5, "must be small"),
            BusinessRule("tiny", lambda r: r.amount < 1, "must be tiny"),
        ])
        result = stage.apply(_record())
        assert result.kind == ResultKind.SKIPPED
        assert result.error_code == "BUSINESS_RULE_VIOLATION"
        assert result.reason == "small: must be small"

    def test_rule_may_raise_violation(self):
        def check(record):
            raise BusinessRuleViolation(f"account {record.key} is closed")

        result = BusinessRuleStage([BusinessRule("open", check, "closed")]).apply(_record())
        assert result.kind == ResultKind.SKIPPED
        assert result.reason == "open: account R1 is closed"


# =============================================================================
# Enrichment
# =============================================================================


def _enrich(lookup, required=True) -> EnrichmentStage:
    return EnrichmentStage(
        lookup,
        key_of=lambda r: r.payload.get("card"),
        merge=lambda r, e: r.with_payload(account=e),
        required=required,
    )


class TestEnrichmentStage:
    def test_prefetch_one_call_per_chunk(self):
        lookup = DictLookup("xref", {"c1": "A1", "c2": "A2"})
        stage = _enrich(lookup)
        records = [_record(1, card="c1"), _record(2, card="c2"), _record(3, card="c1")]

        stage.begin_chunk(records)
        results = [stage.apply(r) for r in records]
        stage.end_chunk()

        assert [r.record.payload["account"] for r in results] == ["A1", "A2", "A1"]
        assert lookup.calls == 1
        assert stage.cache.hits == 3

    def test_missing_required_reference_skipped(self):
        stage = _enrich(DictLookup("xref", {}))
        stage.begin_chunk([_record(card="c9")])
        result = stage.apply(_record(card="c9"))
        assert result.kind == ResultKind.SKIPPED
        assert result.error_code == "REFERENCE_NOT_FOUND"
        assert "c9" in result.reason

    def test_missing_optional_reference_passes_through(self):
        stage = _enrich(DictLookup("xref", {}), required=False)
        record = _record(card="c9")
        result = stage.apply(record)
        assert result.is_accepted
        assert result.record is record

    def test_missing_key_treated_as_missing_reference(self):
        stage = _enrich(DictLookup("xref", {"c1": "A1"}))
        assert stage.apply(_record()).kind == ResultKind.SKIPPED

    def test_prefetch_failure_falls_back_to_single_lookups(self):
        class BatchDown(DictLookup):
            def lookup_many(self, keys):
                raise TransientInfrastructureError("batch query timed out")

        stage = _enrich(BatchDown("xref", {"c1": "A1"}))
        stage.begin_chunk([_record(card="c1")])
        result = stage.apply(_record(card="c1"))
        assert result.is_accepted
        assert stage.cache.misses == 1

    def test_lookup_failure_propagates_to_pipeline(self):
        class Down(DictLookup):
            def lookup(self, key):
                raise TransientInfrastructureError("lookup timed out")

        pipeline = StagePipeline([_enrich(Down("xref", {}))])
        assert pipeline.process(_record(card="c1")).kind == ResultKind.RETRYABLE

    def test_default_name(self):
        assert _enrich(DictLookup("xref", {})).name == "enrich_xref"

    def test_cache_cleared_between_chunks(self):
        stage = _enrich(DictLookup("xref", {"c1": "A1"}))
        stage.begin_chunk([_record(card="c1")])
        assert len(stage.cache) == 1
        stage.end_chunk()
        assert len(stage.cache) == 0


class TestChunkLookupCache:
    def test_misses_are_cached(self):
        lookup = DictLookup("xref", {})
        cache = ChunkLookupCache(lookup)
        assert cache.get("nope") is None
        assert cache.get("nope") is None
        assert lookup.calls == 1
        assert (cache.hits, cache.misses) == (1, 1)


class TestSqlAlchemyLookup:
    def test_lookup_many(self, session_factory):
        with session_scope(session_factory) as session:
            session.add(CardCrossReferenceModel(card_number="4000000000000001", account_id="00000000011"))
            session.add(CardCrossReferenceModel(card_number="4000000000000002", account_id="00000000022"))

        lookup = SqlAlchemyLookup(
            session_factory, CardCrossReferenceModel, "card_number", name="card_xref",
        )
        found = lookup.lookup_many(["4000000000000001", "4000000000000009"])
        assert set(found) == {"4000000000000001"}
        assert found["4000000000000001"]["account_id"] == "00000000011"
        assert lookup.lookup("4000000000000002")["account_id"] == "00000000022"
        assert lookup.lookup("missing") is None
        assert lookup.lookup_many([]) == {}


# =============================================================================
# Derived fields
# =============================================================================


class TestDerivedFieldStage:
    def test_derives_payload_and_amount(self):
        stage = DerivedFieldStage(
            derive=lambda r: {"double": r.amount * 2},
            amount_of=lambda r: r.amount / 3,
        )
        result = stage.apply(_record())
        assert result.record.payload["double"] == Decimal("20.00")
        assert result.record.amount == Decimal("3.33")

    def test_requires_a_function(self):
        with pytest.raises(ValueError):
            DerivedFieldStage()
