"""
batch_engine.stages -- Record transformation stages and the pipeline.
"""

from batch_engine.stages.base import Stage, StagePipeline
from batch_engine.stages.derived import DerivedFieldStage
from batch_engine.stages.enrichment import (
    ChunkLookupCache,
    CrossReferenceLookup,
    DictLookup,
    EnrichmentStage,
    SqlAlchemyLookup,
)
from batch_engine.stages.validation import (
    BusinessRule,
    BusinessRuleStage,
    RequiredFieldsStage,
)

__all__ = [
    "BusinessRule",
    "BusinessRuleStage",
    "ChunkLookupCache",
    "CrossReferenceLookup",
    "DerivedFieldStage",
    "DictLookup",
    "EnrichmentStage",
    "RequiredFieldsStage",
    "SqlAlchemyLookup",
    "Stage",
    "StagePipeline",
]
