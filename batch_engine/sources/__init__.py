"""
batch_engine.sources -- Record sources and the paging iterator.
"""

from batch_engine.sources.base import (
    TRANSIENT_SOURCE_ERRORS,
    RecordSource,
    SourceIterator,
    SourcePage,
)
from batch_engine.sources.memory import InMemoryRecordSource
from batch_engine.sources.sql import SqlAlchemyRecordSource

__all__ = [
    "TRANSIENT_SOURCE_ERRORS",
    "InMemoryRecordSource",
    "RecordSource",
    "SourceIterator",
    "SourcePage",
    "SqlAlchemyRecordSource",
]
