"""
batch_engine.models -- ORM models for chunk engine persistence.

Architecture: batch_engine/models. Imports from batch_kernel.db.base only.
"""

from batch_engine.models.batch import (
    JobExecutionModel,
    OutputRecordModel,
    ReportLineModel,
    SkippedRecordModel,
)

__all__ = [
    "JobExecutionModel",
    "OutputRecordModel",
    "ReportLineModel",
    "SkippedRecordModel",
]
