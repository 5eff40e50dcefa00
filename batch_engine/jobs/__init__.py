"""
batch_engine.jobs -- Job definitions, the job registry and bundled jobs.
"""

from batch_engine.jobs.account_processing import AccountProcessingJob
from batch_engine.jobs.base import JobDefinition, JobRegistry, SimpleJob
from batch_engine.jobs.transaction_report import TransactionReportJob


def default_job_registry() -> JobRegistry:
    """Create a JobRegistry pre-loaded with the bundled jobs."""
    registry = JobRegistry()
    registry.register(TransactionReportJob())
    registry.register(AccountProcessingJob())
    return registry


__all__ = [
    "AccountProcessingJob",
    "JobDefinition",
    "JobRegistry",
    "SimpleJob",
    "TransactionReportJob",
    "default_job_registry",
]
