"""
batch_engine.services -- Repository, chunk coordinator, listeners, partitions.
"""

from batch_engine.services.coordinator import ChunkCoordinator
from batch_engine.services.listener import (
    BaseExecutionListener,
    ChunkFailure,
    ChunkReport,
    ExecutionListener,
    JobReport,
    ListenerChain,
    LoggingListener,
    MetricsListener,
)
from batch_engine.services.partition import (
    PartitionedRunner,
    PartitionedRunResult,
    partition_by_group,
)
from batch_engine.services.repository import JobRepository

__all__ = [
    "BaseExecutionListener",
    "ChunkCoordinator",
    "ChunkFailure",
    "ChunkReport",
    "ExecutionListener",
    "JobReport",
    "JobRepository",
    "ListenerChain",
    "LoggingListener",
    "MetricsListener",
    "PartitionedRunResult",
    "PartitionedRunner",
    "partition_by_group",
]
