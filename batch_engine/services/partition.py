"""
PartitionedRunner -- runs disjoint partitions of one job concurrently.

Contract:
    Each partition is an independent job instance (its own job key,
    checkpoint, accumulator and fault state) executed on a worker thread.
    Partitions must not share group keys; ``partition_by_group`` splits a
    record list so that every group lands in exactly one partition.
    Totals are per partition; no cross-partition grand total is produced.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Mapping

from batch_kernel.logging_config import get_logger
from batch_kernel.utils.hashing import canonicalize_json
from batch_engine.domain.types import JobParameters, JobRunResult, JobStatus, Record
from batch_engine.sources.base import RecordSource
from batch_engine.sources.memory import InMemoryRecordSource

if TYPE_CHECKING:
    from batch_engine.orchestrator import BatchOrchestrator

logger = get_logger("batch.partition")

# Worst first: the combined status is the worst partition status
_STATUS_SEVERITY = {
    JobStatus.FAILED: 0,
    JobStatus.STOPPED: 1,
    JobStatus.COMPLETED_WITH_SKIPS: 2,
    JobStatus.COMPLETED: 3,
}


def partition_by_group(records: Iterable[Record], partitions: int) -> list[list[Record]]:
    """Split records into ``partitions`` lists without splitting any group.

    Groups are dealt round-robin in order of first appearance, so the split
    is deterministic and each list keeps the input order.
    """
    if partitions < 1:
        raise ValueError("partitions must be >= 1")
    assignment: dict[str, int] = {}
    buckets: list[list[Record]] = [[] for _ in range(partitions)]
    for record in records:
        group = canonicalize_json(record.group_key)
        index = assignment.setdefault(group, len(assignment) % partitions)
        buckets[index].append(record)
    return buckets


@dataclass(frozen=True)
class PartitionedRunResult:
    job_name: str
    status: JobStatus
    results: Mapping[str, JobRunResult]

    @property
    def committed_count(self) -> int:
        return sum(r.committed_count for r in self.results.values())

    @property
    def skip_count(self) -> int:
        return sum(r.skip_count for r in self.results.values())

    @property
    def read_count(self) -> int:
        return sum(r.read_count for r in self.results.values())


class PartitionedRunner:
    """Runs one job over several disjoint sources in parallel."""

    def __init__(self, orchestrator: BatchOrchestrator, max_workers: int | None = None) -> None:
        self._orchestrator = orchestrator
        self._max_workers = max_workers

    def run(
        self,
        job_name: str,
        parameters: JobParameters,
        sources: Mapping[str, RecordSource],
        correlation_id: str | None = None,
    ) -> PartitionedRunResult:
        if not sources:
            raise ValueError("at least one partition is required")
        workers = self._max_workers or len(sources)
        logger.info(
            "partitioned_run_started",
            extra={"job_name": job_name, "partitions": len(sources), "workers": workers},
        )
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-partition") as pool:
            futures = {
                name: pool.submit(
                    self._orchestrator.run,
                    job_name,
                    parameters,
                    correlation_id=correlation_id,
                    source=source,
                    partition=name,
                )
                for name, source in sources.items()
            }
            results = {name: future.result() for name, future in futures.items()}

        status = min(
            (r.status for r in results.values()),
            key=lambda s: _STATUS_SEVERITY[s],
        )
        logger.info(
            "partitioned_run_finished",
            extra={"job_name": job_name, "status": status.value},
        )
        return PartitionedRunResult(job_name=job_name, status=status, results=results)

    def run_records(
        self,
        job_name: str,
        parameters: JobParameters,
        records: Iterable[Record],
        partitions: int,
        correlation_id: str | None = None,
    ) -> PartitionedRunResult:
        """Split ``records`` by group and run each split as a partition."""
        sources = {
            f"p{index}": InMemoryRecordSource(bucket, name=f"{job_name}-p{index}")
            for index, bucket in enumerate(partition_by_group(records, partitions))
            if bucket
        }
        return self.run(job_name, parameters, sources, correlation_id=correlation_id)
