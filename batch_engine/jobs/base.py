"""
JobDefinition protocol, SimpleJob and JobRegistry.

Contract:
    ``JobDefinition`` describes one batch job: where records come from, the
    stages they pass through, the sinks that receive committed output and
    the report layout (if the job produces a report).  Factories are called
    once per execution, so stages with per-chunk caches are never shared
    between concurrent executions.

    ``JobRegistry`` stores job definitions keyed by ``name``.

Architecture:
    batch_engine/jobs.  Imports from batch_engine.domain, sources, stages
    and sinks only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, Union, runtime_checkable

from sqlalchemy.orm import Session, sessionmaker

from batch_engine.domain.types import JobParameters
from batch_engine.sinks.base import Sink
from batch_engine.sinks.report import ReportLayout
from batch_engine.sources.base import RecordSource
from batch_engine.stages.base import Stage


# =============================================================================
# JobDefinition Protocol
# =============================================================================


@runtime_checkable
class JobDefinition(Protocol):
    """Interface every batch job implements.

    Non-goals:
        - Does NOT manage transactions -- the coordinator owns chunk commits.
        - Does NOT retry or skip -- the fault policy decides.
    """

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    def create_source(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> RecordSource:
        """Build the record source honoring ``start_key`` / ``end_key``."""
        ...

    def create_stages(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> Sequence[Stage]:
        """Build fresh stage instances for one execution."""
        ...

    def create_sinks(self, parameters: JobParameters) -> Sequence[Sink]:
        ...

    def report_layout(self, parameters: JobParameters) -> ReportLayout | None:
        ...


# =============================================================================
# SimpleJob
# =============================================================================


SourceSpec = Union[RecordSource, Callable[[JobParameters], RecordSource]]
StageFactory = Callable[[], Sequence[Stage]]


def _no_stages() -> Sequence[Stage]:
    return ()


@dataclass
class SimpleJob:
    """Job assembled from ready-made parts.

    ``source`` may be a source or a factory taking the job parameters.
    ``stages`` is a zero-argument factory called once per execution; it
    must build new stage instances on every call, since stages keep
    per-chunk state (lookup caches) and partitions run concurrently.
    """

    name: str
    source: SourceSpec
    stages: StageFactory = _no_stages
    sinks: Sequence[Sink] = ()
    layout: ReportLayout | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not callable(self.stages):
            raise TypeError(
                f"SimpleJob '{self.name}': stages must be a factory returning "
                "new stage instances, not a sequence"
            )

    def create_source(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> RecordSource:
        if isinstance(self.source, RecordSource):
            return self.source
        return self.source(parameters)

    def create_stages(
        self,
        parameters: JobParameters,
        session_factory: sessionmaker[Session],
    ) -> Sequence[Stage]:
        return list(self.stages())

    def create_sinks(self, parameters: JobParameters) -> Sequence[Sink]:
        return list(self.sinks)

    def report_layout(self, parameters: JobParameters) -> ReportLayout | None:
        return self.layout


# =============================================================================
# JobRegistry
# =============================================================================


class JobRegistry:
    """Registry mapping job names to JobDefinition implementations.

    Contract:
        - ``register()`` adds a job; raises ValueError on duplicate.
        - ``get()`` retrieves by name; raises KeyError if missing.
        - ``list_jobs()`` returns all registered names.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobDefinition] = {}

    def register(self, job: JobDefinition) -> None:
        """Register a job definition.

        Raises:
            ValueError: If a job with the same name is already registered.
        """
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        self._jobs[job.name] = job

    def get(self, name: str) -> JobDefinition:
        """Retrieve a registered job by name.

        Raises:
            KeyError: If no job is registered under ``name``.
        """
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(
                f"No job registered as '{name}'. "
                f"Available: {sorted(self._jobs.keys())}"
            ) from None

    def list_jobs(self) -> tuple[str, ...]:
        """Return all registered job names, sorted."""
        return tuple(sorted(self._jobs.keys()))

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs
