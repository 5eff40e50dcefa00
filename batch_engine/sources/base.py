"""
Source iterator -- ordered, lazily paged record stream with restart support.

Contract:
    A ``RecordSource`` returns pages through
    ``fetch_page(after_key, limit) -> SourcePage``.  ``after_key`` is the
    order key of the last record already consumed (``None`` for the first
    page); the source returns at most ``limit`` records with strictly greater
    order keys, ascending.  Filtering (date ranges, start/end keys) belongs
    to the source.

    ``SourceIterator`` wraps a source for the coordinator:
        - retries transient fetch failures with tenacity, then raises
          ``SourceUnavailableError`` (fatal to the job).
        - raises ``SourceOrderError`` when a page breaks ascending order.
        - resumes after a checkpointed order key.
        - ``read(n)`` returns up to n records; ``exhausted`` tells the
          coordinator whether the chunk just read is the last one.

Failure modes:
    - SourceUnavailableError after ``retry_attempts`` failed fetches, or on the
      first non-transient fetch failure.
    - SourceOrderError on non-ascending or duplicate order keys.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol, Sequence, runtime_checkable

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from batch_kernel.exceptions import (
    SourceError,
    SourceOrderError,
    SourceUnavailableError,
    TransientInfrastructureError,
)
from batch_kernel.logging_config import get_logger
from batch_engine.domain.types import Record

logger = get_logger("batch.source")

TRANSIENT_SOURCE_ERRORS: tuple[type[BaseException], ...] = (
    TransientInfrastructureError,
    OperationalError,
    PoolTimeoutError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class SourcePage:
    """One page of records returned by a source."""

    records: Sequence[Record]
    has_more: bool


@runtime_checkable
class RecordSource(Protocol):
    """Finite, ordered, resumable supplier of records."""

    @property
    def name(self) -> str:
        ...

    def fetch_page(self, after_key: Any, limit: int) -> SourcePage:
        ...


class SourceIterator:
    """Pull-based iterator over a ``RecordSource`` in order-key order."""

    def __init__(
        self,
        source: RecordSource,
        fetch_size: int,
        after_key: Any = None,
        retry_attempts: int = 3,
        retry_wait: float = 0.5,
        retry_wait_max: float = 10.0,
    ) -> None:
        if fetch_size < 1:
            raise ValueError("fetch_size must be >= 1")
        self._source = source
        self._fetch_size = fetch_size
        self._cursor = after_key
        self._last_key = after_key
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._retry_wait_max = retry_wait_max
        self._buffer: deque[Record] = deque()
        self._has_more = True
        self._pages_fetched = 0

    @property
    def source_name(self) -> str:
        return self._source.name

    @property
    def last_key(self) -> Any:
        """Order key of the last record handed out (or the resume key)."""
        return self._last_key

    @property
    def pages_fetched(self) -> int:
        return self._pages_fetched

    @property
    def exhausted(self) -> bool:
        """True once the buffer is empty and the source reported no more pages."""
        if self._buffer:
            return False
        if self._has_more:
            self._fill()
        return not self._buffer and not self._has_more

    def read(self, count: int) -> list[Record]:
        """Return up to ``count`` records; fewer only at end of source."""
        records: list[Record] = []
        while len(records) < count:
            if not self._buffer:
                if not self._has_more:
                    break
                self._fill()
                if not self._buffer:
                    break
            record = self._buffer.popleft()
            self._last_key = record.order_key
            records.append(record)
        return records

    def __iter__(self):
        while True:
            batch = self.read(self._fetch_size)
            if not batch:
                return
            yield from batch

    # -------------------------------------------------------------------------
    # Paging
    # -------------------------------------------------------------------------

    def _fill(self) -> None:
        page = self._fetch_with_retry()
        self._pages_fetched += 1
        previous = self._cursor
        for record in page.records:
            if previous is not None and not record.order_key > previous:
                raise SourceOrderError(self._source.name, previous, record.order_key)
            previous = record.order_key
            self._buffer.append(record)
        self._cursor = previous
        # A page without records cannot advance the cursor
        self._has_more = page.has_more and bool(page.records)

    def _fetch_with_retry(self) -> SourcePage:
        attempt = 0
        last_error: BaseException | None = None
        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=(
                    wait_exponential(multiplier=self._retry_wait, max=self._retry_wait_max)
                    + wait_random(0, self._retry_wait)
                ),
                retry=retry_if_exception_type(TRANSIENT_SOURCE_ERRORS),
                reraise=False,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return self._source.fetch_page(self._cursor, self._fetch_size)
                    except TRANSIENT_SOURCE_ERRORS as exc:
                        last_error = exc
                        logger.warning(
                            "source_fetch_failed",
                            extra={
                                "source": self._source.name,
                                "attempt": attempt,
                                "max_attempts": self._retry_attempts,
                                "error": str(exc),
                            },
                        )
                        raise
        except RetryError as exc:
            final_error = last_error or exc.last_attempt.exception()
            raise SourceUnavailableError(
                self._source.name, attempt, str(final_error),
            ) from final_error
        except SourceError:
            raise
        except Exception as exc:
            raise SourceUnavailableError(self._source.name, attempt, str(exc)) from exc

        raise RuntimeError("Unexpected state in source retry loop")  # pragma: no cover
