"""In-memory record source, used by tests and partitioned runs."""

from __future__ import annotations

from typing import Any, Iterable

from batch_engine.domain.types import Record
from batch_engine.sources.base import SourcePage


class InMemoryRecordSource:
    """Serves a fixed list of records in pages.

    Records are sorted by order key unless ``presorted`` is set, in which
    case they are served exactly as given (out-of-order input is then
    reported by the iterator).
    """

    def __init__(
        self,
        records: Iterable[Record],
        name: str = "memory",
        start_key: Any = None,
        end_key: Any = None,
        presorted: bool = False,
    ) -> None:
        items = list(records)
        if not presorted:
            items.sort(key=lambda r: r.order_key)
        if start_key is not None:
            items = [r for r in items if r.order_key >= start_key]
        if end_key is not None:
            items = [r for r in items if r.order_key <= end_key]
        self._records = items
        self._name = name
        self.fetch_calls = 0

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        return len(self._records)

    def fetch_page(self, after_key: Any, limit: int) -> SourcePage:
        self.fetch_calls += 1
        start = 0
        if after_key is not None:
            start = len(self._records)
            for index, record in enumerate(self._records):
                if record.order_key > after_key:
                    start = index
                    break
        page = self._records[start:start + limit]
        return SourcePage(
            records=tuple(page),
            has_more=start + limit < len(self._records),
        )
