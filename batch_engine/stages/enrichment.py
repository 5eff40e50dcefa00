"""
Enrichment stage -- cross-reference lookups with a per-chunk cache.

Contract:
    A ``CrossReferenceLookup`` resolves a key to an entity (or ``None``).
    Lookups that also implement ``lookup_many(keys)`` are prefetched once per
    chunk in ``begin_chunk``, so a chunk of N records costs one query per
    lookup instead of N.  The cache lives for one chunk attempt only.

    A missing entity skips the record when the reference is required and
    passes it through unchanged otherwise.  Lookup exceptions propagate to
    the pipeline, which classifies them (transient -> retryable).
"""

from __future__ import annotations

from typing import Any, Callable, Hashable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.exceptions import ReferenceNotFoundError
from batch_kernel.logging_config import get_logger
from batch_engine.domain.types import ProcessingResult, Record

logger = get_logger("batch.stages.enrichment")

_MISSING = object()


@runtime_checkable
class CrossReferenceLookup(Protocol):
    """Resolves a reference key to an entity."""

    @property
    def name(self) -> str:
        ...

    def lookup(self, key: Hashable) -> Any | None:
        ...


class DictLookup:
    """Lookup backed by a mapping."""

    def __init__(self, name: str, entries: Mapping[Hashable, Any]) -> None:
        self._name = name
        self._entries = dict(entries)
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    def lookup(self, key: Hashable) -> Any | None:
        self.calls += 1
        return self._entries.get(key)

    def lookup_many(self, keys: Iterable[Hashable]) -> dict[Hashable, Any]:
        self.calls += 1
        return {key: self._entries[key] for key in keys if key in self._entries}


class SqlAlchemyLookup:
    """Lookup of one mapped table by a key column; entities are column dicts."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        model: type,
        key_field: str,
        name: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._model = model
        self._key_field = key_field
        self._name = name or getattr(model, "__tablename__", model.__name__)

    @property
    def name(self) -> str:
        return self._name

    def lookup(self, key: Hashable) -> dict[str, Any] | None:
        return self.lookup_many([key]).get(key)

    def lookup_many(self, keys: Iterable[Hashable]) -> dict[Hashable, dict[str, Any]]:
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return {}
        column = getattr(self._model, self._key_field)
        session = self._session_factory()
        try:
            rows = session.execute(
                select(self._model).where(column.in_(wanted))
            ).scalars().all()
            return {
                getattr(row, self._key_field): {
                    attr.key: getattr(row, attr.key)
                    for attr in row.__mapper__.column_attrs
                }
                for row in rows
            }
        finally:
            session.close()


class ChunkLookupCache:
    """Per-chunk memo of lookup results, including misses."""

    def __init__(self, lookup: CrossReferenceLookup) -> None:
        self._lookup = lookup
        self._entries: dict[Hashable, Any] = {}
        self.hits = 0
        self.misses = 0

    def prefetch(self, keys: Iterable[Hashable]) -> None:
        lookup_many = getattr(self._lookup, "lookup_many", None)
        pending = [k for k in dict.fromkeys(keys) if k is not None and k not in self._entries]
        if lookup_many is None or not pending:
            return
        found = lookup_many(pending)
        for key in pending:
            self._entries[key] = found.get(key, _MISSING)

    def get(self, key: Hashable) -> Any | None:
        if key in self._entries:
            self.hits += 1
            value = self._entries[key]
        else:
            self.misses += 1
            entity = self._lookup.lookup(key)
            value = _MISSING if entity is None else entity
            self._entries[key] = value
        return None if value is _MISSING else value

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class EnrichmentStage:
    """Attaches a looked-up entity to each record.

    ``key_of`` extracts the reference key from a record; ``merge`` builds
    the enriched record from the record and the entity.
    """

    def __init__(
        self,
        lookup: CrossReferenceLookup,
        key_of: Callable[[Record], Hashable],
        merge: Callable[[Record, Any], Record],
        name: str | None = None,
        required: bool = True,
    ) -> None:
        self._lookup = lookup
        self._key_of = key_of
        self._merge = merge
        self._name = name or f"enrich_{lookup.name}"
        self._required = required
        self._cache = ChunkLookupCache(lookup)

    @property
    def name(self) -> str:
        return self._name

    @property
    def cache(self) -> ChunkLookupCache:
        return self._cache

    def begin_chunk(self, records: Sequence[Record]) -> None:
        self._cache.clear()
        keys = [self._key_of(record) for record in records]
        try:
            self._cache.prefetch(keys)
        except Exception:
            # apply() repeats the lookup per record and reports the failure there
            logger.warning(
                "lookup_prefetch_failed",
                extra={"lookup": self._lookup.name, "keys": len(keys)},
                exc_info=True,
            )
            self._cache.clear()

    def end_chunk(self) -> None:
        self._cache.clear()

    def apply(self, record: Record) -> ProcessingResult:
        key = self._key_of(record)
        entity = self._cache.get(key) if key is not None else None
        if entity is None:
            if not self._required:
                return ProcessingResult.accepted(record)
            error = ReferenceNotFoundError(self._lookup.name, key, record.key)
            return ProcessingResult.skipped(record, str(error), error.code)
        return ProcessingResult.accepted(self._merge(record, entity))
