"""
SQLAlchemy record source -- keyset pagination over one mapped table.

Each page runs in its own short session:

    SELECT ... WHERE (order cols) > :after_key
              [AND (order cols) >= :start_key] [AND (order cols) <= :end_key]
    ORDER BY order cols LIMIT :limit + 1

The extra row tells whether another page exists without a COUNT query.
Multi-column order keys are compared as row values (``tuple_``).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Sequence

from sqlalchemy import select, tuple_
from sqlalchemy.orm import Session, sessionmaker

from batch_engine.domain.totals import quantize_amount
from batch_engine.domain.types import Record
from batch_engine.sources.base import SourcePage


class SqlAlchemyRecordSource:
    """Reads ORM rows as ``Record`` objects ordered by ``order_by`` columns."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        model: type,
        order_by: Sequence[str],
        group_by: str | Sequence[str],
        amount_field: str | None = None,
        natural_key_field: str | None = None,
        payload_fields: Sequence[str] | None = None,
        start_key: Any = None,
        end_key: Any = None,
        where: Sequence[Any] = (),
        name: str | None = None,
        payload_of: Callable[[Any], dict[str, Any]] | None = None,
    ) -> None:
        if not order_by:
            raise ValueError("order_by needs at least one column")
        self._session_factory = session_factory
        self._model = model
        self._order_by = tuple(order_by)
        self._group_by = (group_by,) if isinstance(group_by, str) else tuple(group_by)
        self._amount_field = amount_field
        self._natural_key_field = natural_key_field
        self._payload_fields = tuple(payload_fields) if payload_fields else None
        self._start_key = start_key
        self._end_key = end_key
        self._where = tuple(where)
        self._name = name or getattr(model, "__tablename__", model.__name__)
        self._payload_of = payload_of

    @property
    def name(self) -> str:
        return self._name

    def fetch_page(self, after_key: Any, limit: int) -> SourcePage:
        stmt = select(self._model)
        order_expr = self._order_expression()
        for clause in self._where:
            stmt = stmt.where(clause)
        if self._start_key is not None:
            stmt = stmt.where(order_expr >= self._key_literal(self._start_key))
        if self._end_key is not None:
            stmt = stmt.where(order_expr <= self._key_literal(self._end_key))
        if after_key is not None:
            stmt = stmt.where(order_expr > self._key_literal(after_key))
        stmt = stmt.order_by(*self._order_columns()).limit(limit + 1)

        session = self._session_factory()
        try:
            rows = session.execute(stmt).scalars().all()
            records = tuple(self._to_record(row) for row in rows[:limit])
        finally:
            session.close()
        return SourcePage(records=records, has_more=len(rows) > limit)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _order_columns(self) -> list[Any]:
        return [getattr(self._model, column) for column in self._order_by]

    def _order_expression(self) -> Any:
        columns = self._order_columns()
        if len(columns) == 1:
            return columns[0]
        return tuple_(*columns)

    def _key_literal(self, key: Any) -> Any:
        if len(self._order_by) == 1:
            return key
        return tuple_(*key)

    def _to_record(self, row: Any) -> Record:
        order_values = tuple(getattr(row, column) for column in self._order_by)
        order_key = order_values[0] if len(order_values) == 1 else order_values
        group_values = tuple(getattr(row, column) for column in self._group_by)
        group_key = group_values[0] if len(group_values) == 1 else group_values

        if self._payload_of is not None:
            payload = self._payload_of(row)
        elif self._payload_fields is not None:
            payload = {field: getattr(row, field) for field in self._payload_fields}
        else:
            payload = {
                column.key: getattr(row, column.key)
                for column in row.__mapper__.column_attrs
            }

        amount = Decimal("0.00")
        if self._amount_field is not None:
            raw = getattr(row, self._amount_field)
            amount = quantize_amount(raw if raw is not None else 0)

        natural_key = None
        if self._natural_key_field is not None:
            natural_key = str(getattr(row, self._natural_key_field))

        return Record(
            order_key=order_key,
            group_key=group_key,
            payload=payload,
            amount=amount,
            natural_key=natural_key,
        )
