"""
Source tables read by the bundled jobs.

These are the card-processing entities the transaction report and account
processing jobs read from; the engine itself never depends on them.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from batch_kernel.db.base import TimestampedBase


class TransactionModel(TimestampedBase):
    """Posted card transaction."""

    __tablename__ = "card_transactions"

    __table_args__ = (
        Index("ix_card_transactions_card_tran", "card_number", "tran_id"),
        Index("ix_card_transactions_processed_at", "processed_at"),
    )

    tran_id: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    card_number: Mapped[str] = mapped_column(String(16), nullable=False)
    type_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    category_code: Mapped[str | None] = mapped_column(String(4), nullable=True)
    source: Mapped[str | None] = mapped_column(String(10), nullable=True)
    description: Mapped[str | None] = mapped_column(String(100), nullable=True)
    merchant_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(11, 2), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )


class TransactionTypeModel(TimestampedBase):
    __tablename__ = "transaction_types"

    type_code: Mapped[str] = mapped_column(String(2), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(String(50), nullable=False)


class TransactionCategoryModel(TimestampedBase):
    """Category keyed by type code + category code (e.g. ``"010001"``)."""

    __tablename__ = "transaction_categories"

    category_key: Mapped[str] = mapped_column(String(6), nullable=False, unique=True)
    type_code: Mapped[str] = mapped_column(String(2), nullable=False)
    category_code: Mapped[str] = mapped_column(String(4), nullable=False)
    description: Mapped[str] = mapped_column(String(50), nullable=False)


class CardCrossReferenceModel(TimestampedBase):
    """Card number to account / customer cross reference."""

    __tablename__ = "card_cross_references"

    card_number: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(String(11), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(9), nullable=True)


class AccountModel(TimestampedBase):
    __tablename__ = "accounts"

    __table_args__ = (
        Index("ix_accounts_group_account", "group_id", "account_id"),
    )

    account_id: Mapped[str] = mapped_column(String(11), nullable=False, unique=True)
    group_id: Mapped[str] = mapped_column(String(10), nullable=False)
    active_status: Mapped[str | None] = mapped_column(String(1), nullable=True)
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cash_credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cycle_credit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cycle_debit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    open_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
