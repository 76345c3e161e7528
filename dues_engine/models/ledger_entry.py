"""General ledger entry ORM model (income, expense, transfer)."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class EntryType(str, Enum):
    """Ledger entry classification."""

    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    """Movement between two accounts. Never carries a budget category."""


class LedgerEntry(Base, BaseModel):
    """Model representing a general ledger transaction.

    Income and expense entries move money through a single account
    (account_id, account_amount). Transfers use from/to accounts instead.
    amount_reporting is always amount x exchange_rate and is only written
    by the ledger synchronizer.
    """

    __tablename__ = "ledger_entries"

    site_id: Mapped[int] = mapped_column(
        ForeignKey("sites.id"),
        nullable=False,
        comment="FK to Site",
    )
    fiscal_period_id: Mapped[int | None] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=True,
        comment="Fiscal period the entry is booked in",
    )
    entry_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="income, expense or transfer",
    )
    category: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Budget/income category (always empty for transfers)",
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        comment="Entry amount in currency_code (always positive)",
    )
    currency_code: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Entry currency",
    )
    exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(15, 6),
        nullable=False,
        default=Decimal("1"),
        comment="1 entry currency = exchange_rate reporting currency",
    )
    amount_reporting: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        comment="amount x exchange_rate in the site reporting currency",
    )
    entry_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )
    account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        comment="Single account for income/expense entries",
    )
    account_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(15, 2),
        nullable=True,
        comment="Effect on account_id in the account's currency",
    )
    from_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        comment="Debited account for transfers",
    )
    to_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=True,
        comment="Credited account for transfers",
    )
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id"),
        nullable=True,
        unique=True,
        comment="Originating payment (at most one entry per payment)",
    )
    due_id: Mapped[int | None] = mapped_column(
        ForeignKey("dues.id"),
        nullable=True,
        comment="First due the originating payment was applied to",
    )
    vendor_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_by: Mapped[int | None] = mapped_column(
        nullable=True,
        comment="Actor who recorded the entry",
    )

    # Relationships
    account: Mapped["Account | None"] = relationship(  # noqa: F821
        "Account",
        foreign_keys=[account_id],
    )
    from_account: Mapped["Account | None"] = relationship(  # noqa: F821
        "Account",
        foreign_keys=[from_account_id],
    )
    to_account: Mapped["Account | None"] = relationship(  # noqa: F821
        "Account",
        foreign_keys=[to_account_id],
    )

    __table_args__ = (
        Index("idx_ledger_site_period", "site_id", "fiscal_period_id"),
        Index("idx_ledger_period_type_category", "fiscal_period_id", "entry_type", "category"),
        Index("idx_ledger_account", "account_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(id={self.id}, type={self.entry_type}, amount={self.amount} "
            f"{self.currency_code}, category={self.category!r})>"
        )


__all__ = ["LedgerEntry", "EntryType"]
