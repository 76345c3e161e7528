"""Payment ORM model for cash received from units."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class PaymentMethod(str, Enum):
    """How the money was received."""

    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class Payment(Base, BaseModel):
    """Model representing an immutable payment record.

    Carries the full currency triple (payment, dues, reporting) and both rates.
    applied_to_dues is the ordered FIFO allocation list written at creation
    (or by reallocation); reversal stamps reversed_at instead of editing amounts.
    """

    __tablename__ = "payments"

    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id"),
        nullable=False,
        comment="FK to Unit the payment was received from",
    )
    fiscal_period_id: Mapped[int | None] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=True,
        comment="Fiscal period the payment is attributed to",
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
        comment="FK to the receiving Account",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        comment="Amount received, in the payment currency",
    )
    payment_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Date the money was received",
    )
    payment_method: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=PaymentMethod.CASH.value,
        comment="cash, bank_transfer, credit_card or other",
    )
    reference_no: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Receipt or bank reference number",
    )
    category: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Income category (e.g., 'Monthly Dues')",
    )
    currency_code: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Payment currency",
    )
    exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(15, 6),
        nullable=False,
        comment="1 payment currency = exchange_rate dues currency",
    )
    dues_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Currency of the dues the payment was applied to",
    )
    amount_in_dues_currency: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        comment="amount x exchange_rate",
    )
    reporting_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Site reporting currency at the time of payment",
    )
    reporting_rate: Mapped[Decimal] = mapped_column(
        Numeric(15, 6),
        nullable=False,
        comment="1 payment currency = reporting_rate reporting currency",
    )
    amount_reporting: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        comment="amount x reporting_rate",
    )
    overpayment: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Dues-currency amount left after all outstanding dues were covered",
    )
    applied_to_dues: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered allocations: [{due_id, month_date, amount_applied, dues_currency}]",
    )
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set when the paired ledger entry was deleted",
    )
    created_by: Mapped[int | None] = mapped_column(
        nullable=True,
        comment="Actor who recorded the payment",
    )
    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Relationships
    unit: Mapped["Unit"] = relationship("Unit")  # noqa: F821
    account: Mapped["Account"] = relationship("Account")  # noqa: F821

    __table_args__ = (
        Index("idx_payment_unit_date", "unit_id", "payment_date"),
        Index("idx_payment_period", "fiscal_period_id"),
    )

    @property
    def is_reversed(self) -> bool:
        return self.reversed_at is not None

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, unit_id={self.unit_id}, amount={self.amount} "
            f"{self.currency_code}, date={self.payment_date})>"
        )


__all__ = ["Payment", "PaymentMethod"]
