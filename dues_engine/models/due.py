"""Due ORM model: one month's charge for one unit within a fiscal period."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, ForeignKey, Index, Numeric, String, Text, UniqueConstraint
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class DueStatus(str, Enum):
    """Payment status of a due, always derived from paid vs total."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


UNPAID_STATUSES = (DueStatus.PENDING.value, DueStatus.PARTIAL.value, DueStatus.OVERDUE.value)


class Due(Base, BaseModel):
    """Model representing a monthly charge owed by a unit.

    total_amount is not a column: it is base_amount + penalty_amount, computed
    both in Python and in SQL. version_id guards concurrent allocation writes.
    """

    __tablename__ = "dues"

    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id"),
        nullable=False,
        comment="FK to Unit owing this due",
    )
    fiscal_period_id: Mapped[int] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=False,
        comment="FK to FiscalPeriod the due belongs to",
    )
    month_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Month the charge covers (FIFO ordering key)",
    )
    due_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Date after which an unpaid due is overdue",
    )
    base_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Charge before penalties",
    )
    penalty_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Late penalty added to the base amount",
    )
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Sum of payment allocations (0 <= paid <= total)",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DueStatus.PENDING.value,
        comment="pending, partial, paid or overdue",
    )
    currency_code: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Currency the due is denominated in",
    )
    is_from_previous_period: Mapped[bool] = mapped_column(
        nullable=False,
        default=False,
        comment="True for debt carried forward by fiscal rollover",
    )
    previous_period_id: Mapped[int | None] = mapped_column(
        ForeignKey("fiscal_periods.id"),
        nullable=True,
        comment="Closing period a carried-forward due originates from",
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Free-form description (used by bulk deletion filters)",
    )
    version_id: Mapped[int] = mapped_column(
        nullable=False,
        comment="Optimistic concurrency counter",
    )

    # Relationships
    unit: Mapped["Unit"] = relationship(  # noqa: F821
        "Unit",
        back_populates="dues",
    )
    fiscal_period: Mapped["FiscalPeriod"] = relationship(  # noqa: F821
        "FiscalPeriod",
        back_populates="dues",
        foreign_keys=[fiscal_period_id],
    )

    __table_args__ = (
        UniqueConstraint(
            "unit_id",
            "fiscal_period_id",
            "month_date",
            "is_from_previous_period",
            name="uq_due_unit_period_month",
        ),
        Index("idx_due_unit_status", "unit_id", "status"),
        Index("idx_due_period", "fiscal_period_id"),
        Index("idx_due_month", "month_date"),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @hybrid_property
    def total_amount(self) -> Decimal:
        return (self.base_amount or Decimal("0")) + (self.penalty_amount or Decimal("0"))

    @total_amount.inplace.expression
    @classmethod
    def _total_amount_expression(cls):
        return cls.base_amount + cls.penalty_amount

    @property
    def balance(self) -> Decimal:
        """Amount still owed on this due."""
        return self.total_amount - (self.paid_amount or Decimal("0"))

    def __repr__(self) -> str:
        return (
            f"<Due(id={self.id}, unit_id={self.unit_id}, month={self.month_date}, "
            f"total={self.total_amount}, paid={self.paid_amount}, status={self.status})>"
        )


__all__ = ["Due", "DueStatus", "UNPAID_STATUSES"]
