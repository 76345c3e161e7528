"""Fiscal period ORM model bounding dues, payments and budgets."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models import Base, BaseModel


class PeriodStatus(str, Enum):
    """Lifecycle of a fiscal period. Transitions only move forward."""

    DRAFT = "draft"
    ACTIVE = "active"
    CLOSED = "closed"


class FiscalPeriod(Base, BaseModel):
    """Model representing a fiscal year (or other bounded range) of a site.

    Dues are generated for every month in [start_date, end_date).
    total_budget is a planning input and is not derived from dues.
    """

    __tablename__ = "fiscal_periods"

    site_id: Mapped[int] = mapped_column(
        ForeignKey("sites.id"),
        nullable=False,
        comment="FK to Site owning this period",
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Period identifier (e.g., '2025')",
    )
    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="First day of the period (inclusive)",
    )
    end_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="End of the period (exclusive)",
    )
    status: Mapped[PeriodStatus] = mapped_column(
        SQLEnum(PeriodStatus),
        nullable=False,
        default=PeriodStatus.DRAFT,
        comment="Period status (draft, active, closed)",
    )
    total_budget: Mapped[Decimal] = mapped_column(
        Numeric(15, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Planned yearly budget distributed into monthly dues",
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the period was closed by rollover",
    )

    # Relationships
    site: Mapped["Site"] = relationship(  # noqa: F821
        "Site",
        back_populates="periods",
    )
    dues: Mapped[list["Due"]] = relationship(  # noqa: F821
        "Due",
        back_populates="fiscal_period",
        foreign_keys="Due.fiscal_period_id",
    )
    budget_categories: Mapped[list["BudgetCategory"]] = relationship(  # noqa: F821
        "BudgetCategory",
        back_populates="fiscal_period",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.display_order",
    )

    __table_args__ = (
        Index("idx_period_site_name", "site_id", "name", unique=True),
        Index("idx_period_site_dates", "site_id", "start_date", "end_date"),
    )

    def contains(self, day: date) -> bool:
        """Check whether a date falls inside [start_date, end_date)."""
        return self.start_date <= day < self.end_date

    def __repr__(self) -> str:
        return f"<FiscalPeriod(id={self.id}, name={self.name}, status={self.status})>"


__all__ = ["FiscalPeriod", "PeriodStatus"]
